"""API-level tests for the dispatch, fleet, capacity, planning and inventory routers."""
from __future__ import annotations

import os
import sys
from pathlib import Path

from fastapi.testclient import TestClient


TMP = Path(__file__).resolve().parent / ".tmp_dispatch"
TMP.mkdir(parents=True, exist_ok=True)
for suffix in ("", "-wal", "-shm"):
    stale = TMP / f"dispatch_api.db{suffix}"
    if stale.exists():
        stale.unlink()
os.environ["DISPATCH_DB_PATH"] = str(TMP / "dispatch_api.db")
os.environ["BREVO_API_KEY"] = ""
os.environ["GOOGLE_MAPS_API_KEY"] = ""
os.environ["OWNER_ALERT_PHONE"] = ""

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app.main import app  # noqa: E402
from app.core.config import get_settings  # noqa: E402
from app.services.container import shutdown_services  # noqa: E402

get_settings.cache_clear()
shutdown_services()

client = TestClient(app)


def _truck(number: str, capacity: float = 24) -> dict:
    response = client.post("/fleet/trucks", json={"truck_number": number, "capacity_tons": capacity})
    assert response.status_code == 201, response.text
    return response.json()


def _delivery(day: str, **fields) -> dict:
    payload = {
        "customer_name": "Dana Ruiz",
        "customer_phone": "9365550101",
        "material_name": "Crushed Limestone",
        "quantity": 12,
        "delivery_date": day,
        "source": "Texas Got Rocks",
    }
    payload.update(fields)
    response = client.post("/dispatch/deliveries", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def test_health_and_root():
    assert client.get("/health").json() == {"status": "healthy"}
    assert "dispatch" in client.get("/").json()["endpoints"]


def test_truck_roster_lifecycle_and_duplicate_rejection():
    truck = _truck("API-1")
    duplicate = client.post("/fleet/trucks", json={"truck_number": " api-1 ", "capacity_tons": 20})
    assert duplicate.status_code == 400
    assert duplicate.json()["error_code"] == "DUPLICATE_TRUCK"

    patched = client.patch(f"/fleet/trucks/{truck['truck_id']}", json={"notes": "new tires"})
    assert patched.status_code == 200
    assert patched.json()["notes"] == "new tires"

    assert client.delete(f"/fleet/trucks/{truck['truck_id']}").json()["active"] is False
    assert client.delete(f"/fleet/trucks/{truck['truck_id']}").status_code == 200
    active_ids = [t["truck_id"] for t in client.get("/fleet/trucks").json()]
    assert truck["truck_id"] not in active_ids
    all_ids = [t["truck_id"] for t in client.get("/fleet/trucks", params={"include_inactive": True}).json()]
    assert truck["truck_id"] in all_ids

    assert client.get("/fleet/trucks/TRK-9999").status_code == 404


def test_assign_conflict_and_driver_flow():
    truck = _truck("API-2")
    first = _delivery("2026-03-03")
    second = _delivery("2026-03-03", customer_name="Lee Park")
    assert first["status"] == "UNASSIGNED"
    assert first["source"] == "storefront"

    assigned = client.post(
        f"/dispatch/deliveries/{first['delivery_id']}/truck",
        json={"truck_id": truck["truck_id"], "time_window": "8-10 AM"},
        headers={"X-Actor": "maria"},
    )
    assert assigned.status_code == 200
    assert assigned.json()["status"] == "SCHEDULED"
    assert assigned.json()["status_history"][-1]["actor"] == "maria"

    clash = client.post(
        f"/dispatch/deliveries/{second['delivery_id']}/truck",
        json={"truck_id": truck["truck_id"], "time_window": "8-10 AM"},
    )
    assert clash.status_code == 409
    assert clash.json()["error_code"] == "SLOT_CONFLICT"

    conflicts = client.get(
        "/dispatch/conflicts",
        params={"truck_id": truck["truck_id"], "date": "2026-03-03", "time_window": "8-10 am"},
    ).json()
    assert conflicts == {"conflict": True, "delivery_ids": [first["delivery_id"]]}

    en_route = client.post(f"/dispatch/deliveries/{first['delivery_id']}/en-route", json={"eta_minutes": 20})
    assert en_route.json()["status"] == "EN_ROUTE"
    delivered = client.post(
        f"/dispatch/deliveries/{first['delivery_id']}/delivered",
        json={"photo_url": "https://photos.example/p.jpg"},
    )
    assert delivered.json()["status"] == "DELIVERED"
    assert delivered.json()["delivery_photo"] == "https://photos.example/p.jpg"


def test_en_route_from_unassigned_is_invalid_transition():
    record = _delivery("2026-03-04")
    response = client.post(f"/dispatch/deliveries/{record['delivery_id']}/en-route")
    assert response.status_code == 409
    assert response.json()["error_code"] == "INVALID_TRANSITION"


def test_cancel_is_idempotent_over_http():
    record = _delivery("2026-03-05")
    first = client.post(f"/dispatch/deliveries/{record['delivery_id']}/cancel", json={"reason": "duplicate"})
    second = client.delete(f"/dispatch/deliveries/{record['delivery_id']}", params={"reason": "again"})
    assert first.status_code == second.status_code == 200
    assert second.json()["status"] == "CANCELLED"
    assert len(second.json()["status_history"]) == 2


def test_create_delivery_idempotency_key_replays_response():
    headers = {"Idempotency-Key": "checkout-778"}
    payload = {
        "customer_name": "Replay Test",
        "material_name": "Sand",
        "quantity": 4,
        "delivery_date": "2026-03-06",
    }
    first = client.post("/dispatch/deliveries", json=payload, headers=headers)
    second = client.post("/dispatch/deliveries", json=payload, headers=headers)
    assert first.json()["delivery_id"] == second.json()["delivery_id"]
    listed = client.get("/dispatch/deliveries", params={"date": "2026-03-06"}).json()
    assert len(listed) == 1


def test_list_filters_accept_comma_separated_statuses():
    truck = _truck("API-3")
    scheduled = _delivery("2026-03-09", truck_id=truck["truck_id"], hour=8)
    unassigned = _delivery("2026-03-09")
    cancelled = _delivery("2026-03-09")
    client.post(f"/dispatch/deliveries/{cancelled['delivery_id']}/cancel")

    both = client.get("/dispatch/deliveries", params={"date": "2026-03-09", "status": "scheduled,UNASSIGNED"}).json()
    assert {row["delivery_id"] for row in both} == {scheduled["delivery_id"], unassigned["delivery_id"]}

    by_truck = client.get("/dispatch/deliveries", params={"date": "2026-03-09", "truck_id": truck["truck_id"]}).json()
    assert [row["delivery_id"] for row in by_truck] == [scheduled["delivery_id"]]

    bad = client.get("/dispatch/deliveries", params={"status": "LOST"})
    assert bad.status_code == 400


def test_apply_assignments_reports_item_errors():
    truck = _truck("API-4")
    ids = [_delivery("2026-03-10")["delivery_id"] for _ in range(2)]
    body = {
        "delivery_date": "2026-03-10",
        "assignments": [
            {"delivery_id": ids[0], "truck_id": truck["truck_id"], "truck_number": "API-4", "stop_order": 1},
            {"delivery_id": "DEL-404404", "truck_id": truck["truck_id"]},
            {"delivery_id": ids[1], "truck_id": truck["truck_id"], "truck_number": "API-4", "stop_order": 2},
        ],
    }
    result = client.post("/dispatch/assignments/apply", json=body).json()
    assert result["applied_count"] == 2
    assert result["total_count"] == 3
    assert [error["index"] for error in result["errors"]] == [1]

    empty = client.post("/dispatch/assignments/apply", json={"delivery_date": "2026-03-10", "assignments": []})
    assert empty.status_code == 400


def test_finalize_then_notify_schedule():
    truck = _truck("API-5")
    record = _delivery("2026-03-11", truck_id=truck["truck_id"], hour=9, customer_email="dana@example.com")

    finalized = client.post("/dispatch/finalize", json={"delivery_date": "2026-03-11"}).json()
    assert finalized["finalized"] == 1
    assert finalized["to_notify"][0]["delivery_id"] == record["delivery_id"]

    sent = client.post("/dispatch/notify/schedule", json={"deliveries": finalized["to_notify"]}).json()
    assert sent["total"] == 1
    assert sent["sms_sent"] == 0
    assert sent["results"][0]["sms"]["skipped"] is True

    again = client.post("/dispatch/finalize", json={"delivery_date": "2026-03-11"}).json()
    assert again["finalized"] == 0


def test_capacity_endpoint_and_range_validation():
    _truck("API-7")
    days = client.get("/capacity", params={"from": "2026-03-15", "to": "2026-03-16"}).json()
    assert [d["day"] for d in days] == ["2026-03-15", "2026-03-16"]
    assert days[0]["status"] == "closed"
    assert days[1]["total_trucks"] >= 1

    reversed_range = client.get("/capacity", params={"from": "2026-03-16", "to": "2026-03-15"})
    assert reversed_range.status_code == 400


def test_load_planning_endpoint():
    response = client.post("/planning/loads", json={"total_tons": 50, "truck_capacity": 24})
    assert response.status_code == 200
    data = response.json()
    assert data["total_loads"] == 3
    assert [load["quantity"] for load in data["loads"]] == [24, 24, 2]
    assert data["estimated_round_trip_minutes"] is None


def test_inventory_depletes_once_on_delivery():
    stocked = client.put("/inventory/MAT-API", json={"material_name": "Pea Gravel", "quantity_tons": 40})
    assert stocked.status_code == 200
    truck = _truck("API-6")
    record = _delivery("2026-03-12", truck_id=truck["truck_id"], material_id="MAT-API", quantity=15)

    client.post(f"/dispatch/deliveries/{record['delivery_id']}/delivered")
    repeat = client.post(f"/dispatch/deliveries/{record['delivery_id']}/delivered")
    assert repeat.status_code == 409
    assert client.get("/inventory/MAT-API").json()["quantity_tons"] == 25
    assert client.get("/inventory/MAT-MISSING").status_code == 404


def test_unassigned_reminder_endpoint():
    _delivery("2026-03-18")
    summary = client.post("/dispatch/reminders/unassigned", params={"today": "2026-03-17"}).json()
    assert summary["date"] == "2026-03-18"
    assert summary["unassigned_count"] == 1
    assert summary["alert_sent"] is False


def test_delivery_with_only_a_phone_is_accepted():
    response = client.post("/dispatch/deliveries", json={"customer_phone": "9365550102", "delivery_date": "2026-03-19"})
    assert response.status_code == 201, response.text
    assert response.json()["customer_name"] is None
    assert response.json()["material_name"] is None

    missing_date = client.post("/dispatch/deliveries", json={"customer_phone": "9365550102"})
    assert missing_date.status_code == 400
