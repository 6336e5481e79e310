"""Unit tests for dispatch state persistence."""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
import json
import sys
from datetime import date
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app.core.errors import NotFoundError, SlotConflictError  # noqa: E402
from app.models.dispatch import DeliveryRecord, DeliveryStatus, TruckRecord  # noqa: E402
from app.services.dispatch_state import DispatchStateStore  # noqa: E402


def _delivery(store: DispatchStateStore, **overrides) -> DeliveryRecord:
    fields = {
        "delivery_id": store.generate_delivery_id(),
        "customer_name": "Dana Ruiz",
        "material_name": "Crushed Limestone",
        "quantity": 12.0,
        "delivery_date": date(2026, 2, 18),
    }
    fields.update(overrides)
    return DeliveryRecord(**fields)


def test_generated_ids_use_prefixed_sequences(tmp_path):
    store = DispatchStateStore(str(tmp_path / "dispatch.db"))
    assert store.generate_truck_id() == "TRK-0001"
    assert store.generate_truck_id() == "TRK-0002"
    assert store.generate_delivery_id() == "DEL-000001"
    store.close()


def test_concurrent_sequence_generation_is_unique(tmp_path):
    store = DispatchStateStore(str(tmp_path / "dispatch.db"))
    with ThreadPoolExecutor(max_workers=8) as pool:
        ids = list(pool.map(lambda _: store.generate_delivery_id(), range(64)))
    assert len(set(ids)) == 64
    store.close()


def test_unique_slot_index_rejects_second_booking(tmp_path):
    store = DispatchStateStore(str(tmp_path / "dispatch.db"))
    first = _delivery(store, truck_id="TRK-0001", truck_number="T-1", time_window="8-10 AM", status="SCHEDULED")
    store.save_delivery(first)

    racing = _delivery(store, truck_id="TRK-0001", truck_number="T-1", time_window=" 8-10  am ", status="SCHEDULED")
    with pytest.raises(SlotConflictError):
        store.save_delivery(racing)
    assert store.get_delivery(racing.delivery_id) is None
    store.close()


def test_cancelled_booking_frees_the_slot(tmp_path):
    store = DispatchStateStore(str(tmp_path / "dispatch.db"))
    first = _delivery(store, truck_id="TRK-0001", hour=9, status="CANCELLED")
    store.save_delivery(first)
    second = _delivery(store, truck_id="TRK-0001", hour=9, status="SCHEDULED")
    store.save_delivery(second)
    assert store.slot_bookings("TRK-0001", date(2026, 2, 18), "h:09") == [second.delivery_id]
    store.close()


def test_update_delivery_unknown_id_raises_not_found(tmp_path):
    store = DispatchStateStore(str(tmp_path / "dispatch.db"))
    with pytest.raises(NotFoundError):
        store.update_delivery("DEL-999999", lambda record: record)
    store.close()


def test_update_delivery_returning_none_leaves_document(tmp_path):
    store = DispatchStateStore(str(tmp_path / "dispatch.db"))
    record = _delivery(store)
    saved = store.save_delivery(record)
    unchanged = store.update_delivery(record.delivery_id, lambda current: None)
    assert unchanged["updated_at"] == saved["updated_at"]
    store.close()


def test_query_filters_combine_with_and(tmp_path):
    store = DispatchStateStore(str(tmp_path / "dispatch.db"))
    store.save_delivery(_delivery(store, truck_id="TRK-0001", status="SCHEDULED", hour=8))
    store.save_delivery(_delivery(store, truck_id="TRK-0002", status="SCHEDULED", hour=8))
    store.save_delivery(_delivery(store, status="UNASSIGNED"))
    store.save_delivery(_delivery(store, delivery_date=date(2026, 2, 19), status="UNASSIGNED"))

    rows = store.query_deliveries(on_date=date(2026, 2, 18), statuses=[DeliveryStatus.SCHEDULED], truck_id="TRK-0002")
    assert len(rows) == 1
    assert rows[0]["truck_id"] == "TRK-0002"

    ranged = store.query_deliveries(start_date=date(2026, 2, 18), end_date=date(2026, 2, 19), statuses=["unassigned"])
    assert len(ranged) == 2
    store.close()


def test_normalize_legacy_statuses_rewrites_mixed_case(tmp_path):
    store = DispatchStateStore(str(tmp_path / "dispatch.db"))
    record = _delivery(store)
    data = record.model_dump(mode="json")
    data["status"] = "scheduled"
    data["status_history"] = [{"status": "Scheduled", "actor": "legacy", "note": "imported"}]
    with store.transaction() as conn:
        conn.execute(
            "INSERT INTO deliveries (delivery_id, delivery_date, status, data_json, updated_at) VALUES (?, ?, ?, ?, ?)",
            (record.delivery_id, "2026-02-18", "scheduled", json.dumps(data), "2026-02-01T00:00:00+00:00"),
        )

    assert store.normalize_legacy_statuses() == 1
    assert store.get_delivery(record.delivery_id)["status"] == "SCHEDULED"
    assert len(store.query_deliveries(statuses=[DeliveryStatus.SCHEDULED])) == 1
    assert store.normalize_legacy_statuses() == 0
    store.close()


def test_trucks_are_listed_by_number_and_matched_case_insensitively(tmp_path):
    store = DispatchStateStore(str(tmp_path / "dispatch.db"))
    store.upsert_truck(TruckRecord(truck_id="TRK-0001", truck_number="T-2", capacity_tons=24))
    store.upsert_truck(TruckRecord(truck_id="TRK-0002", truck_number="t-1", capacity_tons=20))
    store.upsert_truck(TruckRecord(truck_id="TRK-0003", truck_number="T-3", capacity_tons=20, active=False))

    assert [t["truck_id"] for t in store.list_trucks()] == ["TRK-0002", "TRK-0001"]
    assert len(store.list_trucks(active_only=False)) == 3
    assert store.find_active_truck_by_number("  T-1 ")["truck_id"] == "TRK-0002"
    assert store.find_active_truck_by_number("T-1", exclude_truck_id="TRK-0002") is None
    assert store.find_active_truck_by_number("t-3") is None
    store.close()


def test_idempotency_cache_round_trip(tmp_path):
    store = DispatchStateStore(str(tmp_path / "dispatch.db"))
    assert store.get_idempotent("create_delivery:abc") is None
    store.set_idempotent("create_delivery:abc", {"delivery_id": "DEL-000001"})
    assert store.get_idempotent("create_delivery:abc") == {"delivery_id": "DEL-000001"}
    store.close()


def test_adjust_inventory_skips_unstocked_and_can_go_negative(tmp_path):
    store = DispatchStateStore(str(tmp_path / "dispatch.db"))
    assert store.adjust_inventory("MAT-1", -5) is None
    assert store.list_inventory() == []
    store.save_inventory({"material_id": "MAT-2", "material_name": "Sand", "quantity_tons": 10.0})
    assert store.adjust_inventory("MAT-2", -2.5)["quantity_tons"] == 7.5
    assert store.adjust_inventory("MAT-2", -10)["quantity_tons"] == -2.5
    assert [item["material_id"] for item in store.list_inventory()] == ["MAT-2"]
    store.close()
