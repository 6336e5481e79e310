"""Owner reminder for tomorrow's unassigned deliveries."""
from __future__ import annotations

import json
import sys
from datetime import date
from pathlib import Path

import httpx

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app.core.config import Settings  # noqa: E402
from app.models.dispatch import DeliveryCreateRequest  # noqa: E402
from app.services.container import DispatchServices  # noqa: E402
from app.services.notifications import NotificationSender  # noqa: E402
from app.services.reminders import DispatchReminder  # noqa: E402

TODAY = date(2026, 2, 17)


def _setup(tmp_path):
    sent = []

    def _handler(request: httpx.Request) -> httpx.Response:
        sent.append(json.loads(request.content))
        return httpx.Response(201, json={"messageId": 7})

    settings = Settings(
        dispatch_db_path=str(tmp_path / "remind.db"),
        brevo_api_key="test-key",
        owner_alert_phone="9365550199",
        google_maps_api_key="",
    )
    services = DispatchServices(settings=settings)
    notifier = NotificationSender(services.store, settings, transport=httpx.MockTransport(_handler))
    return services, DispatchReminder(services.records, notifier, settings), sent


def _book(services, on: date, name: str):
    return services.records.create_delivery(
        DeliveryCreateRequest(customer_name=name, material_name="Sand", quantity=5, delivery_date=on)
    )


def test_alert_sent_when_tomorrow_has_unassigned(tmp_path):
    services, reminder, sent = _setup(tmp_path)
    _book(services, date(2026, 2, 18), "Ava")
    _book(services, date(2026, 2, 18), "Ben")
    _book(services, date(2026, 2, 19), "Cal")

    summary = reminder.run(today=TODAY)
    assert summary["date"] == "2026-02-18"
    assert summary["unassigned_count"] == 2
    assert summary["alert_sent"] is True
    assert len(sent) == 1
    assert sent[0]["recipient"] == "+19365550199"
    assert "2 unassigned deliveries" in sent[0]["content"]


def test_no_alert_when_everything_is_assigned(tmp_path):
    services, reminder, sent = _setup(tmp_path)
    record = _book(services, date(2026, 2, 18), "Ava")
    services.lifecycle.cancel(record.delivery_id)

    summary = reminder.run(today=TODAY)
    assert summary["unassigned_count"] == 0
    assert summary["alert_sent"] is False
    assert sent == []
