"""Customer and owner notifications over Brevo transactional SMS and email."""
from __future__ import annotations

import re
from datetime import date
from html import escape
from typing import Any, Dict, List, Optional

import httpx

from app.core.config import Settings, get_settings
from app.core.errors import DispatchError
from app.core.logging import logger
from app.models.dispatch import (
    ChannelResult,
    DeliveryRecord,
    DispatchEvent,
    NotificationReport,
    NotifyTarget,
)
from app.services.dispatch_state import DispatchStateStore


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    """Return an E.164 number, assuming +1 for bare 10/11 digit US numbers."""
    if not phone:
        return None
    formatted = re.sub(r"[^\d+]", "", phone)
    if not formatted:
        return None
    if not formatted.startswith("+"):
        if formatted.startswith("1") and len(formatted) == 11:
            formatted = f"+{formatted}"
        elif len(formatted) == 10:
            formatted = f"+1{formatted}"
    return formatted


def format_delivery_date(value: Optional[date]) -> str:
    if not value:
        return "soon"
    return f"{value.strftime('%A, %b')} {value.day}"


def _first_name(name: Optional[str]) -> str:
    return (name or "Customer").strip().split(" ")[0] or "Customer"


class NotificationSender:
    """Fire-and-report notifier.

    Each channel is attempted on its own and reported as a ``ChannelResult``.
    Nothing here raises into the caller. Flags on the delivery only flip to
    true after the channel accepted the request and are never cleared.
    """

    def __init__(
        self,
        store: DispatchStateStore,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._store = store
        self.settings = settings or get_settings()
        self._transport = transport

    def _post(self, path: str, payload: Dict[str, Any]) -> httpx.Response:
        headers = {
            "api-key": self.settings.brevo_api_key,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        url = f"{self.settings.brevo_base_url.rstrip('/')}{path}"
        with httpx.Client(timeout=self.settings.http_timeout_seconds, transport=self._transport) as client:
            return client.post(url, json=payload, headers=headers)

    def send_sms(self, phone: Optional[str], message: str) -> ChannelResult:
        recipient = normalize_phone(phone)
        if not recipient:
            return ChannelResult(channel="sms", skipped=True, error="No phone number")
        if not self.settings.notifications_enabled():
            return ChannelResult(channel="sms", skipped=True, recipient=recipient, error="Brevo not configured")
        payload = {
            "type": "transactional",
            "unicodeEnabled": False,
            "sender": self.settings.brevo_sms_sender,
            "recipient": recipient,
            "content": message,
        }
        try:
            response = self._post("/transactionalSMS/send", payload)
        except httpx.HTTPError as exc:
            logger.warning("SMS send failed", recipient=recipient, error=str(exc))
            return ChannelResult(channel="sms", recipient=recipient, error=str(exc))
        ok = response.status_code < 400
        logger.info("SMS send attempted", recipient=recipient, status_code=response.status_code, success=ok)
        return ChannelResult(
            channel="sms",
            success=ok,
            recipient=recipient,
            error=None if ok else f"Brevo SMS failed ({response.status_code}): {response.text[:200]}",
        )

    def send_email(self, to: Optional[str], to_name: Optional[str], subject: str, html_content: str) -> ChannelResult:
        if not to:
            return ChannelResult(channel="email", skipped=True, error="No email address")
        if not self.settings.notifications_enabled():
            return ChannelResult(channel="email", skipped=True, recipient=to, error="Brevo not configured")
        payload = {
            "sender": {"name": self.settings.brevo_sender_name, "email": self.settings.brevo_sender_email},
            "to": [{"email": to, "name": to_name or ""}],
            "subject": subject,
            "htmlContent": html_content,
        }
        try:
            response = self._post("/smtp/email", payload)
        except httpx.HTTPError as exc:
            logger.warning("Email send failed", recipient=to, error=str(exc))
            return ChannelResult(channel="email", recipient=to, error=str(exc))
        ok = response.status_code < 400
        logger.info("Email send attempted", recipient=to, status_code=response.status_code, success=ok)
        return ChannelResult(
            channel="email",
            success=ok,
            recipient=to,
            error=None if ok else f"Brevo email failed ({response.status_code}): {response.text[:200]}",
        )

    def _email_body(self, greeting_name: Optional[str], headline: str, rows: List[tuple[str, str]], footer: str) -> str:
        table = "".join(
            f"<tr><td>{escape(label)}</td><td style=\"text-align:right;font-weight:600\">{escape(value)}</td></tr>"
            for label, value in rows
        )
        return (
            "<!DOCTYPE html><html><head><meta charset=\"UTF-8\"></head><body>"
            f"<h2>{escape(self.settings.brevo_sender_name)}</h2>"
            f"<p>Hi {escape(_first_name(greeting_name))},</p>"
            f"<p>{escape(headline)}</p>"
            f"<table style=\"width:100%\">{table}</table>"
            f"<p>{escape(footer)}</p>"
            "</body></html>"
        )

    def _record_flags(self, delivery_id: str, sms_flag: str, email_flag: str, report: NotificationReport) -> None:
        sms_ok = bool(report.sms and report.sms.success)
        email_ok = bool(report.email and report.email.success)
        if not (sms_ok or email_ok):
            return

        def _mark(record: DeliveryRecord) -> DeliveryRecord:
            if sms_ok:
                setattr(record.notifications, sms_flag, True)
            if email_ok:
                setattr(record.notifications, email_flag, True)
            return record

        try:
            self._store.update_delivery(delivery_id, _mark)
        except DispatchError as exc:
            logger.warning("Could not record notification flags", delivery_id=delivery_id, error=exc.message)

    def _already_sent(self, delivery_id: str, flag: str) -> bool:
        row = self._store.get_delivery(delivery_id)
        if not row:
            return False
        return bool((row.get("notifications") or {}).get(flag))

    def notify_scheduled(self, target: NotifyTarget) -> NotificationReport:
        when = format_delivery_date(target.delivery_date)
        window = f" between {target.time_window}" if target.time_window else ""
        sms_text = (
            f"Hi {_first_name(target.customer_name)}! Your delivery of {target.quantity:g} tons of "
            f"{target.material_name or 'material'} is scheduled for {when}{window}. "
            "You'll get a text when the driver is on the way. Reply STOP to opt out."
        )
        report = NotificationReport(delivery_id=target.delivery_id)
        if self._already_sent(target.delivery_id, "schedule_sms"):
            report.sms = ChannelResult(channel="sms", skipped=True, error="Already sent")
        else:
            report.sms = self.send_sms(target.customer_phone, sms_text)
        if self._already_sent(target.delivery_id, "schedule_email"):
            report.email = ChannelResult(channel="email", skipped=True, error="Already sent")
        else:
            rows = [
                ("Material", target.material_name or "TBD"),
                ("Quantity", f"{target.quantity:g} tons"),
                ("Date", when),
            ]
            if target.time_window:
                rows.append(("Time Window", target.time_window))
            report.email = self.send_email(
                target.customer_email,
                target.customer_name,
                f"Delivery Confirmed - {when}",
                self._email_body(
                    target.customer_name,
                    "Your delivery is confirmed and on the schedule.",
                    rows,
                    "You'll receive another notification when your driver is on the way.",
                ),
            )
        self._record_flags(target.delivery_id, "schedule_sms", "schedule_email", report)
        return report

    def notify_en_route(self, delivery: DeliveryRecord, eta_minutes: Optional[int] = None) -> NotificationReport:
        eta = eta_minutes or self.settings.default_eta_minutes
        report = NotificationReport(delivery_id=delivery.delivery_id)
        if delivery.notifications.en_route_sms:
            report.sms = ChannelResult(channel="sms", skipped=True, error="Already sent")
        else:
            report.sms = self.send_sms(
                delivery.customer_phone,
                f"Your delivery is on the way! Estimated arrival: ~{eta} minutes. "
                "Please ensure your delivery area is accessible.",
            )
        if delivery.notifications.en_route_email:
            report.email = ChannelResult(channel="email", skipped=True, error="Already sent")
        else:
            report.email = self.send_email(
                delivery.customer_email,
                delivery.customer_name,
                "Your Delivery Is On the Way!",
                self._email_body(
                    delivery.customer_name,
                    f"Your driver is heading to your location now. Estimated arrival: ~{eta} min.",
                    [
                        ("Material", delivery.material_name or "Material"),
                        ("Quantity", f"{delivery.quantity:g} tons"),
                    ],
                    "Please ensure your delivery area is clear and accessible for our truck.",
                ),
            )
        self._record_flags(delivery.delivery_id, "en_route_sms", "en_route_email", report)
        return report

    def notify_delivered(self, delivery: DeliveryRecord) -> NotificationReport:
        report = NotificationReport(delivery_id=delivery.delivery_id)
        if delivery.notifications.delivered_sms:
            report.sms = ChannelResult(channel="sms", skipped=True, error="Already sent")
        else:
            report.sms = self.send_sms(
                delivery.customer_phone,
                f"Your delivery of {delivery.quantity:g} tons of {delivery.material_name or 'material'} "
                "has been completed. Thank you!",
            )
        if delivery.notifications.delivered_email:
            report.email = ChannelResult(channel="email", skipped=True, error="Already sent")
        else:
            rows = [
                ("Material", delivery.material_name or "Material"),
                ("Quantity", f"{delivery.quantity:g} tons"),
            ]
            if delivery.delivery_photo:
                rows.append(("Photo", delivery.delivery_photo))
            report.email = self.send_email(
                delivery.customer_email,
                delivery.customer_name,
                "Your Delivery Is Complete",
                self._email_body(delivery.customer_name, "Your material has been delivered.", rows, "Thank you for your order."),
            )
        self._record_flags(delivery.delivery_id, "delivered_sms", "delivered_email", report)
        return report

    def send_schedule_confirmations(self, targets: List[NotifyTarget]) -> Dict[str, Any]:
        results = [self.notify_scheduled(target) for target in targets]
        return {
            "sms_sent": sum(1 for r in results if r.sms and r.sms.success),
            "email_sent": sum(1 for r in results if r.email and r.email.success),
            "total": len(results),
            "results": [r.model_dump(mode="json") for r in results],
        }

    def send_owner_alert(self, message: str) -> ChannelResult:
        return self.send_sms(self.settings.owner_alert_phone, message)

    def handle_event(self, event: DispatchEvent) -> None:
        """Lifecycle listener: en-route and delivered transitions notify the customer."""
        if event.event_type not in {"en_route", "delivered"}:
            return
        row = self._store.get_delivery(event.delivery_id)
        if not row:
            logger.warning("Notification skipped, delivery missing", delivery_id=event.delivery_id)
            return
        delivery = DeliveryRecord.model_validate(row)
        if event.event_type == "en_route":
            report = self.notify_en_route(delivery, event.details.get("eta_minutes"))
        else:
            report = self.notify_delivered(delivery)
        logger.info(
            "Lifecycle notification processed",
            delivery_id=event.delivery_id,
            event_type=event.event_type,
            sms=report.sms.success if report.sms else None,
            email=report.email.success if report.email else None,
        )
