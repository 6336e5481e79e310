"""Owner reminder for tomorrow's unassigned deliveries."""
from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo

from app.core.config import Settings, get_settings
from app.core.logging import logger
from app.services.delivery_records import DeliveryRecordStore
from app.services.notifications import NotificationSender


class DispatchReminder:
    """Counts tomorrow's unassigned deliveries and texts the owner when any exist.

    Meant to be triggered once a day by an external scheduler.
    """

    def __init__(
        self,
        records: DeliveryRecordStore,
        notifier: NotificationSender,
        settings: Optional[Settings] = None,
    ) -> None:
        self._records = records
        self._notifier = notifier
        self.settings = settings or get_settings()

    def run(self, today: Optional[date] = None) -> Dict[str, Any]:
        if today is None:
            today = datetime.now(ZoneInfo(self.settings.local_timezone)).date()
        tomorrow = today + timedelta(days=1)
        unassigned = self._records.count_unassigned(tomorrow)
        summary: Dict[str, Any] = {
            "date": tomorrow.isoformat(),
            "unassigned_count": unassigned,
            "alert_sent": False,
            "error": None,
        }
        if unassigned == 0:
            logger.info("No unassigned deliveries tomorrow", delivery_date=tomorrow.isoformat())
            return summary

        noun = "delivery" if unassigned == 1 else "deliveries"
        message = (
            f"Dispatch reminder: {unassigned} unassigned {noun} for tomorrow "
            f"({tomorrow.strftime('%a %b')} {tomorrow.day}). Assign trucks before the end of the day."
        )
        result = self._notifier.send_owner_alert(message)
        summary["alert_sent"] = result.success
        summary["error"] = result.error
        logger.info(
            "Dispatch reminder processed",
            delivery_date=tomorrow.isoformat(),
            unassigned=unassigned,
            alert_sent=result.success,
        )
        return summary
