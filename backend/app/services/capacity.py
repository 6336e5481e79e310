"""Daily fleet capacity derived from the roster and scheduled deliveries."""
from __future__ import annotations

from collections import defaultdict
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo

from app.core.config import Settings, get_settings
from app.core.errors import ValidationError
from app.models.dispatch import DayCapacity, DeliveryRecord, DeliveryStatus
from app.services.dispatch_state import DispatchStateStore
from app.services.fleet_registry import FleetRegistry

AVAILABLE_THRESHOLD = 0.30
LIMITED_THRESHOLD = 0.10


def classify_capacity(available_tons: float, total_capacity_tons: float) -> str:
    ratio = available_tons / total_capacity_tons if total_capacity_tons > 0 else 0.0
    if ratio > AVAILABLE_THRESHOLD:
        return "available"
    if ratio > LIMITED_THRESHOLD:
        return "limited"
    return "full"


class CapacityAggregator:
    """Read-only view over trucks and deliveries, one ``DayCapacity`` per day."""

    def __init__(
        self,
        fleet: FleetRegistry,
        store: DispatchStateStore,
        settings: Optional[Settings] = None,
    ) -> None:
        self._fleet = fleet
        self._store = store
        self.settings = settings or get_settings()

    def _local_now(self, now: Optional[datetime]) -> datetime:
        tz = ZoneInfo(self.settings.local_timezone)
        if now is None:
            return datetime.now(tz)
        if now.tzinfo is None:
            return now.replace(tzinfo=tz)
        return now.astimezone(tz)

    def compute_capacity(self, from_date: date, to_date: date, now: Optional[datetime] = None) -> List[DayCapacity]:
        if from_date is None or to_date is None:
            raise ValidationError("from and to dates are required")
        if to_date < from_date:
            raise ValidationError("to date must not be before from date")
        span = (to_date - from_date).days + 1
        if span > self.settings.capacity_max_range_days:
            raise ValidationError(f"Date range too long: {span} days (max {self.settings.capacity_max_range_days})")

        local_now = self._local_now(now)
        closed_days = self.settings.closed_weekday_set()
        cutoff_label = self.settings.same_day_cutoff_label()
        per_truck = self.settings.deliveries_per_truck

        trucks = self._fleet.list_active_trucks()
        total_trucks = len(trucks)
        total_capacity = sum(truck.capacity_tons for truck in trucks)

        rows = self._store.query_deliveries(
            start_date=from_date,
            end_date=to_date,
            exclude_statuses=[DeliveryStatus.CANCELLED],
        )
        by_day: Dict[date, List[DeliveryRecord]] = defaultdict(list)
        for row in rows:
            record = DeliveryRecord.model_validate(row)
            by_day[record.delivery_date].append(record)

        days: List[DayCapacity] = []
        for offset in range(span):
            day = from_date + timedelta(days=offset)
            day_name = day.strftime("%A")
            if day.weekday() in closed_days:
                days.append(DayCapacity(day=day, day_name=day_name, status="closed", same_day_cutoff=cutoff_label))
                continue

            deliveries = by_day.get(day, [])
            scheduled_tons = sum(d.quantity for d in deliveries)
            trucks_used = len({d.truck_id for d in deliveries if d.truck_id})
            available_tons = max(0.0, total_capacity - scheduled_tons)
            delivery_count = len(deliveries)
            max_deliveries = total_trucks * per_truck
            available_slots = max(0, max_deliveries - delivery_count)
            same_day = (
                day == local_now.date()
                and local_now.hour < self.settings.same_day_cutoff_hour
                and available_slots > 0
            )
            days.append(
                DayCapacity(
                    day=day,
                    day_name=day_name,
                    total_trucks=total_trucks,
                    trucks_used=trucks_used,
                    trucks_available=max(0, total_trucks - trucks_used),
                    total_capacity_tons=round(total_capacity, 1),
                    scheduled_tons=round(scheduled_tons, 1),
                    available_tons=round(available_tons, 1),
                    delivery_count=delivery_count,
                    max_deliveries=max_deliveries,
                    available_slots=available_slots,
                    status=classify_capacity(available_tons, total_capacity),
                    same_day_available=same_day,
                    same_day_cutoff=cutoff_label,
                )
            )
        return days
