"""Apply externally planned truck assignments to a day's deliveries."""
from __future__ import annotations

from datetime import date, datetime, timezone
from typing import List, Optional

from app.core.errors import DispatchError, InvalidTransitionError, ValidationError
from app.core.logging import logger
from app.models.dispatch import (
    ApplyAssignmentsResult,
    AssignmentError,
    AssignmentItem,
    DeliveryRecord,
    DeliveryStatus,
)
from app.services.delivery_records import append_history
from app.services.dispatch_state import DispatchStateStore

# Legacy planner label still sent by older clients.
PLANNER_SOURCES = {"rocky": "planner"}

# Trucks already on the road are not swapped by a planner batch.
ASSIGNABLE_STATUSES = {DeliveryStatus.UNASSIGNED, DeliveryStatus.SCHEDULED}


class AssignmentCommitter:
    """Commits a planner batch item by item.

    Capacity feasibility is the planner's problem. Each item either lands or is
    reported in ``errors``; no item can abort another.
    """

    def __init__(self, store: DispatchStateStore) -> None:
        self._store = store

    def _apply_item(self, item: AssignmentItem, actor: str) -> None:
        def _assign(record: DeliveryRecord) -> DeliveryRecord:
            if record.status not in ASSIGNABLE_STATUSES:
                raise InvalidTransitionError(f"Delivery is {record.status.value}")
            source = (item.route_source or "planner").strip().lower()
            record.truck_id = item.truck_id
            record.truck_number = item.truck_number
            record.driver_id = item.driver_id
            record.driver_name = item.driver_name
            record.stop_order = item.stop_order if item.stop_order is not None else 1
            if item.time_window:
                record.time_window = item.time_window
            record.route_source = PLANNER_SOURCES.get(source, source)
            record.planner_reasoning = item.reasoning
            if record.status == DeliveryStatus.UNASSIGNED:
                record.status = DeliveryStatus.SCHEDULED
                record.scheduled_at = datetime.now(timezone.utc)
            note = f"Assigned by {record.route_source} to truck {item.truck_number or item.truck_id or '?'}"
            if item.reasoning:
                note = f"{note}: {item.reasoning}"
            append_history(record, record.status, actor, note)
            return record

        self._store.update_delivery(item.delivery_id, _assign)

    def apply_assignments(
        self,
        delivery_date: Optional[date],
        assignments: List[AssignmentItem],
        actor: str = "planner",
    ) -> ApplyAssignmentsResult:
        if delivery_date is None:
            raise ValidationError("date is required")
        if not assignments:
            raise ValidationError("assignments array is required")

        applied = 0
        errors: List[AssignmentError] = []
        for index, item in enumerate(assignments):
            try:
                self._apply_item(item, actor)
                applied += 1
            except DispatchError as exc:
                errors.append(AssignmentError(index=index, delivery_id=item.delivery_id, error=exc.message))
                logger.warning("Assignment item rejected", index=index, delivery_id=item.delivery_id, error=exc.message)

        logger.info(
            "Assignments applied",
            delivery_date=delivery_date.isoformat(),
            applied=applied,
            total=len(assignments),
            failed=len(errors),
        )
        return ApplyAssignmentsResult(applied_count=applied, total_count=len(assignments), errors=errors)
