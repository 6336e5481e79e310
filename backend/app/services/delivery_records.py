"""Delivery documents: intake, queries and cancellation."""
from __future__ import annotations

from datetime import date, datetime, timezone
from typing import List, Optional

from app.core.errors import NotFoundError, SlotConflictError, ValidationError
from app.core.logging import logger
from app.models.dispatch import (
    DeliveryCreateRequest,
    DeliveryFilter,
    DeliveryRecord,
    DeliveryStatus,
    StatusHistoryEntry,
)
from app.services.dispatch_state import DispatchStateStore
from app.services.fleet_registry import FleetRegistry
from app.services.slot_checker import SlotConflictChecker


def append_history(
    record: DeliveryRecord,
    status: DeliveryStatus,
    actor: str,
    note: str,
    event: Optional[str] = None,
) -> StatusHistoryEntry:
    """Append an audit row. ``status`` must be the record's status after the change."""
    entry = StatusHistoryEntry(status=status, event=event, actor=actor or "system", note=note or "")
    record.status_history.append(entry)
    return entry


def _sort_key(row: DeliveryRecord) -> tuple:
    if row.time_window:
        slot = (1, row.time_window)
    elif row.hour is not None:
        slot = (1, f"{row.hour:02d}")
    else:
        slot = (0, "")
    stop = (1, row.stop_order) if row.stop_order is not None else (0, 0)
    return (row.delivery_date, slot, stop, row.delivery_id)


class DeliveryRecordStore:
    """Owns delivery documents and their status history."""

    def __init__(
        self,
        store: DispatchStateStore,
        fleet: FleetRegistry,
        slot_checker: SlotConflictChecker,
    ) -> None:
        self._store = store
        self._fleet = fleet
        self._slots = slot_checker

    def create_delivery(self, request: DeliveryCreateRequest, actor: str = "system") -> DeliveryRecord:
        if request.delivery_date is None:
            raise ValidationError("delivery_date is required")

        now = datetime.now(timezone.utc)
        truck = None
        if request.truck_id:
            truck = self._fleet.get_truck(request.truck_id)
            if not truck.active:
                raise ValidationError(f"Truck {truck.truck_number} is not active")

        status = DeliveryStatus.SCHEDULED if truck else DeliveryStatus.UNASSIGNED
        driver = truck.default_driver if truck and truck.default_driver else None

        with self._store.transaction():
            if truck and self._slots.check_conflict(truck.truck_id, request.delivery_date, request.time_window, request.hour):
                raise SlotConflictError(
                    f"Truck {truck.truck_number} is already booked on {request.delivery_date.isoformat()} "
                    f"at '{request.time_window or request.hour}'"
                )
            record = DeliveryRecord(
                delivery_id=self._store.generate_delivery_id(),
                source=request.source,
                order_id=request.order_id,
                customer_name=(request.customer_name or "").strip() or None,
                customer_phone=(request.customer_phone or "").strip() or None,
                customer_email=(request.customer_email or "").strip() or None,
                delivery_address=request.delivery_address,
                delivery_city=request.delivery_city,
                delivery_state=request.delivery_state or "TX",
                delivery_zip=request.delivery_zip,
                delivery_lat=request.delivery_lat,
                delivery_lng=request.delivery_lng,
                material_id=request.material_id,
                material_name=request.material_name,
                quantity=request.quantity,
                unit=request.unit or "tons",
                delivery_date=request.delivery_date,
                time_window=request.time_window,
                hour=request.hour,
                truck_id=truck.truck_id if truck else None,
                truck_number=truck.truck_number if truck else None,
                driver_id=request.driver_id or (driver.driver_id if driver else None),
                driver_name=request.driver_name or (driver.name if driver else None),
                driver_phone=driver.phone if driver else None,
                stop_order=request.stop_order,
                route_source="dispatcher" if truck else None,
                status=status,
                created_at=now,
                updated_at=now,
                scheduled_at=now if truck else None,
                delivery_notes=request.delivery_notes or "",
                created_by=actor or "system",
            )
            append_history(record, status, actor, "Order created")
            self._store.save_delivery(record)

        logger.info(
            "Delivery created",
            delivery_id=record.delivery_id,
            status=record.status.value,
            source=record.source.value,
            delivery_date=record.delivery_date.isoformat(),
        )
        return record

    def get_delivery(self, delivery_id: str) -> DeliveryRecord:
        row = self._store.get_delivery(delivery_id)
        if not row:
            raise NotFoundError(f"Delivery not found: {delivery_id}")
        return DeliveryRecord.model_validate(row)

    def find_deliveries(self, filters: Optional[DeliveryFilter] = None) -> List[DeliveryRecord]:
        filters = filters or DeliveryFilter()
        if filters.start_date and filters.end_date and filters.end_date < filters.start_date:
            raise ValidationError("end_date must not be before start_date")
        rows = self._store.query_deliveries(
            on_date=filters.on_date,
            start_date=filters.start_date,
            end_date=filters.end_date,
            statuses=filters.statuses,
            truck_id=filters.truck_id,
            driver_id=filters.driver_id,
            source=filters.source.value if filters.source else None,
        )
        return sorted((DeliveryRecord.model_validate(row) for row in rows), key=_sort_key)

    def count_unassigned(self, on_date: date) -> int:
        return len(self._store.query_deliveries(on_date=on_date, statuses=[DeliveryStatus.UNASSIGNED]))

    def cancel_delivery(self, delivery_id: str, reason: str | None = None, actor: str = "admin") -> DeliveryRecord:
        """Cancel a delivery. Already-terminal deliveries are returned unchanged."""
        changed: dict = {}

        def _cancel(record: DeliveryRecord) -> Optional[DeliveryRecord]:
            if record.status.is_terminal:
                return None
            changed["from"] = record.status.value
            record.status = DeliveryStatus.CANCELLED
            record.cancelled_at = datetime.now(timezone.utc)
            append_history(record, DeliveryStatus.CANCELLED, actor, reason or "Cancelled")
            return record

        row = self._store.update_delivery(delivery_id, _cancel)
        if changed:
            logger.info("Delivery cancelled", delivery_id=delivery_id, from_status=changed["from"], actor=actor)
        else:
            logger.info("Cancel ignored for terminal delivery", delivery_id=delivery_id, status=row.get("status"))
        return DeliveryRecord.model_validate(row)
