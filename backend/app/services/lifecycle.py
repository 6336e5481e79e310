"""Delivery lifecycle state machine: assignment, en-route, delivered, cancel, finalize."""
from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Callable, Dict, FrozenSet, List, Optional

from app.core.config import Settings, get_settings
from app.core.errors import (
    DispatchError,
    InvalidTransitionError,
    SlotConflictError,
    ValidationError,
)
from app.core.logging import logger
from app.models.dispatch import (
    FINALIZED_EVENT,
    DeliveryRecord,
    DeliveryStatus,
    DispatchEvent,
    FinalizeResult,
    NotifyTarget,
    SetTruckRequest,
)
from app.services.delivery_records import DeliveryRecordStore, append_history
from app.services.dispatch_state import DispatchStateStore
from app.services.eta import TravelTimeProvider
from app.services.fleet_registry import FleetRegistry
from app.services.inventory import InventoryLedger
from app.services.slot_checker import SlotConflictChecker

EventListener = Callable[[DispatchEvent], None]


class LifecycleEngine:
    """Validates and applies delivery status transitions.

    ::

        UNASSIGNED --set_truck--> SCHEDULED
        SCHEDULED  --mark_en_route--> EN_ROUTE
        SCHEDULED | EN_ROUTE --mark_delivered--> DELIVERED
        UNASSIGNED | SCHEDULED | EN_ROUTE --cancel--> CANCELLED
        SCHEDULED  --unassign_truck--> UNASSIGNED

    State is committed before listeners run; a failing listener is logged and
    never rolls the transition back.
    """

    ALLOWED_STATUS_TRANSITIONS: Dict[DeliveryStatus, FrozenSet[DeliveryStatus]] = {
        DeliveryStatus.UNASSIGNED: frozenset(
            {DeliveryStatus.UNASSIGNED, DeliveryStatus.SCHEDULED, DeliveryStatus.CANCELLED}
        ),
        DeliveryStatus.SCHEDULED: frozenset(
            {
                DeliveryStatus.SCHEDULED,
                DeliveryStatus.UNASSIGNED,
                DeliveryStatus.EN_ROUTE,
                DeliveryStatus.DELIVERED,
                DeliveryStatus.CANCELLED,
            }
        ),
        DeliveryStatus.EN_ROUTE: frozenset({DeliveryStatus.DELIVERED, DeliveryStatus.CANCELLED}),
        DeliveryStatus.DELIVERED: frozenset(),
        DeliveryStatus.CANCELLED: frozenset(),
    }

    def __init__(
        self,
        store: DispatchStateStore,
        records: DeliveryRecordStore,
        fleet: FleetRegistry,
        slot_checker: SlotConflictChecker,
        inventory: InventoryLedger,
        eta_provider: Optional[TravelTimeProvider] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._store = store
        self._records = records
        self._fleet = fleet
        self._slots = slot_checker
        self._inventory = inventory
        self._eta = eta_provider
        self.settings = settings or get_settings()
        self._listeners: List[EventListener] = []

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def _emit(self, event: DispatchEvent) -> None:
        for listener in self._listeners:
            try:
                listener(event)
            except Exception as exc:
                logger.warning(
                    "Lifecycle listener failed",
                    event_type=event.event_type,
                    delivery_id=event.delivery_id,
                    error=str(exc),
                )

    @classmethod
    def _validate_status_transition(cls, current: DeliveryStatus, target: DeliveryStatus, action: str) -> None:
        allowed = cls.ALLOWED_STATUS_TRANSITIONS.get(current, frozenset())
        if target not in allowed:
            raise InvalidTransitionError(
                f"Cannot {action}: delivery is {current.value}. "
                f"Allowed from {current.value}: {sorted(s.value for s in allowed) or 'none'}"
            )

    # ── assignment ──────────────────────────────────────────────

    def set_truck(self, delivery_id: str, request: SetTruckRequest, actor: str = "dispatcher") -> DeliveryRecord:
        truck = self._fleet.get_truck(request.truck_id)
        if not truck.active:
            raise ValidationError(f"Truck {truck.truck_number} is not active")

        fields = request.model_fields_set

        with self._store.transaction():
            record = self._records.get_delivery(delivery_id)
            current = record.status
            if current not in {DeliveryStatus.UNASSIGNED, DeliveryStatus.SCHEDULED}:
                raise InvalidTransitionError(
                    f"Cannot assign truck: delivery is {current.value}, must be UNASSIGNED or SCHEDULED"
                )
            # keep_unassigned stages the truck without promoting the delivery
            target = current if request.keep_unassigned else DeliveryStatus.SCHEDULED
            self._validate_status_transition(current, target, "assign truck")

            if "time_window" in fields:
                window, hour = request.time_window, request.hour
            elif "hour" in fields:
                window, hour = record.time_window, request.hour
            else:
                window, hour = record.time_window, record.hour

            if self._slots.check_conflict(truck.truck_id, record.delivery_date, window, hour, exclude_delivery_id=delivery_id):
                raise SlotConflictError(
                    f"Truck {truck.truck_number} is already booked on {record.delivery_date.isoformat()} "
                    f"at '{window or hour}'"
                )

            driver = truck.default_driver
            previous_truck = record.truck_number
            now = datetime.now(timezone.utc)
            record.truck_id = truck.truck_id
            record.truck_number = truck.truck_number
            record.driver_id = request.driver_id or (driver.driver_id if driver else None)
            record.driver_name = request.driver_name or (driver.name if driver else None)
            record.driver_phone = request.driver_phone or (driver.phone if driver else None)
            record.time_window = window
            record.hour = hour
            if request.stop_order is not None:
                record.stop_order = request.stop_order
            record.route_source = "dispatcher"
            record.status = target
            if target == DeliveryStatus.SCHEDULED and current != DeliveryStatus.SCHEDULED:
                record.scheduled_at = now
            record.updated_at = now
            if request.note:
                note = request.note
            elif previous_truck and previous_truck != truck.truck_number:
                note = f"Reassigned from truck {previous_truck} to truck {truck.truck_number}"
            else:
                note = f"Assigned to truck {truck.truck_number}"
            append_history(record, target, actor, note)
            self._store.save_delivery(record)

        logger.info(
            "Truck assigned",
            delivery_id=delivery_id,
            truck_id=truck.truck_id,
            status=record.status.value,
            from_status=current.value,
        )
        if target == DeliveryStatus.SCHEDULED:
            self._emit(
                DispatchEvent(
                    event_type="scheduled",
                    delivery_id=delivery_id,
                    driver_id=record.driver_id,
                    details={"truck_id": truck.truck_id, "truck_number": truck.truck_number},
                )
            )
        return record

    def unassign_truck(self, delivery_id: str, actor: str = "dispatcher", note: Optional[str] = None) -> DeliveryRecord:
        released: Dict[str, Optional[str]] = {}

        def _unassign(record: DeliveryRecord) -> DeliveryRecord:
            self._validate_status_transition(record.status, DeliveryStatus.UNASSIGNED, "unassign truck")
            if record.status != DeliveryStatus.SCHEDULED:
                raise InvalidTransitionError(f"Cannot unassign truck: delivery is {record.status.value}")
            released["truck_number"] = record.truck_number
            record.truck_id = None
            record.truck_number = None
            record.driver_id = None
            record.driver_name = None
            record.driver_phone = None
            record.stop_order = None
            record.route_source = None
            record.status = DeliveryStatus.UNASSIGNED
            append_history(
                record,
                DeliveryStatus.UNASSIGNED,
                actor,
                note or f"Removed from truck {released['truck_number'] or '?'}",
            )
            return record

        row = self._store.update_delivery(delivery_id, _unassign)
        logger.info("Truck unassigned", delivery_id=delivery_id, truck_number=released.get("truck_number"))
        return DeliveryRecord.model_validate(row)

    # ── driver transitions ──────────────────────────────────────

    def _estimate_eta(self, record: DeliveryRecord) -> int:
        if self._eta is None:
            return int(self.settings.default_eta_minutes)
        return self._eta.estimate_travel_minutes(self.settings.yard_address, record.full_address())

    def mark_en_route(
        self,
        delivery_id: str,
        actor: str = "driver",
        eta_minutes: Optional[int] = None,
        note: Optional[str] = None,
    ) -> DeliveryRecord:
        def _en_route(record: DeliveryRecord) -> DeliveryRecord:
            if record.status != DeliveryStatus.SCHEDULED:
                raise InvalidTransitionError(
                    f"Cannot mark en route: delivery is {record.status.value}, must be {DeliveryStatus.SCHEDULED.value}"
                )
            record.status = DeliveryStatus.EN_ROUTE
            record.en_route_at = datetime.now(timezone.utc)
            append_history(record, DeliveryStatus.EN_ROUTE, actor, note or "Driver en route")
            return record

        record = DeliveryRecord.model_validate(self._store.update_delivery(delivery_id, _en_route))
        eta = eta_minutes if eta_minutes is not None else self._estimate_eta(record)
        logger.info("Delivery en route", delivery_id=delivery_id, driver_id=record.driver_id, eta_minutes=eta)
        self._emit(
            DispatchEvent(
                event_type="en_route",
                delivery_id=delivery_id,
                driver_id=record.driver_id,
                details={"eta_minutes": eta},
            )
        )
        return record

    def mark_delivered(
        self,
        delivery_id: str,
        actor: str = "driver",
        photo_url: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> DeliveryRecord:
        claim: Dict[str, object] = {}

        def _delivered(record: DeliveryRecord) -> DeliveryRecord:
            if record.status not in {DeliveryStatus.SCHEDULED, DeliveryStatus.EN_ROUTE}:
                raise InvalidTransitionError(
                    f"Cannot mark delivered: delivery is {record.status.value}, must be SCHEDULED or EN_ROUTE"
                )
            record.status = DeliveryStatus.DELIVERED
            record.delivered_at = datetime.now(timezone.utc)
            if photo_url:
                record.delivery_photo = photo_url
            if notes:
                record.delivery_notes = notes
            if record.material_id and not record.notifications.inventory_depleted:
                record.notifications.inventory_depleted = True
                claim["material_id"] = record.material_id
                claim["quantity"] = record.quantity
            append_history(record, DeliveryStatus.DELIVERED, actor, notes or "Delivery confirmed")
            return record

        record = DeliveryRecord.model_validate(self._store.update_delivery(delivery_id, _delivered))
        logger.info("Delivery completed", delivery_id=delivery_id, has_photo=bool(record.delivery_photo))

        # The depletion flag was claimed in the same write as the status change,
        # so a retried or concurrent confirmation can never decrement twice.
        if claim:
            try:
                self._inventory.decrement(str(claim["material_id"]), float(claim["quantity"]))
            except Exception as exc:
                logger.error(
                    "Inventory depletion failed",
                    delivery_id=delivery_id,
                    material_id=claim["material_id"],
                    error=str(exc),
                )

        self._emit(
            DispatchEvent(
                event_type="delivered",
                delivery_id=delivery_id,
                driver_id=record.driver_id,
                details={"photo_url": record.delivery_photo},
            )
        )
        return record

    def cancel(self, delivery_id: str, reason: Optional[str] = None, actor: str = "admin") -> DeliveryRecord:
        before = self._records.get_delivery(delivery_id)
        record = self._records.cancel_delivery(delivery_id, reason=reason, actor=actor)
        if not before.status.is_terminal:
            self._emit(
                DispatchEvent(
                    event_type="cancelled",
                    delivery_id=delivery_id,
                    driver_id=record.driver_id,
                    details={"reason": reason or "Cancelled", "from_status": before.status.value},
                )
            )
        return record

    # ── batch ───────────────────────────────────────────────────

    def finalize_schedule(self, on_date: date, actor: str = "dispatcher") -> FinalizeResult:
        """Lock a day's board and return the customers to message.

        Marks each SCHEDULED delivery on ``on_date`` that has not been
        finalized yet. Sending is left to the notification collaborator.
        """
        if on_date is None:
            raise ValidationError("date required for finalize")

        finalized = 0
        errors: List[str] = []
        scheduled = self._store.query_deliveries(on_date=on_date, statuses=[DeliveryStatus.SCHEDULED])
        for row in scheduled:
            delivery_id = row["delivery_id"]

            def _finalize(record: DeliveryRecord) -> Optional[DeliveryRecord]:
                if record.status != DeliveryStatus.SCHEDULED or record.notifications.schedule_finalized:
                    return None
                record.notifications.schedule_finalized = True
                append_history(
                    record,
                    DeliveryStatus.SCHEDULED,
                    actor,
                    "Schedule finalized, notifications queued",
                    event=FINALIZED_EVENT,
                )
                return record

            try:
                before = bool((row.get("notifications") or {}).get("schedule_finalized"))
                after = self._store.update_delivery(delivery_id, _finalize)
                if not before and (after.get("notifications") or {}).get("schedule_finalized"):
                    finalized += 1
            except DispatchError as exc:
                errors.append(f"{delivery_id}: {exc.message}")
                logger.warning("Finalize failed for delivery", delivery_id=delivery_id, error=exc.message)

        to_notify = [
            NotifyTarget(
                delivery_id=record.delivery_id,
                customer_name=record.customer_name,
                customer_phone=record.customer_phone,
                customer_email=record.customer_email,
                material_name=record.material_name,
                quantity=record.quantity,
                time_window=record.time_window,
                delivery_date=record.delivery_date,
            )
            for record in (
                DeliveryRecord.model_validate(r)
                for r in self._store.query_deliveries(on_date=on_date, statuses=[DeliveryStatus.SCHEDULED])
            )
            if record.customer_phone or record.customer_email
        ]
        logger.info("Schedule finalized", delivery_date=on_date.isoformat(), finalized=finalized, to_notify=len(to_notify))
        return FinalizeResult(delivery_date=on_date, finalized=finalized, to_notify=to_notify, errors=errors)
