"""Fleet roster: truck registration, updates and soft deactivation."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from app.core.errors import DuplicateTruckError, NotFoundError, ValidationError
from app.core.logging import logger
from app.models.dispatch import DriverRef, TruckRecord, TruckUpdateRequest
from app.services.dispatch_state import DispatchStateStore


class FleetRegistry:
    """Owns truck documents. Trucks are deactivated, never deleted."""

    def __init__(self, store: DispatchStateStore) -> None:
        self._store = store

    @staticmethod
    def _clean_number(value: str | None) -> str:
        return " ".join(str(value or "").split())

    def _ensure_unique_number(self, truck_number: str, exclude_truck_id: str | None = None) -> None:
        existing = self._store.find_active_truck_by_number(truck_number, exclude_truck_id=exclude_truck_id)
        if existing:
            raise DuplicateTruckError(f'Truck "{truck_number}" already exists in roster')

    def register_truck(
        self,
        truck_number: str,
        truck_type: str = "semi",
        capacity_tons: float = 0.0,
        default_driver: Optional[DriverRef] = None,
        notes: str = "",
    ) -> TruckRecord:
        number = self._clean_number(truck_number)
        if not number:
            raise ValidationError("Truck number is required")
        if capacity_tons is None or float(capacity_tons) <= 0:
            raise ValidationError("Truck capacity must be a positive number of tons")

        with self._store.transaction():
            self._ensure_unique_number(number)
            truck = TruckRecord(
                truck_id=self._store.generate_truck_id(),
                truck_number=number,
                truck_type=(truck_type or "semi").strip() or "semi",
                capacity_tons=float(capacity_tons),
                active=True,
                default_driver=default_driver,
                notes=notes or "",
            )
            self._store.upsert_truck(truck)
        logger.info("Truck registered", truck_id=truck.truck_id, truck_number=number, capacity_tons=truck.capacity_tons)
        return truck

    def get_truck(self, truck_id: str) -> TruckRecord:
        row = self._store.get_truck(truck_id)
        if not row:
            raise NotFoundError(f"Truck not found: {truck_id}")
        return TruckRecord.model_validate(row)

    def update_truck(self, truck_id: str, request: TruckUpdateRequest) -> TruckRecord:
        patch = request.model_dump(exclude_unset=True)
        if "capacity_tons" in patch and (patch["capacity_tons"] is None or float(patch["capacity_tons"]) <= 0):
            raise ValidationError("Truck capacity must be a positive number of tons")

        with self._store.transaction():
            existing = self.get_truck(truck_id)
            data = existing.model_dump()
            if "truck_number" in patch:
                number = self._clean_number(patch["truck_number"])
                if not number:
                    raise ValidationError("Truck number cannot be blank")
                patch["truck_number"] = number
            will_be_active = patch.get("active", existing.active)
            number_after = patch.get("truck_number", existing.truck_number)
            if will_be_active:
                self._ensure_unique_number(number_after, exclude_truck_id=truck_id)
            if "truck_type" in patch and not (patch["truck_type"] or "").strip():
                patch.pop("truck_type")
            data.update({key: value for key, value in patch.items() if value is not None or key == "default_driver"})
            data["updated_at"] = datetime.now(timezone.utc)
            truck = TruckRecord.model_validate(data)
            self._store.upsert_truck(truck)
        logger.info("Truck updated", truck_id=truck_id, fields=sorted(patch.keys()))
        return truck

    def deactivate_truck(self, truck_id: str) -> None:
        with self._store.transaction():
            truck = self.get_truck(truck_id)
            if not truck.active:
                return
            truck.active = False
            truck.updated_at = datetime.now(timezone.utc)
            self._store.upsert_truck(truck)
        logger.info("Truck deactivated", truck_id=truck_id, truck_number=truck.truck_number)

    def list_active_trucks(self) -> List[TruckRecord]:
        return [TruckRecord.model_validate(row) for row in self._store.list_trucks(active_only=True)]

    def list_trucks(self, include_inactive: bool = True) -> List[TruckRecord]:
        return [TruckRecord.model_validate(row) for row in self._store.list_trucks(active_only=not include_inactive)]
