"""Truck slot double-booking checks."""
from __future__ import annotations

from datetime import date
from typing import Optional

from app.models.dispatch import slot_key_for
from app.services.dispatch_state import DispatchStateStore


class SlotConflictChecker:
    """Answers whether a (truck, date, slot) triple is already taken.

    Matching is exact on the slot key: the normalized time window text, or the
    numeric hour when no window is set. The read here is advisory; the store's
    partial unique index rejects a racing writer that slipped past it.
    """

    def __init__(self, store: DispatchStateStore) -> None:
        self._store = store

    def check_conflict(
        self,
        truck_id: str,
        on_date: date,
        time_window: Optional[str] = None,
        hour: Optional[int] = None,
        exclude_delivery_id: Optional[str] = None,
    ) -> bool:
        slot = slot_key_for(time_window, hour)
        if not truck_id or slot is None:
            return False
        return bool(self._store.slot_bookings(truck_id, on_date, slot, exclude_delivery_id=exclude_delivery_id))

    def conflicting_deliveries(
        self,
        truck_id: str,
        on_date: date,
        time_window: Optional[str] = None,
        hour: Optional[int] = None,
        exclude_delivery_id: Optional[str] = None,
    ) -> list[str]:
        slot = slot_key_for(time_window, hour)
        if not truck_id or slot is None:
            return []
        return self._store.slot_bookings(truck_id, on_date, slot, exclude_delivery_id=exclude_delivery_id)
