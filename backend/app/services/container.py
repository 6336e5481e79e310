"""Process-wide wiring of the dispatch components around one store."""
from __future__ import annotations

from threading import Lock
from typing import Optional

from app.core.config import Settings, get_settings
from app.core.logging import logger
from app.services.assignment_committer import AssignmentCommitter
from app.services.capacity import CapacityAggregator
from app.services.delivery_records import DeliveryRecordStore
from app.services.dispatch_state import DispatchStateStore
from app.services.eta import TravelTimeProvider
from app.services.fleet_registry import FleetRegistry
from app.services.inventory import InventoryLedger
from app.services.lifecycle import LifecycleEngine
from app.services.notifications import NotificationSender
from app.services.reminders import DispatchReminder
from app.services.slot_checker import SlotConflictChecker


class DispatchServices:
    """Builds every component once and hands them the same store."""

    def __init__(self, settings: Optional[Settings] = None, store: Optional[DispatchStateStore] = None) -> None:
        self.settings = settings or get_settings()
        self.store = store or DispatchStateStore(self.settings.dispatch_db_path)
        self.store.normalize_legacy_statuses()

        self.fleet = FleetRegistry(self.store)
        self.slots = SlotConflictChecker(self.store)
        self.records = DeliveryRecordStore(self.store, self.fleet, self.slots)
        self.inventory = InventoryLedger(self.store)
        self.eta = TravelTimeProvider(self.settings)
        self.notifier = NotificationSender(self.store, self.settings)
        self.capacity = CapacityAggregator(self.fleet, self.store, self.settings)
        self.committer = AssignmentCommitter(self.store)
        self.lifecycle = LifecycleEngine(
            self.store,
            self.records,
            self.fleet,
            self.slots,
            self.inventory,
            eta_provider=self.eta,
            settings=self.settings,
        )
        self.lifecycle.add_listener(self.notifier.handle_event)
        self.reminder = DispatchReminder(self.records, self.notifier, self.settings)

    def close(self) -> None:
        self.store.close()


_services: Optional[DispatchServices] = None
_services_guard = Lock()


def get_services() -> DispatchServices:
    """FastAPI dependency; creates the container on first use."""
    global _services
    with _services_guard:
        if _services is None:
            _services = DispatchServices()
            logger.info("Dispatch services initialized", db_path=str(_services.store.db_path))
        return _services


def shutdown_services() -> None:
    global _services
    with _services_guard:
        if _services is not None:
            _services.close()
            _services = None
