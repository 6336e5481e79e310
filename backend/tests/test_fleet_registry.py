"""Fleet roster rules: unique active numbers, soft deactivation."""
from __future__ import annotations

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app.core.errors import DuplicateTruckError, NotFoundError, ValidationError  # noqa: E402
from app.models.dispatch import DriverRef, TruckUpdateRequest  # noqa: E402
from app.services.dispatch_state import DispatchStateStore  # noqa: E402
from app.services.fleet_registry import FleetRegistry  # noqa: E402


def _registry(tmp_path) -> FleetRegistry:
    return FleetRegistry(DispatchStateStore(str(tmp_path / "fleet.db")))


def test_register_truck_trims_number_and_keeps_driver(tmp_path):
    fleet = _registry(tmp_path)
    truck = fleet.register_truck("  T-12 ", capacity_tons=24, default_driver=DriverRef(driver_id="DRV-1", name="Sam"))
    assert truck.truck_id.startswith("TRK-")
    assert truck.truck_number == "T-12"
    assert truck.active is True
    assert fleet.get_truck(truck.truck_id).default_driver.name == "Sam"


def test_duplicate_active_number_is_rejected_case_insensitively(tmp_path):
    fleet = _registry(tmp_path)
    fleet.register_truck("Big Red", capacity_tons=24)
    with pytest.raises(DuplicateTruckError) as excinfo:
        fleet.register_truck("  big   red ", capacity_tons=20)
    assert isinstance(excinfo.value, ValidationError)
    assert "already exists" in excinfo.value.message


def test_deactivated_number_can_be_registered_again(tmp_path):
    fleet = _registry(tmp_path)
    old = fleet.register_truck("T-1", capacity_tons=24)
    fleet.deactivate_truck(old.truck_id)
    replacement = fleet.register_truck("t-1", capacity_tons=20)
    assert replacement.truck_id != old.truck_id
    assert fleet.get_truck(old.truck_id).active is False


def test_deactivate_is_idempotent_and_soft(tmp_path):
    fleet = _registry(tmp_path)
    truck = fleet.register_truck("T-1", capacity_tons=24)
    fleet.deactivate_truck(truck.truck_id)
    fleet.deactivate_truck(truck.truck_id)
    assert fleet.list_active_trucks() == []
    assert [t.truck_id for t in fleet.list_trucks(include_inactive=True)] == [truck.truck_id]


def test_reactivating_onto_a_taken_number_is_rejected(tmp_path):
    fleet = _registry(tmp_path)
    old = fleet.register_truck("T-1", capacity_tons=24)
    fleet.deactivate_truck(old.truck_id)
    fleet.register_truck("T-1", capacity_tons=20)
    with pytest.raises(DuplicateTruckError):
        fleet.update_truck(old.truck_id, TruckUpdateRequest(active=True))


def test_update_truck_patches_only_supplied_fields(tmp_path):
    fleet = _registry(tmp_path)
    truck = fleet.register_truck("T-1", truck_type="tandem", capacity_tons=14, notes="yard 2")
    updated = fleet.update_truck(truck.truck_id, TruckUpdateRequest(capacity_tons=16.5))
    assert updated.capacity_tons == 16.5
    assert updated.truck_type == "tandem"
    assert updated.notes == "yard 2"


def test_rename_onto_another_active_number_is_rejected(tmp_path):
    fleet = _registry(tmp_path)
    fleet.register_truck("T-1", capacity_tons=24)
    second = fleet.register_truck("T-2", capacity_tons=24)
    with pytest.raises(DuplicateTruckError):
        fleet.update_truck(second.truck_id, TruckUpdateRequest(truck_number="t-1"))


def test_invalid_registration_input(tmp_path):
    fleet = _registry(tmp_path)
    with pytest.raises(ValidationError):
        fleet.register_truck("   ", capacity_tons=24)
    with pytest.raises(ValidationError):
        fleet.register_truck("T-9", capacity_tons=0)


def test_unknown_truck_raises_not_found(tmp_path):
    fleet = _registry(tmp_path)
    with pytest.raises(NotFoundError):
        fleet.get_truck("TRK-9999")
    with pytest.raises(NotFoundError):
        fleet.update_truck("TRK-9999", TruckUpdateRequest(notes="x"))
    with pytest.raises(NotFoundError):
        fleet.deactivate_truck("TRK-9999")


def test_active_trucks_sorted_by_number(tmp_path):
    fleet = _registry(tmp_path)
    for number in ["T-3", "t-1", "T-2"]:
        fleet.register_truck(number, capacity_tons=20)
    assert [t.truck_number for t in fleet.list_active_trucks()] == ["t-1", "T-2", "T-3"]
