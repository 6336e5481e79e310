"""Load breakdown and travel time estimates."""
from __future__ import annotations

import sys
from pathlib import Path

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app.core.config import Settings  # noqa: E402
from app.core.errors import ValidationError  # noqa: E402
from app.services.eta import TravelTimeProvider  # noqa: E402
from app.services.load_planner import calculate_loads, plan_loads  # noqa: E402


def _matrix(seconds: int) -> dict:
    return {"rows": [{"elements": [{"status": "OK", "duration": {"value": seconds}}]}], "status": "OK"}


def test_fifty_tons_on_a_24_ton_truck_is_three_loads():
    loads = calculate_loads(50, 24)
    assert [load.quantity for load in loads] == [24, 24, 2]
    assert [load.load_number for load in loads] == [1, 2, 3]


def test_exact_multiple_has_no_empty_trailing_load():
    assert [load.quantity for load in calculate_loads(48, 24)] == [24, 24]
    assert [load.quantity for load in calculate_loads(0.3, 0.1)] == [0.1, 0.1, 0.1]


def test_partial_load_is_rounded_to_hundredths():
    assert calculate_loads(25.333, 12.5)[-1].quantity == 0.33


@pytest.mark.parametrize("total,capacity", [(0, 24), (-5, 24), (10, 0)])
def test_non_positive_inputs_are_rejected(total, capacity):
    with pytest.raises(ValidationError):
        calculate_loads(total, capacity)


def test_round_trip_is_two_legs_plus_load_and_dump():
    seen = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(dict(request.url.params))
        return httpx.Response(200, json=_matrix(1200))

    provider = TravelTimeProvider(Settings(google_maps_api_key="maps-key"), transport=httpx.MockTransport(_handler))
    response = plan_loads(50, 24, origin="Yard", destination="100 Pine St, Conroe, TX", eta_provider=provider)
    assert response.total_loads == 3
    assert response.estimated_round_trip_minutes == 50
    assert seen[0]["origins"] == "Yard"
    assert seen[1]["origins"] == "100 Pine St, Conroe, TX"
    assert seen[0]["key"] == "maps-key"


def test_round_trip_is_omitted_without_maps_key():
    provider = TravelTimeProvider(Settings(google_maps_api_key=""))
    response = plan_loads(10, 24, destination="100 Pine St", eta_provider=provider)
    assert response.total_loads == 1
    assert response.estimated_round_trip_minutes is None


def test_travel_minutes_round_up():
    provider = TravelTimeProvider(
        Settings(google_maps_api_key="maps-key"),
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json=_matrix(61))),
    )
    assert provider.estimate_travel_minutes("Yard", "Site") == 2


def test_travel_minutes_fall_back_to_default_on_failure():
    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="unavailable")

    provider = TravelTimeProvider(
        Settings(google_maps_api_key="maps-key", default_eta_minutes=30),
        transport=httpx.MockTransport(_handler),
    )
    assert provider.estimate_travel_minutes("Yard", "Site") == 30
    assert provider.estimate_round_trip_minutes("Yard", "Site") is None
    assert TravelTimeProvider(Settings(google_maps_api_key="")).estimate_travel_minutes("Yard", "Site") == 30
