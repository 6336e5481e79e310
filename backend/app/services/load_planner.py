"""Split an order into truck loads."""
from __future__ import annotations

import math
from typing import List, Optional

from app.core.errors import ValidationError
from app.models.dispatch import LoadCalculationResponse, LoadSlice
from app.services.eta import TravelTimeProvider


def calculate_loads(total_tons: float, truck_capacity: float) -> List[LoadSlice]:
    if total_tons is None or truck_capacity is None:
        raise ValidationError("total_tons and truck_capacity are required")
    if total_tons <= 0 or truck_capacity <= 0:
        raise ValidationError("total_tons and truck_capacity must be positive")

    total_loads = math.ceil(round(total_tons / truck_capacity, 9))
    loads: List[LoadSlice] = []
    remaining = float(total_tons)
    for index in range(total_loads):
        amount = min(remaining, float(truck_capacity))
        loads.append(LoadSlice(load_number=index + 1, quantity=round(amount, 2)))
        remaining -= amount
    return loads


def plan_loads(
    total_tons: float,
    truck_capacity: float,
    origin: Optional[str] = None,
    destination: Optional[str] = None,
    eta_provider: Optional[TravelTimeProvider] = None,
) -> LoadCalculationResponse:
    loads = calculate_loads(total_tons, truck_capacity)
    round_trip = None
    if eta_provider is not None and destination:
        round_trip = eta_provider.estimate_round_trip_minutes(origin or eta_provider.settings.yard_address, destination)
    return LoadCalculationResponse(total_loads=len(loads), loads=loads, estimated_round_trip_minutes=round_trip)
