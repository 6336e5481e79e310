"""Load planning helpers for the order desk."""
from __future__ import annotations

from fastapi import APIRouter, Depends

from app.models.dispatch import LoadCalculationRequest, LoadCalculationResponse
from app.services.container import DispatchServices, get_services
from app.services.load_planner import plan_loads

router = APIRouter(prefix="/planning", tags=["planning"])


@router.post("/loads", response_model=LoadCalculationResponse)
def calculate_loads(request: LoadCalculationRequest, services: DispatchServices = Depends(get_services)):
    return plan_loads(
        request.total_tons,
        request.truck_capacity,
        origin=request.origin,
        destination=request.destination,
        eta_provider=services.eta,
    )
