"""Truck roster routes."""
from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, Query

from app.models.dispatch import TruckCreateRequest, TruckRecord, TruckUpdateRequest
from app.services.container import DispatchServices, get_services

router = APIRouter(prefix="/fleet", tags=["fleet"])


@router.get("/trucks", response_model=List[TruckRecord])
def list_trucks(
    include_inactive: bool = Query(default=False),
    services: DispatchServices = Depends(get_services),
):
    if include_inactive:
        return services.fleet.list_trucks(include_inactive=True)
    return services.fleet.list_active_trucks()


@router.post("/trucks", response_model=TruckRecord, status_code=201)
def register_truck(request: TruckCreateRequest, services: DispatchServices = Depends(get_services)):
    return services.fleet.register_truck(
        truck_number=request.truck_number,
        truck_type=request.truck_type,
        capacity_tons=request.capacity_tons,
        default_driver=request.default_driver,
        notes=request.notes,
    )


@router.get("/trucks/{truck_id}", response_model=TruckRecord)
def get_truck(truck_id: str, services: DispatchServices = Depends(get_services)):
    return services.fleet.get_truck(truck_id)


@router.patch("/trucks/{truck_id}", response_model=TruckRecord)
def update_truck(truck_id: str, request: TruckUpdateRequest, services: DispatchServices = Depends(get_services)):
    return services.fleet.update_truck(truck_id, request)


@router.delete("/trucks/{truck_id}")
def deactivate_truck(truck_id: str, services: DispatchServices = Depends(get_services)):
    services.fleet.deactivate_truck(truck_id)
    return {"truck_id": truck_id, "active": False}
