"""Material stock routes."""
from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends

from app.models.dispatch import InventoryItem, InventorySetRequest
from app.services.container import DispatchServices, get_services

router = APIRouter(prefix="/inventory", tags=["inventory"])


@router.get("", response_model=List[InventoryItem])
def list_inventory(services: DispatchServices = Depends(get_services)):
    return services.inventory.list_stock()


@router.get("/{material_id}", response_model=InventoryItem)
def get_inventory(material_id: str, services: DispatchServices = Depends(get_services)):
    return services.inventory.get_stock(material_id)


@router.put("/{material_id}", response_model=InventoryItem)
def set_inventory(material_id: str, request: InventorySetRequest, services: DispatchServices = Depends(get_services)):
    return services.inventory.set_stock(material_id, request.quantity_tons, material_name=request.material_name)
