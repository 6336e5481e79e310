"""Fleet capacity calendar."""
from __future__ import annotations

from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from app.models.dispatch import DayCapacity
from app.services.container import DispatchServices, get_services

router = APIRouter(prefix="/capacity", tags=["capacity"])


@router.get("", response_model=List[DayCapacity])
def get_capacity(
    from_date: date = Query(..., alias="from"),
    to_date: Optional[date] = Query(default=None, alias="to"),
    services: DispatchServices = Depends(get_services),
):
    return services.capacity.compute_capacity(from_date, to_date or from_date)
