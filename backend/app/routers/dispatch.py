"""API routes for the delivery board: intake, assignment, driver updates and finalize."""
from __future__ import annotations

from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Query

from app.core.context import RequestContext, get_request_context
from app.core.errors import ValidationError
from app.core.logging import logger
from app.models.dispatch import (
    ApplyAssignmentsRequest,
    ApplyAssignmentsResult,
    CancelRequest,
    DeliveredRequest,
    DeliveryCreateRequest,
    DeliveryFilter,
    DeliveryRecord,
    DeliverySource,
    DeliveryStatus,
    EnRouteRequest,
    FinalizeRequest,
    FinalizeResult,
    ScheduleNotifyRequest,
    SetTruckRequest,
    UnassignRequest,
)
from app.services.container import DispatchServices, get_services

router = APIRouter(prefix="/dispatch", tags=["dispatch"])


def _idempotency_lookup(services: DispatchServices, operation: str, key: str | None):
    if not key:
        return None
    return services.store.get_idempotent(f"{operation}:{key.strip()}")


def _idempotency_store(services: DispatchServices, operation: str, key: str | None, response: dict):
    if not key:
        return
    services.store.set_idempotent(f"{operation}:{key.strip()}", response)


def _parse_statuses(raw: str | None) -> List[DeliveryStatus]:
    statuses: List[DeliveryStatus] = []
    for token in (raw or "").split(","):
        if not token.strip():
            continue
        try:
            statuses.append(DeliveryStatus.parse(token))
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
    return statuses


@router.get("/deliveries", response_model=List[DeliveryRecord])
def list_deliveries(
    on_date: Optional[date] = Query(default=None, alias="date"),
    start_date: Optional[date] = Query(default=None),
    end_date: Optional[date] = Query(default=None),
    status: Optional[str] = Query(default=None, description="One status or a comma separated list"),
    truck_id: Optional[str] = Query(default=None),
    driver_id: Optional[str] = Query(default=None),
    source: Optional[str] = Query(default=None),
    services: DispatchServices = Depends(get_services),
):
    try:
        parsed_source = DeliverySource.parse(source) if source else None
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc
    filters = DeliveryFilter(
        on_date=on_date,
        start_date=start_date,
        end_date=end_date,
        statuses=_parse_statuses(status),
        truck_id=truck_id,
        driver_id=driver_id,
        source=parsed_source,
    )
    return services.records.find_deliveries(filters)


@router.post("/deliveries", status_code=201)
def create_delivery(
    request: DeliveryCreateRequest,
    context: RequestContext = Depends(get_request_context),
    services: DispatchServices = Depends(get_services),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    cached = _idempotency_lookup(services, "create_delivery", idempotency_key)
    if cached:
        return cached
    record = services.records.create_delivery(request, actor=context.actor)
    response = record.model_dump(mode="json")
    _idempotency_store(services, "create_delivery", idempotency_key, response)
    return response


@router.get("/deliveries/{delivery_id}", response_model=DeliveryRecord)
def get_delivery(delivery_id: str, services: DispatchServices = Depends(get_services)):
    return services.records.get_delivery(delivery_id)


@router.delete("/deliveries/{delivery_id}", response_model=DeliveryRecord)
def delete_delivery(
    delivery_id: str,
    reason: str = Query(default="Cancelled"),
    context: RequestContext = Depends(get_request_context),
    services: DispatchServices = Depends(get_services),
):
    return services.lifecycle.cancel(delivery_id, reason=reason, actor=context.actor)


@router.post("/deliveries/{delivery_id}/truck")
def set_truck(
    delivery_id: str,
    request: SetTruckRequest,
    context: RequestContext = Depends(get_request_context),
    services: DispatchServices = Depends(get_services),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    operation = f"set_truck:{delivery_id}"
    cached = _idempotency_lookup(services, operation, idempotency_key)
    if cached:
        return cached
    record = services.lifecycle.set_truck(delivery_id, request, actor=context.actor)
    response = record.model_dump(mode="json")
    _idempotency_store(services, operation, idempotency_key, response)
    return response


@router.post("/deliveries/{delivery_id}/unassign", response_model=DeliveryRecord)
def unassign_truck(
    delivery_id: str,
    request: Optional[UnassignRequest] = None,
    context: RequestContext = Depends(get_request_context),
    services: DispatchServices = Depends(get_services),
):
    note = request.note if request else None
    return services.lifecycle.unassign_truck(delivery_id, actor=context.actor, note=note)


@router.post("/deliveries/{delivery_id}/en-route", response_model=DeliveryRecord)
def mark_en_route(
    delivery_id: str,
    request: Optional[EnRouteRequest] = None,
    context: RequestContext = Depends(get_request_context),
    services: DispatchServices = Depends(get_services),
):
    request = request or EnRouteRequest()
    return services.lifecycle.mark_en_route(
        delivery_id,
        actor=context.actor,
        eta_minutes=request.eta_minutes,
        note=request.note,
    )


@router.post("/deliveries/{delivery_id}/delivered", response_model=DeliveryRecord)
def mark_delivered(
    delivery_id: str,
    request: Optional[DeliveredRequest] = None,
    context: RequestContext = Depends(get_request_context),
    services: DispatchServices = Depends(get_services),
):
    request = request or DeliveredRequest()
    return services.lifecycle.mark_delivered(
        delivery_id,
        actor=context.actor,
        photo_url=request.photo_url,
        notes=request.notes,
    )


@router.post("/deliveries/{delivery_id}/cancel", response_model=DeliveryRecord)
def cancel_delivery(
    delivery_id: str,
    request: Optional[CancelRequest] = None,
    context: RequestContext = Depends(get_request_context),
    services: DispatchServices = Depends(get_services),
):
    reason = request.reason if request else "Cancelled"
    return services.lifecycle.cancel(delivery_id, reason=reason, actor=context.actor)


@router.get("/conflicts")
def check_conflict(
    truck_id: str = Query(...),
    on_date: date = Query(..., alias="date"),
    time_window: Optional[str] = Query(default=None),
    hour: Optional[int] = Query(default=None, ge=0, le=23),
    exclude_delivery_id: Optional[str] = Query(default=None),
    services: DispatchServices = Depends(get_services),
):
    delivery_ids = services.slots.conflicting_deliveries(
        truck_id,
        on_date,
        time_window=time_window,
        hour=hour,
        exclude_delivery_id=exclude_delivery_id,
    )
    return {"conflict": bool(delivery_ids), "delivery_ids": delivery_ids}


@router.post("/finalize", response_model=FinalizeResult)
def finalize_schedule(
    request: FinalizeRequest,
    context: RequestContext = Depends(get_request_context),
    services: DispatchServices = Depends(get_services),
):
    return services.lifecycle.finalize_schedule(request.delivery_date, actor=context.actor)


@router.post("/assignments/apply", response_model=ApplyAssignmentsResult)
def apply_assignments(
    request: ApplyAssignmentsRequest,
    context: RequestContext = Depends(get_request_context),
    services: DispatchServices = Depends(get_services),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    operation = f"apply_assignments:{request.delivery_date}"
    cached = _idempotency_lookup(services, operation, idempotency_key)
    if cached:
        return cached
    result = services.committer.apply_assignments(request.delivery_date, request.assignments, actor=context.actor)
    response = result.model_dump(mode="json")
    _idempotency_store(services, operation, idempotency_key, response)
    return response


@router.post("/notify/schedule")
def notify_schedule(request: ScheduleNotifyRequest, services: DispatchServices = Depends(get_services)):
    if not request.deliveries:
        raise ValidationError("deliveries array required")
    summary = services.notifier.send_schedule_confirmations(request.deliveries)
    logger.info("Schedule confirmations sent", total=summary["total"], sms=summary["sms_sent"], email=summary["email_sent"])
    return summary


@router.post("/reminders/unassigned")
def unassigned_reminder(
    today: Optional[date] = Query(default=None),
    services: DispatchServices = Depends(get_services),
):
    return services.reminder.run(today=today)
