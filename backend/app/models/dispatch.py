"""Domain models for delivery dispatch, fleet roster and capacity reporting."""
from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeliveryStatus(str, Enum):
    """Lifecycle status of a delivery. Canonical casing is upper case."""

    UNASSIGNED = "UNASSIGNED"
    SCHEDULED = "SCHEDULED"
    EN_ROUTE = "EN_ROUTE"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"

    @classmethod
    def parse(cls, value: Any) -> "DeliveryStatus":
        if isinstance(value, DeliveryStatus):
            return value
        text = str(value or "").strip().upper().replace("-", "_").replace(" ", "_")
        if text == "ENROUTE":
            text = cls.EN_ROUTE.value
        try:
            return cls(text)
        except ValueError:
            raise ValueError(f"Unknown delivery status '{value}'") from None

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({DeliveryStatus.DELIVERED, DeliveryStatus.CANCELLED})

# Audit event tag written by schedule finalization.
FINALIZED_EVENT = "FINALIZED"


class DeliverySource(str, Enum):
    """Sales channel that produced the delivery order."""

    STOREFRONT = "storefront"
    WALK_IN = "walk_in"
    WHOLESALE = "wholesale"

    @classmethod
    def parse(cls, value: Any) -> "DeliverySource":
        if isinstance(value, DeliverySource):
            return value
        text = " ".join(str(value or "").strip().lower().replace("_", " ").split())
        if not text:
            return cls.WALK_IN
        aliases = {
            "storefront": cls.STOREFRONT,
            "storefront order": cls.STOREFRONT,
            "online": cls.STOREFRONT,
            "texas got rocks": cls.STOREFRONT,
            "walk in": cls.WALK_IN,
            "walk-in": cls.WALK_IN,
            "walk-in sale": cls.WALK_IN,
            "walk in sale": cls.WALK_IN,
            "yard sale": cls.WALK_IN,
            "wholesale": cls.WHOLESALE,
            "t&c materials": cls.WHOLESALE,
        }
        if text in aliases:
            return aliases[text]
        raise ValueError(f"Unknown delivery source '{value}'")


class DriverRef(BaseModel):
    """Driver snapshot attached to a truck or delivery."""

    driver_id: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None


class TruckRecord(BaseModel):
    """Persisted fleet truck."""

    truck_id: str
    truck_number: str
    truck_type: str = "semi"
    capacity_tons: float = Field(gt=0)
    active: bool = True
    default_driver: Optional[DriverRef] = None
    notes: str = ""
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class TruckCreateRequest(BaseModel):
    truck_number: str
    truck_type: str = "semi"
    capacity_tons: float = Field(gt=0)
    default_driver: Optional[DriverRef] = None
    notes: str = ""


class TruckUpdateRequest(BaseModel):
    """Patch fields for an existing truck."""

    truck_number: Optional[str] = None
    truck_type: Optional[str] = None
    capacity_tons: Optional[float] = Field(default=None, gt=0)
    default_driver: Optional[DriverRef] = None
    notes: Optional[str] = None
    active: Optional[bool] = None


class StatusHistoryEntry(BaseModel):
    """One audit row. ``event`` tags non-transition entries such as schedule finalization."""

    status: DeliveryStatus
    event: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)
    actor: str = "system"
    note: str = ""

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> DeliveryStatus:
        return DeliveryStatus.parse(value)


class NotificationFlags(BaseModel):
    """Per-channel idempotence guards. True only means the channel accepted the request."""

    schedule_sms: bool = False
    schedule_email: bool = False
    en_route_sms: bool = False
    en_route_email: bool = False
    delivered_sms: bool = False
    delivered_email: bool = False
    schedule_finalized: bool = False
    inventory_depleted: bool = False


class DeliveryRecord(BaseModel):
    """Persisted delivery document."""

    delivery_id: str
    source: DeliverySource = DeliverySource.WALK_IN
    order_id: Optional[str] = None

    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_email: Optional[str] = None

    delivery_address: str = ""
    delivery_city: str = ""
    delivery_state: str = "TX"
    delivery_zip: str = ""
    delivery_lat: Optional[float] = None
    delivery_lng: Optional[float] = None

    material_id: Optional[str] = None
    material_name: Optional[str] = None
    quantity: float = Field(default=0.0, ge=0)
    unit: str = "tons"

    delivery_date: date
    time_window: Optional[str] = None
    hour: Optional[int] = Field(default=None, ge=0, le=23)

    truck_id: Optional[str] = None
    truck_number: Optional[str] = None
    driver_id: Optional[str] = None
    driver_name: Optional[str] = None
    driver_phone: Optional[str] = None
    stop_order: Optional[int] = None
    route_source: Optional[str] = None
    planner_reasoning: Optional[str] = None

    status: DeliveryStatus = DeliveryStatus.UNASSIGNED
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    scheduled_at: Optional[datetime] = None
    en_route_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    delivery_photo: Optional[str] = None
    delivery_notes: str = ""

    notifications: NotificationFlags = Field(default_factory=NotificationFlags)
    status_history: List[StatusHistoryEntry] = Field(default_factory=list)
    created_by: str = "system"

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> DeliveryStatus:
        return DeliveryStatus.parse(value)

    @field_validator("source", mode="before")
    @classmethod
    def _normalize_source(cls, value: Any) -> DeliverySource:
        return DeliverySource.parse(value)

    def full_address(self) -> str:
        parts = [self.delivery_address, self.delivery_city, " ".join(p for p in [self.delivery_state, self.delivery_zip] if p)]
        return ", ".join(p.strip() for p in parts if p and p.strip())

    def slot_key(self) -> Optional[str]:
        return slot_key_for(self.time_window, self.hour)


def slot_key_for(time_window: Optional[str], hour: Optional[int]) -> Optional[str]:
    """Canonical slot identity: the time window text, else the numeric hour."""
    window = " ".join(str(time_window or "").split()).casefold()
    if window:
        return window
    if hour is not None:
        return f"h:{int(hour):02d}"
    return None


class DeliveryCreateRequest(BaseModel):
    """Request payload to create a delivery (storefront checkout, walk-in sale, wholesale)."""

    source: DeliverySource = DeliverySource.WALK_IN
    order_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_email: Optional[str] = None
    delivery_address: str = ""
    delivery_city: str = ""
    delivery_state: str = "TX"
    delivery_zip: str = ""
    delivery_lat: Optional[float] = None
    delivery_lng: Optional[float] = None
    material_id: Optional[str] = None
    material_name: Optional[str] = None
    quantity: float = Field(default=0.0, ge=0)
    unit: str = "tons"
    delivery_date: Optional[date] = None
    time_window: Optional[str] = None
    hour: Optional[int] = Field(default=None, ge=0, le=23)
    truck_id: Optional[str] = None
    driver_id: Optional[str] = None
    driver_name: Optional[str] = None
    stop_order: Optional[int] = Field(default=None, ge=1)
    delivery_notes: str = ""

    @field_validator("source", mode="before")
    @classmethod
    def _normalize_source(cls, value: Any) -> DeliverySource:
        return DeliverySource.parse(value)


class DeliveryFilter(BaseModel):
    """Query filters for deliveries. Fields combine with AND, statuses with OR."""

    on_date: Optional[date] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    statuses: List[DeliveryStatus] = Field(default_factory=list)
    truck_id: Optional[str] = None
    driver_id: Optional[str] = None
    source: Optional[DeliverySource] = None


class SetTruckRequest(BaseModel):
    """Assign or reassign a truck to a delivery."""

    truck_id: str
    driver_id: Optional[str] = None
    driver_name: Optional[str] = None
    driver_phone: Optional[str] = None
    time_window: Optional[str] = None
    hour: Optional[int] = Field(default=None, ge=0, le=23)
    stop_order: Optional[int] = Field(default=None, ge=1)
    keep_unassigned: bool = False
    note: Optional[str] = None


class UnassignRequest(BaseModel):
    note: Optional[str] = None


class EnRouteRequest(BaseModel):
    eta_minutes: Optional[int] = Field(default=None, ge=0)
    note: Optional[str] = None


class DeliveredRequest(BaseModel):
    photo_url: Optional[str] = None
    notes: Optional[str] = None


class CancelRequest(BaseModel):
    reason: str = "Cancelled"


class AssignmentItem(BaseModel):
    """One proposed assignment produced by a planner or dispatcher."""

    delivery_id: str
    truck_id: Optional[str] = None
    truck_number: Optional[str] = None
    stop_order: Optional[int] = None
    driver_id: Optional[str] = None
    driver_name: Optional[str] = None
    time_window: Optional[str] = None
    route_source: str = "planner"
    reasoning: Optional[str] = None


class ApplyAssignmentsRequest(BaseModel):
    delivery_date: Optional[date] = None
    assignments: List[AssignmentItem] = Field(default_factory=list)


class AssignmentError(BaseModel):
    index: int
    delivery_id: str
    error: str


class ApplyAssignmentsResult(BaseModel):
    applied_count: int
    total_count: int
    errors: List[AssignmentError] = Field(default_factory=list)


class FinalizeRequest(BaseModel):
    delivery_date: date


class NotifyTarget(BaseModel):
    """Contact payload handed to the notification sender after finalize."""

    delivery_id: str
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_email: Optional[str] = None
    material_name: Optional[str] = None
    quantity: float = 0.0
    time_window: Optional[str] = None
    delivery_date: date


class FinalizeResult(BaseModel):
    delivery_date: date
    finalized: int
    to_notify: List[NotifyTarget] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)


class DayCapacity(BaseModel):
    """Capacity snapshot for one calendar day."""

    day: date
    day_name: str
    total_trucks: int = 0
    trucks_used: int = 0
    trucks_available: int = 0
    total_capacity_tons: float = 0.0
    scheduled_tons: float = 0.0
    available_tons: float = 0.0
    delivery_count: int = 0
    max_deliveries: int = 0
    available_slots: int = 0
    status: str = "closed"
    same_day_available: bool = False
    same_day_cutoff: str = "12:00 PM"


class DispatchEvent(BaseModel):
    """Lifecycle event emitted to collaborators after a state change commits."""

    event_type: str
    delivery_id: str
    driver_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utcnow)


class ChannelResult(BaseModel):
    """Outcome of one notification channel attempt."""

    channel: str
    success: bool = False
    skipped: bool = False
    recipient: Optional[str] = None
    error: Optional[str] = None


class NotificationReport(BaseModel):
    delivery_id: str
    sms: Optional[ChannelResult] = None
    email: Optional[ChannelResult] = None


class ScheduleNotifyRequest(BaseModel):
    deliveries: List[NotifyTarget] = Field(default_factory=list)


class LoadCalculationRequest(BaseModel):
    total_tons: float = Field(gt=0)
    truck_capacity: float = Field(gt=0)
    origin: Optional[str] = None
    destination: Optional[str] = None


class LoadSlice(BaseModel):
    load_number: int
    quantity: float


class LoadCalculationResponse(BaseModel):
    total_loads: int
    loads: List[LoadSlice]
    estimated_round_trip_minutes: Optional[int] = None


class InventoryItem(BaseModel):
    material_id: str
    material_name: Optional[str] = None
    quantity_tons: float = 0.0
    updated_at: datetime = Field(default_factory=_utcnow)


class InventorySetRequest(BaseModel):
    material_name: Optional[str] = None
    quantity_tons: float
