"""
Entity records handled by the lifecycle engine. Only lifecycle-relevant columns are modeled.
"""
import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field, field_validator

from studio_lifecycle.statuses import (
    AppointmentStatus,
    EntityType,
    InvoiceStatus,
    PaymentStatus,
    TattooRequestStatus,
    UserRole,
)


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Naive datetimes are taken to be UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Entity(BaseModel):
    entity_type: EntityType  # overridden per subclass with a fixed default

    id: str = Field(default_factory=new_id)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def with_status(self, status) -> "Entity":
        return self.model_copy(update={"status": status, "updated_at": utcnow()})


class User(Entity):
    entity_type: EntityType = EntityType.USER
    email: str
    name: str | None = None
    role: UserRole = UserRole.USER


class Customer(Entity):
    entity_type: EntityType = EntityType.CUSTOMER
    email: str
    first_name: str
    last_name: str
    phone: str | None = None


class TattooRequest(Entity):
    entity_type: EntityType = EntityType.TATTOO_REQUEST
    customer_id: str
    artist_id: str | None = None
    status: TattooRequestStatus = TattooRequestStatus.PENDING
    description: str | None = None
    placement: str | None = None
    size: str | None = None
    style: str | None = None


class Appointment(Entity):
    entity_type: EntityType = EntityType.APPOINTMENT
    customer_id: str
    date_time: datetime
    duration_minutes: int = Field(default=60, gt=0)
    artist_id: str | None = None
    tattoo_request_id: str | None = None
    status: AppointmentStatus = AppointmentStatus.PENDING
    notes: str | None = None

    @field_validator("date_time")
    @classmethod
    def _date_time_utc(cls, v: datetime) -> datetime:
        return as_utc(v)


class Image(Entity):
    entity_type: EntityType = EntityType.IMAGE
    cloudinary_url: str
    public_id: str | None = None
    tattoo_request_id: str | None = None


class Payment(Entity):
    entity_type: EntityType = EntityType.PAYMENT
    customer_id: str
    amount: float = Field(..., ge=0)
    status: PaymentStatus = PaymentStatus.PENDING
    square_payment_id: str | None = None
    appointment_id: str | None = None
    invoice_id: str | None = None
    payment_method: str | None = None


class Invoice(Entity):
    entity_type: EntityType = EntityType.INVOICE
    customer_id: str
    invoice_number: str
    amount_due: float = Field(..., ge=0)
    status: InvoiceStatus = InvoiceStatus.DRAFT
    appointment_id: str | None = None
    due_date: datetime | None = None
    description: str | None = None

    @field_validator("due_date")
    @classmethod
    def _due_date_utc(cls, v: datetime | None) -> datetime | None:
        return as_utc(v)


class AuditLog(BaseModel):
    """Immutable audit row. `details` is an opaque JSON-compatible document."""
    model_config = {"frozen": True}

    id: str = Field(default_factory=new_id)
    action: str
    resource: str
    resource_id: str | None = None
    user_id: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


MODEL_FOR: dict[EntityType, type[Entity]] = {
    EntityType.USER: User,
    EntityType.CUSTOMER: Customer,
    EntityType.TATTOO_REQUEST: TattooRequest,
    EntityType.APPOINTMENT: Appointment,
    EntityType.IMAGE: Image,
    EntityType.PAYMENT: Payment,
    EntityType.INVOICE: Invoice,
}
