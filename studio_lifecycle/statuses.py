"""
Status registry: legal states and transition tables per entity type.
Tables are built once at import and never mutated.
"""
from enum import Enum
from types import MappingProxyType
from typing import Mapping


class EntityType(str, Enum):
    USER = "user"
    CUSTOMER = "customer"
    TATTOO_REQUEST = "tattoo_request"
    APPOINTMENT = "appointment"
    IMAGE = "image"
    PAYMENT = "payment"
    INVOICE = "invoice"


class UserRole(str, Enum):
    USER = "USER"
    ARTIST = "ARTIST"
    ASSISTANT = "ASSISTANT"
    ADMIN = "ADMIN"


class TattooRequestStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


class AppointmentStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    CANCELED = "CANCELED"
    NO_SHOW = "NO_SHOW"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class InvoiceStatus(str, Enum):
    DRAFT = "DRAFT"
    SENT = "SENT"
    PAID = "PAID"
    VOID = "VOID"
    OVERDUE = "OVERDUE"


# Current status -> allowed next statuses (empty = terminal)
_TATTOO_REQUEST_TRANSITIONS = {
    TattooRequestStatus.PENDING: frozenset({TattooRequestStatus.APPROVED, TattooRequestStatus.REJECTED}),
    TattooRequestStatus.APPROVED: frozenset({TattooRequestStatus.IN_PROGRESS}),
    TattooRequestStatus.IN_PROGRESS: frozenset({TattooRequestStatus.COMPLETED}),
    TattooRequestStatus.REJECTED: frozenset(),
    TattooRequestStatus.COMPLETED: frozenset(),
}

_APPOINTMENT_TRANSITIONS = {
    AppointmentStatus.PENDING: frozenset({AppointmentStatus.CONFIRMED}),
    AppointmentStatus.CONFIRMED: frozenset({
        AppointmentStatus.COMPLETED,
        AppointmentStatus.CANCELED,
        AppointmentStatus.NO_SHOW,
    }),
    AppointmentStatus.COMPLETED: frozenset(),
    AppointmentStatus.CANCELED: frozenset(),
    AppointmentStatus.NO_SHOW: frozenset(),
}

_PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.SUCCEEDED, PaymentStatus.FAILED}),
    PaymentStatus.SUCCEEDED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}

_INVOICE_TRANSITIONS = {
    InvoiceStatus.DRAFT: frozenset({InvoiceStatus.SENT}),
    InvoiceStatus.SENT: frozenset({InvoiceStatus.PAID, InvoiceStatus.VOID, InvoiceStatus.OVERDUE}),
    InvoiceStatus.OVERDUE: frozenset({InvoiceStatus.PAID}),
    InvoiceStatus.PAID: frozenset(),
    InvoiceStatus.VOID: frozenset(),
}

VALID_TRANSITIONS: Mapping[EntityType, Mapping[Enum, frozenset]] = MappingProxyType({
    EntityType.TATTOO_REQUEST: MappingProxyType(_TATTOO_REQUEST_TRANSITIONS),
    EntityType.APPOINTMENT: MappingProxyType(_APPOINTMENT_TRANSITIONS),
    EntityType.PAYMENT: MappingProxyType(_PAYMENT_TRANSITIONS),
    EntityType.INVOICE: MappingProxyType(_INVOICE_TRANSITIONS),
})

STATUS_ENUMS: Mapping[EntityType, type[Enum]] = MappingProxyType({
    EntityType.TATTOO_REQUEST: TattooRequestStatus,
    EntityType.APPOINTMENT: AppointmentStatus,
    EntityType.PAYMENT: PaymentStatus,
    EntityType.INVOICE: InvoiceStatus,
})

INITIAL_STATUS: Mapping[EntityType, Enum] = MappingProxyType({
    EntityType.TATTOO_REQUEST: TattooRequestStatus.PENDING,
    EntityType.APPOINTMENT: AppointmentStatus.PENDING,
    EntityType.PAYMENT: PaymentStatus.PENDING,
    EntityType.INVOICE: InvoiceStatus.DRAFT,
})


def is_stateful(entity_type: EntityType | str) -> bool:
    """True if the entity type carries a status field governed by the registry."""
    try:
        return EntityType(entity_type) in VALID_TRANSITIONS
    except ValueError:
        return False


def parse_status(entity_type: EntityType | str, status: Enum | str) -> Enum | None:
    """Coerce a raw status value into the entity's enum. None if unknown."""
    enum_cls = STATUS_ENUMS.get(EntityType(entity_type))
    if enum_cls is None:
        return None
    try:
        return enum_cls(status.value if isinstance(status, Enum) else status)
    except ValueError:
        return None


def allowed_targets(entity_type: EntityType | str, from_status: Enum | str) -> frozenset:
    current = parse_status(entity_type, from_status)
    if current is None:
        return frozenset()
    return VALID_TRANSITIONS[EntityType(entity_type)].get(current, frozenset())


def is_valid_transition(entity_type: EntityType | str, from_status: Enum | str, to_status: Enum | str) -> bool:
    """True if to_status is allowed after from_status for this entity type."""
    if not is_stateful(entity_type):
        return False
    target = parse_status(entity_type, to_status)
    if target is None:
        return False
    return target in allowed_targets(entity_type, from_status)


def initial_status(entity_type: EntityType | str) -> Enum:
    return INITIAL_STATUS[EntityType(entity_type)]


def terminal_statuses(entity_type: EntityType | str) -> frozenset:
    table = VALID_TRANSITIONS[EntityType(entity_type)]
    return frozenset(status for status, targets in table.items() if not targets)
