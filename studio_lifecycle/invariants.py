"""
Cross-entity rules checked inside a store unit before anything is written.
Each check raises a LifecycleError; returning normally means the rule holds.
"""
from studio_lifecycle.errors import (
    DuplicateRelation,
    InsufficientPayment,
    InvalidTransition,
    InvariantViolation,
    NotFound,
)
from studio_lifecycle.models import Appointment, Entity, Invoice
from studio_lifecycle.statuses import (
    AppointmentStatus,
    EntityType,
    InvoiceStatus,
    TattooRequestStatus,
    allowed_targets,
    is_valid_transition,
    parse_status,
)
from studio_lifecycle.store.base import StoreUnit

# Request states an appointment may be confirmed against
CONFIRMABLE_REQUEST_STATES = frozenset({TattooRequestStatus.APPROVED, TattooRequestStatus.IN_PROGRESS})
# Request states that can no longer take an appointment
CLOSED_REQUEST_STATES = frozenset({TattooRequestStatus.REJECTED, TattooRequestStatus.COMPLETED})


async def require(unit: StoreUnit, entity_type: EntityType, entity_id: str | None) -> Entity:
    entity = await unit.get(entity_type, entity_id) if entity_id else None
    if entity is None:
        raise NotFound(f"{EntityType(entity_type).value} {entity_id} not found", entity_id=entity_id)
    return entity


def require_legal_edge(entity: Entity, target_status) -> None:
    if not is_valid_transition(entity.entity_type, entity.status, target_status):
        target = str(getattr(target_status, "value", target_status))
        raise InvalidTransition(
            f"{entity.entity_type.value} cannot move from {entity.status.value} to {target}",
            entity_id=entity.id,
            from_status=entity.status.value,
            to_status=target,
            allowed=sorted(s.value for s in allowed_targets(entity.entity_type, entity.status)),
        )


def require_same_customer(customer_id: str, related: Entity) -> None:
    if getattr(related, "customer_id", None) != customer_id:
        raise InvariantViolation(
            f"{related.entity_type.value} {related.id} belongs to a different customer",
            entity_id=related.id,
            customer_id=customer_id,
        )


async def check_appointment_confirmable(unit: StoreUnit, appointment: Appointment) -> None:
    if not appointment.tattoo_request_id:
        return
    request = await require(unit, EntityType.TATTOO_REQUEST, appointment.tattoo_request_id)
    if request.status not in CONFIRMABLE_REQUEST_STATES:
        raise InvariantViolation(
            f"tattoo_request {request.id} is {request.status.value}; appointment cannot be confirmed",
            entity_id=appointment.id,
            tattoo_request_id=request.id,
            tattoo_request_status=request.status.value,
        )


async def check_invoice_settled(unit: StoreUnit, invoice: Invoice) -> None:
    paid = await unit.sum_succeeded_payments(invoice.id)
    if paid < invoice.amount_due:
        raise InsufficientPayment(
            f"invoice {invoice.invoice_number} has {paid:.2f} of {invoice.amount_due:.2f} paid",
            entity_id=invoice.id,
            paid=paid,
            amount_due=invoice.amount_due,
        )


async def check_request_accepts_appointment(unit: StoreUnit, request_id: str, customer_id: str) -> None:
    request = await require(unit, EntityType.TATTOO_REQUEST, request_id)
    require_same_customer(customer_id, request)
    if request.status in CLOSED_REQUEST_STATES:
        raise InvariantViolation(
            f"tattoo_request {request_id} is {request.status.value}",
            entity_id=request_id,
            tattoo_request_status=request.status.value,
        )
    existing = await unit.find_by(EntityType.APPOINTMENT, "tattoo_request_id", request_id)
    if existing is not None:
        raise DuplicateRelation(
            f"tattoo_request {request_id} already has appointment {existing.id}",
            entity_id=request_id,
            existing_id=existing.id,
        )


async def check_appointment_accepts_invoice(unit: StoreUnit, appointment_id: str, customer_id: str) -> None:
    appointment = await require(unit, EntityType.APPOINTMENT, appointment_id)
    require_same_customer(customer_id, appointment)
    existing = await unit.find_by(EntityType.INVOICE, "appointment_id", appointment_id)
    if existing is not None:
        raise DuplicateRelation(
            f"appointment {appointment_id} already has invoice {existing.invoice_number}",
            entity_id=appointment_id,
            existing_id=existing.id,
        )


# Checks that depend on the target status: (entity type, target) -> check
_TRANSITION_CHECKS = {
    (EntityType.APPOINTMENT, AppointmentStatus.CONFIRMED): check_appointment_confirmable,
    (EntityType.INVOICE, InvoiceStatus.PAID): check_invoice_settled,
}


async def check_transition(unit: StoreUnit, entity: Entity, target_status) -> None:
    """Registry edge first, then whatever related-entity rule applies to the target."""
    require_legal_edge(entity, target_status)
    target = parse_status(entity.entity_type, target_status)
    check = _TRANSITION_CHECKS.get((entity.entity_type, target))
    if check is not None:
        await check(unit, entity)
