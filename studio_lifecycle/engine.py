"""
Lifecycle engine: validates and applies status transitions and creations for the
booking and billing entities. Every operation runs in one store unit: the row write and
its audit entry commit together or not at all. Typed failures are raised inside the
unit (so it rolls back) and returned to the caller as Outcome(error=...).
"""
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, TypeVar

from pydantic import ValidationError

from studio_lifecycle.audit import AuditRecorder, creation_entry, transition_entry
from studio_lifecycle.config import settings
from studio_lifecycle.errors import (
    DuplicateKey,
    InvalidTransition,
    InvariantViolation,
    LifecycleError,
    NotFound,
    Outcome,
    StoreError,
)
from studio_lifecycle.invariants import (
    check_appointment_accepts_invoice,
    check_request_accepts_appointment,
    check_transition,
    require,
    require_same_customer,
)
from studio_lifecycle.metrics import lifecycle_rejections_total, lifecycle_transitions_total
from studio_lifecycle.models import (
    Appointment,
    AuditLog,
    Customer,
    Entity,
    Image,
    Invoice,
    Payment,
    TattooRequest,
    User,
    as_utc,
)
from studio_lifecycle.statuses import (
    AppointmentStatus,
    EntityType,
    InvoiceStatus,
    PaymentStatus,
    TattooRequestStatus,
    UserRole,
    is_stateful,
    parse_status,
)
from studio_lifecycle.store.base import EntityStore, StoreUnit

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Conversion:
    appointment: Appointment
    tattoo_request: TattooRequest


def generate_invoice_number(now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"{settings.invoice_number_prefix}-{now:%Y%m%d%H%M%S}-{secrets.token_hex(3).upper()}"


def _build(model_cls: type[T], **fields: Any) -> T:
    try:
        return model_cls(**fields)
    except ValidationError as e:
        raise InvariantViolation(
            f"invalid {model_cls.__name__}: {e.error_count()} field error(s)",
            errors=[{"loc": list(err["loc"]), "msg": err["msg"]} for err in e.errors()],
        ) from e


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def _is_entity_type(value) -> bool:
    try:
        EntityType(value)
    except ValueError:
        return False
    return True


class LifecycleEngine:
    def __init__(self, store: EntityStore, recorder: AuditRecorder | None = None):
        self._store = store
        self._recorder = recorder or AuditRecorder()

    async def _run(self, entity_type: EntityType, operation: str, body: Callable[[StoreUnit], Awaitable[T]]) -> Outcome[T]:
        try:
            async with self._store.unit() as unit:
                value = await body(unit)
        except StoreError as e:
            lifecycle_rejections_total.labels(entity_type=entity_type.value, error=e.kind).inc()
            logger.error("%s %s failed in store: %s", operation, entity_type.value, e.message)
            return Outcome(error=e)
        except LifecycleError as e:
            lifecycle_rejections_total.labels(entity_type=entity_type.value, error=e.kind).inc()
            logger.warning("%s %s rejected: %s (%s)", operation, entity_type.value, e.kind, e.message)
            return Outcome(error=e)
        return Outcome(value=value)

    async def _insert(self, unit: StoreUnit, entity: Entity, actor_user_id: str | None, metadata: dict | None = None) -> Entity:
        stored = await unit.insert(entity)
        await self._recorder.record(unit, creation_entry(stored, actor_user_id, metadata))
        return stored

    async def _apply_transition(
        self,
        unit: StoreUnit,
        entity_type: EntityType,
        entity_id: str,
        target_status,
        actor_user_id: str | None,
        metadata: dict | None,
    ) -> Entity:
        entity = await require(unit, entity_type, entity_id)
        await check_transition(unit, entity, target_status)
        target = parse_status(entity_type, target_status)
        updated = await unit.compare_and_swap_status(entity_type, entity_id, entity.status, target)
        await self._recorder.record(unit, transition_entry(entity, entity.status, target, actor_user_id, metadata))
        return updated

    # --- transitions -----------------------------------------------------

    async def transition(
        self,
        entity_type: EntityType | str,
        entity_id: str,
        target_status,
        actor_user_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Outcome[Entity]:
        """Move one entity to target_status if the registry and related entities allow it."""
        if not is_stateful(entity_type):
            return Outcome(error=InvalidTransition(f"{entity_type} has no status lifecycle", entity_id=entity_id))
        entity_type = EntityType(entity_type)

        async def body(unit: StoreUnit) -> Entity:
            return await self._apply_transition(unit, entity_type, entity_id, target_status, actor_user_id, metadata)

        outcome = await self._run(entity_type, "transition", body)
        if outcome.ok:
            lifecycle_transitions_total.labels(entity_type=entity_type.value, to_status=outcome.value.status.value).inc()
            logger.info(
                "Transitioned %s %s -> %s (actor=%s)",
                entity_type.value,
                entity_id,
                outcome.value.status.value,
                actor_user_id,
            )
        return outcome

    async def transition_tattoo_request(self, request_id: str, target: TattooRequestStatus | str, actor_user_id: str | None = None, metadata: dict | None = None) -> Outcome[TattooRequest]:
        return await self.transition(EntityType.TATTOO_REQUEST, request_id, target, actor_user_id, metadata)

    async def transition_appointment(self, appointment_id: str, target: AppointmentStatus | str, actor_user_id: str | None = None, metadata: dict | None = None) -> Outcome[Appointment]:
        return await self.transition(EntityType.APPOINTMENT, appointment_id, target, actor_user_id, metadata)

    async def transition_payment(self, payment_id: str, target: PaymentStatus | str, actor_user_id: str | None = None, metadata: dict | None = None) -> Outcome[Payment]:
        return await self.transition(EntityType.PAYMENT, payment_id, target, actor_user_id, metadata)

    async def transition_invoice(self, invoice_id: str, target: InvoiceStatus | str, actor_user_id: str | None = None, metadata: dict | None = None) -> Outcome[Invoice]:
        return await self.transition(EntityType.INVOICE, invoice_id, target, actor_user_id, metadata)

    # --- creation ----------------------------------------------------------

    async def register_user(
        self,
        email: str,
        role: UserRole | str = UserRole.USER,
        name: str | None = None,
        actor_user_id: str | None = None,
    ) -> Outcome[User]:
        async def body(unit: StoreUnit) -> User:
            user = _build(User, email=_normalize_email(email), role=role, name=name)
            if await unit.find_by(EntityType.USER, "email", user.email) is not None:
                raise DuplicateKey(f"user email {user.email} already registered", field="email")
            return await self._insert(unit, user, actor_user_id)

        return await self._run(EntityType.USER, "register", body)

    async def register_customer(
        self,
        email: str,
        first_name: str,
        last_name: str,
        phone: str | None = None,
        actor_user_id: str | None = None,
    ) -> Outcome[Customer]:
        async def body(unit: StoreUnit) -> Customer:
            customer = _build(
                Customer,
                email=_normalize_email(email),
                first_name=first_name,
                last_name=last_name,
                phone=phone,
            )
            if await unit.find_by(EntityType.CUSTOMER, "email", customer.email) is not None:
                raise DuplicateKey(f"customer email {customer.email} already registered", field="email")
            return await self._insert(unit, customer, actor_user_id)

        return await self._run(EntityType.CUSTOMER, "register", body)

    async def create_tattoo_request(
        self,
        customer_id: str,
        artist_id: str | None = None,
        description: str | None = None,
        placement: str | None = None,
        size: str | None = None,
        style: str | None = None,
        actor_user_id: str | None = None,
    ) -> Outcome[TattooRequest]:
        async def body(unit: StoreUnit) -> TattooRequest:
            await require(unit, EntityType.CUSTOMER, customer_id)
            if artist_id:
                await require(unit, EntityType.USER, artist_id)
            request = _build(
                TattooRequest,
                customer_id=customer_id,
                artist_id=artist_id,
                description=description,
                placement=placement,
                size=size,
                style=style,
            )
            return await self._insert(unit, request, actor_user_id)

        return await self._run(EntityType.TATTOO_REQUEST, "create", body)

    async def attach_image(
        self,
        cloudinary_url: str,
        public_id: str | None = None,
        tattoo_request_id: str | None = None,
        actor_user_id: str | None = None,
    ) -> Outcome[Image]:
        async def body(unit: StoreUnit) -> Image:
            if tattoo_request_id:
                await require(unit, EntityType.TATTOO_REQUEST, tattoo_request_id)
            image = _build(Image, cloudinary_url=cloudinary_url, public_id=public_id, tattoo_request_id=tattoo_request_id)
            return await self._insert(unit, image, actor_user_id)

        return await self._run(EntityType.IMAGE, "attach", body)

    async def _new_appointment(
        self,
        unit: StoreUnit,
        customer_id: str,
        date_time: datetime,
        duration_minutes: int,
        artist_id: str | None,
        tattoo_request_id: str | None,
        notes: str | None,
        actor_user_id: str | None,
    ) -> Appointment:
        await require(unit, EntityType.CUSTOMER, customer_id)
        if artist_id:
            await require(unit, EntityType.USER, artist_id)
        if tattoo_request_id:
            await check_request_accepts_appointment(unit, tattoo_request_id, customer_id)
        appointment = _build(
            Appointment,
            customer_id=customer_id,
            date_time=date_time,
            duration_minutes=duration_minutes,
            artist_id=artist_id,
            tattoo_request_id=tattoo_request_id,
            notes=notes,
        )
        return await self._insert(unit, appointment, actor_user_id)

    async def create_appointment(
        self,
        customer_id: str,
        date_time: datetime,
        duration_minutes: int = 60,
        artist_id: str | None = None,
        tattoo_request_id: str | None = None,
        notes: str | None = None,
        actor_user_id: str | None = None,
    ) -> Outcome[Appointment]:
        """At most one appointment per tattoo request; a second one is DuplicateRelation."""
        async def body(unit: StoreUnit) -> Appointment:
            return await self._new_appointment(
                unit, customer_id, date_time, duration_minutes, artist_id, tattoo_request_id, notes, actor_user_id
            )

        return await self._run(EntityType.APPOINTMENT, "create", body)

    async def create_invoice(
        self,
        customer_id: str,
        amount_due: float,
        appointment_id: str | None = None,
        invoice_number: str | None = None,
        due_date: datetime | None = None,
        description: str | None = None,
        actor_user_id: str | None = None,
    ) -> Outcome[Invoice]:
        """At most one invoice per appointment; a second one is DuplicateRelation."""
        async def body(unit: StoreUnit) -> Invoice:
            await require(unit, EntityType.CUSTOMER, customer_id)
            if appointment_id:
                await check_appointment_accepts_invoice(unit, appointment_id, customer_id)
            invoice = _build(
                Invoice,
                customer_id=customer_id,
                amount_due=amount_due,
                appointment_id=appointment_id,
                invoice_number=invoice_number or generate_invoice_number(),
                due_date=due_date,
                description=description,
            )
            if await unit.find_by(EntityType.INVOICE, "invoice_number", invoice.invoice_number) is not None:
                raise DuplicateKey(f"invoice number {invoice.invoice_number} already used", field="invoice_number")
            return await self._insert(unit, invoice, actor_user_id)

        return await self._run(EntityType.INVOICE, "create", body)

    async def record_payment(
        self,
        customer_id: str,
        amount: float,
        appointment_id: str | None = None,
        invoice_id: str | None = None,
        square_payment_id: str | None = None,
        payment_method: str | None = None,
        actor_user_id: str | None = None,
    ) -> Outcome[Payment]:
        async def body(unit: StoreUnit) -> Payment:
            await require(unit, EntityType.CUSTOMER, customer_id)
            if appointment_id:
                require_same_customer(customer_id, await require(unit, EntityType.APPOINTMENT, appointment_id))
            if invoice_id:
                invoice = await require(unit, EntityType.INVOICE, invoice_id)
                require_same_customer(customer_id, invoice)
                if invoice.status == InvoiceStatus.VOID:
                    raise InvariantViolation(f"invoice {invoice.invoice_number} is VOID", entity_id=invoice_id)
            payment = _build(
                Payment,
                customer_id=customer_id,
                amount=amount,
                appointment_id=appointment_id,
                invoice_id=invoice_id,
                square_payment_id=square_payment_id,
                payment_method=payment_method,
            )
            if square_payment_id and await unit.find_payment_by_square_id(square_payment_id) is not None:
                raise DuplicateKey(f"square payment {square_payment_id} already recorded", field="square_payment_id")
            return await self._insert(unit, payment, actor_user_id)

        return await self._run(EntityType.PAYMENT, "record", body)

    # --- workflows ---------------------------------------------------------

    async def convert_request_to_appointment(
        self,
        request_id: str,
        date_time: datetime,
        duration_minutes: int = 60,
        actor_user_id: str | None = None,
        artist_id: str | None = None,
        notes: str | None = None,
    ) -> Outcome[Conversion]:
        """
        Book an APPROVED request: create its appointment and move the request to
        IN_PROGRESS in one unit. The appointment starts PENDING; confirming it is a
        separate transition.
        """
        async def body(unit: StoreUnit) -> Conversion:
            request = await require(unit, EntityType.TATTOO_REQUEST, request_id)
            await check_transition(unit, request, TattooRequestStatus.IN_PROGRESS)
            appointment = await self._new_appointment(
                unit,
                request.customer_id,
                date_time,
                duration_minutes,
                artist_id or request.artist_id,
                request_id,
                notes,
                actor_user_id,
            )
            updated = await self._apply_transition(
                unit,
                EntityType.TATTOO_REQUEST,
                request_id,
                TattooRequestStatus.IN_PROGRESS,
                actor_user_id,
                {"appointmentId": appointment.id, "reason": "converted_to_appointment"},
            )
            return Conversion(appointment=appointment, tattoo_request=updated)

        outcome = await self._run(EntityType.TATTOO_REQUEST, "convert", body)
        if outcome.ok:
            lifecycle_transitions_total.labels(
                entity_type=EntityType.TATTOO_REQUEST.value,
                to_status=TattooRequestStatus.IN_PROGRESS.value,
            ).inc()
            logger.info("Converted tattoo_request %s to appointment %s", request_id, outcome.value.appointment.id)
        return outcome

    async def mark_overdue_invoices(
        self,
        now: datetime | None = None,
        actor_user_id: str | None = None,
    ) -> list[Outcome[Invoice]]:
        """Move every SENT invoice past its due date to OVERDUE, one transition each."""
        now = as_utc(now) or datetime.now(timezone.utc)
        candidates = await self._run(EntityType.INVOICE, "scan", lambda unit: unit.list_overdue_candidates(now))
        if not candidates.ok:
            return [Outcome(error=candidates.error)]
        results = []
        for invoice in candidates.value:
            results.append(
                await self.transition_invoice(
                    invoice.id,
                    InvoiceStatus.OVERDUE,
                    actor_user_id,
                    {"reason": "due_date_passed", "dueDate": invoice.due_date.isoformat()},
                )
            )
        logger.info("Overdue sweep: %d candidate(s), %d moved", len(results), sum(1 for r in results if r.ok))
        return results

    # --- reads -------------------------------------------------------------

    async def load(self, entity_type: EntityType | str, entity_id: str) -> Outcome[Entity]:
        if not _is_entity_type(entity_type):
            return Outcome(error=NotFound(f"unknown entity type {entity_type}", entity_id=entity_id))
        entity_type = EntityType(entity_type)
        return await self._run(entity_type, "load", lambda unit: require(unit, entity_type, entity_id))

    async def audit_trail(self, entity_type: EntityType | str, entity_id: str) -> Outcome[list[AuditLog]]:
        if not _is_entity_type(entity_type):
            return Outcome(error=NotFound(f"unknown entity type {entity_type}", entity_id=entity_id))
        entity_type = EntityType(entity_type)
        return await self._run(entity_type, "audit", lambda unit: unit.list_audit(entity_type.value, entity_id))

    async def find_payment_by_square_id(self, square_payment_id: str) -> Outcome[Payment]:
        async def body(unit: StoreUnit) -> Payment:
            payment = await unit.find_payment_by_square_id(square_payment_id)
            if payment is None:
                raise NotFound(f"no payment with square id {square_payment_id}", square_payment_id=square_payment_id)
            return payment

        return await self._run(EntityType.PAYMENT, "lookup", body)

    async def find_invoice_by_number(self, invoice_number: str) -> Outcome[Invoice]:
        async def body(unit: StoreUnit) -> Invoice:
            invoice = await unit.find_by(EntityType.INVOICE, "invoice_number", invoice_number)
            if invoice is None:
                raise NotFound(f"no invoice numbered {invoice_number}", invoice_number=invoice_number)
            return invoice

        return await self._run(EntityType.INVOICE, "lookup", body)
