import asyncio
import re
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

from _helper import (
    WHEN,
    new_engine,
    run,
    seed_appointment,
    seed_customer,
    seed_invoice,
    seed_request,
)
from studio_lifecycle.engine import generate_invoice_number
from studio_lifecycle.errors import (
    DuplicateKey,
    DuplicateRelation,
    InvalidTransition,
    InvariantViolation,
    NotFound,
    StoreError,
)
from studio_lifecycle.statuses import (
    AppointmentStatus,
    EntityType,
    InvoiceStatus,
    PaymentStatus,
    TattooRequestStatus,
    UserRole,
)
from studio_lifecycle.store.memory import MemoryUnit


def test_register_customer_rejects_duplicate_email_case_insensitively():
    async def scenario():
        engine, store = new_engine()
        first = await engine.register_customer("Rae@Example.com", "Rae", "Lind")
        second = await engine.register_customer("rae@example.com ", "Other", "Person")
        return first, second, store

    first, second, store = run(scenario())
    assert first.ok and first.value.email == "rae@example.com"
    assert isinstance(second.error, DuplicateKey)
    assert [e.action for e in store.audit_log] == ["customer.created"]


def test_register_user_with_role():
    engine, _ = new_engine()
    outcome = run(engine.register_user("artist@studio.test", "ARTIST", name="Kai"))
    assert outcome.ok
    assert outcome.value.role is UserRole.ARTIST


def test_register_user_rejects_unknown_role():
    engine, store = new_engine()
    outcome = run(engine.register_user("x@studio.test", "OWNER"))
    assert isinstance(outcome.error, InvariantViolation)
    assert store.audit_log == ()


def test_tattoo_request_requires_existing_customer_and_artist():
    async def scenario():
        engine, store = new_engine()
        missing_customer = await engine.create_tattoo_request("nobody")
        customer = await seed_customer(store)
        missing_artist = await engine.create_tattoo_request(customer.id, artist_id="ghost")
        created = await engine.create_tattoo_request(customer.id, description="koi sleeve", placement="forearm")
        return missing_customer, missing_artist, created

    missing_customer, missing_artist, created = run(scenario())
    assert isinstance(missing_customer.error, NotFound)
    assert isinstance(missing_artist.error, NotFound)
    assert created.ok
    assert created.value.status is TattooRequestStatus.PENDING


def test_second_appointment_for_request_is_duplicate_relation():
    async def scenario():
        engine, store = new_engine()
        customer = await seed_customer(store)
        request = await seed_request(store, customer, status=TattooRequestStatus.APPROVED)
        first = await engine.create_appointment(customer.id, WHEN, tattoo_request_id=request.id)
        second = await engine.create_appointment(customer.id, WHEN + timedelta(days=7), tattoo_request_id=request.id)
        return first, second

    first, second = run(scenario())
    assert first.ok
    assert isinstance(second.error, DuplicateRelation)
    assert second.error.context["existing_id"] == first.value.id


def test_concurrent_appointment_creation_for_one_request_yields_one():
    async def scenario():
        engine, store = new_engine()
        customer = await seed_customer(store)
        request = await seed_request(store, customer)
        outcomes = await asyncio.gather(*(
            engine.create_appointment(customer.id, WHEN + timedelta(hours=i), tattoo_request_id=request.id)
            for i in range(3)
        ))
        return outcomes, store

    outcomes, store = run(scenario())
    assert sum(o.ok for o in outcomes) == 1
    assert all(isinstance(o.error, DuplicateRelation) for o in outcomes if not o.ok)
    assert len(store._rows[EntityType.APPOINTMENT]) == 1
    assert [e.action for e in store.audit_log].count("appointment.created") == 1


def test_appointment_rejected_for_closed_request_or_other_customer():
    async def scenario():
        engine, store = new_engine()
        customer = await seed_customer(store)
        stranger = await seed_customer(store, email="someone@example.com")
        rejected = await seed_request(store, customer, status=TattooRequestStatus.REJECTED)
        open_request = await seed_request(store, customer)
        closed = await engine.create_appointment(customer.id, WHEN, tattoo_request_id=rejected.id)
        foreign = await engine.create_appointment(stranger.id, WHEN, tattoo_request_id=open_request.id)
        return closed, foreign

    closed, foreign = run(scenario())
    assert isinstance(closed.error, InvariantViolation)
    assert isinstance(foreign.error, InvariantViolation)


def test_appointment_duration_must_be_positive():
    async def scenario():
        engine, store = new_engine()
        customer = await seed_customer(store)
        return await engine.create_appointment(customer.id, WHEN, duration_minutes=0)

    outcome = run(scenario())
    assert isinstance(outcome.error, InvariantViolation)
    assert outcome.error.context["errors"][0]["loc"] == ["duration_minutes"]


def test_second_invoice_for_appointment_is_duplicate_relation():
    async def scenario():
        engine, store = new_engine()
        customer = await seed_customer(store)
        appointment = await seed_appointment(store, customer)
        first = await engine.create_invoice(customer.id, 300.0, appointment_id=appointment.id)
        second = await engine.create_invoice(customer.id, 300.0, appointment_id=appointment.id)
        return first, second

    first, second = run(scenario())
    assert first.ok
    assert first.value.status is InvoiceStatus.DRAFT
    assert re.fullmatch(r"INV-\d{14}-[0-9A-F]{6}", first.value.invoice_number)
    assert isinstance(second.error, DuplicateRelation)


def test_invoice_number_must_be_unique():
    async def scenario():
        engine, store = new_engine()
        customer = await seed_customer(store)
        first = await engine.create_invoice(customer.id, 10.0, invoice_number="INV-100")
        second = await engine.create_invoice(customer.id, 20.0, invoice_number="INV-100")
        return first, second

    first, second = run(scenario())
    assert first.ok
    assert isinstance(second.error, DuplicateKey)


def test_generated_invoice_numbers_differ():
    assert generate_invoice_number(WHEN) != generate_invoice_number(WHEN)
    assert generate_invoice_number(WHEN).startswith("INV-20260314150000-")


def test_record_payment_validations():
    async def scenario():
        engine, store = new_engine()
        customer = await seed_customer(store)
        other = await seed_customer(store, email="other@example.com")
        invoice = await seed_invoice(store, customer, status=InvoiceStatus.SENT)
        void = await seed_invoice(store, customer, status=InvoiceStatus.VOID)
        return {
            "ok": await engine.record_payment(customer.id, 50.0, invoice_id=invoice.id, square_payment_id="sq-1"),
            "dup_square": await engine.record_payment(customer.id, 50.0, square_payment_id="sq-1"),
            "negative": await engine.record_payment(customer.id, -1.0),
            "foreign_invoice": await engine.record_payment(other.id, 5.0, invoice_id=invoice.id),
            "void_invoice": await engine.record_payment(customer.id, 5.0, invoice_id=void.id),
            "missing_appointment": await engine.record_payment(customer.id, 5.0, appointment_id="nope"),
        }

    results = run(scenario())
    assert results["ok"].ok and results["ok"].value.status is PaymentStatus.PENDING
    assert isinstance(results["dup_square"].error, DuplicateKey)
    assert isinstance(results["negative"].error, InvariantViolation)
    assert isinstance(results["foreign_invoice"].error, InvariantViolation)
    assert isinstance(results["void_invoice"].error, InvariantViolation)
    assert isinstance(results["missing_appointment"].error, NotFound)


def test_attach_image_to_request():
    async def scenario():
        engine, store = new_engine()
        customer = await seed_customer(store)
        request = await seed_request(store, customer)
        attached = await engine.attach_image("https://res.cloudinary.com/demo/ref.jpg", "ref", request.id)
        dangling = await engine.attach_image("https://res.cloudinary.com/demo/x.jpg", tattoo_request_id="gone")
        return attached, dangling

    attached, dangling = run(scenario())
    assert attached.ok and attached.value.public_id == "ref"
    assert isinstance(dangling.error, NotFound)


def test_convert_approved_request_books_appointment_and_starts_work():
    async def scenario():
        engine, store = new_engine()
        customer = await seed_customer(store)
        request = await seed_request(store, customer, status=TattooRequestStatus.APPROVED)
        outcome = await engine.convert_request_to_appointment(request.id, WHEN, 120, actor_user_id="admin-1")
        confirm = await engine.transition_appointment(outcome.value.appointment.id, AppointmentStatus.CONFIRMED, "admin-1")
        return outcome, confirm, store

    outcome, confirm, store = run(scenario())
    assert outcome.ok
    assert outcome.value.tattoo_request.status is TattooRequestStatus.IN_PROGRESS
    assert outcome.value.appointment.status is AppointmentStatus.PENDING
    assert outcome.value.appointment.duration_minutes == 120
    assert confirm.ok
    assert [e.action for e in store.audit_log] == [
        "appointment.created",
        "tattoo_request.IN_PROGRESS",
        "appointment.CONFIRMED",
    ]


def test_convert_pending_request_is_invalid_and_leaves_nothing_behind():
    async def scenario():
        engine, store = new_engine()
        customer = await seed_customer(store)
        request = await seed_request(store, customer)
        outcome = await engine.convert_request_to_appointment(request.id, WHEN)
        return outcome, store

    outcome, store = run(scenario())
    assert isinstance(outcome.error, InvalidTransition)
    assert store._rows[EntityType.APPOINTMENT] == {}
    assert store.audit_log == ()


def test_overdue_sweep_moves_only_past_due_sent_invoices():
    async def scenario():
        engine, store = new_engine()
        customer = await seed_customer(store)
        late = await seed_invoice(store, customer, due_in_days=-3)
        future = await seed_invoice(store, customer, due_in_days=10)
        draft = await seed_invoice(store, customer, status=InvoiceStatus.DRAFT, due_in_days=-3)
        results = await engine.mark_overdue_invoices(now=WHEN, actor_user_id="scheduler")
        return results, store, late, future, draft

    results, store, late, future, draft = run(scenario())
    assert [r.value.id for r in results] == [late.id]
    assert store.peek(EntityType.INVOICE, late.id).status is InvoiceStatus.OVERDUE
    assert store.peek(EntityType.INVOICE, future.id).status is InvoiceStatus.SENT
    assert store.peek(EntityType.INVOICE, draft.id).status is InvoiceStatus.DRAFT
    [entry] = store.audit_log
    assert entry.details["metadata"]["reason"] == "due_date_passed"


def test_concurrent_invoice_creation_for_one_appointment_yields_one():
    async def scenario():
        engine, store = new_engine()
        customer = await seed_customer(store)
        appointment = await seed_appointment(store, customer)
        outcomes = await asyncio.gather(*(
            engine.create_invoice(customer.id, 150.0, appointment_id=appointment.id, invoice_number=f"INV-C-{i}")
            for i in range(3)
        ))
        return outcomes, store

    outcomes, store = run(scenario())
    assert sum(o.ok for o in outcomes) == 1
    assert all(isinstance(o.error, DuplicateRelation) for o in outcomes if not o.ok)
    assert len(store._rows[EntityType.INVOICE]) == 1
    assert [e.action for e in store.audit_log].count("invoice.created") == 1


def test_naive_due_date_is_stored_as_utc_and_swept():
    async def scenario():
        engine, store = new_engine()
        customer = await seed_customer(store)
        created = await engine.create_invoice(customer.id, 10.0, due_date=datetime(2020, 1, 1))
        await engine.transition_invoice(created.value.id, InvoiceStatus.SENT)
        results = await engine.mark_overdue_invoices()
        return created, results, store

    created, results, store = run(scenario())
    assert created.value.due_date == datetime(2020, 1, 1, tzinfo=timezone.utc)
    assert [r.ok for r in results] == [True]
    assert store.peek(EntityType.INVOICE, created.value.id).status is InvoiceStatus.OVERDUE


def test_overdue_sweep_accepts_naive_now():
    async def scenario():
        engine, store = new_engine()
        customer = await seed_customer(store)
        late = await seed_invoice(store, customer, due_in_days=-1)
        results = await engine.mark_overdue_invoices(now=WHEN.replace(tzinfo=None))
        return results, late

    results, late = run(scenario())
    assert [r.value.id for r in results] == [late.id]


def test_appointment_date_time_is_normalized_to_utc():
    async def scenario():
        engine, store = new_engine()
        customer = await seed_customer(store)
        return await engine.create_appointment(customer.id, datetime(2026, 3, 14, 15, 0))

    outcome = run(scenario())
    assert outcome.value.date_time == WHEN
    assert outcome.value.date_time.tzinfo == timezone.utc


def test_overdue_sweep_scan_failure_is_a_single_error_outcome():
    async def scenario():
        engine, _ = new_engine()
        with patch.object(MemoryUnit, "list_overdue_candidates", new=AsyncMock(side_effect=StoreError("db down"))):
            return await engine.mark_overdue_invoices(now=WHEN)

    [result] = run(scenario())
    assert result.value is None
    assert isinstance(result.error, StoreError)
