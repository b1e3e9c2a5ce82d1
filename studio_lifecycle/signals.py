"""
External signals -> engine calls. Square webhook events become payment/invoice
transitions; Cloudinary upload confirmations become image attachments. Nothing here
talks to Square or Cloudinary; it only interprets what they already reported.
"""
import logging
from dataclasses import dataclass
from typing import Any

from studio_lifecycle.engine import LifecycleEngine
from studio_lifecycle.errors import InvariantViolation, Outcome
from studio_lifecycle.statuses import InvoiceStatus, PaymentStatus

logger = logging.getLogger(__name__)

SQUARE = "square"
CLOUDINARY = "cloudinary"

# Square payment.status -> local payment status. Statuses not listed are not final yet.
SQUARE_PAYMENT_STATUS = {
    "COMPLETED": PaymentStatus.SUCCEEDED,
    "FAILED": PaymentStatus.FAILED,
    "CANCELED": PaymentStatus.FAILED,
}
# Square refund.status -> local payment status
SQUARE_REFUND_STATUS = {
    "COMPLETED": PaymentStatus.REFUNDED,
}

PAYMENT_EVENTS = frozenset({"payment.created", "payment.updated"})
REFUND_EVENTS = frozenset({"refund.created", "refund.updated"})
INVOICE_PAID_EVENTS = frozenset({"invoice.payment_made"})


@dataclass(frozen=True)
class SignalResult:
    applied: bool
    reason: str
    outcome: Outcome | None = None

    @property
    def rejected(self) -> bool:
        return self.outcome is not None and not self.outcome.ok


def _ignored(reason: str) -> SignalResult:
    logger.info("Signal ignored: %s", reason)
    return SignalResult(applied=False, reason=reason)


def _event_object(event: dict, key: str) -> dict:
    return ((event.get("data") or {}).get("object") or {}).get(key) or {}


async def _move_payment(
    engine: LifecycleEngine,
    square_payment_id: str,
    target: PaymentStatus,
    actor_user_id: str | None,
    metadata: dict[str, Any],
) -> SignalResult:
    found = await engine.find_payment_by_square_id(square_payment_id)
    if not found.ok:
        return SignalResult(applied=False, reason="unknown square payment", outcome=found)
    if found.value.status == target:
        return _ignored(f"payment {found.value.id} already {target.value}")
    outcome = await engine.transition_payment(found.value.id, target, actor_user_id, metadata)
    return SignalResult(applied=outcome.ok, reason=f"payment -> {target.value}", outcome=outcome)


async def apply_square_event(
    engine: LifecycleEngine,
    event: dict,
    actor_user_id: str | None = None,
) -> SignalResult:
    """Apply one Square webhook event (already signature-verified upstream)."""
    event_type = event.get("type") or ""
    metadata = {"source": SQUARE, "eventId": event.get("event_id"), "eventType": event_type}

    if event_type in PAYMENT_EVENTS:
        payment = _event_object(event, "payment")
        square_status = payment.get("status")
        target = SQUARE_PAYMENT_STATUS.get(square_status)
        if not payment.get("id") or target is None:
            return _ignored(f"{event_type} with square status {square_status}")
        return await _move_payment(engine, payment["id"], target, actor_user_id, {**metadata, "squareStatus": square_status})

    if event_type in REFUND_EVENTS:
        refund = _event_object(event, "refund")
        square_status = refund.get("status")
        target = SQUARE_REFUND_STATUS.get(square_status)
        if not refund.get("payment_id") or target is None:
            return _ignored(f"{event_type} with refund status {square_status}")
        metadata.update(squareStatus=square_status, refundId=refund.get("id"))
        return await _move_payment(engine, refund["payment_id"], target, actor_user_id, metadata)

    if event_type in INVOICE_PAID_EVENTS:
        invoice_number = _event_object(event, "invoice").get("invoice_number")
        if not invoice_number:
            return _ignored(f"{event_type} without invoice_number")
        found = await engine.find_invoice_by_number(invoice_number)
        if not found.ok:
            return SignalResult(applied=False, reason="unknown invoice", outcome=found)
        if found.value.status == InvoiceStatus.PAID:
            return _ignored(f"invoice {invoice_number} already PAID")
        outcome = await engine.transition_invoice(found.value.id, InvoiceStatus.PAID, actor_user_id, metadata)
        return SignalResult(applied=outcome.ok, reason="invoice -> PAID", outcome=outcome)

    return _ignored(f"unhandled Square event type {event_type!r}")


async def apply_cloudinary_upload(
    engine: LifecycleEngine,
    upload: dict,
    actor_user_id: str | None = None,
) -> SignalResult:
    """Record a confirmed upload as an Image, linked to a tattoo request when the upload context names one."""
    url = upload.get("secure_url") or upload.get("url")
    if not url:
        outcome = Outcome(error=InvariantViolation("cloudinary upload without url"))
        return SignalResult(applied=False, reason="missing url", outcome=outcome)
    context = upload.get("context") or {}
    if isinstance(context.get("custom"), dict):
        context = context["custom"]
    request_id = upload.get("tattoo_request_id") or context.get("tattoo_request_id")
    outcome = await engine.attach_image(url, upload.get("public_id"), request_id, actor_user_id)
    return SignalResult(applied=outcome.ok, reason="image attached", outcome=outcome)


async def apply_signal(engine: LifecycleEngine, source: str, payload: dict, actor_user_id: str | None = None) -> SignalResult:
    if source == SQUARE:
        return await apply_square_event(engine, payload, actor_user_id)
    if source == CLOUDINARY:
        return await apply_cloudinary_upload(engine, payload, actor_user_id)
    return _ignored(f"unknown signal source {source!r}")
