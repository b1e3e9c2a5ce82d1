import asyncio
import json
from unittest.mock import AsyncMock, patch

from _helper import new_engine, run, seed_customer, seed_payment
from studio_lifecycle import redis_client
from studio_lifecycle.config import settings
from studio_lifecycle.errors import ConcurrentModification, InvalidTransition, Outcome
from studio_lifecycle.queue import SIGNAL_DLQ_KEY, SIGNAL_QUEUE_KEY, make_body, push_signal
from studio_lifecycle.signals import SQUARE, SignalResult
from studio_lifecycle.statuses import EntityType, PaymentStatus
from studio_lifecycle.worker import process_one


def _message(attempts: int = 0) -> str:
    payload = {"type": "payment.updated", "data": {"object": {"payment": {"id": "sq-1", "status": "COMPLETED"}}}}
    return json.dumps(make_body("evt-9", SQUARE, payload, "square", attempts))


def test_process_one_applies_signal_through_engine():
    async def scenario():
        engine, store = new_engine()
        customer = await seed_customer(store)
        payment = await seed_payment(store, customer, 75.0, square_payment_id="sq-1")
        r = AsyncMock()
        await process_one(r, engine, _message(), asyncio.Semaphore(1))
        return r, store, payment

    r, store, payment = run(scenario())
    assert store.peek(EntityType.PAYMENT, payment.id).status is PaymentStatus.SUCCEEDED
    assert store.audit_log[0].user_id == "square"
    r.lpush.assert_not_called()


def test_concurrent_modification_is_requeued_with_backoff():
    conflict = SignalResult(applied=False, reason="race", outcome=Outcome(error=ConcurrentModification("race")))
    r = AsyncMock()
    with patch("studio_lifecycle.worker.apply_signal", new=AsyncMock(return_value=conflict)), \
         patch("studio_lifecycle.worker.asyncio.sleep", new=AsyncMock()) as mock_sleep:
        run(process_one(r, object(), _message(attempts=1), asyncio.Semaphore(1)))

    mock_sleep.assert_awaited_once_with(2)
    key, raw = r.lpush.call_args.args
    assert key == SIGNAL_QUEUE_KEY
    assert json.loads(raw)["attempts"] == 2


def test_retries_exhausted_goes_to_dlq():
    conflict = SignalResult(applied=False, reason="race", outcome=Outcome(error=ConcurrentModification("race")))
    r = AsyncMock()
    with patch("studio_lifecycle.worker.apply_signal", new=AsyncMock(return_value=conflict)):
        run(process_one(r, object(), _message(attempts=settings.worker_max_retries - 1), asyncio.Semaphore(1)))

    key, raw = r.lpush.call_args.args
    assert key == SIGNAL_DLQ_KEY
    body = json.loads(raw)
    assert body["last_error"] == "ConcurrentModification"
    assert body["attempts"] == settings.worker_max_retries


def test_final_rejection_is_not_retried():
    rejected = SignalResult(applied=False, reason="bad", outcome=Outcome(error=InvalidTransition("nope")))
    r = AsyncMock()
    with patch("studio_lifecycle.worker.apply_signal", new=AsyncMock(return_value=rejected)):
        run(process_one(r, object(), _message(), asyncio.Semaphore(1)))
    r.lpush.assert_not_called()


def test_invalid_json_and_missing_id_are_skipped():
    r = AsyncMock()
    with patch("studio_lifecycle.worker.apply_signal", new=AsyncMock()) as mock_apply:
        run(process_one(r, object(), "{not json", asyncio.Semaphore(1)))
        run(process_one(r, object(), json.dumps({"source": SQUARE}), asyncio.Semaphore(1)))
    mock_apply.assert_not_called()
    r.lpush.assert_not_called()


def test_push_signal_drops_redelivered_signal_ids():
    r = AsyncMock()
    r.set.side_effect = [True, None]
    first = run(push_signal("evt-1", SQUARE, {"type": "payment.updated"}, r=r))
    second = run(push_signal("evt-1", SQUARE, {"type": "payment.updated"}, r=r))

    assert first is True and second is False
    assert r.lpush.await_count == 1
    key, raw = r.lpush.call_args.args
    assert key == SIGNAL_QUEUE_KEY
    assert json.loads(raw)["signal_id"] == "evt-1"
    r.set.assert_awaited_with("idempotency:signal:evt-1", "1", nx=True, ex=86400)


def test_shared_redis_client_is_reused_until_closed():
    first_client, second_client = AsyncMock(), AsyncMock()
    with patch("studio_lifecycle.redis_client.redis.from_url", side_effect=[first_client, second_client]) as mock_from_url:
        async def scenario():
            a = await redis_client.get_redis()
            b = await redis_client.get_redis()
            await redis_client.close_redis()
            c = await redis_client.get_redis()
            await redis_client.close_redis()
            return a, b, c

        a, b, c = run(scenario())

    assert a is b is first_client
    assert c is second_client
    first_client.aclose.assert_awaited_once()
    second_client.aclose.assert_awaited_once()
    assert mock_from_url.call_count == 2
