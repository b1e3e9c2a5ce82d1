"""
Queue external signals (Square webhooks, Cloudinary upload confirmations) for the signal worker.
Backend: Redis list (LPUSH here, BRPOP in the worker).
"""
import json

import redis.asyncio as redis

from studio_lifecycle.redis_client import check_idempotency, get_redis

SIGNAL_QUEUE_KEY = "queue:lifecycle_signals"
SIGNAL_DLQ_KEY = "queue:lifecycle_signals:dlq"


def make_body(
    signal_id: str,
    source: str,
    payload: dict,
    actor_user_id: str | None = None,
    attempts: int = 0,
) -> dict:
    return {
        "signal_id": signal_id,
        "source": source,
        "payload": payload,
        "actor_user_id": actor_user_id,
        "attempts": attempts,
    }


async def push_signal(
    signal_id: str,
    source: str,
    payload: dict,
    actor_user_id: str | None = None,
    r: redis.Redis | None = None,
) -> bool:
    """Enqueue a signal. Returns False when signal_id was already queued (webhook redelivery)."""
    r = r or await get_redis()
    if await check_idempotency(r, f"idempotency:signal:{signal_id}"):
        return False
    await r.lpush(SIGNAL_QUEUE_KEY, json.dumps(make_body(signal_id, source, payload, actor_user_id)))
    return True
