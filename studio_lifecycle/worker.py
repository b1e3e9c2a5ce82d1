"""
Signal worker: pull queued external signals from Redis and apply them through the lifecycle engine.
- ConcurrentModification / StoreError: exponential backoff + re-queue, DLQ after max retries.
- Other typed rejections (NotFound, InvalidTransition, ...) are final: logged, not retried.
- Prometheus /metrics on settings.metrics_port.
- Graceful shutdown on SIGTERM.
Run: python -m studio_lifecycle.worker
"""
import asyncio
import json
import logging
import signal
import sys
import threading
import time

import redis.asyncio as redis

from studio_lifecycle.config import settings
from studio_lifecycle.engine import LifecycleEngine
from studio_lifecycle.errors import ConcurrentModification, StoreError
from studio_lifecycle.metrics import signals_dlq_total, signals_failed_total, signals_processed_total
from studio_lifecycle.queue import SIGNAL_DLQ_KEY, SIGNAL_QUEUE_KEY, make_body
from studio_lifecycle.redis_client import close_redis, get_redis
from studio_lifecycle.signals import apply_signal
from studio_lifecycle.store.postgres import PostgresStore

logger = logging.getLogger(__name__)

BRPOP_TIMEOUT = 5
GRACEFUL_SHUTDOWN_WAIT_SEC = 30
RETRYABLE_ERRORS = (ConcurrentModification, StoreError)


def _start_metrics_server() -> None:
    from prometheus_client import start_http_server
    start_http_server(settings.metrics_port)


async def _retry_or_dead_letter(r: redis.Redis, data: dict, last_error: str) -> None:
    attempts = data.get("attempts", 0)
    next_attempts = attempts + 1
    body = make_body(data["signal_id"], data.get("source", ""), data.get("payload") or {}, data.get("actor_user_id"), next_attempts)
    if next_attempts >= settings.worker_max_retries:
        body.update(last_error=last_error, failed_at=time.time())
        await r.lpush(SIGNAL_DLQ_KEY, json.dumps(body))
        signals_dlq_total.inc()
        logger.warning("Moved signal_id=%s to DLQ after %d attempts", data["signal_id"], next_attempts)
        return
    backoff_sec = 2 ** attempts
    logger.info(
        "Re-queuing signal_id=%s in %ds (attempt %d/%d)",
        data["signal_id"],
        backoff_sec,
        next_attempts,
        settings.worker_max_retries,
    )
    await asyncio.sleep(backoff_sec)
    await r.lpush(SIGNAL_QUEUE_KEY, json.dumps(body))


async def process_one(
    r: redis.Redis,
    engine: LifecycleEngine,
    raw: str,
    sem: asyncio.Semaphore,
) -> None:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning("Invalid JSON from queue: %s", e)
        return
    signal_id = data.get("signal_id")
    source = data.get("source", "")
    if not signal_id:
        logger.warning("Message missing signal_id, skipping")
        return

    async with sem:
        try:
            result = await apply_signal(engine, source, data.get("payload") or {}, data.get("actor_user_id"))
        except Exception as e:
            signals_failed_total.inc()
            logger.exception("Failed to apply signal_id=%s (attempt %d): %s", signal_id, data.get("attempts", 0) + 1, e)
            await _retry_or_dead_letter(r, data, str(e))
            return

        error = result.outcome.error if result.outcome is not None else None
        if isinstance(error, RETRYABLE_ERRORS):
            signals_failed_total.inc()
            logger.warning("Signal signal_id=%s hit %s: %s", signal_id, error.kind, error.message)
            await _retry_or_dead_letter(r, data, error.kind)
            return
        if error is not None:
            logger.warning("Signal signal_id=%s rejected (%s): %s", signal_id, error.kind, error.message)
        else:
            logger.info("Processed signal_id=%s source=%s: %s", signal_id, source, result.reason)
        signals_processed_total.labels(source=source or "unknown").inc()


async def run_worker(shutdown_event: asyncio.Event) -> None:
    store = await PostgresStore.connect()
    engine = LifecycleEngine(store)
    sem = asyncio.Semaphore(settings.worker_concurrency)
    logger.info(
        "Listening on %s (concurrency=%d, max_retries=%d) ...",
        SIGNAL_QUEUE_KEY,
        settings.worker_concurrency,
        settings.worker_max_retries,
    )
    r = await get_redis()
    tasks: set[asyncio.Task] = set()
    try:
        while not shutdown_event.is_set():
            result = await r.brpop(SIGNAL_QUEUE_KEY, timeout=BRPOP_TIMEOUT)
            if result is None:
                continue
            _key, raw = result
            t = asyncio.create_task(process_one(r, engine, raw, sem))
            tasks.add(t)
            t.add_done_callback(tasks.discard)
    finally:
        if tasks:
            logger.info("Graceful shutdown: waiting for %d in-flight task(s) (max %ds) ...", len(tasks), GRACEFUL_SHUTDOWN_WAIT_SEC)
            _, pending = await asyncio.wait(tasks, timeout=GRACEFUL_SHUTDOWN_WAIT_SEC, return_when=asyncio.ALL_COMPLETED)
            for t in pending:
                t.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        await close_redis()
        await store.close()
        logger.info("Worker stopped.")


def main() -> None:
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        stream=sys.stdout,
    )
    threading.Thread(target=_start_metrics_server, daemon=True).start()
    logger.info("Metrics server listening on port %s", settings.metrics_port)

    shutdown_event = asyncio.Event()

    def on_signal():
        shutdown_event.set()

    loop = asyncio.new_event_loop()
    try:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, on_signal)
    except NotImplementedError:
        signal.signal(signal.SIGTERM, lambda *a: shutdown_event.set())
        signal.signal(signal.SIGINT, lambda *a: shutdown_event.set())

    asyncio.set_event_loop(loop)
    try:
        loop.run_until_complete(run_worker(shutdown_event))
    finally:
        loop.close()


if __name__ == "__main__":
    main()
