"""
Redis-backed per-handler task queue with reliable, at-least-once delivery.

Uses the BLMOVE (reliable queue) pattern so a task is never in limbo:
  1. LPUSH → `taskqueue:{handler}:jobs`            (enqueue)
     or ZADD → `taskqueue:{handler}:delayed`       (enqueue with a delay)
  2. BLMOVE → `taskqueue:{handler}:processing`     (atomic dequeue + in-flight tracking)
  3. LREM from processing on success               (ack)
  4. Requeue, or → `taskqueue:dead_letter` once the task's max_attempts
     is spent                                      (nack)

Keys:
  taskqueue:{handler}:jobs        — pending tasks (Redis list, FIFO)
  taskqueue:{handler}:processing  — in-flight tasks (Redis list)
  taskqueue:{handler}:delayed     — scheduled tasks (sorted set, score = ready-at)
  taskqueue:dead_letter           — permanently failed tasks (Redis list)
  taskqueue:meta:{task_id}        — per-task metadata (Redis hash, TTL 24h)

Admission control lives in HANDLER_LIMITS: each handler gets a fixed number
of consumer threads (max concurrent deliveries) and a delivery budget.
"""

import os
import json
import time
import logging
from dataclasses import dataclass
from typing import Optional
from uuid import uuid4

logger = logging.getLogger(__name__)

DEAD_LETTER_KEY = "taskqueue:dead_letter"
META_PREFIX = "taskqueue:meta:"
META_TTL = 86400  # 24 hours — metadata auto-expires

STALE_TASK_TIMEOUT = 900  # 15 minutes — requeue stale in-flight tasks


@dataclass(frozen=True)
class HandlerLimits:
    max_concurrency: int
    max_attempts: int


def _limits(handler: str, concurrency: int, attempts: int) -> HandlerLimits:
    env = handler.upper()
    return HandlerLimits(
        max_concurrency=int(os.getenv(f"QUEUE_{env}_CONCURRENCY", str(concurrency))),
        max_attempts=int(os.getenv(f"QUEUE_{env}_MAX_ATTEMPTS", str(attempts))),
    )


# ── Handler table ─────────────────────────────────────────────────────────────
# Image synthesis is more rate-limited downstream than speech, so it gets
# fewer consumer threads.

HANDLER_LIMITS: dict[str, HandlerLimits] = {
    "video_pipeline": _limits("video_pipeline", 4, 3),
    "image_generate": _limits("image_generate", 2, 3),
    "voice_generate": _limits("voice_generate", 4, 3),
    "sync_status": _limits("sync_status", 2, 5),
    "video_render": _limits("video_render", 2, 1),
    "youtube_upload": _limits("youtube_upload", 1, 5),
    "story_idea": _limits("story_idea", 2, 1),
    "story_request": _limits("story_request", 2, 1),
    "bulk_job": _limits("bulk_job", 1, 1),
}

DEFAULT_LIMITS = HandlerLimits(max_concurrency=1, max_attempts=3)


def get_limits(handler: str) -> HandlerLimits:
    return HANDLER_LIMITS.get(handler, DEFAULT_LIMITS)


def _jobs_key(handler: str) -> str:
    return f"taskqueue:{handler}:jobs"


def _processing_key(handler: str) -> str:
    return f"taskqueue:{handler}:processing"


def _delayed_key(handler: str) -> str:
    return f"taskqueue:{handler}:delayed"


def _decode(value) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else value


# ── Enqueue ───────────────────────────────────────────────────────────────────

def enqueue_task(
    redis_client,
    handler: str,
    payload: dict,
    delay_seconds: float = 0,
    task_id: Optional[str] = None,
) -> str:
    """
    Add a task for `handler`. With a delay the task is parked in the
    handler's delayed set until `promote_delayed()` moves it to the queue.

    Returns the task id.
    """
    task_id = task_id or uuid4().hex
    now = time.time()
    meta = {
        "handler": handler,
        "payload": json.dumps(payload),
        "enqueued_at": str(now),
        "status": "scheduled" if delay_seconds > 0 else "queued",
        "retries": "0",
        "max_attempts": str(get_limits(handler).max_attempts),
    }

    pipe = redis_client.pipeline(transaction=True)

    meta_key = f"{META_PREFIX}{task_id}"
    pipe.hset(meta_key, mapping=meta)
    pipe.expire(meta_key, META_TTL)

    if delay_seconds > 0:
        pipe.zadd(_delayed_key(handler), {task_id: now + delay_seconds})
    else:
        # LPUSH = new items go to left; pop from right = FIFO
        pipe.lpush(_jobs_key(handler), task_id)

    pipe.execute()

    logger.info(
        f"Enqueued {handler} task {task_id}"
        + (f" (delay={delay_seconds}s)" if delay_seconds > 0 else "")
    )
    return task_id


def promote_delayed(redis_client, handler: str, now: Optional[float] = None) -> int:
    """
    Move every delayed task whose ready-at time has passed onto the pending
    queue. ZREM decides ownership, so concurrent promoters never double-push.

    Returns the number of promoted tasks.
    """
    now = now if now is not None else time.time()
    due = redis_client.zrangebyscore(_delayed_key(handler), 0, now)
    promoted = 0

    for item in due:
        task_id = _decode(item)
        if redis_client.zrem(_delayed_key(handler), task_id):
            redis_client.lpush(_jobs_key(handler), task_id)
            update_task_status(redis_client, task_id, "queued")
            promoted += 1

    if promoted:
        logger.debug(f"Promoted {promoted} delayed {handler} task(s)")
    return promoted


# ── Reliable Dequeue (BLMOVE) ─────────────────────────────────────────────────

def dequeue_task(redis_client, handler: str, timeout: int = 5) -> Optional[str]:
    """
    Atomically move a task from the handler's pending queue to its
    processing list. If the consumer crashes, `recover_stale_tasks()` will
    move it back.

    Returns the task id or None on timeout.
    """
    result = redis_client.blmove(
        _jobs_key(handler), _processing_key(handler),
        timeout=timeout,
        src="RIGHT", dest="LEFT",
    )

    if result is None:
        return None

    task_id = _decode(result)

    # Expired metadata stays missing; the consumer acks such a task unseen
    meta_key = f"{META_PREFIX}{task_id}"
    if redis_client.exists(meta_key):
        redis_client.hset(meta_key, "processing_started_at", str(time.time()))

    logger.info(f"Dequeued {handler} task {task_id} → processing")
    return task_id


# ── Ack / Nack ────────────────────────────────────────────────────────────────

def ack_task(redis_client, handler: str, task_id: str):
    """Acknowledge a finished delivery — remove it from the processing list."""
    redis_client.lrem(_processing_key(handler), 1, task_id)
    update_task_status(redis_client, task_id, "completed")
    logger.info(f"Acked {handler} task {task_id}")


def nack_task(redis_client, handler: str, task_id: str, error_msg: str = "") -> bool:
    """
    Negative-acknowledge a failed delivery.

    Increments the delivery count. Requeues while the task still has
    attempts left, otherwise moves it to the dead-letter queue.

    Returns True if the task was requeued.
    """
    meta_key = f"{META_PREFIX}{task_id}"
    retries = int(redis_client.hget(meta_key, "retries") or 0) + 1
    max_attempts = int(
        redis_client.hget(meta_key, "max_attempts") or get_limits(handler).max_attempts
    )
    redis_client.hset(meta_key, "retries", str(retries))

    if error_msg:
        redis_client.hset(meta_key, "last_error", error_msg[:500])

    redis_client.lrem(_processing_key(handler), 1, task_id)

    if retries < max_attempts:
        redis_client.lpush(_jobs_key(handler), task_id)
        update_task_status(redis_client, task_id, "queued")
        logger.warning(f"Nacked {handler} task {task_id} (attempt {retries}/{max_attempts}), requeued")
        return True

    redis_client.lpush(DEAD_LETTER_KEY, task_id)
    update_task_status(redis_client, task_id, "dead_letter")
    logger.error(
        f"{handler} task {task_id} moved to dead-letter queue after {retries} attempt(s): {error_msg}"
    )
    return False


# ── Stale Task Recovery ───────────────────────────────────────────────────────

def recover_stale_tasks(redis_client, handler: str, timeout: int = STALE_TASK_TIMEOUT) -> int:
    """
    Scan the handler's processing list for tasks in flight longer than
    `timeout` (their consumer most likely died) and put them back on the
    pending queue.

    Call on worker startup and periodically. Returns the number recovered.
    """
    processing_items = redis_client.lrange(_processing_key(handler), 0, -1)
    recovered = 0
    now = time.time()

    for item in processing_items:
        task_id = _decode(item)
        meta = get_task_meta(redis_client, task_id)

        if not meta:
            redis_client.lrem(_processing_key(handler), 1, task_id)
            logger.warning(f"Removed orphaned {handler} task {task_id} from processing (no metadata)")
            continue

        started_at = float(meta.get("processing_started_at", 0))
        if started_at > 0 and (now - started_at) > timeout:
            redis_client.lrem(_processing_key(handler), 1, task_id)
            redis_client.lpush(_jobs_key(handler), task_id)
            update_task_status(redis_client, task_id, "queued")
            recovered += 1
            logger.warning(
                f"Recovered stale {handler} task {task_id} (in-flight {int(now - started_at)}s > {timeout}s)"
            )

    if recovered:
        logger.info(f"Recovered {recovered} stale {handler} task(s)")
    return recovered


# ── Dead-Letter Inspection ────────────────────────────────────────────────────

def get_dead_letter_jobs(redis_client, limit: int = 50) -> list:
    """Return the most recent dead-letter task IDs."""
    items = redis_client.lrange(DEAD_LETTER_KEY, 0, limit - 1)
    return [_decode(item) for item in items]


def retry_dead_letter(redis_client, task_id: str) -> bool:
    """
    Manually retry a dead-letter task by resetting retries and requeuing.

    Returns False when the task is not dead-lettered or its metadata expired.
    """
    meta = get_task_meta(redis_client, task_id)
    if not meta:
        return False

    if not redis_client.lrem(DEAD_LETTER_KEY, 1, task_id):
        return False
    redis_client.hset(f"{META_PREFIX}{task_id}", "retries", "0")
    redis_client.lpush(_jobs_key(meta["handler"]), task_id)
    update_task_status(redis_client, task_id, "queued")
    logger.info(f"Retried dead-letter task {task_id}")
    return True


# ── Metadata Helpers ──────────────────────────────────────────────────────────

def get_queue_length(redis_client, handler: str) -> int:
    """Pending plus scheduled tasks for the handler."""
    return redis_client.llen(_jobs_key(handler)) + redis_client.zcard(_delayed_key(handler))


def get_processing_count(redis_client, handler: str) -> int:
    """Number of tasks currently in flight for the handler."""
    return redis_client.llen(_processing_key(handler))


def get_task_meta(redis_client, task_id: str) -> Optional[dict]:
    """Get metadata for a queued/processing task."""
    data = redis_client.hgetall(f"{META_PREFIX}{task_id}")
    if not data:
        return None
    return {_decode(k): _decode(v) for k, v in data.items()}


def get_task_payload(meta: dict) -> dict:
    return json.loads(meta.get("payload") or "{}")


def update_task_status(redis_client, task_id: str, status: str):
    """Update the status of a task in its metadata (no-op once the metadata expired)."""
    meta_key = f"{META_PREFIX}{task_id}"
    if redis_client.exists(meta_key):
        redis_client.hset(meta_key, "status", status)
