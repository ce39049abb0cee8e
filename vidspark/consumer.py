"""
Queue consumers: one thread pool per handler plus a scheduler thread.

Each consumer thread runs the reliable loop for its handler:
  dequeue (BLMOVE → processing) → handler(payload) → ack | nack

Handler concurrency is the number of consumer threads (HANDLER_LIMITS),
so image generation can be held below voice generation. The scheduler
promotes due delayed tasks and periodically recovers stale in-flight ones.
"""

import time
import logging
import threading
from typing import Callable, Optional

from . import metrics
from . import queue as task_queue
from .clients import get_redis
from .pipeline.bulk import process_bulk_job
from .pipeline.coordinator import process_pending_video
from .pipeline.image_step import process_image_task
from .pipeline.models import Handler
from .pipeline.publish import process_publish_task
from .pipeline.render import process_render_request
from .pipeline.story import process_story_idea, process_story_request
from .pipeline.sync import process_sync_task
from .pipeline.voice_step import process_voice_task

logger = logging.getLogger(__name__)

HANDLERS: dict[str, Callable[[dict], object]] = {
    Handler.VIDEO_PIPELINE.value: process_pending_video,
    Handler.IMAGE_GENERATE.value: process_image_task,
    Handler.VOICE_GENERATE.value: process_voice_task,
    Handler.SYNC_STATUS.value: process_sync_task,
    Handler.VIDEO_RENDER.value: process_render_request,
    Handler.YOUTUBE_UPLOAD.value: process_publish_task,
    Handler.STORY_IDEA.value: process_story_idea,
    Handler.STORY_REQUEST.value: process_story_request,
    Handler.BULK_JOB.value: process_bulk_job,
}

SCHEDULER_INTERVAL = 1        # seconds between delayed-task promotions
STALE_RECOVERY_INTERVAL = 60  # seconds between stale-task scans

_stop = threading.Event()
_threads: list[threading.Thread] = []


def process_one(r, handler: str, timeout: int = 5) -> Optional[bool]:
    """
    Deliver at most one task of `handler`.

    Returns None if nothing was waiting, True when the task was acked and
    False when it was nacked.
    """
    task_id = task_queue.dequeue_task(r, handler, timeout=timeout)
    if task_id is None:
        return None

    meta = task_queue.get_task_meta(r, task_id)
    if not meta:
        logger.warning(f"Queue consumer: no metadata for {handler} task {task_id}, skipping")
        task_queue.ack_task(r, handler, task_id)
        return True

    payload = task_queue.get_task_payload(meta)
    task_queue.update_task_status(r, task_id, "processing")
    retries = int(meta.get("retries", "0"))
    logger.info(f"Queue consumer: processing {handler} task {task_id} (attempt {retries + 1})")

    started = time.time()
    try:
        HANDLERS[handler](payload)
    except Exception as e:
        logger.error(f"Queue consumer: {handler} task {task_id} failed: {e}", exc_info=True)
        metrics.inc_counter(f"tasks.{handler}.failed")
        metrics.record_error(handler, task_id, str(e))
        if not task_queue.nack_task(r, handler, task_id, str(e)):
            metrics.inc_counter(f"tasks.{handler}.dead_letter")
        return False
    finally:
        metrics.record_latency(handler, (time.time() - started) * 1000)

    task_queue.ack_task(r, handler, task_id)
    metrics.inc_counter(f"tasks.{handler}.ok")
    return True


def _consumer_loop(handler: str):
    logger.info(f"Queue consumer thread started for {handler}")
    while not _stop.is_set():
        try:
            r = get_redis()
            if r is None:
                time.sleep(5)
                continue
            process_one(r, handler)
        except Exception as e:
            logger.error(f"Queue consumer loop error ({handler}): {e}", exc_info=True)
            time.sleep(2)


def run_scheduler_once(r, recover: bool = False) -> dict:
    """Promote due delayed tasks (and optionally recover stale ones) for every handler."""
    promoted = recovered = 0
    for handler in HANDLERS:
        promoted += task_queue.promote_delayed(r, handler)
        if recover:
            recovered += task_queue.recover_stale_tasks(r, handler)
    return {"promoted": promoted, "recovered": recovered}


def _scheduler_loop():
    logger.info("Queue scheduler thread started")
    last_recovery = time.time()
    while not _stop.is_set():
        try:
            r = get_redis()
            if r is not None:
                recover = time.time() - last_recovery >= STALE_RECOVERY_INTERVAL
                run_scheduler_once(r, recover=recover)
                if recover:
                    last_recovery = time.time()
        except Exception as e:
            logger.error(f"Queue scheduler error: {e}", exc_info=True)
        _stop.wait(SCHEDULER_INTERVAL)


def start_consumers(r) -> list[threading.Thread]:
    """Recover leftovers from a previous run and launch all consumer threads."""
    _stop.clear()

    for handler in HANDLERS:
        recovered = task_queue.recover_stale_tasks(r, handler)
        if recovered:
            logger.info(f"Recovered {recovered} stale {handler} task(s) from previous session")

    threads = [threading.Thread(target=_scheduler_loop, name="queue-scheduler", daemon=True)]
    for handler in HANDLERS:
        for i in range(task_queue.get_limits(handler).max_concurrency):
            threads.append(threading.Thread(
                target=_consumer_loop, args=(handler,), name=f"consumer-{handler}-{i}", daemon=True,
            ))

    for t in threads:
        t.start()
    _threads.extend(threads)
    logger.info(f"Launched {len(threads) - 1} consumer thread(s) across {len(HANDLERS)} handlers")
    return threads


def stop_consumers(timeout: float = 10):
    _stop.set()
    for t in _threads:
        t.join(timeout=timeout)
    _threads.clear()
