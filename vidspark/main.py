import os
import time
import logging
from contextlib import asynccontextmanager

import redis
import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Query

load_dotenv()

from . import __version__
from . import metrics
from . import queue as task_queue
from .clients import get_redis
from .consumer import HANDLERS, start_consumers, stop_consumers
from .pipeline import bulk_router, video_router

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Worker starting up...")
    metrics.set_gauge("start_time", time.time())
    r = get_redis()
    if r:
        start_consumers(r)
        logger.info("Queue consumers launched (reliable mode)")
    else:
        logger.warning("No Redis: task queue disabled, HTTP triggers will return 503")
    yield
    logger.info("Worker shutting down...")
    stop_consumers()


app = FastAPI(title="vidspark-workers", version=__version__, lifespan=lifespan)
app.include_router(video_router)
app.include_router(bulk_router)


@app.get("/health")
def health_check():
    """Verify worker is running and env vars are configured."""
    return {
        "status": "ok",
        "record_store": os.getenv("RECORD_STORE", "supabase"),
        "supabase_url_set": bool(os.getenv("SUPABASE_URL")),
        "redis_connected": get_redis() is not None,
        "replicate_api_key_set": bool(os.getenv("REPLICATE_API_KEY")),
        "elevenlabs_api_key_set": bool(os.getenv("ELEVENLABS_API_KEY")),
        "gemini_api_key_set": bool(os.getenv("GEMINI_API_KEY")),
        "remotion_render_url_set": bool(os.getenv("REMOTION_RENDER_URL")),
    }


@app.get("/metrics")
def metrics_endpoint():
    """Return a snapshot of all worker metrics."""
    r = get_redis()
    if r:
        try:
            for handler in HANDLERS:
                metrics.set_gauge(f"queue_depth.{handler}", task_queue.get_queue_length(r, handler))
                metrics.set_gauge(f"processing_count.{handler}", task_queue.get_processing_count(r, handler))
        except redis.RedisError as e:
            logger.warning(f"Could not refresh queue gauges: {e}")
    return metrics.get_snapshot()


@app.get("/queue/status")
def queue_status(task_id: str = Query(None)):
    """Per-handler queue depth, or the state of one task when `task_id` is given."""
    r = get_redis()
    if not r:
        return {"redis": False, "handlers": {}}

    if task_id:
        meta = task_queue.get_task_meta(r, task_id)
        if not meta:
            return {"task_id": task_id, "status": "not_found"}
        return {
            "task_id": task_id,
            "handler": meta.get("handler"),
            "status": meta.get("status", "unknown"),
            "retries": int(meta.get("retries", "0")),
            "last_error": meta.get("last_error"),
        }

    return {
        "redis": True,
        "handlers": {
            handler: {
                "queued": task_queue.get_queue_length(r, handler),
                "processing": task_queue.get_processing_count(r, handler),
                "max_concurrency": task_queue.get_limits(handler).max_concurrency,
                "max_attempts": task_queue.get_limits(handler).max_attempts,
            }
            for handler in HANDLERS
        },
        "dead_letter": task_queue.get_dead_letter_jobs(r, limit=20),
    }


@app.post("/queue/dead-letter/{task_id}/retry")
def retry_dead_letter_task(task_id: str):
    """Give a dead-lettered task a fresh delivery budget and put it back on its queue."""
    r = get_redis()
    if not r:
        raise HTTPException(status_code=503, detail="Task queue unavailable")
    if not task_queue.retry_dead_letter(r, task_id):
        raise HTTPException(status_code=404, detail="Task not in dead-letter queue")
    return {"task_id": task_id, "status": "queued"}


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
