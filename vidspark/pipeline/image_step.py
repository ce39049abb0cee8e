"""
Image step: one scene's image through Replicate.

  processing/0.1 → prediction → poll (2s × 90, progress 0.1…0.9)
    → failed/0 on a reported failure or timeout (not retried)
    → download → R2 → scenes[i].imageUrl → completed/1

Both aggregators run on the way out, whatever happened.
"""

import time
import logging
from typing import Optional

from pydantic import ValidationError

from .. import replicate
from ..clients import get_store
from ..store import RecordStore
from . import storage
from .models import VIDEOS, ImageTask, TrackStatus
from .scenes import IMAGE_TRACK, merge_scene_fields, set_track_status
from .status import check_assets_ready, check_scene_status

logger = logging.getLogger(__name__)

POLL_INTERVAL = 2  # seconds
MAX_POLLS = 90     # ~3 minutes

PROGRESS_START = 0.1
PROGRESS_END = 0.9


def poll_progress(attempt: int, max_polls: int = MAX_POLLS) -> float:
    """Map a poll attempt onto [PROGRESS_START, PROGRESS_END]."""
    fraction = min(attempt / max_polls, 1.0) if max_polls else 1.0
    return round(PROGRESS_START + (PROGRESS_END - PROGRESS_START) * fraction, 4)


def wait_for_prediction(
    store: RecordStore,
    video_id: str,
    scene_index: str,
    prediction: dict,
    poll_interval: float = POLL_INTERVAL,
    max_polls: int = MAX_POLLS,
) -> dict:
    """
    Poll a prediction until it leaves the running states or `max_polls`
    is spent, persisting progress after every poll. Returns the last state.
    """
    result = replicate.get_prediction(prediction["id"])
    attempts = 0

    while (
        result.get("status") in replicate.RUNNING_STATES
        and not result.get("output")
        and attempts < max_polls
    ):
        time.sleep(poll_interval)
        result = replicate.get_prediction(prediction["id"])
        attempts += 1

        progress = poll_progress(attempts, max_polls)
        store.update(VIDEOS, video_id, {
            f"{IMAGE_TRACK}.{scene_index}.progress": progress,
        })
        logger.info(
            f"[{video_id}] image scene {scene_index} poll #{attempts}: "
            f"status={result.get('status')} progress={progress:.2f}"
        )

    return result


def failure_reason(result: dict) -> Optional[str]:
    """Why a finished poll loop did not yield an image, or None on success."""
    status = result.get("status")
    if result.get("error"):
        return f"provider error: {result['error']}"
    if status in replicate.FAILED_STATES:
        return f"prediction {status}"
    if status in replicate.RUNNING_STATES and not result.get("output"):
        return "timed out waiting for prediction"
    if not replicate.first_output(result):
        return "prediction returned no output"
    return None


def process_image_task(
    payload: dict,
    store: Optional[RecordStore] = None,
    poll_interval: float = POLL_INTERVAL,
    max_polls: int = MAX_POLLS,
):
    try:
        task = ImageTask.model_validate(payload)
    except ValidationError as e:
        logger.error(f"Dropping image task with invalid payload {payload}: {e}")
        return

    store = store or get_store()
    video_id, scene_index = task.video_id, task.scene_index
    video = store.get(VIDEOS, video_id)
    if video is None:
        logger.error(f"Dropping image task: video {video_id} not found")
        return
    if scene_index not in (video.data.get("scenes") or {}):
        logger.error(f"Dropping image task: video {video_id} has no scene {scene_index}")
        return

    logger.info(f"🎨 Generating image for video {video_id}, scene {scene_index}")

    try:
        set_track_status(store, video_id, IMAGE_TRACK, scene_index, TrackStatus.PROCESSING, PROGRESS_START)

        prediction = replicate.create_prediction(task.image_prompt)
        result = wait_for_prediction(
            store, video_id, scene_index, prediction,
            poll_interval=poll_interval, max_polls=max_polls,
        )

        reason = failure_reason(result)
        if reason:
            logger.error(f"❌ Image generation failed for video {video_id}, scene {scene_index}: {reason}")
            set_track_status(store, video_id, IMAGE_TRACK, scene_index, TrackStatus.FAILED, 0)
            return

        image_bytes = storage.download_bytes(replicate.first_output(result))
        image_url = storage.upload_asset(video_id, f"scene_{scene_index}.png", image_bytes, "image/png")

        merge_scene_fields(store, video_id, scene_index, {"imageUrl": image_url})
        set_track_status(store, video_id, IMAGE_TRACK, scene_index, TrackStatus.COMPLETED, 1)
        logger.info(f"✅ Image generated for video {video_id}, scene {scene_index}")

    except Exception as e:
        logger.error(f"❌ Image generation error for video {video_id}, scene {scene_index}: {e}", exc_info=True)
        set_track_status(store, video_id, IMAGE_TRACK, scene_index, TrackStatus.FAILED, 0)
        raise

    finally:
        check_scene_status(store, video_id, scene_index)
        check_assets_ready(store, video_id)
