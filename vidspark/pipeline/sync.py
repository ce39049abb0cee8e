"""
Readiness sync monitor.

Scene workers check readiness as they finish, but a scene that settles
inside the debounce window of the last worker is only caught here: the
monitor re-checks every SYNC_DELAY_SECONDS until the video is ready or
has failed. It gives up (and fails the video) only after
SYNC_MAX_ATTEMPTS consecutive checks in which no image or voice track
entry changed.
"""

import os
import json
import hashlib
import logging
from typing import Optional

from pydantic import ValidationError

from ..clients import dispatch, get_store
from ..store import RecordStore
from .models import VIDEOS, Handler, SyncTask, VideoStatus, status_rank
from .scenes import IMAGE_TRACK, VOICE_TRACK
from .status import check_assets_ready, mark_video_error

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

SYNC_DELAY_SECONDS = float(os.getenv("SYNC_DELAY_SECONDS", "5"))
SYNC_MAX_ATTEMPTS = int(os.getenv("SYNC_MAX_ATTEMPTS", "240"))  # checks without track change

SYNC_TIMEOUT_MESSAGE = "Timed out waiting for scene assets"


def _done(status: Optional[str]) -> bool:
    return status == VideoStatus.ERROR.value or status_rank(status) >= status_rank(VideoStatus.ASSETS_READY.value)


def track_digest(video: dict) -> str:
    """Fingerprint of the image and voice tracks; any worker write changes it."""
    tracks = {track: video.get(track) or {} for track in (IMAGE_TRACK, VOICE_TRACK)}
    return hashlib.sha1(json.dumps(tracks, sort_keys=True, default=str).encode("utf-8")).hexdigest()


def schedule_sync(
    video_id: str,
    attempt: int = 0,
    delay_seconds: float = 0,
    stalled: int = 0,
    digest: str = "",
) -> str:
    return dispatch(
        Handler.SYNC_STATUS.value,
        {"videoId": video_id, "attempt": attempt, "stalled": stalled, "trackDigest": digest},
        delay_seconds=delay_seconds,
    )


def process_sync_task(
    payload: dict,
    store: Optional[RecordStore] = None,
    delay_seconds: float = SYNC_DELAY_SECONDS,
    max_attempts: int = SYNC_MAX_ATTEMPTS,
) -> bool:
    """
    One readiness check. Returns True once the monitor is finished with
    the video (ready, failed or gone), False when a re-check was scheduled.
    """
    try:
        task = SyncTask.model_validate(payload)
    except ValidationError as e:
        logger.error(f"Dropping sync task with invalid payload {payload}: {e}")
        return True

    store = store or get_store()
    video_id = task.video_id

    doc = store.get(VIDEOS, video_id)
    if doc is None:
        logger.error(f"Sync: video {video_id} not found, stopping")
        return True
    if _done(doc.data.get("status")):
        logger.info(f"Sync: video {video_id} already at {doc.data.get('status')}, stopping")
        return True

    logger.info(f"Checking asset readiness for video {video_id} (check {task.attempt + 1})...")
    check_assets_ready(store, video_id)

    doc = store.get(VIDEOS, video_id)
    status = doc.data.get("status") if doc else None
    if _done(status):
        logger.info(f"Video {video_id} assets are now ready ({status}).")
        return True

    digest = track_digest(doc.data)
    stalled = 0 if digest != task.track_digest else task.stalled + 1
    if stalled >= max_attempts:
        logger.error(f"Sync: video {video_id} tracks unchanged for {stalled} checks, giving up")
        mark_video_error(store, video_id, SYNC_TIMEOUT_MESSAGE)
        return True

    logger.info(
        f"Video {video_id} assets are not yet ready ({stalled}/{max_attempts} checks without progress). "
        f"Re-enqueuing sync task in {delay_seconds}s..."
    )
    schedule_sync(video_id, attempt=task.attempt + 1, delay_seconds=delay_seconds, stalled=stalled, digest=digest)
    return False
