"""
Status aggregation for a video record.

  - Scene status: derived from one scene's image and voice tracks
  - Asset readiness: all scenes settled on both tracks → `assets:ready`
  - Video status: forward-only transitions, written under compare-and-set

Readiness is decided inside the same compare-and-set as the write, so two
workers finishing at the same moment cannot both miss (or both perform)
the transition.
"""

import os
import logging
from typing import Optional

from ..store import Document, RecordStore, now_ms
from .models import (
    VIDEOS,
    SETTLED_TRACK_STATUSES,
    TrackStatus,
    VideoStatus,
    can_transition,
)
from .scenes import IMAGE_TRACK, SCENE_TRACK, VOICE_TRACK, scene_keys

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

ASSET_SETTLE_THRESHOLD_MS = int(os.getenv("ASSET_SETTLE_THRESHOLD_MS", "5000"))


# ═════════════════════════════════════════════════════════════════════════════
# Video status
# ═════════════════════════════════════════════════════════════════════════════

def advance_video_status(
    store: RecordStore,
    video_id: str,
    target: VideoStatus,
    extra: Optional[dict] = None,
) -> bool:
    """
    Move the video to `target` if the transition is allowed from its
    current status, writing `extra` fields alongside.

    Returns True if this call performed the transition.
    """
    written = False

    def _fn(doc: Document) -> Optional[dict]:
        nonlocal written
        current = doc.data.get("status")
        if not can_transition(current, target.value):
            written = False
            return None
        written = True
        patch = {"status": target.value}
        if extra:
            patch.update(extra)
        return patch

    doc = store.mutate(VIDEOS, video_id, _fn)
    if written:
        logger.info(f"[{video_id}] status → {target.value}")
    else:
        logger.info(f"[{video_id}] status stays {doc.data.get('status')} (not moving to {target.value})")
    return written


def mark_video_error(store: RecordStore, video_id: str, message: str) -> bool:
    """Terminal failure: `status=error` plus the captured message."""
    return advance_video_status(store, video_id, VideoStatus.ERROR, {"error": message})


# ═════════════════════════════════════════════════════════════════════════════
# Scene status
# ═════════════════════════════════════════════════════════════════════════════

def derive_scene_status(image_status: Optional[str], voice_status: Optional[str]) -> Optional[TrackStatus]:
    """
    Combined status of one scene, or None while it is not decidable.

    processing on either track → None
    failed on either track     → failed
    completed on both tracks   → completed
    anything else (pending)    → None
    """
    processing = TrackStatus.PROCESSING.value
    if image_status == processing or voice_status == processing:
        return None
    if TrackStatus.FAILED.value in (image_status, voice_status):
        return TrackStatus.FAILED
    if image_status == voice_status == TrackStatus.COMPLETED.value:
        return TrackStatus.COMPLETED
    return None


def check_scene_status(store: RecordStore, video_id: str, scene_index: str) -> Optional[TrackStatus]:
    """Recompute and persist `sceneStatus[scene_index]`. Idempotent."""
    doc = store.get(VIDEOS, video_id)
    if doc is None:
        logger.warning(f"[{video_id}] scene status check: video not found")
        return None

    image = ((doc.data.get(IMAGE_TRACK) or {}).get(scene_index) or {}).get("statusMessage")
    voice = ((doc.data.get(VOICE_TRACK) or {}).get(scene_index) or {}).get("statusMessage")

    status = derive_scene_status(image, voice)
    if status is None:
        return None

    store.update(VIDEOS, video_id, {
        f"{SCENE_TRACK}.{scene_index}.statusMessage": status.value,
        f"{SCENE_TRACK}.{scene_index}.progress": 1,
        f"{SCENE_TRACK}.{scene_index}.updatedAt": now_ms(),
    })
    logger.info(f"[{video_id}] scene {scene_index} → {status.value} (image={image}, voice={voice})")
    return status


# ═════════════════════════════════════════════════════════════════════════════
# Asset readiness
# ═════════════════════════════════════════════════════════════════════════════

def is_settled(entry: Optional[dict], now: int, threshold_ms: int) -> bool:
    """A track entry is settled once terminal and unchanged for `threshold_ms`."""
    if not entry or entry.get("statusMessage") not in SETTLED_TRACK_STATUSES:
        return False
    updated_at = entry.get("updatedAt") or 0
    return now - updated_at >= threshold_ms


def assets_ready(video: dict, now: int, threshold_ms: int) -> bool:
    """Whether every scene of `video` is settled on both tracks."""
    keys = scene_keys(video)
    if not keys:
        return False

    settled = {}
    for track in (IMAGE_TRACK, VOICE_TRACK):
        entries = video.get(track) or {}
        settled[track] = [k for k in keys if is_settled(entries.get(k), now, threshold_ms)]

    return all(len(settled[track]) == len(keys) for track in settled)


def check_assets_ready(
    store: RecordStore,
    video_id: str,
    threshold_ms: Optional[int] = None,
    now: Optional[int] = None,
) -> bool:
    """
    Set `status=assets:ready` when every scene is settled.

    Returns True only for the call that performed the transition; repeat
    calls (and calls once the video moved past readiness) are no-ops.
    """
    if threshold_ms is None:
        threshold_ms = ASSET_SETTLE_THRESHOLD_MS
    written = False

    def _fn(doc: Document) -> Optional[dict]:
        nonlocal written
        written = False
        current = doc.data.get("status")
        if not can_transition(current, VideoStatus.ASSETS_READY.value):
            return None
        checked_at = now if now is not None else now_ms()
        if not assets_ready(doc.data, checked_at, threshold_ms):
            return None
        written = True
        return {"status": VideoStatus.ASSETS_READY.value, "assetsReadyAt": checked_at}

    doc = store.mutate(VIDEOS, video_id, _fn)
    if written:
        logger.info(f"[{video_id}] all scene assets settled → {VideoStatus.ASSETS_READY.value}")
    else:
        logger.debug(f"[{video_id}] assets not ready (status={doc.data.get('status')})")
    return written
