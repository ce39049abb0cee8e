"""
Per-scene writes on a video record.

Every write is a dotted-path patch (`imageStatus.2`, `scenes.2.imageUrl`)
applied under compare-and-set, so the image and voice workers can write
their own sub-fields of the same scene concurrently.
"""

import logging
from typing import Any

from ..store import RecordStore, now_ms
from .models import VIDEOS, TrackStatus

logger = logging.getLogger(__name__)

IMAGE_TRACK = "imageStatus"
VOICE_TRACK = "voiceStatus"
SCENE_TRACK = "sceneStatus"

MERGE_ATTEMPTS = 3


def track_entry(status: str, progress: float) -> dict:
    return {
        "statusMessage": status,
        "progress": progress,
        "updatedAt": now_ms(),
    }


def set_track_status(
    store: RecordStore,
    video_id: str,
    track: str,
    scene_index: str,
    status: TrackStatus,
    progress: float,
):
    """Write `{track}[scene_index]` as a fresh status entry."""
    store.update(VIDEOS, video_id, {
        f"{track}.{scene_index}": track_entry(status.value, progress),
    })
    logger.info(f"[{video_id}] {track}[{scene_index}] → {status.value} ({progress:.2f})")


def merge_scene_fields(
    store: RecordStore,
    video_id: str,
    scene_index: str,
    fields: dict[str, Any],
    attempts: int = MERGE_ATTEMPTS,
):
    """
    Merge `fields` into `scenes[scene_index]` against the current record,
    then re-read and check every field stuck. Retries the merge up to
    `attempts` times.
    """
    patch = {f"scenes.{scene_index}.{k}": v for k, v in fields.items()}

    for attempt in range(1, attempts + 1):
        store.update(VIDEOS, video_id, patch)

        doc = store.get(VIDEOS, video_id)
        scene = ((doc.data.get("scenes") or {}).get(scene_index) or {}) if doc else {}
        if all(scene.get(k) == v for k, v in fields.items()):
            return

        logger.warning(
            f"[{video_id}] scene {scene_index} merge of {sorted(fields)} did not stick "
            f"(attempt {attempt}/{attempts})"
        )

    raise RuntimeError(
        f"Failed to persist {sorted(fields)} for scene {scene_index} of video {video_id}"
    )


def prepare_scenes(scenes: list[dict]) -> dict[str, Any]:
    """
    Build the scene maps of a freshly written story: every scene populated
    with empty asset fields and every track pending.
    """
    scene_map: dict[str, dict] = {}
    pending: dict[str, dict] = {}

    for i, scene in enumerate(scenes):
        key = str(i)
        scene_map[key] = {
            "narration": scene.get("narration", ""),
            "imagePrompt": scene.get("imagePrompt", ""),
            "imageUrl": "",
            "voiceUrl": "",
            "captions": "",
            "captionsWords": [],
        }
        pending[key] = track_entry(TrackStatus.PENDING.value, 0)

    return {
        "scenes": scene_map,
        SCENE_TRACK: dict(pending),
        IMAGE_TRACK: dict(pending),
        VOICE_TRACK: dict(pending),
    }


def scene_keys(video: dict) -> list[str]:
    """Scene indices of a video in numeric order."""
    keys = list((video.get("scenes") or {}).keys())
    return sorted(keys, key=lambda k: (0, int(k)) if str(k).isdigit() else (1, str(k)))
