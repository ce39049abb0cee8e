"""
Pipeline coordinator: a video's new-video signal fans out its scene tasks.

  video_pipeline {videoId}
    → status processing:assets
    → one image_generate + one voice_generate task per scene
    → one sync_status task (readiness backstop)

Redelivery of the same signal is a no-op once the fan-out was recorded
(`assetTasksEnqueuedAt`) or the video moved past processing:assets.
"""

import logging
from typing import Optional

from pydantic import ValidationError

from ..clients import dispatch, get_store
from ..store import RecordStore, now_ms
from .models import VIDEOS, Handler, VideoStatus, VideoTask, status_rank
from .scenes import scene_keys
from .status import advance_video_status, mark_video_error
from .sync import schedule_sync

logger = logging.getLogger(__name__)


def signal_pending_video(video_id: str) -> str:
    """Hand a drafted video to the coordinator. Returns the task id."""
    return dispatch(Handler.VIDEO_PIPELINE.value, {"videoId": video_id})


def fan_out_scene_tasks(video_id: str, video: dict) -> int:
    """Enqueue the image and voice task of every scene. Returns the scene count."""
    scenes = video.get("scenes") or {}
    keys = scene_keys(video)

    for scene_index in keys:
        scene = scenes[scene_index] or {}
        dispatch(Handler.IMAGE_GENERATE.value, {
            "videoId": video_id,
            "sceneIndex": scene_index,
            "imagePrompt": scene.get("imagePrompt", ""),
        })
        dispatch(Handler.VOICE_GENERATE.value, {
            "videoId": video_id,
            "sceneIndex": scene_index,
            "narration": scene.get("narration", ""),
            "voiceId": video.get("voiceId", ""),
        })

    logger.info(f"[{video_id}] enqueued {len(keys)} image and {len(keys)} voice task(s)")
    return len(keys)


def process_pending_video(payload: dict, store: Optional[RecordStore] = None):
    try:
        task = VideoTask.model_validate(payload)
    except ValidationError as e:
        logger.error(f"❌ Dropping new-video signal with invalid payload {payload}: {e}")
        return

    store = store or get_store()
    video_id = task.video_id

    doc = store.get(VIDEOS, video_id)
    if doc is None:
        logger.error(f"❌ Video not found: {video_id}")
        return

    video = doc.data
    if not video.get("scenes"):
        logger.error(f"❌ No scenes found for video: {video_id}")
        return

    status = video.get("status")
    if status == VideoStatus.ERROR.value or status_rank(status) > status_rank(VideoStatus.PROCESSING_ASSETS.value):
        logger.info(f"Video {video_id} already at {status}, ignoring new-video signal")
        return
    if video.get("assetTasksEnqueuedAt"):
        logger.info(f"Scene tasks for video {video_id} were already enqueued, ignoring new-video signal")
        return

    logger.info(f"🔊 Processing tasks for video: {video_id}")
    try:
        advance_video_status(store, video_id, VideoStatus.PROCESSING_ASSETS)
        fan_out_scene_tasks(video_id, video)
        schedule_sync(video_id)
        store.update(VIDEOS, video_id, {"assetTasksEnqueuedAt": now_ms()})
        logger.info(f"Enqueued sync_status task for video: {video_id}")
    except Exception as e:
        logger.error(f"❌ Failed to start asset generation for video {video_id}: {e}", exc_info=True)
        mark_video_error(store, video_id, f"Failed to start asset generation: {e}")
