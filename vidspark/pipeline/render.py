"""
Render trigger: a render request renders the video on the Remotion service.

  video_render {videoId}
    → processing:render, renderStatus reset
    → start render, poll every 5s (≤200 polls), persist renderStatus.progress
    → render:complete + renderStatus.videoUrl | render:error + renderStatus.error

Never raises: the outcome lives on the video record.
"""

import logging
from typing import Optional

from pydantic import ValidationError

from .. import remotion
from ..clients import dispatch, get_store
from ..store import RecordStore
from .models import VIDEOS, Handler, VideoStatus, VideoTask, status_rank
from .status import advance_video_status

logger = logging.getLogger(__name__)


def request_render(video_id: str) -> str:
    """Queue a render of the video. Returns the task id."""
    return dispatch(Handler.VIDEO_RENDER.value, {"videoId": video_id})


def build_input_props(video: dict) -> dict:
    music_volume = video.get("musicVolume")
    return {
        "scenes": video.get("scenes") or {},
        "styling": video.get("styling"),
        "musicVolume": float(music_volume) if music_volume else 0.0,
        "musicUrl": video.get("musicUrl") or None,
    }


def _fail_render(store: RecordStore, video_id: str, message: str):
    logger.error(f"❌ Render failed for video {video_id}: {message}")
    advance_video_status(store, video_id, VideoStatus.RENDER_ERROR, {
        "renderStatus": {
            "progress": 0,
            "videoUrl": None,
            "error": message,
            "statusMessage": "error",
        },
    })


def process_render_request(
    payload: dict,
    store: Optional[RecordStore] = None,
    poll_interval: float = remotion.POLL_INTERVAL,
    max_polls: int = remotion.MAX_POLLS,
):
    try:
        task = VideoTask.model_validate(payload)
    except ValidationError as e:
        logger.error(f"❌ Dropping render request with invalid payload {payload}: {e}")
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
    if status_rank(video.get("status")) < status_rank(VideoStatus.ASSETS_READY.value):
        logger.error(f"❌ Video {video_id} assets are not ready (status={video.get('status')}), not rendering")
        return

    started = advance_video_status(store, video_id, VideoStatus.PROCESSING_RENDER, {
        "renderStatus": {"progress": 0, "videoUrl": None, "statusMessage": "rendering"},
    })
    if not started:
        logger.info(f"Video {video_id} is already rendering, ignoring render request")
        return

    logger.info(f"🎬 Starting render for video: {video_id}")

    def _on_progress(overall: float, done: bool):
        store.update(VIDEOS, video_id, {
            "renderStatus.progress": overall,
            "renderStatus.statusMessage": "completed" if done else "rendering",
        })

    try:
        started_render = remotion.start_render(build_input_props(video))
        render_id = started_render.get("renderId")
        bucket_name = started_render.get("bucketName")
        if not render_id or not bucket_name:
            _fail_render(store, video_id, "Missing renderId or bucketName")
            return

        progress = remotion.wait_for_render(
            render_id, bucket_name,
            on_progress=_on_progress,
            poll_interval=poll_interval,
            max_polls=max_polls,
        )

        if not progress.get("done"):
            _fail_render(store, video_id, "Render timed out")
            return

        advance_video_status(store, video_id, VideoStatus.RENDER_COMPLETE, {
            "renderStatus": {
                "progress": 1,
                "videoUrl": progress.get("outputFile"),
                "statusMessage": "completed",
            },
        })
        logger.info(f"✅ Render completed for video {video_id}: {progress.get('outputFile')}")

    except Exception as e:
        logger.error(f"Error rendering video {video_id}: {e}", exc_info=True)
        _fail_render(store, video_id, str(e) or "Unknown error")
