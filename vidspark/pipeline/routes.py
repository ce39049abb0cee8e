"""
FastAPI routes for the video pipeline.

Video Endpoints:
  POST /videos/{id}/process   — New-video signal (fan out scene assets)
  POST /videos/{id}/render    — Render request
  POST /videos/{id}/publish   — Upload the rendered video to YouTube
  GET  /videos/{id}/status    — Pipeline status of a video

Bulk Endpoints:
  POST /bulk                  — Queue a bulk job
  GET  /bulk/{id}             — Bulk job status
  POST /bulk/{id}/cancel      — Cancel a bulk job
"""

import logging

from fastapi import APIRouter, HTTPException

from ..clients import get_store
from .bulk import cancel_bulk_job, create_bulk_job
from .coordinator import signal_pending_video
from .models import (
    BULK_JOBS,
    VIDEOS,
    BulkJobCreateRequest,
    PublishRequest,
    VideoStatus,
    status_rank,
)
from .publish import request_publish
from .render import request_render

logger = logging.getLogger(__name__)


def _get_video(video_id: str) -> dict:
    doc = get_store().get(VIDEOS, video_id)
    if doc is None:
        raise HTTPException(status_code=404, detail="Video not found")
    return doc.data


def _queued(task_id: str, **extra) -> dict:
    return {"status": "queued", "task_id": task_id, **extra}


# ═════════════════════════════════════════════════════════════════════════════
# Video Router
# ═════════════════════════════════════════════════════════════════════════════

video_router = APIRouter(prefix="/videos", tags=["videos"])


@video_router.post("/{video_id}/process")
def process_video(video_id: str):
    """Hand a drafted video to the pipeline coordinator."""
    video = _get_video(video_id)
    if not video.get("scenes"):
        raise HTTPException(status_code=400, detail="Video has no scenes")

    try:
        task_id = signal_pending_video(video_id)
    except RuntimeError as e:
        logger.error(f"Could not queue video {video_id}: {e}")
        raise HTTPException(status_code=503, detail=str(e))
    return _queued(task_id, video_id=video_id)


@video_router.post("/{video_id}/render")
def render_video(video_id: str):
    """Queue a render once the video's assets are ready."""
    video = _get_video(video_id)
    status = video.get("status")
    if status == VideoStatus.ERROR.value or status_rank(status) < status_rank(VideoStatus.ASSETS_READY.value):
        raise HTTPException(status_code=409, detail=f"Video assets are not ready (status={status})")

    try:
        task_id = request_render(video_id)
    except RuntimeError as e:
        logger.error(f"Could not queue render for video {video_id}: {e}")
        raise HTTPException(status_code=503, detail=str(e))
    return _queued(task_id, video_id=video_id)


@video_router.post("/{video_id}/publish")
def publish_video(video_id: str, request: PublishRequest):
    """Queue an upload of the rendered video to a connected channel."""
    video = _get_video(video_id)
    if not (video.get("renderStatus") or {}).get("videoUrl"):
        raise HTTPException(status_code=409, detail="Video has not been rendered")

    try:
        task_id = request_publish(
            video_id,
            request.channel_id,
            privacy=request.privacy,
            publish_at=request.publish_at,
            timezone=request.timezone,
        )
    except RuntimeError as e:
        logger.error(f"Could not queue upload for video {video_id}: {e}")
        raise HTTPException(status_code=503, detail=str(e))
    return _queued(task_id, video_id=video_id)


@video_router.get("/{video_id}/status")
def video_status(video_id: str):
    video = _get_video(video_id)
    return {
        "video_id": video_id,
        "status": video.get("status"),
        "error": video.get("error"),
        "sceneStatus": video.get("sceneStatus") or {},
        "imageStatus": video.get("imageStatus") or {},
        "voiceStatus": video.get("voiceStatus") or {},
        "renderStatus": video.get("renderStatus") or {},
        "uploadStatus": video.get("uploadStatus") or {},
    }


# ═════════════════════════════════════════════════════════════════════════════
# Bulk Router
# ═════════════════════════════════════════════════════════════════════════════

bulk_router = APIRouter(prefix="/bulk", tags=["bulk"])


@bulk_router.post("")
def create_bulk(request: BulkJobCreateRequest):
    """Validate and queue a bulk job."""
    try:
        job_id = create_bulk_job(get_store(), request)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except RuntimeError as e:
        logger.error(f"Bulk job creation failed: {e}", exc_info=True)
        raise HTTPException(status_code=503, detail=str(e))

    return {
        "success": True,
        "jobId": job_id,
        "message": "Bulk creation job queued successfully",
    }


@bulk_router.get("/{job_id}")
def get_bulk(job_id: str):
    doc = get_store().get(BULK_JOBS, job_id)
    if doc is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return {"id": job_id, **doc.data}


@bulk_router.post("/{job_id}/cancel")
def cancel_bulk(job_id: str):
    try:
        job = cancel_bulk_job(get_store(), job_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"success": True, "job": job}
