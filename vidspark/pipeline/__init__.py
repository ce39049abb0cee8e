"""
Video Pipeline

Orchestration for short-form video generation:
  Story        — narration and scene breakdown (Gemini)
  Scene assets — per-scene image (Replicate) and voice (ElevenLabs) tasks
  Readiness    — scene/asset aggregation and the sync monitor
  Render       — Remotion render trigger
  Publish      — YouTube upload
  Bulk         — one request fanned out into many pipelines
"""

from .bulk import BulkOrchestrator
from .models import BulkJobStatus, Handler, TrackStatus, VideoStatus
from .routes import bulk_router, video_router

__all__ = [
    "BulkOrchestrator",
    "bulk_router",
    "video_router",
    "BulkJobStatus",
    "Handler",
    "TrackStatus",
    "VideoStatus",
]
