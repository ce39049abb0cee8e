"""
Pydantic models and enums for the video pipeline.

Task payloads keep the camelCase field names they travel under on the
queue; models accept either spelling.
"""

from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator


# ── Collections ──────────────────────────────────────────────────────────────

VIDEOS = "videos"
BULK_JOBS = "bulk_jobs"
STORY_IDEAS = "story_ideas"
TEMPLATES = "templates"
CONTENT_TYPES = "content_types"
ACCOUNTS = "accounts"


# ── Handlers ─────────────────────────────────────────────────────────────────

class Handler(str, Enum):
    VIDEO_PIPELINE = "video_pipeline"
    IMAGE_GENERATE = "image_generate"
    VOICE_GENERATE = "voice_generate"
    SYNC_STATUS = "sync_status"
    VIDEO_RENDER = "video_render"
    YOUTUBE_UPLOAD = "youtube_upload"
    STORY_IDEA = "story_idea"
    STORY_REQUEST = "story_request"
    BULK_JOB = "bulk_job"


# ── Statuses ─────────────────────────────────────────────────────────────────

class TrackStatus(str, Enum):
    """Per-scene status of one track (image, voice) or of the scene itself."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


SETTLED_TRACK_STATUSES = (TrackStatus.COMPLETED.value, TrackStatus.FAILED.value)


class VideoStatus(str, Enum):
    PROCESSING_STORY = "processing:story"
    DRAFT = "draft"
    PROCESSING_ASSETS = "processing:assets"
    ASSETS_READY = "assets:ready"
    PROCESSING_RENDER = "processing:render"
    RENDER_COMPLETE = "render:complete"
    RENDER_ERROR = "render:error"
    ERROR = "error"


# Position of each status in the forward-only sequence. render:complete and
# render:error share a rank; error sits outside the sequence.
VIDEO_STATUS_RANK = {
    VideoStatus.PROCESSING_STORY.value: 0,
    VideoStatus.DRAFT.value: 1,
    VideoStatus.PROCESSING_ASSETS.value: 2,
    VideoStatus.ASSETS_READY.value: 3,
    VideoStatus.PROCESSING_RENDER.value: 4,
    VideoStatus.RENDER_COMPLETE.value: 5,
    VideoStatus.RENDER_ERROR.value: 5,
}


def status_rank(status: Optional[str]) -> int:
    """Rank of a video status. Unknown/missing counts as the very start."""
    return VIDEO_STATUS_RANK.get(status or "", -1)


def can_transition(current: Optional[str], target: str) -> bool:
    """
    Whether a video may move from `current` to `target`.

    - error is reachable from anywhere except error itself
    - nothing automatic leaves error
    - processing:render may be re-entered after a finished render
    - otherwise the status only moves forward
    """
    if target == VideoStatus.ERROR.value:
        return current != VideoStatus.ERROR.value
    if current == VideoStatus.ERROR.value:
        return False
    if target == VideoStatus.PROCESSING_RENDER.value and current in (
        VideoStatus.RENDER_COMPLETE.value,
        VideoStatus.RENDER_ERROR.value,
    ):
        return True
    return status_rank(target) > status_rank(current)


class BulkJobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    CANCELLED = "cancelled"
    FAILED = "failed"


BULK_TERMINAL_STATUSES = (
    BulkJobStatus.COMPLETED.value,
    BulkJobStatus.COMPLETED_WITH_ERRORS.value,
    BulkJobStatus.CANCELLED.value,
    BulkJobStatus.FAILED.value,
)


class StoryStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    ERROR = "error"
    FAILED = "failed"


# ── Task Payloads ────────────────────────────────────────────────────────────

class TaskPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class VideoTask(TaskPayload):
    """video_pipeline / video_render / sync_status payload."""
    video_id: str = Field(..., alias="videoId", min_length=1)


class SyncTask(VideoTask):
    attempt: int = Field(0, ge=0)
    stalled: int = Field(0, ge=0)
    track_digest: str = Field("", alias="trackDigest")


class SceneTask(TaskPayload):
    video_id: str = Field(..., alias="videoId", min_length=1)
    scene_index: str = Field(..., alias="sceneIndex", min_length=1)

    @field_validator("scene_index", mode="before")
    @classmethod
    def _index_as_key(cls, v):
        # Scene maps are keyed by the index as a string
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v


class ImageTask(SceneTask):
    image_prompt: str = Field(..., alias="imagePrompt", min_length=1)


class VoiceTask(SceneTask):
    narration: str = Field(..., min_length=1)
    voice_id: str = Field(..., alias="voiceId", min_length=1)


class PublishTask(TaskPayload):
    video_id: str = Field(..., alias="videoId", min_length=1)
    channel_id: str = Field(..., alias="channelId", min_length=1)
    publish_at: Optional[str] = Field(None, alias="publishAt")
    privacy: str = "private"
    timezone: Optional[str] = None


class StoryIdeaTask(TaskPayload):
    idea_id: str = Field(..., alias="ideaId", min_length=1)


class StoryRequestTask(TaskPayload):
    video_id: str = Field(..., alias="videoId", min_length=1)
    narration: str = Field(..., min_length=1)
    image_type: Optional[str] = Field(None, alias="imageType")


class BulkJobTask(TaskPayload):
    job_id: str = Field(..., alias="jobId", min_length=1)


# ── API Request Models ───────────────────────────────────────────────────────

class BulkJobCreateRequest(TaskPayload):
    user_id: str = Field(..., alias="userId", min_length=1)
    template_id: str = Field(..., alias="templateId", min_length=1)
    count: int
    topic_prompt: str = Field("", alias="topicPrompt")


class PublishRequest(TaskPayload):
    channel_id: str = Field(..., alias="channelId", min_length=1)
    publish_at: Optional[str] = Field(None, alias="publishAt")
    privacy: str = "private"
    timezone: Optional[str] = None


# ── Generated Story ──────────────────────────────────────────────────────────

class StoryScene(BaseModel):
    narration: str
    image_prompt: str = Field(..., alias="imagePrompt")

    model_config = ConfigDict(populate_by_name=True)


class StoryOutput(BaseModel):
    title: str = ""
    description: str = ""
    scenes: list[StoryScene] = Field(default_factory=list)
