"""
Publish worker: upload a rendered video to a connected YouTube channel.

  youtube_upload {videoId, channelId, publishAt?, privacy, timezone?}
    → refresh the channel's OAuth token (persisted on the account)
    → download renderStatus.videoUrl
    → resumable upload, uploadStatus.youtube.progress in percent
    → youtubeVideoId + uploadStatus.youtube {progress: 100, videoId, videoUrl}

Upload and refresh failures re-raise so the queue retries.
"""

import logging
from datetime import datetime, timezone as dt_timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import ValidationError

from .. import youtube
from ..clients import dispatch, get_store
from ..store import RecordStore
from . import storage
from .models import ACCOUNTS, VIDEOS, Handler, PublishTask

logger = logging.getLogger(__name__)

PLATFORM = "youtube"


def request_publish(
    video_id: str,
    channel_id: str,
    privacy: str = "private",
    publish_at: Optional[str] = None,
    timezone: Optional[str] = None,
) -> str:
    """Queue an upload of the rendered video. Returns the task id."""
    payload = {"videoId": video_id, "channelId": channel_id, "privacy": privacy}
    if publish_at:
        payload["publishAt"] = publish_at
    if timezone:
        payload["timezone"] = timezone
    return dispatch(Handler.YOUTUBE_UPLOAD.value, payload)


def format_publish_at(publish_at: Optional[str], timezone: Optional[str] = None) -> Optional[str]:
    """
    Normalize a schedule time to RFC 3339 UTC (`2025-01-31T18:00:00.000Z`).

    A time without an offset is read in `timezone` (UTC when absent).
    Returns None for a missing or unparseable value.
    """
    if not publish_at:
        return None
    try:
        parsed = datetime.fromisoformat(publish_at.strip().replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            tz = ZoneInfo(timezone) if timezone else dt_timezone.utc
            parsed = parsed.replace(tzinfo=tz)
    except (ValueError, ZoneInfoNotFoundError) as e:
        logger.error(f"Error formatting publishAt {publish_at!r} (timezone={timezone}): {e}")
        return None

    utc = parsed.astimezone(dt_timezone.utc)
    return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}Z"


def build_video_resource(video: dict, privacy: str, publish_at: Optional[str]) -> tuple[dict, dict]:
    """The `snippet` and `status` parts of the upload."""
    snippet = {
        "title": video.get("title") or "",
        "description": video.get("description") or "",
    }
    status = {
        "privacyStatus": privacy or video.get("privacy") or "private",
        "selfDeclaredMadeForKids": False,
    }
    # Scheduling only applies to non-public uploads
    if publish_at and status["privacyStatus"] != "public":
        status["publishAt"] = publish_at
    return snippet, status


def refresh_channel_token(store: RecordStore, channel_id: str, account: dict) -> str:
    """Refresh the channel's access token and persist it. Returns the new token."""
    credentials = youtube.refresh_access_token(account["refreshToken"])
    access_token = credentials["access_token"]
    store.update(ACCOUNTS, channel_id, {
        "token": access_token,
        "refreshToken": credentials.get("refresh_token") or account["refreshToken"],
    })
    logger.info(f"Access token refreshed for channel {channel_id}")
    return access_token


def process_publish_task(payload: dict, store: Optional[RecordStore] = None) -> Optional[str]:
    """Returns the YouTube video id, or None when the task was dropped."""
    try:
        task = PublishTask.model_validate(payload)
    except ValidationError as e:
        logger.error(f"Dropping upload task with invalid payload {payload}: {e}")
        return None

    store = store or get_store()
    video_id, channel_id = task.video_id, task.channel_id
    logger.info(
        f"Processing YouTube upload: video={video_id} channel={channel_id} "
        f"privacy={task.privacy} publishAt={task.publish_at} timezone={task.timezone or 'not provided'}"
    )

    publish_at = format_publish_at(task.publish_at, task.timezone)

    video_doc = store.get(VIDEOS, video_id)
    if video_doc is None:
        logger.error(f"Video not found: {video_id}")
        return None
    video = video_doc.data
    video_url = (video.get("renderStatus") or {}).get("videoUrl")
    if not video_url:
        logger.error(f"Rendered video URL not found on video {video_id}")
        return None

    account_doc = store.get(ACCOUNTS, channel_id)
    if account_doc is None:
        logger.error(f"YouTube account not found: {channel_id}")
        return None
    account = account_doc.data
    if not account.get("token") or not account.get("refreshToken"):
        logger.error(f"Missing YouTube OAuth tokens on account {channel_id}")
        return None

    try:
        access_token = refresh_channel_token(store, channel_id, account)

        logger.info(f"Downloading rendered video for {video_id}...")
        data = storage.download_bytes(video_url, timeout=300)

        def _on_progress(loaded: int, total: int):
            if not total:
                return
            progress = loaded / total * 100
            logger.info(f"Upload progress for {video_id}: {progress:.2f}%")
            store.update(VIDEOS, video_id, {
                f"uploadStatus.{PLATFORM}": {"progress": progress, "videoId": None, "videoUrl": None},
            })

        snippet, status = build_video_resource(video, task.privacy, publish_at)
        uploaded = youtube.upload_video(access_token, data, snippet, status, on_progress=_on_progress)

    except Exception as e:
        logger.error(f"YouTube upload failed for video {video_id}: {e}", exc_info=True)
        raise

    youtube_video_id = uploaded["id"]
    store.update(VIDEOS, video_id, {
        "youtubeVideoId": youtube_video_id,
        f"uploadStatus.{PLATFORM}": {
            "progress": 100,
            "videoId": youtube_video_id,
            "videoUrl": f"https://youtu.be/{youtube_video_id}",
        },
    })
    logger.info(f"YouTube upload successful for video {video_id}: {youtube_video_id}")
    return youtube_video_id
