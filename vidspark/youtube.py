"""
YouTube Data API v3 over REST: OAuth token refresh and resumable upload.

Upload flow:
  1. POST …/upload/youtube/v3/videos?uploadType=resumable  → session URL (Location)
  2. PUT chunks with Content-Range; 308 = keep going, 200/201 = done (video resource)
"""

import os
import logging
from typing import Callable, Optional

import httpx

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

GOOGLE_CLIENT_ID = os.environ.get("GOOGLE_CLIENT_ID", "")
GOOGLE_CLIENT_SECRET = os.environ.get("GOOGLE_CLIENT_SECRET", "")

TOKEN_URL = "https://oauth2.googleapis.com/token"
UPLOAD_URL = "https://www.googleapis.com/upload/youtube/v3/videos"

CHUNK_SIZE = 32 * 256 * 1024  # 8 MiB, must be a multiple of 256 KiB
MAX_STALLED_CHUNKS = 5     # consecutive 308s that accept no new bytes


def refresh_access_token(refresh_token: str) -> dict:
    """
    Exchange a refresh token for a fresh access token.

    Returns `{"access_token": ..., "refresh_token": ... | None, "expires_in": ...}`.
    Google only sends a new refresh token when it rotates it.
    """
    if not GOOGLE_CLIENT_ID or not GOOGLE_CLIENT_SECRET:
        raise RuntimeError("GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET must be set")

    resp = httpx.post(
        TOKEN_URL,
        data={
            "client_id": GOOGLE_CLIENT_ID,
            "client_secret": GOOGLE_CLIENT_SECRET,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        },
        timeout=30,
    )
    resp.raise_for_status()
    return resp.json()


def upload_video(
    access_token: str,
    data: bytes,
    snippet: dict,
    status: dict,
    on_progress: Optional[Callable[[int, int], None]] = None,
    chunk_size: int = CHUNK_SIZE,
) -> dict:
    """
    Upload an MP4 as a new video. `on_progress(loaded, total)` fires after
    every accepted chunk. Returns the created video resource.
    """
    total = len(data)
    auth = {"Authorization": f"Bearer {access_token}"}

    with httpx.Client(timeout=300) as client:
        init = client.post(
            UPLOAD_URL,
            params={"uploadType": "resumable", "part": "snippet,status"},
            headers={
                **auth,
                "X-Upload-Content-Type": "video/mp4",
                "X-Upload-Content-Length": str(total),
            },
            json={"snippet": snippet, "status": status},
        )
        init.raise_for_status()
        session_url = init.headers.get("Location")
        if not session_url:
            raise RuntimeError("YouTube did not return a resumable session URL")

        offset = 0
        stalled = 0
        while offset < total:
            end = min(offset + chunk_size, total) - 1
            resp = client.put(
                session_url,
                headers={
                    **auth,
                    "Content-Length": str(end - offset + 1),
                    "Content-Range": f"bytes {offset}-{end}/{total}",
                },
                content=data[offset:end + 1],
            )

            if resp.status_code in (200, 201):
                if on_progress:
                    on_progress(total, total)
                video = resp.json()
                logger.info(f"YouTube upload complete: id={video.get('id')}")
                return video

            if resp.status_code != 308:
                resp.raise_for_status()
                raise RuntimeError(f"Unexpected upload response {resp.status_code}")

            # 308 Resume Incomplete — the server tells us how much it kept (no Range = nothing)
            received = resp.headers.get("Range")
            kept = int(received.rsplit("-", 1)[1]) + 1 if received else 0
            stalled = stalled + 1 if kept <= offset else 0
            if stalled >= MAX_STALLED_CHUNKS:
                raise RuntimeError(
                    f"YouTube upload stalled at byte {offset}/{total} after {stalled} chunk attempts"
                )
            offset = kept
            if on_progress:
                on_progress(offset, total)

    raise RuntimeError("YouTube upload ended without a video resource")
