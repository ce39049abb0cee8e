"""
S3/R2 storage helpers for pipeline assets.

All generated assets are stored under:
  videos/{video_id}/{name}     e.g. videos/abc/scene_0.png, videos/abc/scene_0.mp3

The returned reference URL is long-lived: the public bucket URL when
R2_PUBLIC_URL is configured, otherwise a pre-signed GET (max 7 days).
"""

import os
import logging
from typing import Optional

import boto3
import httpx
from botocore.config import Config as BotoConfig

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

R2_PUBLIC_URL = os.getenv("R2_PUBLIC_URL", "")
R2_ACCOUNT_ID = os.getenv("R2_ACCOUNT_ID", "")
R2_ACCESS_KEY_ID = os.getenv("R2_ACCESS_KEY_ID", "")
R2_SECRET_ACCESS_KEY = os.getenv("R2_SECRET_ACCESS_KEY", "")
R2_BUCKET_NAME = os.getenv("R2_BUCKET_NAME", "assets")

MAX_PRESIGN_TTL = 7 * 24 * 3600  # S3 SigV4 limit
ASSET_URL_TTL_SECONDS = min(int(os.getenv("ASSET_URL_TTL_SECONDS", str(MAX_PRESIGN_TTL))), MAX_PRESIGN_TTL)

_s3_client = None


def _get_s3():
    global _s3_client
    if _s3_client is None:
        if not R2_ACCOUNT_ID or not R2_ACCESS_KEY_ID or not R2_SECRET_ACCESS_KEY:
            raise RuntimeError("R2_ACCOUNT_ID, R2_ACCESS_KEY_ID and R2_SECRET_ACCESS_KEY must be set")
        _s3_client = boto3.client(
            "s3",
            endpoint_url=f"https://{R2_ACCOUNT_ID}.r2.cloudflarestorage.com",
            aws_access_key_id=R2_ACCESS_KEY_ID,
            aws_secret_access_key=R2_SECRET_ACCESS_KEY,
            config=BotoConfig(signature_version="s3v4"),
            region_name="auto",
        )
    return _s3_client


# ── Helpers ──────────────────────────────────────────────────────────────────

def asset_key(video_id: str, name: str) -> str:
    """Generate the S3 key for a video asset."""
    return f"videos/{video_id}/{name}"


def download_bytes(url: str, timeout: float = 60) -> bytes:
    """Download a file from a URL and return raw bytes."""
    with httpx.Client(timeout=timeout, follow_redirects=True) as client:
        resp = client.get(url)
        resp.raise_for_status()
        return resp.content


def upload_to_r2(key: str, data: bytes, content_type: str) -> str:
    """Upload bytes to R2 via the S3 API. Returns a reference URL."""
    s3 = _get_s3()
    try:
        s3.put_object(
            Bucket=R2_BUCKET_NAME,
            Key=key,
            Body=data,
            ContentType=content_type,
        )
    except Exception as e:
        logger.error(f"R2 upload failed for key={key}: {e}")
        raise

    if R2_PUBLIC_URL:
        url = f"{R2_PUBLIC_URL.rstrip('/')}/{key}"
    else:
        url = s3.generate_presigned_url(
            "get_object",
            Params={"Bucket": R2_BUCKET_NAME, "Key": key},
            ExpiresIn=ASSET_URL_TTL_SECONDS,
        )
    logger.info(f"Uploaded to R2: key={key} ({len(data)} bytes)")
    return url


def upload_asset(video_id: str, name: str, data: bytes, content_type: Optional[str] = None) -> str:
    """Upload a scene asset for a video and return its reference URL."""
    if content_type is None:
        content_type = "audio/mpeg" if name.endswith(".mp3") else "image/png"
    return upload_to_r2(asset_key(video_id, name), data, content_type)
