"""
Remotion render service client.

The render service fronts Remotion Lambda: it starts a render of the
`VideoComposition` composition and reports progress by render id.

  POST /renders              {composition, inputProps, codec} → {renderId, bucketName}
  GET  /renders/{renderId}   ?bucketName=…                    → {overallProgress, done,
                                                                  outputFile, fatalErrorEncountered,
                                                                  errors}
"""

import os
import time
import logging
from typing import Callable, Optional

import httpx

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

REMOTION_RENDER_URL = os.environ.get("REMOTION_RENDER_URL", "")
REMOTION_API_KEY = os.environ.get("REMOTION_API_KEY", "")

COMPOSITION = "VideoComposition"
CODEC = "h264"

POLL_INTERVAL = 5  # seconds
MAX_POLLS = 200    # ~16 minutes max


def _base_url() -> str:
    if not REMOTION_RENDER_URL:
        raise RuntimeError("REMOTION_RENDER_URL not set")
    return REMOTION_RENDER_URL.rstrip("/")


def _headers() -> dict:
    return {"Authorization": f"Bearer {REMOTION_API_KEY}"} if REMOTION_API_KEY else {}


def start_render(input_props: dict) -> dict:
    """Kick off a render. Returns `{renderId, bucketName}`."""
    resp = httpx.post(
        f"{_base_url()}/renders",
        headers=_headers(),
        json={
            "composition": COMPOSITION,
            "inputProps": input_props,
            "codec": CODEC,
        },
        timeout=60,
    )
    resp.raise_for_status()
    data = resp.json()
    logger.info(f"Render initiated: renderId={data.get('renderId')} bucket={data.get('bucketName')}")
    return data


def get_render_progress(render_id: str, bucket_name: str) -> dict:
    resp = httpx.get(
        f"{_base_url()}/renders/{render_id}",
        headers=_headers(),
        params={"bucketName": bucket_name},
        timeout=30,
    )
    resp.raise_for_status()
    return resp.json()


def wait_for_render(
    render_id: str,
    bucket_name: str,
    on_progress: Optional[Callable[[float, bool], None]] = None,
    poll_interval: float = POLL_INTERVAL,
    max_polls: int = MAX_POLLS,
) -> dict:
    """
    Poll a render until it is done, fails fatally, or `max_polls` is spent.

    `on_progress(overall_progress, done)` is called after every poll.
    Returns the last progress record; callers check `done`.
    """
    progress: dict = {}
    for poll in range(1, max_polls + 1):
        time.sleep(poll_interval)
        progress = get_render_progress(render_id, bucket_name)
        overall = float(progress.get("overallProgress") or 0)
        done = bool(progress.get("done"))

        logger.info(f"Render poll #{poll}: renderId={render_id} progress={overall:.2f}")
        if on_progress:
            on_progress(overall, done)

        if done:
            return progress
        if progress.get("fatalErrorEncountered"):
            errors = progress.get("errors") or []
            message = errors[0].get("message") if errors and isinstance(errors[0], dict) else "Unknown render error"
            raise RuntimeError(f"Render failed: {message}")

    return progress
