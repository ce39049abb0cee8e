import os
import time
import random
import logging

import requests

logger = logging.getLogger(__name__)

REPLICATE_API_KEY = os.environ.get("REPLICATE_API_KEY", "")
REPLICATE_API_BASE = "https://api.replicate.com/v1"
REPLICATE_MODEL_VERSION = os.environ.get(
    "REPLICATE_MODEL_VERSION",
    "7762fd07cf82c948538e41f63f77d685e02b063e37e496e96eefd46c929f9bdc",
)

# ── Retry configuration ──────────────────────────────────────────────────────
MAX_RETRIES = 5
BASE_DELAY = 2.0       # seconds — doubles each retry: 2, 4, 8, 16, 32
JITTER_MAX = 1.0        # random jitter 0–1s added to each delay
RETRYABLE_STATUS_CODES = {429, 502, 503, 504}

IMAGE_WIDTH = 1080
IMAGE_HEIGHT = 1920
NEGATIVE_PROMPT = "blurry, low quality, distorted, deformed, ugly, bad anatomy"

# Prediction states as reported by Replicate
RUNNING_STATES = ("starting", "processing")
FAILED_STATES = ("failed", "canceled")


def _request_with_backoff(method: str, url: str, **kwargs) -> requests.Response:
    """
    Make an HTTP request with exponential backoff on retryable errors (429, 5xx).

    Uses: base_delay * 2^attempt + random jitter
    Max retries: 5 → delays of ~2s, 4s, 8s, 16s, 32s
    """
    if not REPLICATE_API_KEY:
        raise RuntimeError("REPLICATE_API_KEY not set")

    headers = kwargs.pop("headers", {})
    headers.setdefault("Authorization", f"Bearer {REPLICATE_API_KEY}")
    kwargs.setdefault("timeout", 30)

    for attempt in range(MAX_RETRIES + 1):
        try:
            response = requests.request(method, url, headers=headers, **kwargs)
        except requests.exceptions.RequestException as e:
            if attempt >= MAX_RETRIES:
                raise
            delay = BASE_DELAY * (2 ** attempt) + random.uniform(0, JITTER_MAX)
            logger.warning(
                f"Replicate request error on attempt {attempt + 1}/{MAX_RETRIES + 1}: {e} "
                f"— retrying in {delay:.1f}s"
            )
            time.sleep(delay)
            continue

        if response.status_code not in RETRYABLE_STATUS_CODES:
            response.raise_for_status()
            return response

        if attempt >= MAX_RETRIES:
            response.raise_for_status()

        retry_after = response.headers.get("Retry-After")
        if retry_after and retry_after.isdigit():
            delay = int(retry_after)
        else:
            delay = BASE_DELAY * (2 ** attempt) + random.uniform(0, JITTER_MAX)

        logger.warning(
            f"Replicate {response.status_code} on attempt {attempt + 1}/{MAX_RETRIES + 1} "
            f"— retrying in {delay:.1f}s (url={url})"
        )
        time.sleep(delay)

    raise RuntimeError(f"Request to {url} failed after {MAX_RETRIES + 1} attempts")


def create_prediction(prompt: str) -> dict:
    """
    Start an image generation for one scene. Returns the prediction record
    (including its `id`); the image itself has to be polled for.
    """
    payload = {
        "version": REPLICATE_MODEL_VERSION,
        "input": {
            "prompt": f"{prompt}. High quality, detailed, professional.",
            "negative_prompt": NEGATIVE_PROMPT,
            "num_inference_steps": 30,
            "scheduler": "DPMSolverMultistep",
            "guidance_scale": 7,
            "num_outputs": 1,
            "width": IMAGE_WIDTH,
            "height": IMAGE_HEIGHT,
        },
    }

    logger.info(f"Replicate prediction request: prompt={prompt[:80]}...")
    response = _request_with_backoff("POST", f"{REPLICATE_API_BASE}/predictions", json=payload)
    return response.json()


def get_prediction(prediction_id: str) -> dict:
    """Fetch the current state of a prediction."""
    response = _request_with_backoff("GET", f"{REPLICATE_API_BASE}/predictions/{prediction_id}")
    return response.json()


def first_output(prediction: dict):
    """Replicate returns either a single URL or a list of them."""
    output = prediction.get("output")
    if isinstance(output, list):
        return output[0] if output else None
    return output
