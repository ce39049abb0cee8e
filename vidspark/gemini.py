"""
Gemini integration for story writing.

- Narration: free text from a story idea
- Story structure: JSON (title, description, scenes)
- Hashtags: space-separated trending tags for the description

All calls go through the generateContent REST endpoint.
"""

import os
import re
import json
import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

GEMINI_API_KEY = os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_API_KEY", "")
API_BASE = "https://generativelanguage.googleapis.com/v1beta"
TEXT_MODEL = os.environ.get("GEMINI_TEXT_MODEL", "gemini-2.0-flash")

HASHTAG_PATTERN = re.compile(r"#\w+")


def _api_url(model: str) -> str:
    return f"{API_BASE}/models/{model}:generateContent?key={GEMINI_API_KEY}"


def _parse_json_response(text: str) -> dict:
    """Parse JSON from Gemini response, handling markdown code blocks."""
    text = text.strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        if "```" in text:
            json_block = text.split("```")[1]
            if json_block.startswith("json"):
                json_block = json_block[4:]
            return json.loads(json_block.strip())
        raise RuntimeError(f"Gemini returned invalid JSON: {text[:200]}")


def _generate_content(
    parts: list,
    system: Optional[str] = None,
    config: Optional[dict] = None,
    model: str = TEXT_MODEL,
) -> str:
    """Call Gemini generateContent and return the first candidate's text."""
    if not GEMINI_API_KEY:
        raise RuntimeError("GEMINI_API_KEY not set")

    body: dict = {"contents": [{"role": "user", "parts": parts}]}
    if system:
        body["systemInstruction"] = {"parts": [{"text": system}]}
    if config:
        body["generationConfig"] = config

    resp = httpx.post(_api_url(model), json=body, timeout=90)
    if resp.status_code != 200:
        raise RuntimeError(f"Gemini API error {resp.status_code}: {resp.text[:500]}")

    candidates = resp.json().get("candidates", [])
    if not candidates:
        raise RuntimeError("Gemini returned no candidates")

    text_parts = candidates[0].get("content", {}).get("parts", [])
    return "".join(p.get("text", "") for p in text_parts).strip()


def generate_text(prompt: str, system: Optional[str] = None, temperature: float = 0.9) -> str:
    return _generate_content(
        [{"text": prompt}],
        system=system,
        config={"temperature": temperature},
    )


def generate_json(prompt: str, system: Optional[str] = None) -> dict:
    text = _generate_content(
        [{"text": prompt}],
        system=system,
        config={"temperature": 0.7, "responseMimeType": "application/json"},
    )
    return _parse_json_response(text)


def trending_hashtags(narration: str, limit: int = 10) -> str:
    """Return up to `limit` hashtags for the narration, space separated."""
    text = generate_text(
        f'For a video with the following narration: "{narration}", list the top {limit} '
        "trending hashtags that are relevant to its theme. Provide only the hashtags "
        "separated by spaces.",
        temperature=0.4,
    )
    return " ".join(HASHTAG_PATTERN.findall(text)[:limit])
