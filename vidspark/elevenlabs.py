"""
ElevenLabs integration: narration synthesis and word-level transcription.

- Text-to-speech: eleven_multilingual_v2, MP3 bytes back
- Speech-to-text: scribe_v1, transcript text plus per-word timings
"""

import os
import logging

import httpx

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

ELEVENLABS_API_KEY = os.environ.get("ELEVENLABS_API_KEY", "")
ELEVENLABS_API_BASE = "https://api.elevenlabs.io/v1"

TTS_MODEL = "eleven_multilingual_v2"
STT_MODEL = "scribe_v1"
VOICE_SETTINGS = {"stability": 0.5, "similarity_boost": 0.5}


def _headers() -> dict:
    if not ELEVENLABS_API_KEY:
        raise RuntimeError("ELEVENLABS_API_KEY not set")
    return {"xi-api-key": ELEVENLABS_API_KEY}


def text_to_speech(text: str, voice_id: str) -> bytes:
    """Synthesize `text` with the given voice. Returns MP3 bytes."""
    resp = httpx.post(
        f"{ELEVENLABS_API_BASE}/text-to-speech/{voice_id}",
        headers=_headers(),
        json={
            "text": text,
            "model_id": TTS_MODEL,
            "voice_settings": VOICE_SETTINGS,
        },
        timeout=120,
    )
    resp.raise_for_status()
    logger.info(f"TTS generated {len(resp.content)} bytes (voice={voice_id})")
    return resp.content


def speech_to_text(audio: bytes, filename: str) -> dict:
    """
    Transcribe MP3 audio.

    Returns the raw response: `{"text": ..., "words": [{"text", "start", "end", ...}]}`.
    """
    resp = httpx.post(
        f"{ELEVENLABS_API_BASE}/speech-to-text",
        headers=_headers(),
        data={"model_id": STT_MODEL},
        files={"file": (filename, audio, "audio/mpeg")},
        timeout=120,
    )
    resp.raise_for_status()
    return resp.json()
