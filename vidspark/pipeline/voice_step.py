"""
Voice step: one scene's narration audio and captions through ElevenLabs.

  processing/0.1 → TTS → 0.5 → R2 → speech-to-text
    → scenes[i].voiceUrl / captions / captionsWords → completed/1

Any failure marks the track failed and re-raises so the queue retries.
"""

import logging
from typing import Optional

from pydantic import ValidationError

from .. import elevenlabs
from ..clients import get_store
from ..store import RecordStore
from . import storage
from .models import VIDEOS, TrackStatus, VoiceTask
from .scenes import VOICE_TRACK, merge_scene_fields, set_track_status
from .status import check_assets_ready, check_scene_status

logger = logging.getLogger(__name__)


def process_voice_task(payload: dict, store: Optional[RecordStore] = None):
    try:
        task = VoiceTask.model_validate(payload)
    except ValidationError as e:
        logger.error(f"Dropping voice task with invalid payload {payload}: {e}")
        return

    store = store or get_store()
    video_id, scene_index = task.video_id, task.scene_index
    video = store.get(VIDEOS, video_id)
    if video is None:
        logger.error(f"Dropping voice task: video {video_id} not found")
        return
    if scene_index not in (video.data.get("scenes") or {}):
        logger.error(f"Dropping voice task: video {video_id} has no scene {scene_index}")
        return

    logger.info(f"🎙 Generating voice for video {video_id}, scene {scene_index}")

    try:
        set_track_status(store, video_id, VOICE_TRACK, scene_index, TrackStatus.PROCESSING, 0.1)

        audio = elevenlabs.text_to_speech(task.narration, task.voice_id)
        if not audio:
            raise RuntimeError("Failed to generate voice")

        store.update(VIDEOS, video_id, {f"{VOICE_TRACK}.{scene_index}.progress": 0.5})

        filename = f"scene_{scene_index}.mp3"
        voice_url = storage.upload_asset(video_id, filename, audio, "audio/mpeg")

        logger.info(f"🎤 Generating captions for video {video_id}, scene {scene_index}")
        transcription = elevenlabs.speech_to_text(audio, filename)
        transcript = transcription.get("text")
        words = transcription.get("words")
        if not transcript or not words:
            raise RuntimeError("Failed to generate transcript")

        merge_scene_fields(store, video_id, scene_index, {
            "voiceUrl": voice_url,
            "captions": transcript,
            "captionsWords": words,
        })
        set_track_status(store, video_id, VOICE_TRACK, scene_index, TrackStatus.COMPLETED, 1)
        logger.info(f"✅ Voice and captions generated for video {video_id}, scene {scene_index}")

    except Exception as e:
        logger.error(f"❌ Voice generation error for video {video_id}, scene {scene_index}: {e}", exc_info=True)
        set_track_status(store, video_id, VOICE_TRACK, scene_index, TrackStatus.FAILED, 0)
        raise

    finally:
        check_scene_status(store, video_id, scene_index)
        check_assets_ready(store, video_id)
