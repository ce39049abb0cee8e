"""
Story writing through Gemini.

  story_idea    {ideaId}                       prompt → ~1 minute narration
  story_request {videoId, narration, imageType} narration → title, description,
                                                3–5 scenes written onto the video (status draft)

Both handlers record failure on their record and never raise.
"""

import logging
from typing import Optional

from pydantic import ValidationError

from .. import gemini
from ..clients import dispatch, get_store
from ..store import Document, RecordStore, now_ms
from .models import (
    STORY_IDEAS,
    VIDEOS,
    Handler,
    StoryIdeaTask,
    StoryOutput,
    StoryRequestTask,
    StoryStatus,
    VideoStatus,
    status_rank,
)
from .scenes import prepare_scenes
from .status import mark_video_error

logger = logging.getLogger(__name__)

NARRATION_SYSTEM = (
    "Generate a short, creative narration text suitable for a YouTube Short video "
    "(around 1 minute in length) based on the given story idea."
)

STORY_SYSTEM = "Follow the instructions exactly. Output must be valid JSON matching the provided schema."


# ═════════════════════════════════════════════════════════════════════════════
# Story ideas
# ═════════════════════════════════════════════════════════════════════════════

def request_story_idea(
    store: RecordStore,
    prompt: str,
    uid: str,
    video_id: Optional[str] = None,
) -> str:
    """Create a pending story idea and queue its narration. Returns the idea id."""
    idea_id = store.create(STORY_IDEAS, {
        "prompt": prompt,
        "status": StoryStatus.PENDING.value,
        "uid": uid,
        "videoId": video_id,
        "createdAt": now_ms(),
    })
    dispatch(Handler.STORY_IDEA.value, {"ideaId": idea_id})
    return idea_id


def process_story_idea(payload: dict, store: Optional[RecordStore] = None):
    try:
        task = StoryIdeaTask.model_validate(payload)
    except ValidationError as e:
        logger.error(f"❌ Dropping story idea task with invalid payload {payload}: {e}")
        return

    store = store or get_store()
    idea_id = task.idea_id

    doc = store.get(STORY_IDEAS, idea_id)
    if doc is None:
        logger.error(f"❌ Story idea {idea_id} not found")
        return
    idea = doc.data
    if not idea.get("prompt"):
        logger.error(f"Story idea {idea_id} does not contain a prompt.")
        return
    if idea.get("status") != StoryStatus.PENDING.value:
        logger.info(f"Story idea {idea_id} is not pending. Current status: {idea.get('status')}")
        return

    logger.info(f"Starting processing for story idea: {idea_id}")
    try:
        narration = gemini.generate_text(
            "Generate a creative narration for a YouTube Short (about 1 minute) "
            f'for the following story idea: "{idea["prompt"]}"',
            system=NARRATION_SYSTEM,
        )
        if not narration:
            raise RuntimeError("Empty narration returned")

        store.update(STORY_IDEAS, idea_id, {
            "narration": narration,
            "status": StoryStatus.COMPLETED.value,
        })
        logger.info(f"Story idea {idea_id} narrated ({len(narration)} chars)")

    except Exception as e:
        message = str(e) or "Unknown error occurred"
        logger.error(f"Error generating narration for story idea {idea_id}: {message}", exc_info=True)
        store.update(STORY_IDEAS, idea_id, {
            "status": StoryStatus.ERROR.value,
            "error": message,
        })


# ═════════════════════════════════════════════════════════════════════════════
# Story requests
# ═════════════════════════════════════════════════════════════════════════════

def request_story(video_id: str, narration: str, image_type: Optional[str] = None) -> str:
    """Queue structuring of a narration into the video's scenes. Returns the task id."""
    return dispatch(Handler.STORY_REQUEST.value, {
        "videoId": video_id,
        "narration": narration,
        "imageType": image_type or "",
    })


def build_generation_prompt(narration: str, image_type: Optional[str] = None) -> str:
    style_instruction = (
        f'\n• IMPORTANT: For every scene\'s image prompt, integrate these style details: "{image_type}".'
        if image_type else ""
    )
    return f"""
You are a professional storyteller.
Using the provided narration below, generate a structured story that splits the narration into exactly 3 to 5 scenes and lasts under 1 minute.

Requirements:
- The story must have a title, a video description, and an array of scenes.
- Each scene must contain:
    "narration": a segment of the provided narration text,
    "imagePrompt": a detailed prompt that includes:
        - Consistent lighting and atmosphere across all scenes
        - Same art style and visual treatment throughout
        - If characters appear in multiple scenes, they must have identical appearance
        - Specific camera angles and composition details
        - Include "high quality, detailed, 8k, masterpiece" in every prompt{style_instruction}

Respond with JSON: {{"title": string, "description": string, "scenes": [{{"narration": string, "imagePrompt": string}}]}}

The description is a single line of text (include at least one smiley).

The narration is:
"{narration}"
"""


def format_description(description: str, hashtags: str) -> str:
    """First non-empty description line, a blank line, then the hashtags."""
    lines = [line.strip() for line in description.split("\n") if line.strip()]
    first = lines[0] if lines else ""
    return f"{first}\n\n{hashtags}"


def generate_story(narration: str, image_type: Optional[str] = None) -> StoryOutput:
    raw = gemini.generate_json(build_generation_prompt(narration, image_type), system=STORY_SYSTEM)
    story = StoryOutput.model_validate(raw)
    if not story.scenes:
        raise RuntimeError("Generated story has no scenes")
    return story


def process_story_request(payload: dict, store: Optional[RecordStore] = None):
    try:
        task = StoryRequestTask.model_validate(payload)
    except ValidationError as e:
        logger.error(f"❌ Dropping story request with invalid payload {payload}: {e}")
        return

    store = store or get_store()
    video_id = task.video_id
    if store.get(VIDEOS, video_id) is None:
        logger.error(f"❌ Video not found: {video_id}")
        return

    logger.info(f"Starting story request for video: {video_id}")
    try:
        story = generate_story(task.narration, task.image_type)
        hashtags = gemini.trending_hashtags(task.narration)
        description = format_description(story.description, hashtags)

        fields = prepare_scenes([s.model_dump(by_alias=True) for s in story.scenes])
        fields.update({
            "title": story.title,
            "description": description,
            "status": VideoStatus.DRAFT.value,
            "imageType": task.image_type or "",
        })

        def _write(doc: Document) -> Optional[dict]:
            current = doc.data.get("status")
            # Scenes are fixed once the video leaves drafting
            if current == VideoStatus.ERROR.value or status_rank(current) > status_rank(VideoStatus.DRAFT.value):
                logger.warning(f"Video {video_id} already at {current}, not replacing its scenes")
                return None
            return fields

        store.mutate(VIDEOS, video_id, _write)
        logger.info(f"Video {video_id} drafted with {len(story.scenes)} scene(s)")

    except Exception as e:
        message = str(e) or "Unknown error occurred"
        logger.error(f"Error generating story structure for video {video_id}: {message}", exc_info=True)
        mark_video_error(store, video_id, message)
