"""
Bulk orchestrator: one bulk request → N independent video pipelines.

Each iteration drives one video up to the point the coordinator can take
over:

  1. create the video (drafting metadata only, status processing:story)
  2. story idea → wait until narrated          (≤30 × 2s)
  3. story request → wait until scenes exist   (≤30 × 2s)
  4. new-video signal → coordinator

Iterations run on a pool of BULK_MAX_PARALLEL threads (1 = one after the
other) and each has a deadline of BULK_ITERATION_TIMEOUT_SECONDS, honoured
by both waits. A failed iteration is recorded as "Video {n}" and the batch
carries on. Cancellation stops iterations that have not started yet.
"""

import os
import time
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from pydantic import ValidationError

from ..clients import dispatch, get_store
from ..store import Document, DocumentNotFoundError, RecordStore, now_ms
from .coordinator import signal_pending_video
from .models import (
    BULK_JOBS,
    BULK_TERMINAL_STATUSES,
    CONTENT_TYPES,
    STORY_IDEAS,
    TEMPLATES,
    VIDEOS,
    BulkJobCreateRequest,
    BulkJobStatus,
    BulkJobTask,
    Handler,
    StoryStatus,
    VideoStatus,
)
from .story import request_story, request_story_idea

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

BULK_MAX_PARALLEL = max(1, int(os.getenv("BULK_MAX_PARALLEL", "1")))
BULK_ITERATION_TIMEOUT_SECONDS = float(os.getenv("BULK_ITERATION_TIMEOUT_SECONDS", "300"))

POLL_ATTEMPTS = 30
POLL_DELAY = 2  # seconds

MIN_COUNT = 1
MAX_COUNT = 20

UNIQUE_SUFFIX = (
    " Create a completely unique video different from others. "
    "Make it highly specific and distinct. Variation #{n} of {count}."
)


class BulkJobError(Exception):
    """The job cannot run at all (bad template, content type or prompt)."""


class IterationCancelled(Exception):
    pass


def resolve_topic_prompt(store: RecordStore, job: dict) -> tuple[dict, str]:
    """
    Look up the job's template and pick the prompt to vary per video:
    the job's topic prompt when given, else the content type's default.

    Raises BulkJobError when neither exists.
    """
    template_id = job.get("templateId") or ""
    template_doc = store.get(TEMPLATES, template_id) if template_id else None
    if template_doc is None:
        raise BulkJobError(f"Template {template_id} not found")
    template = template_doc.data

    content_type_id = template.get("contentTypeId") or ""
    content_type_doc = store.get(CONTENT_TYPES, content_type_id) if content_type_id else None
    if content_type_doc is None:
        raise BulkJobError(f"Content type {content_type_id} not found")

    topic_prompt = (job.get("topicPrompt") or "").strip()
    base_prompt = (content_type_doc.data.get("prompt") or "").strip()
    if not topic_prompt and not base_prompt:
        raise BulkJobError(
            f"Content type {content_type_id} has no default prompt defined. A topic prompt "
            "must be provided when using this content type for bulk creation."
        )
    return template, topic_prompt or base_prompt


def unique_prompt(prompt: str, index: int, count: int) -> str:
    return prompt + UNIQUE_SUFFIX.format(n=index + 1, count=count)


def draft_video_fields(job_id: str, job: dict, template: dict, index: int) -> dict:
    return {
        "uid": job.get("userId"),
        "title": f"Generated from template: {template.get('name') or 'Unnamed Template'} ({index + 1})",
        "status": VideoStatus.PROCESSING_STORY.value,
        "templateId": job.get("templateId"),
        "imageTypeId": template.get("imageStyleId") or "",
        "voiceId": template.get("voiceId") or "",
        "contentTypeId": template.get("contentTypeId") or "",
        "styling": template.get("styling"),
        "textPosition": template.get("textPosition") or "top",
        "showTitle": template.get("showTitle", True),
        "musicId": template.get("musicId"),
        "musicVolume": template.get("musicVolume", 0.5),
        "bulkJobId": job_id,
        "createdAt": now_ms(),
    }


# ═════════════════════════════════════════════════════════════════════════════
# Orchestrator
# ═════════════════════════════════════════════════════════════════════════════

class BulkOrchestrator:
    """
    Runs one bulk job to completion.

    Usage:
        BulkOrchestrator().run(job_id)
    """

    def __init__(
        self,
        store: Optional[RecordStore] = None,
        poll_attempts: int = POLL_ATTEMPTS,
        poll_delay: float = POLL_DELAY,
        max_parallel: int = BULK_MAX_PARALLEL,
        iteration_timeout: float = BULK_ITERATION_TIMEOUT_SECONDS,
    ):
        self.store = store or get_store()
        self.poll_attempts = poll_attempts
        self.poll_delay = poll_delay
        self.max_parallel = max(1, max_parallel)
        self.iteration_timeout = iteration_timeout

    # ── Waits ────────────────────────────────────────────────────────────

    def _sleep_or_timeout(self, deadline: Optional[float], what: str):
        if deadline is not None and time.monotonic() >= deadline:
            raise TimeoutError(f"Iteration deadline passed waiting for {what}")
        time.sleep(self.poll_delay)

    def wait_for_story_idea(self, idea_id: str, deadline: Optional[float] = None) -> dict:
        """Poll a story idea until narrated. Raises on error or timeout."""
        for _ in range(self.poll_attempts):
            doc = self.store.get(STORY_IDEAS, idea_id)
            if doc is None:
                raise RuntimeError(f"Story idea {idea_id} not found")

            status = doc.data.get("status")
            if status == StoryStatus.COMPLETED.value:
                return doc.data
            if status in (StoryStatus.ERROR.value, StoryStatus.FAILED.value):
                raise RuntimeError(
                    f"Story idea {idea_id} processing failed: {doc.data.get('error') or 'Unknown error'}"
                )
            self._sleep_or_timeout(deadline, f"story idea {idea_id}")

        raise TimeoutError(f"Timed out waiting for story idea {idea_id} to be processed")

    def wait_for_scenes(self, video_id: str, deadline: Optional[float] = None) -> dict:
        """Poll a video until its scenes exist. Raises on error or timeout."""
        for _ in range(self.poll_attempts):
            doc = self.store.get(VIDEOS, video_id)
            if doc is None:
                raise RuntimeError(f"Video {video_id} not found")

            if doc.data.get("scenes"):
                return doc.data
            if doc.data.get("status") == VideoStatus.ERROR.value:
                raise RuntimeError(
                    f"Video {video_id} processing failed: {doc.data.get('error') or 'Unknown error'}"
                )
            self._sleep_or_timeout(deadline, f"scenes of video {video_id}")

        raise TimeoutError(f"Timed out waiting for video {video_id} to be processed by story request")

    # ── Job record ───────────────────────────────────────────────────────

    def _is_cancelled(self, job_id: str) -> bool:
        doc = self.store.get(BULK_JOBS, job_id)
        return doc is not None and doc.data.get("status") == BulkJobStatus.CANCELLED.value

    def _record_result(self, job_id: str, count: int, video_id: Optional[str] = None, failure: Optional[str] = None):
        def _fn(doc: Document) -> dict:
            completed = list(doc.data.get("completedVideos") or [])
            failed = list(doc.data.get("failedVideos") or [])
            if video_id:
                completed.append(video_id)
            if failure:
                failed.append(failure)
            return {
                "completedVideos": completed,
                "failedVideos": failed,
                "progress": round((len(completed) + len(failed)) / count * 100),
            }

        self.store.mutate(BULK_JOBS, job_id, _fn)

    def _finish(self, job_id: str, status: BulkJobStatus, error: Optional[str] = None) -> str:
        """Write the terminal status unless the job was cancelled meanwhile."""
        final = status.value

        def _fn(doc: Document) -> Optional[dict]:
            nonlocal final
            if doc.data.get("status") == BulkJobStatus.CANCELLED.value:
                final = BulkJobStatus.CANCELLED.value
                return {"completedAt": now_ms()}
            patch = {"status": status.value, "progress": 100, "completedAt": now_ms()}
            if error:
                patch["error"] = error
            return patch

        self.store.mutate(BULK_JOBS, job_id, _fn)
        return final

    # ── Iterations ───────────────────────────────────────────────────────

    def run_iteration(self, job_id: str, job: dict, template: dict, prompt: str, index: int) -> str:
        """Drive one video to the coordinator. Returns its id."""
        if self._is_cancelled(job_id):
            raise IterationCancelled()

        count = job["count"]
        deadline = time.monotonic() + self.iteration_timeout
        logger.info(f"Processing video {index + 1} of {count} for job {job_id}")

        video_id = self.store.create(VIDEOS, draft_video_fields(job_id, job, template, index))
        logger.info(f"Created video {video_id} for bulk job {job_id}")

        idea_id = request_story_idea(self.store, unique_prompt(prompt, index, count), job.get("userId"), video_id)
        idea = self.wait_for_story_idea(idea_id, deadline)
        logger.info(f"Story idea {idea_id} processed for video {video_id}")

        self.store.update(VIDEOS, video_id, {"narration": idea["narration"]})
        request_story(video_id, idea["narration"], template.get("imageStyleId") or "")
        self.wait_for_scenes(video_id, deadline)
        logger.info(f"Story request for video {video_id} processed")

        signal_pending_video(video_id)
        logger.info(f"Handed video {video_id} to the pipeline coordinator")
        return video_id

    def _run_one(self, job_id: str, job: dict, template: dict, prompt: str, index: int) -> bool:
        """Run an iteration and record its outcome. Returns False if cancelled before starting."""
        count = job["count"]
        try:
            video_id = self.run_iteration(job_id, job, template, prompt, index)
        except IterationCancelled:
            logger.info(f"Job {job_id} cancelled, skipping video {index + 1}")
            return False
        except Exception as e:
            logger.error(f"Error processing video {index + 1} in bulk job {job_id}: {e}", exc_info=True)
            self._record_result(job_id, count, failure=f"Video {index + 1}")
            return True

        self._record_result(job_id, count, video_id=video_id)
        return True

    def run(self, job_id: str) -> Optional[str]:
        """Process a queued job. Returns its final status, or None if it was not runnable."""
        claimed = False

        def _claim(doc: Document) -> Optional[dict]:
            nonlocal claimed
            claimed = doc.data.get("status") == BulkJobStatus.QUEUED.value
            if not claimed:
                return None
            return {"status": BulkJobStatus.PROCESSING.value, "progress": 0}

        try:
            doc = self.store.mutate(BULK_JOBS, job_id, _claim)
        except DocumentNotFoundError:
            logger.error(f"❌ Bulk job {job_id} not found")
            return None
        if not claimed:
            logger.info(f"Job {job_id} is not in queued state ({doc.data.get('status')}), skipping processing")
            return None

        job = doc.data
        logger.info(f"📝 Processing bulk job {job_id}")

        try:
            template, prompt = resolve_topic_prompt(self.store, job)
        except BulkJobError as e:
            logger.error(f"Bulk job {job_id} cannot run: {e}")
            return self._finish(job_id, BulkJobStatus.FAILED, error=str(e))

        count = int(job.get("count") or 0)
        job = {**job, "count": count}

        with ThreadPoolExecutor(max_workers=self.max_parallel, thread_name_prefix=f"bulk-{job_id[:8]}") as pool:
            futures = [
                pool.submit(self._run_one, job_id, job, template, prompt, i)
                for i in range(count)
            ]
            for future in futures:
                future.result()

        final_doc = self.store.get(BULK_JOBS, job_id)
        completed = final_doc.data.get("completedVideos") or []
        failed = final_doc.data.get("failedVideos") or []

        if not completed:
            status = BulkJobStatus.FAILED
        elif failed:
            status = BulkJobStatus.COMPLETED_WITH_ERRORS
        else:
            status = BulkJobStatus.COMPLETED

        final = self._finish(job_id, status)
        logger.info(
            f"✅ Bulk job {job_id} processed. Status: {final} "
            f"({len(completed)} completed, {len(failed)} failed)"
        )
        return final


def process_bulk_job(payload: dict, store: Optional[RecordStore] = None):
    try:
        task = BulkJobTask.model_validate(payload)
    except ValidationError as e:
        logger.error(f"❌ Dropping bulk job task with invalid payload {payload}: {e}")
        return

    orchestrator = BulkOrchestrator(store=store)
    try:
        orchestrator.run(task.job_id)
    except Exception as e:
        logger.error(f"Error processing bulk job {task.job_id}: {e}", exc_info=True)
        orchestrator._finish(task.job_id, BulkJobStatus.FAILED, error=str(e))


# ═════════════════════════════════════════════════════════════════════════════
# Job lifecycle
# ═════════════════════════════════════════════════════════════════════════════

def create_bulk_job(store: RecordStore, request: BulkJobCreateRequest) -> str:
    """
    Validate and queue a bulk job. Returns the job id.

    Raises ValueError for a bad request and LookupError for a missing
    template or content type.
    """
    if request.count < MIN_COUNT or request.count > MAX_COUNT:
        raise ValueError(f"Count must be between {MIN_COUNT} and {MAX_COUNT}")

    template_doc = store.get(TEMPLATES, request.template_id)
    if template_doc is None:
        raise LookupError("Template not found")

    content_type_doc = store.get(CONTENT_TYPES, template_doc.data.get("contentTypeId") or "")
    if content_type_doc is None:
        raise LookupError("Content type not found")

    has_default_prompt = bool((content_type_doc.data.get("prompt") or "").strip())
    if not has_default_prompt and not request.topic_prompt.strip():
        raise ValueError("Topic prompt is required for content types without a default prompt")

    job_id = store.create(BULK_JOBS, {
        "userId": request.user_id,
        "templateId": request.template_id,
        "count": request.count,
        "topicPrompt": request.topic_prompt,
        "status": BulkJobStatus.QUEUED.value,
        "progress": 0,
        "createdAt": now_ms(),
        "completedVideos": [],
        "failedVideos": [],
    })
    store.update(BULK_JOBS, job_id, {"id": job_id})
    store.update(TEMPLATES, request.template_id, {"lastUsedAt": now_ms()})

    dispatch(Handler.BULK_JOB.value, {"jobId": job_id})
    logger.info(f"Queued bulk job {job_id}: {request.count} video(s) from template {request.template_id}")
    return job_id


def cancel_bulk_job(store: RecordStore, job_id: str) -> dict:
    """
    Cancel a job that has not finished. Returns the updated job.

    Raises LookupError if the job does not exist and ValueError if it
    already reached a terminal status.
    """
    def _fn(doc: Document) -> dict:
        status = doc.data.get("status")
        if status in BULK_TERMINAL_STATUSES:
            raise ValueError(f"Job is already {status}")
        return {"status": BulkJobStatus.CANCELLED.value, "cancelledAt": now_ms()}

    try:
        doc = store.mutate(BULK_JOBS, job_id, _fn)
    except DocumentNotFoundError:
        raise LookupError("Job not found")

    logger.info(f"Cancelled bulk job {job_id}")
    return {"id": job_id, **doc.data}
