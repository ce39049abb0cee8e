"""Tests for the Redis task queue (against fakeredis)."""

import time

import fakeredis
import pytest

from vidspark import queue as task_queue


@pytest.fixture
def r():
    return fakeredis.FakeRedis()


class TestHandlerLimits:
    """Admission-control table."""

    def test_image_capped_below_voice(self):
        image = task_queue.get_limits("image_generate")
        voice = task_queue.get_limits("voice_generate")
        assert image.max_concurrency < voice.max_concurrency

    def test_publish_retries_five_times(self):
        assert task_queue.get_limits("youtube_upload").max_attempts == 5

    def test_unknown_handler_gets_defaults(self):
        assert task_queue.get_limits("nope") == task_queue.DEFAULT_LIMITS


class TestEnqueueDequeue:
    """Reliable delivery."""

    def test_fifo_per_handler(self, r):
        first = task_queue.enqueue_task(r, "voice_generate", {"n": 1})
        second = task_queue.enqueue_task(r, "voice_generate", {"n": 2})
        task_queue.enqueue_task(r, "image_generate", {"n": 3})

        assert task_queue.dequeue_task(r, "voice_generate", timeout=1) == first
        assert task_queue.dequeue_task(r, "voice_generate", timeout=1) == second
        assert task_queue.get_queue_length(r, "image_generate") == 1

    def test_payload_round_trips_through_meta(self, r):
        task_id = task_queue.enqueue_task(r, "sync_status", {"videoId": "v1", "attempt": 2})

        meta = task_queue.get_task_meta(r, task_id)
        assert meta["handler"] == "sync_status"
        assert task_queue.get_task_payload(meta) == {"videoId": "v1", "attempt": 2}
        assert meta["max_attempts"] == str(task_queue.get_limits("sync_status").max_attempts)

    def test_dequeue_moves_task_to_processing(self, r):
        task_id = task_queue.enqueue_task(r, "voice_generate", {})
        task_queue.dequeue_task(r, "voice_generate", timeout=1)

        assert task_queue.get_processing_count(r, "voice_generate") == 1
        assert task_queue.get_queue_length(r, "voice_generate") == 0
        assert "processing_started_at" in task_queue.get_task_meta(r, task_id)

    def test_dequeue_does_not_recreate_expired_metadata(self, r):
        task_id = task_queue.enqueue_task(r, "voice_generate", {})
        r.delete(f"{task_queue.META_PREFIX}{task_id}")

        assert task_queue.dequeue_task(r, "voice_generate", timeout=1) == task_id
        assert r.exists(f"{task_queue.META_PREFIX}{task_id}") == 0
        assert task_queue.get_task_meta(r, task_id) is None

    def test_ack_clears_processing(self, r):
        task_id = task_queue.enqueue_task(r, "voice_generate", {})
        task_queue.dequeue_task(r, "voice_generate", timeout=1)
        task_queue.ack_task(r, "voice_generate", task_id)

        assert task_queue.get_processing_count(r, "voice_generate") == 0
        assert task_queue.get_task_meta(r, task_id)["status"] == "completed"


class TestNack:
    """Retry budget and dead-lettering."""

    def test_requeues_until_attempts_spent(self, r):
        # image_generate allows 3 deliveries
        task_id = task_queue.enqueue_task(r, "image_generate", {})

        outcomes = []
        for _ in range(3):
            assert task_queue.dequeue_task(r, "image_generate", timeout=1) == task_id
            outcomes.append(task_queue.nack_task(r, "image_generate", task_id, "boom"))

        assert outcomes == [True, True, False]
        assert task_queue.get_dead_letter_jobs(r) == [task_id]
        meta = task_queue.get_task_meta(r, task_id)
        assert meta["status"] == "dead_letter"
        assert meta["last_error"] == "boom"

    def test_single_attempt_handler_dead_letters_immediately(self, r):
        task_id = task_queue.enqueue_task(r, "video_render", {})
        task_queue.dequeue_task(r, "video_render", timeout=1)

        assert task_queue.nack_task(r, "video_render", task_id) is False

    def test_retry_dead_letter(self, r):
        task_id = task_queue.enqueue_task(r, "video_render", {})
        task_queue.dequeue_task(r, "video_render", timeout=1)
        task_queue.nack_task(r, "video_render", task_id)

        assert task_queue.retry_dead_letter(r, task_id) is True
        assert task_queue.get_dead_letter_jobs(r) == []
        assert task_queue.dequeue_task(r, "video_render", timeout=1) == task_id

    def test_retry_ignores_tasks_outside_dead_letter(self, r):
        task_id = task_queue.enqueue_task(r, "video_render", {})

        assert task_queue.retry_dead_letter(r, task_id) is False
        assert task_queue.get_queue_length(r, "video_render") == 1


class TestDelayedAndStale:
    """Scheduling and crash recovery."""

    def test_delayed_task_waits_until_due(self, r):
        task_id = task_queue.enqueue_task(r, "sync_status", {"videoId": "v1"}, delay_seconds=5)

        assert task_queue.get_task_meta(r, task_id)["status"] == "scheduled"
        assert task_queue.promote_delayed(r, "sync_status") == 0
        assert task_queue.promote_delayed(r, "sync_status", now=time.time() + 6) == 1
        assert task_queue.dequeue_task(r, "sync_status", timeout=1) == task_id

    def test_delayed_task_counts_towards_queue_length(self, r):
        task_queue.enqueue_task(r, "sync_status", {}, delay_seconds=5)
        assert task_queue.get_queue_length(r, "sync_status") == 1

    def test_recover_stale_requeues_old_in_flight_tasks(self, r):
        task_id = task_queue.enqueue_task(r, "voice_generate", {})
        task_queue.dequeue_task(r, "voice_generate", timeout=1)
        r.hset(f"{task_queue.META_PREFIX}{task_id}", "processing_started_at", str(time.time() - 3600))

        assert task_queue.recover_stale_tasks(r, "voice_generate", timeout=60) == 1
        assert task_queue.get_processing_count(r, "voice_generate") == 0
        assert task_queue.get_queue_length(r, "voice_generate") == 1

    def test_recover_leaves_fresh_tasks_alone(self, r):
        task_queue.enqueue_task(r, "voice_generate", {})
        task_queue.dequeue_task(r, "voice_generate", timeout=1)

        assert task_queue.recover_stale_tasks(r, "voice_generate", timeout=60) == 0
        assert task_queue.get_processing_count(r, "voice_generate") == 1
