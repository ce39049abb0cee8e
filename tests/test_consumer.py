"""Tests for the queue consumer loop body and scheduler."""

import time

from vidspark import consumer, metrics
from vidspark import queue as task_queue


class TestProcessOne:
    """One delivery: handler → ack | nack."""

    def test_empty_queue(self, redis_client):
        assert consumer.process_one(redis_client, "video_render", timeout=1) is None

    def test_success_acks(self, redis_client, monkeypatch):
        seen = []
        monkeypatch.setitem(consumer.HANDLERS, "video_render", seen.append)
        task_id = task_queue.enqueue_task(redis_client, "video_render", {"videoId": "v1"})

        assert consumer.process_one(redis_client, "video_render", timeout=1) is True

        assert seen == [{"videoId": "v1"}]
        assert task_queue.get_task_meta(redis_client, task_id)["status"] == "completed"
        snapshot = metrics.get_snapshot()
        assert snapshot["counters"]["tasks.video_render.ok"] == 1
        assert snapshot["latency"]["video_render"]["count"] == 1

    def test_failure_requeues_while_attempts_remain(self, redis_client, monkeypatch):
        def _boom(payload):
            raise RuntimeError("provider 503")

        monkeypatch.setitem(consumer.HANDLERS, "image_generate", _boom)
        task_id = task_queue.enqueue_task(redis_client, "image_generate", {"videoId": "v1"})

        assert consumer.process_one(redis_client, "image_generate", timeout=1) is False

        assert task_queue.get_queue_length(redis_client, "image_generate") == 1
        assert task_queue.get_task_meta(redis_client, task_id)["last_error"] == "provider 503"
        snapshot = metrics.get_snapshot()
        assert snapshot["counters"]["tasks.image_generate.failed"] == 1
        assert "tasks.image_generate.dead_letter" not in snapshot["counters"]
        assert snapshot["recent_errors"][0]["task_id"] == task_id

    def test_single_attempt_failure_dead_letters(self, redis_client, monkeypatch):
        def _boom(payload):
            raise RuntimeError("render service down")

        monkeypatch.setitem(consumer.HANDLERS, "video_render", _boom)
        task_id = task_queue.enqueue_task(redis_client, "video_render", {"videoId": "v1"})

        assert consumer.process_one(redis_client, "video_render", timeout=1) is False

        assert task_queue.get_dead_letter_jobs(redis_client) == [task_id]
        assert metrics.get_snapshot()["counters"]["tasks.video_render.dead_letter"] == 1

    def test_task_without_metadata_is_acked(self, redis_client, monkeypatch):
        called = []
        monkeypatch.setitem(consumer.HANDLERS, "video_render", called.append)
        task_id = task_queue.enqueue_task(redis_client, "video_render", {})
        redis_client.delete(f"{task_queue.META_PREFIX}{task_id}")

        assert consumer.process_one(redis_client, "video_render", timeout=1) is True
        assert called == []
        assert task_queue.get_processing_count(redis_client, "video_render") == 0


class TestScheduler:

    def test_promotes_due_tasks_across_handlers(self, redis_client, monkeypatch):
        task_queue.enqueue_task(redis_client, "sync_status", {"videoId": "v1"}, delay_seconds=0.001)
        task_queue.enqueue_task(redis_client, "voice_generate", {}, delay_seconds=0.001)
        task_queue.enqueue_task(redis_client, "sync_status", {"videoId": "v2"}, delay_seconds=3600)
        time.sleep(0.01)

        result = consumer.run_scheduler_once(redis_client)

        assert result == {"promoted": 2, "recovered": 0}
        assert redis_client.llen("taskqueue:sync_status:jobs") == 1
        assert redis_client.zcard("taskqueue:sync_status:delayed") == 1

    def test_every_handler_is_registered(self):
        from vidspark.pipeline.models import Handler
        assert set(consumer.HANDLERS) == {h.value for h in Handler}
        assert all(h.value in task_queue.HANDLER_LIMITS for h in Handler)
