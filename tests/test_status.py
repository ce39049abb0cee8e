"""Tests for scene/asset aggregation and video status transitions."""

import pytest

from vidspark.store import now_ms
from vidspark.pipeline.models import VIDEOS, TrackStatus, VideoStatus, can_transition
from vidspark.pipeline.status import (
    advance_video_status,
    check_assets_ready,
    check_scene_status,
    derive_scene_status,
    is_settled,
)


class TestDeriveSceneStatus:
    """Combined per-scene status."""

    @pytest.mark.parametrize("image,voice", [
        ("processing", "completed"),
        ("completed", "processing"),
        ("processing", "failed"),
        ("processing", "processing"),
    ])
    def test_undecidable_while_processing(self, image, voice):
        assert derive_scene_status(image, voice) is None

    @pytest.mark.parametrize("image,voice", [
        ("failed", "completed"),
        ("completed", "failed"),
        ("failed", "failed"),
        ("failed", "pending"),
    ])
    def test_failed_if_either_failed(self, image, voice):
        assert derive_scene_status(image, voice) == TrackStatus.FAILED

    def test_completed_only_if_both_completed(self):
        assert derive_scene_status("completed", "completed") == TrackStatus.COMPLETED
        assert derive_scene_status("completed", "pending") is None


class TestCheckSceneStatus:
    """Persisted scene status."""

    def test_writes_completed_with_full_progress(self, store, make_video, settle):
        video_id = make_video(scenes=2)
        settle(video_id, "imageStatus", "1")
        settle(video_id, "voiceStatus", "1")

        assert check_scene_status(store, video_id, "1") == TrackStatus.COMPLETED

        entry = store.get(VIDEOS, video_id).data["sceneStatus"]["1"]
        assert entry["statusMessage"] == "completed"
        assert entry["progress"] == 1
        assert store.get(VIDEOS, video_id).data["sceneStatus"]["0"]["statusMessage"] == "pending"

    def test_no_write_while_a_track_is_processing(self, store, make_video, settle):
        video_id = make_video(scenes=1)
        settle(video_id, "imageStatus", "0", status="processing")
        settle(video_id, "voiceStatus", "0", status="failed")
        version = store.get(VIDEOS, video_id).version

        assert check_scene_status(store, video_id, "0") is None
        assert store.get(VIDEOS, video_id).version == version

    def test_idempotent(self, store, make_video, settle):
        video_id = make_video(scenes=1)
        settle(video_id, "imageStatus", "0", status="failed")
        settle(video_id, "voiceStatus", "0")

        first = check_scene_status(store, video_id, "0")
        second = check_scene_status(store, video_id, "0")

        assert first == second == TrackStatus.FAILED
        assert store.get(VIDEOS, video_id).data["sceneStatus"]["0"]["statusMessage"] == "failed"


class TestIsSettled:

    def test_terminal_and_old_enough(self):
        now = now_ms()
        assert is_settled({"statusMessage": "failed", "updatedAt": now - 5000}, now, 5000)

    def test_too_recent(self):
        now = now_ms()
        assert not is_settled({"statusMessage": "completed", "updatedAt": now - 100}, now, 5000)

    def test_not_terminal(self):
        now = now_ms()
        assert not is_settled({"statusMessage": "pending", "updatedAt": 0}, now, 5000)
        assert not is_settled(None, now, 5000)


class TestCheckAssetsReady:
    """Video-level readiness."""

    def _settle_all(self, settle, video_id, scenes, **kwargs):
        for i in range(scenes):
            settle(video_id, "imageStatus", str(i), **kwargs)
            settle(video_id, "voiceStatus", str(i), **kwargs)

    def test_sets_assets_ready_exactly_once(self, store, make_video, settle):
        video_id = make_video(scenes=3, status="processing:assets")
        self._settle_all(settle, video_id, 3)

        assert check_assets_ready(store, video_id) is True
        version = store.get(VIDEOS, video_id).version
        assert check_assets_ready(store, video_id) is False

        doc = store.get(VIDEOS, video_id)
        assert doc.data["status"] == "assets:ready"
        assert doc.version == version

    def test_failed_tracks_count_as_settled(self, store, make_video, settle):
        video_id = make_video(scenes=2, status="processing:assets")
        self._settle_all(settle, video_id, 2)
        settle(video_id, "imageStatus", "1", status="failed")

        assert check_assets_ready(store, video_id) is True

    def test_debounces_recent_writes(self, store, make_video, settle):
        video_id = make_video(scenes=2, status="processing:assets")
        self._settle_all(settle, video_id, 2)
        settle(video_id, "voiceStatus", "0", age_ms=1000)

        assert check_assets_ready(store, video_id, threshold_ms=5000) is False
        assert check_assets_ready(store, video_id, threshold_ms=5000, now=now_ms() + 5000) is True

    def test_missing_track_entry_blocks_readiness(self, store, make_video, settle):
        video_id = make_video(scenes=2, status="processing:assets")
        self._settle_all(settle, video_id, 2)
        doc = store.get(VIDEOS, video_id)
        voice = dict(doc.data["voiceStatus"])
        voice.pop("1")
        store.update(VIDEOS, video_id, {"voiceStatus": voice})

        assert check_assets_ready(store, video_id) is False

    def test_pending_scene_blocks_readiness(self, store, make_video, settle):
        video_id = make_video(scenes=3, status="processing:assets")
        settle(video_id, "imageStatus", "0")
        settle(video_id, "voiceStatus", "0")

        assert check_assets_ready(store, video_id) is False
        assert store.get(VIDEOS, video_id).data["status"] == "processing:assets"

    def test_never_moves_status_backwards(self, store, make_video, settle):
        video_id = make_video(scenes=1, status="render:complete")
        self._settle_all(settle, video_id, 1)

        assert check_assets_ready(store, video_id) is False
        assert store.get(VIDEOS, video_id).data["status"] == "render:complete"

    def test_errored_video_stays_errored(self, store, make_video, settle):
        video_id = make_video(scenes=1, status="error")
        self._settle_all(settle, video_id, 1)

        assert check_assets_ready(store, video_id) is False


class TestVideoStatusTransitions:

    def test_forward_only(self):
        assert can_transition("draft", "processing:assets")
        assert not can_transition("assets:ready", "processing:assets")
        assert not can_transition("render:complete", "render:error")

    def test_error_reachable_from_anywhere(self):
        for status in ("processing:story", "draft", "assets:ready", "render:complete", None):
            assert can_transition(status, "error")
        assert not can_transition("error", "draft")

    def test_rerender_allowed(self):
        assert can_transition("render:complete", "processing:render")
        assert can_transition("render:error", "processing:render")

    def test_advance_writes_extra_fields(self, store, make_video):
        video_id = make_video(scenes=1, status="assets:ready")

        assert advance_video_status(store, video_id, VideoStatus.PROCESSING_RENDER, {"renderStatus": {"progress": 0}})
        doc = store.get(VIDEOS, video_id)
        assert doc.data["status"] == "processing:render"
        assert doc.data["renderStatus"] == {"progress": 0}

    def test_advance_refuses_backwards(self, store, make_video):
        video_id = make_video(scenes=1, status="assets:ready")

        assert advance_video_status(store, video_id, VideoStatus.DRAFT) is False
        assert store.get(VIDEOS, video_id).data["status"] == "assets:ready"
