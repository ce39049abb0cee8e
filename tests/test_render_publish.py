"""Tests for the render trigger and the YouTube publish worker."""

from unittest.mock import patch

import pytest

from vidspark import remotion, youtube
from vidspark.pipeline import storage
from vidspark.pipeline.models import ACCOUNTS, VIDEOS
from vidspark.pipeline.publish import build_video_resource, format_publish_at, process_publish_task
from vidspark.pipeline.render import build_input_props, process_render_request


class TestRender:
    """Render trigger."""

    def test_success_records_video_url(self, store, make_video):
        video_id = make_video(scenes=2, status="assets:ready", musicVolume="0.3", musicUrl="https://m/a.mp3")
        polls = iter([
            {"overallProgress": 0.4, "done": False},
            {"overallProgress": 1, "done": True, "outputFile": "https://s3/out.mp4"},
        ])

        with patch.object(remotion, "start_render", return_value={"renderId": "r1", "bucketName": "b"}) as start, \
             patch.object(remotion, "get_render_progress", side_effect=lambda *_: next(polls)):
            process_render_request({"videoId": video_id}, store=store, poll_interval=0)

        props = start.call_args[0][0]
        assert props["musicVolume"] == pytest.approx(0.3)
        assert props["musicUrl"] == "https://m/a.mp3"
        assert set(props["scenes"]) == {"0", "1"}

        doc = store.get(VIDEOS, video_id)
        assert doc.data["status"] == "render:complete"
        assert doc.data["renderStatus"]["videoUrl"] == "https://s3/out.mp4"
        assert doc.data["renderStatus"]["progress"] == 1

    def test_fatal_error_sets_render_error(self, store, make_video):
        video_id = make_video(scenes=1, status="assets:ready")
        failed = {"overallProgress": 0.2, "done": False, "fatalErrorEncountered": True,
                  "errors": [{"message": "Lambda crashed"}]}

        with patch.object(remotion, "start_render", return_value={"renderId": "r1", "bucketName": "b"}), \
             patch.object(remotion, "get_render_progress", return_value=failed):
            process_render_request({"videoId": video_id}, store=store, poll_interval=0)

        doc = store.get(VIDEOS, video_id)
        assert doc.data["status"] == "render:error"
        assert "Lambda crashed" in doc.data["renderStatus"]["error"]

    def test_timeout_sets_render_error(self, store, make_video):
        video_id = make_video(scenes=1, status="assets:ready")

        with patch.object(remotion, "start_render", return_value={"renderId": "r1", "bucketName": "b"}), \
             patch.object(remotion, "get_render_progress", return_value={"overallProgress": 0.5}) as progress:
            process_render_request({"videoId": video_id}, store=store, poll_interval=0, max_polls=3)

        assert progress.call_count == 3
        doc = store.get(VIDEOS, video_id)
        assert doc.data["status"] == "render:error"
        assert doc.data["renderStatus"]["error"] == "Render timed out"

    def test_missing_render_id_sets_render_error(self, store, make_video):
        video_id = make_video(scenes=1, status="assets:ready")

        with patch.object(remotion, "start_render", return_value={}):
            process_render_request({"videoId": video_id}, store=store, poll_interval=0)

        assert store.get(VIDEOS, video_id).data["status"] == "render:error"

    def test_not_ready_video_is_not_rendered(self, store, make_video):
        video_id = make_video(scenes=1, status="processing:assets")

        with patch.object(remotion, "start_render") as start:
            process_render_request({"videoId": video_id}, store=store, poll_interval=0)

        start.assert_not_called()
        assert store.get(VIDEOS, video_id).data["status"] == "processing:assets"

    def test_duplicate_request_while_rendering_is_skipped(self, store, make_video):
        video_id = make_video(scenes=1, status="processing:render")

        with patch.object(remotion, "start_render") as start:
            process_render_request({"videoId": video_id}, store=store, poll_interval=0)

        start.assert_not_called()

    def test_rerender_after_completion(self, store, make_video):
        video_id = make_video(scenes=1, status="render:complete")

        with patch.object(remotion, "start_render", return_value={"renderId": "r2", "bucketName": "b"}), \
             patch.object(remotion, "get_render_progress",
                          return_value={"overallProgress": 1, "done": True, "outputFile": "https://s3/v2.mp4"}):
            process_render_request({"videoId": video_id}, store=store, poll_interval=0)

        assert store.get(VIDEOS, video_id).data["renderStatus"]["videoUrl"] == "https://s3/v2.mp4"

    def test_input_props_default_music(self):
        props = build_input_props({"scenes": {"0": {}}, "musicVolume": None})
        assert props["musicVolume"] == 0.0
        assert props["musicUrl"] is None


@pytest.fixture
def channel(store):
    store.create(ACCOUNTS, {"token": "old-token", "refreshToken": "refresh-1", "platform": "youtube"}, doc_id="chan-1")
    return "chan-1"


class TestPublish:
    """YouTube upload."""

    def _rendered(self, make_video):
        return make_video(
            scenes=1,
            status="render:complete",
            title="Castle",
            description="A castle :)",
            renderStatus={"progress": 1, "videoUrl": "https://s3/out.mp4"},
        )

    def test_upload_records_video_id_and_rotated_token(self, store, make_video, channel):
        video_id = self._rendered(make_video)

        def _upload(token, data, snippet, status, on_progress=None):
            on_progress(50, 100)
            return {"id": "yt123"}

        with patch.object(youtube, "refresh_access_token",
                          return_value={"access_token": "new-token", "refresh_token": "refresh-2"}), \
             patch.object(storage, "download_bytes", return_value=b"mp4") as download, \
             patch.object(youtube, "upload_video", side_effect=_upload) as upload:
            result = process_publish_task(
                {"videoId": video_id, "channelId": channel, "privacy": "private",
                 "publishAt": "2025-01-31T10:00:00", "timezone": "America/New_York"},
                store=store,
            )

        assert result == "yt123"
        download.assert_called_once_with("https://s3/out.mp4", timeout=300)
        token, data, snippet, status = upload.call_args[0]
        assert token == "new-token"
        assert snippet == {"title": "Castle", "description": "A castle :)"}
        assert status["publishAt"] == "2025-01-31T15:00:00.000Z"

        video = store.get(VIDEOS, video_id).data
        assert video["youtubeVideoId"] == "yt123"
        assert video["uploadStatus"]["youtube"] == {
            "progress": 100, "videoId": "yt123", "videoUrl": "https://youtu.be/yt123",
        }
        account = store.get(ACCOUNTS, channel).data
        assert account["token"] == "new-token"
        assert account["refreshToken"] == "refresh-2"

    def test_refresh_failure_reraises(self, store, make_video, channel):
        video_id = self._rendered(make_video)

        with patch.object(youtube, "refresh_access_token", side_effect=RuntimeError("invalid_grant")), \
             patch.object(youtube, "upload_video") as upload:
            with pytest.raises(RuntimeError, match="invalid_grant"):
                process_publish_task({"videoId": video_id, "channelId": channel}, store=store)

        upload.assert_not_called()

    def test_missing_account_is_dropped(self, store, make_video):
        video_id = self._rendered(make_video)

        with patch.object(youtube, "refresh_access_token") as refresh:
            assert process_publish_task({"videoId": video_id, "channelId": "nope"}, store=store) is None
        refresh.assert_not_called()

    def test_unrendered_video_is_dropped(self, store, make_video, channel):
        video_id = make_video(scenes=1, status="assets:ready")

        with patch.object(youtube, "refresh_access_token") as refresh:
            assert process_publish_task({"videoId": video_id, "channelId": channel}, store=store) is None
        refresh.assert_not_called()


class TestPublishFormatting:

    def test_public_upload_is_never_scheduled(self):
        _, status = build_video_resource({}, "public", "2025-01-31T15:00:00.000Z")
        assert status == {"privacyStatus": "public", "selfDeclaredMadeForKids": False}

    def test_private_upload_keeps_schedule(self):
        _, status = build_video_resource({}, "private", "2025-01-31T15:00:00.000Z")
        assert status["publishAt"] == "2025-01-31T15:00:00.000Z"

    @pytest.mark.parametrize("value,tz,expected", [
        ("2025-01-31T18:00:00Z", None, "2025-01-31T18:00:00.000Z"),
        ("2025-01-31T18:00:00+02:00", "America/New_York", "2025-01-31T16:00:00.000Z"),
        ("2025-07-01T12:30:00", "Europe/Paris", "2025-07-01T10:30:00.000Z"),
        ("2025-01-31T18:00:00", None, "2025-01-31T18:00:00.000Z"),
    ])
    def test_format_publish_at(self, value, tz, expected):
        assert format_publish_at(value, tz) == expected

    @pytest.mark.parametrize("value,tz", [(None, None), ("", None), ("tomorrow", None), ("2025-01-31T18:00:00", "Mars/Base")])
    def test_format_publish_at_invalid(self, value, tz):
        assert format_publish_at(value, tz) is None
