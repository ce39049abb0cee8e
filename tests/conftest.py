"""
Pytest configuration and fixtures for the pipeline tests.
"""

import pytest
import fakeredis

from vidspark import clients, metrics
from vidspark.store import MemoryStore, now_ms
from vidspark.pipeline.models import VIDEOS
from vidspark.pipeline.scenes import prepare_scenes


@pytest.fixture
def store() -> MemoryStore:
    """A fresh in-memory record store, installed as the process-wide store."""
    s = MemoryStore()
    clients.set_store(s)
    yield s
    clients.set_store(None)


@pytest.fixture
def redis_client():
    """A fake Redis installed as the process-wide queue connection."""
    r = fakeredis.FakeRedis()
    clients.set_redis(r)
    yield r
    clients.set_redis(None)


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


def make_scenes(count: int) -> list[dict]:
    return [
        {"narration": f"Narration {i}", "imagePrompt": f"A castle at dawn, shot {i}"}
        for i in range(count)
    ]


@pytest.fixture
def make_video(store):
    """Create a drafted video with `scenes` scenes, all tracks pending."""
    def _make(scenes: int = 3, status: str = "draft", **fields) -> str:
        data = {
            "uid": "user-1",
            "title": "A test video",
            "status": status,
            "voiceId": "voice-1",
            "createdAt": now_ms(),
            **prepare_scenes(make_scenes(scenes)),
        }
        data.update(fields)
        return store.create(VIDEOS, data)
    return _make


def settle_track(store, video_id: str, track: str, scene_index: str, status: str = "completed", age_ms: int = 10_000):
    """Write a terminal track entry that has been stable for `age_ms`."""
    store.update(VIDEOS, video_id, {
        f"{track}.{scene_index}": {
            "statusMessage": status,
            "progress": 1 if status == "completed" else 0,
            "updatedAt": now_ms() - age_ms,
        },
    })


@pytest.fixture
def settle(store):
    def _settle(video_id: str, track: str, scene_index: str, status: str = "completed", age_ms: int = 10_000):
        settle_track(store, video_id, track, scene_index, status, age_ms)
    return _settle
