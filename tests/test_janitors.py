"""
Tests for the scheduled janitors.
"""

from datetime import datetime, timedelta, timezone

import pytest

from chatrelay.services.deadline import Deadline
from chatrelay.services.janitors import Janitors, storage_path_from_url
from chatrelay.services.push import TOKEN_NOT_REGISTERED
from chatrelay.services.tokens import TokenResolver

from tests.fakes import FakePush, FakeRealtime, FakeStorage, FakeStore, seed_chat

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def ago(**kwargs) -> datetime:
    return NOW - timedelta(**kwargs)


@pytest.fixture()
def env():
    store, realtime, storage = FakeStore(), FakeRealtime(), FakeStorage()
    push = FakePush()
    janitors = Janitors(store, TokenResolver(store), push, realtime, storage, page_size=2, now=lambda: NOW)
    return store, realtime, storage, push, janitors


class TestDisappearingMessages:
    async def test_deletes_only_expired_messages(self, env):
        store, *_, janitors = env
        seed_chat(store, "timed", disappearingDuration=3600)
        seed_chat(store, "forever")
        store.seed("chat_rooms/timed/messages/old1", {"createdAt": ago(hours=2)})
        store.seed("chat_rooms/timed/messages/old2", {"createdAt": ago(hours=3)})
        store.seed("chat_rooms/timed/messages/old3", {"createdAt": ago(days=1)})
        store.seed("chat_rooms/timed/messages/new", {"createdAt": ago(minutes=5)})
        store.seed("chat_rooms/forever/messages/ancient", {"createdAt": ago(days=400)})

        result = await janitors.sweep_disappearing_messages()

        assert result == {"rooms": 1, "deleted": 3}
        assert store.paths_under("chat_rooms/timed/messages") == ["chat_rooms/timed/messages/new"]
        assert store.doc("chat_rooms/forever/messages/ancient") is not None

    async def test_expired_deadline_stops_before_work(self, env):
        store, *_, janitors = env
        seed_chat(store, "timed", disappearingDuration=60)
        store.seed("chat_rooms/timed/messages/old", {"createdAt": ago(hours=1)})

        result = await janitors.sweep_disappearing_messages(Deadline(0))

        assert result == {"rooms": 0, "deleted": 0}
        assert store.doc("chat_rooms/timed/messages/old") is not None


class TestExpiredStories:
    async def test_story_with_nested_data_and_media(self, env):
        store, _, storage, _, janitors = env
        storage.blobs.update({"stories/alice/s1.jpg", "stories/alice/s1_thumb.jpg"})
        store.seed("stories/s1", {
            "userId": "alice",
            "expiresAt": ago(minutes=1),
            "mediaUrl": "https://firebasestorage.googleapis.com/v0/b/app.appspot.com/o/stories%2Falice%2Fs1.jpg?alt=media",
            "thumbnailUrl": "gs://app.appspot.com/stories/alice/s1_thumb.jpg",
        })
        store.seed("stories/s1/views/bob", {})
        store.seed("stories/s1/reactions/carol", {})
        store.seed("stories/s2", {"userId": "alice", "expiresAt": NOW + timedelta(hours=5)})

        result = await janitors.sweep_expired_stories()

        assert result == {"stories": 1, "nested": 2, "media": 2}
        assert store.doc("stories/s1") is None
        assert store.doc("stories/s1/views/bob") is None
        assert store.doc("stories/s2") is not None
        assert storage.blobs == set()

    async def test_pages_through_many_stories(self, env):
        store, *_, janitors = env
        for i in range(5):
            store.seed(f"stories/s{i}", {"userId": "alice", "expiresAt": ago(hours=1)})
        result = await janitors.sweep_expired_stories()
        assert result["stories"] == 5
        assert store.paths_under("stories") == []

    async def test_missing_media_is_not_an_error(self, env):
        store, *_, janitors = env
        store.seed("stories/s1", {"expiresAt": ago(hours=1), "mediaUrl": "gs://bucket/stories/gone.jpg"})
        result = await janitors.sweep_expired_stories()
        assert result == {"stories": 1, "nested": 0, "media": 0}


class TestStaleCalls:
    async def test_stuck_calls_become_missed(self, env):
        store, *_, janitors = env
        store.seed("calls/stuck", {"status": "ringing", "createdAt": ago(minutes=10)})
        store.seed("calls/dialing", {"status": "calling", "createdAt": ago(minutes=3)})
        store.seed("calls/fresh", {"status": "ringing", "createdAt": ago(seconds=30)})
        store.seed("calls/done", {"status": "ended", "createdAt": ago(hours=1)})

        result = await janitors.sweep_stale_calls()

        assert result == {"checked": 2, "missed": 2}
        stuck = store.doc("calls/stuck")
        assert stuck["status"] == "missed"
        assert stuck["endReason"] == "timeout"
        assert store.doc("calls/fresh")["status"] == "ringing"
        assert store.doc("calls/done")["status"] == "ended"

    async def test_call_answered_meanwhile_is_left_alone(self, env):
        store, *_, janitors = env
        store.seed("calls/c1", {"status": "ringing", "createdAt": ago(minutes=10)})
        original = store.query

        async def _answer_after_query(*args, **kwargs):
            docs = await original(*args, **kwargs)
            store.docs["calls/c1"]["status"] = "connected"
            return docs

        store.query = _answer_after_query
        result = await janitors.sweep_stale_calls()

        assert result == {"checked": 1, "missed": 0}
        assert store.doc("calls/c1")["status"] == "connected"


class TestStaleTokens:
    async def test_age_sweep_and_validation(self, env):
        store, _, _, push, janitors = env
        push.dead_tokens = {"revoked": TOKEN_NOT_REGISTERED}
        store.seed("fcmTokens/ancient", {"uid": "alice", "updatedAt": ago(days=90)})
        store.seed("fcmTokens/revoked", {"uid": "bob", "updatedAt": ago(days=1)})
        store.seed("fcmTokens/healthy", {"uid": "carol", "updatedAt": ago(days=1)})

        result = await janitors.sweep_stale_tokens()

        assert result == {"staleDeleted": 1, "validated": 2, "invalidDeleted": 1}
        assert store.paths_under("fcmTokens") == ["fcmTokens/healthy"]
        assert sorted(push.validated) == ["healthy", "revoked"]

    async def test_validation_sample_disabled(self, env):
        store, realtime, storage, push, _ = env
        janitors = Janitors(store, TokenResolver(store), push, realtime, storage,
                            token_validation_sample=0, now=lambda: NOW)
        store.seed("fcmTokens/t", {"uid": "alice", "updatedAt": ago(days=1)})
        result = await janitors.sweep_stale_tokens()
        assert result["validated"] == 0
        assert push.validated == []


class TestPresenceAndTyping:
    async def test_stale_presence_marked_offline(self, env):
        _, realtime, _, _, janitors = env
        now_ms = int(NOW.timestamp() * 1000)
        realtime.tree["presence"] = {
            "alice": {"online": True, "updatedAt": now_ms - 10 * 60 * 1000},
            "bob": {"online": True, "updatedAt": now_ms - 10 * 1000},
            "carol": {"online": False, "updatedAt": 0},
        }

        result = await janitors.sweep_stale_presence()

        assert result == {"cleaned": 1}
        assert realtime.tree["presence"]["alice"]["online"] is False
        assert realtime.tree["presence"]["alice"]["lastSeen"] == now_ms - 10 * 60 * 1000
        assert realtime.tree["presence"]["bob"]["online"] is True

    async def test_empty_presence_tree(self, env):
        *_, janitors = env
        assert await janitors.sweep_stale_presence() == {"cleaned": 0}

    async def test_stale_typing_indicators_across_rooms(self, env):
        store, *_, janitors = env
        store.seed("chat_rooms/r1/typing/alice", {"updatedAt": ago(minutes=2)})
        store.seed("chat_rooms/r2/typing/bob", {"updatedAt": ago(minutes=5)})
        store.seed("chat_rooms/r2/typing/carol", {"updatedAt": ago(seconds=5)})

        result = await janitors.sweep_typing_indicators()

        assert result == {"deleted": 2}
        assert store.paths_under("chat_rooms/r2/typing") == ["chat_rooms/r2/typing/carol"]


class TestNotificationLogs:
    async def test_retention_window(self, env):
        store, *_, janitors = env
        store.seed("notificationLogs/old", {"createdAt": ago(days=45)})
        store.seed("notificationLogs/recent", {"createdAt": ago(days=2)})
        assert await janitors.sweep_notification_logs() == {"deleted": 1}
        assert store.paths_under("notificationLogs") == ["notificationLogs/recent"]


class TestStoragePathFromUrl:
    @pytest.mark.parametrize("url,expected", [
        ("gs://bucket/stories/a/b.jpg", "stories/a/b.jpg"),
        ("https://firebasestorage.googleapis.com/v0/b/x/o/stories%2Fa%2Fb.jpg?alt=media&token=1", "stories/a/b.jpg"),
        ("https://example.com/picture.jpg", None),
        ("gs://bucket", None),
        ("", None),
        (None, None),
        (42, None),
    ])
    def test_parsing(self, url, expected):
        assert storage_path_from_url(url) == expected
