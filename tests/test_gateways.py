"""
Tests for the Firebase gateways against mocked SDK clients.
"""

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from firebase_admin import auth as firebase_auth
from firebase_admin import exceptions as firebase_exceptions
from firebase_admin import messaging
from google.api_core import exceptions as gcloud_exceptions

from chatrelay.errors import CircuitOpenError
from chatrelay.services.circuit_breaker import CircuitBreaker
from chatrelay.services.firebase import IdentityGateway, StorageGateway
from chatrelay.services.payloads import NotificationType, build_message_payload, build_simple_payload
from chatrelay.services.push import (
    TOKEN_INVALID,
    TOKEN_NOT_FOUND,
    TOKEN_NOT_REGISTERED,
    PushGateway,
    build_multicast,
    error_code_for,
)
from chatrelay.services.realtime import RealtimeGateway
from chatrelay.services.store import FirestoreGateway, Write


def _breaker(name: str = "firestore", failures: int = 5) -> CircuitBreaker:
    return CircuitBreaker(name, failure_threshold=failures, success_threshold=2, timeout=30)


# ── Firestore ───────────────────────────────────────────


class TestFirestoreGateway:
    async def test_get_existing_and_missing(self):
        client = MagicMock()
        client.document.return_value.get.return_value = SimpleNamespace(exists=True, to_dict=lambda: {"a": 1})
        store = FirestoreGateway(client, _breaker())
        assert await store.get("users/alice") == {"a": 1}
        client.document.assert_called_with("users/alice")

        client.document.return_value.get.return_value = SimpleNamespace(exists=False, to_dict=lambda: None)
        assert await store.get("users/ghost") is None

    async def test_query_builds_filters(self):
        client = MagicMock()
        query = client.collection.return_value
        query.where.return_value = query
        query.limit.return_value = query
        query.stream.return_value = [
            SimpleNamespace(id="t1", reference=SimpleNamespace(path="fcmTokens/t1"), to_dict=lambda: {"uid": "a"}),
        ]
        store = FirestoreGateway(client, _breaker())

        docs = await store.query("fcmTokens", [("uid", "in", ["a", "b"])], limit=10)

        assert [(d.id, d.path, d.data) for d in docs] == [("t1", "fcmTokens/t1", {"uid": "a"})]
        query.where.assert_called_once()
        query.limit.assert_called_once_with(10)

    async def test_collection_group_query(self):
        client = MagicMock()
        client.collection_group.return_value.stream.return_value = []
        await FirestoreGateway(client, _breaker()).query("typing", group=True)
        client.collection_group.assert_called_once_with("typing")
        client.collection.assert_not_called()

    async def test_update_on_missing_doc_returns_false(self):
        client = MagicMock()
        client.document.return_value.update.side_effect = gcloud_exceptions.NotFound("gone")
        assert await FirestoreGateway(client, _breaker()).update("chat_rooms/x", {"a": 1}) is False

    async def test_commit_chunks_at_500(self):
        client = MagicMock()
        writes = [Write("delete", f"c/{i}") for i in range(1200)]

        applied = await FirestoreGateway(client, _breaker()).commit(writes)

        assert applied == 1200
        assert client.batch.call_count == 3
        assert client.batch.return_value.commit.call_count == 3
        assert client.batch.return_value.delete.call_count == 1200

    async def test_unknown_write_op(self):
        with pytest.raises(ValueError):
            await FirestoreGateway(MagicMock(), _breaker()).commit([Write("upsert", "c/1")])

    async def test_open_breaker_skips_client(self):
        client = MagicMock()
        client.document.side_effect = RuntimeError("unavailable")
        store = FirestoreGateway(client, _breaker(failures=2))
        for _ in range(2):
            with pytest.raises(RuntimeError):
                await store.get("users/alice")

        client.document.reset_mock()
        with pytest.raises(CircuitOpenError):
            await store.get("users/alice")
        client.document.assert_not_called()


# ── Realtime Database ───────────────────────────────────


class TestRealtimeGateway:
    async def test_reference_calls(self):
        refs: dict[str, MagicMock] = {}

        def _reference(path):
            return refs.setdefault(path, MagicMock())

        gateway = RealtimeGateway(_breaker("realtime_db"), reference=_reference)
        refs["presence/alice"] = MagicMock(**{"get.return_value": {"online": True}})

        assert await gateway.get("presence/alice") == {"online": True}
        await gateway.update("presence", {"alice/online": False})
        await gateway.update("presence", {})
        await gateway.delete("presence/bob")

        refs["presence"].update.assert_called_once_with({"alice/online": False})
        refs["presence/bob"].delete.assert_called_once()


# ── Cloud Messaging ─────────────────────────────────────


class TestErrorCodes:
    @pytest.mark.parametrize("exc,code", [
        (messaging.UnregisteredError("gone"), TOKEN_NOT_REGISTERED),
        (firebase_exceptions.InvalidArgumentError("bad token"), TOKEN_INVALID),
        (firebase_exceptions.NotFoundError("missing"), TOKEN_NOT_FOUND),
        (messaging.QuotaExceededError("slow down"), "messaging/message-rate-exceeded"),
        (firebase_exceptions.UnavailableError("later"), "messaging/unavailable"),
        (RuntimeError("?"), "messaging/unknown-error"),
        (None, "messaging/unknown-error"),
    ])
    def test_mapping(self, exc, code):
        assert error_code_for(exc) == code


class TestPushGateway:
    def test_multicast_carries_type_and_data(self):
        payload = build_message_payload(
            message_id="m1", chat_id="room1", sender_id="alice", sender_name="Alice", text="hi",
        )
        message = build_multicast(["t1", "t2"], payload)
        assert message.tokens == ["t1", "t2"]
        assert message.data["type"] == NotificationType.NEW_MESSAGE.value
        assert message.data["chatId"] == "room1"
        assert message.android.priority == "high"

    async def test_per_token_failures(self):
        response = SimpleNamespace(
            success_count=1,
            failure_count=1,
            responses=[
                SimpleNamespace(success=True, exception=None),
                SimpleNamespace(success=False, exception=messaging.UnregisteredError("gone")),
            ],
        )
        with patch("chatrelay.services.push.messaging.send_each_for_multicast", return_value=response) as send:
            outcome = await PushGateway(_breaker("fcm")).send_multicast(
                ["good", "dead"], build_simple_payload(NotificationType.BROADCAST, "t", "b")
            )

        send.assert_called_once()
        assert (outcome.success_count, outcome.failure_count) == (1, 1)
        assert outcome.failures[0].token == "dead"
        assert outcome.failures[0].error_code == TOKEN_NOT_REGISTERED

    async def test_oversized_batch_rejected(self):
        with pytest.raises(ValueError):
            await PushGateway(_breaker("fcm")).send_multicast(
                [f"t{i}" for i in range(501)], build_simple_payload(NotificationType.BROADCAST, "t", "b")
            )

    async def test_validate_tokens_dry_run(self):
        response = SimpleNamespace(responses=[
            SimpleNamespace(success=False, exception=firebase_exceptions.InvalidArgumentError("bad")),
            SimpleNamespace(success=True, exception=None),
        ])
        with patch("chatrelay.services.push.messaging.send_each", return_value=response) as send:
            failures = await PushGateway(_breaker("fcm")).validate_tokens(["bad", "ok"])

        assert send.call_args.kwargs["dry_run"] is True
        assert [(f.token, f.error_code) for f in failures] == [("bad", TOKEN_INVALID)]

    async def test_topic_subscription_chunks_at_1000(self):
        tokens = [f"t{i}" for i in range(1500)]
        responses = [
            SimpleNamespace(success_count=999, failure_count=1, errors=[
                SimpleNamespace(index=3, reason="registration-token-not-registered"),
            ]),
            SimpleNamespace(success_count=500, failure_count=0, errors=[]),
        ]
        with patch("chatrelay.services.push.messaging.subscribe_to_topic", side_effect=responses) as sub:
            outcome = await PushGateway(_breaker("fcm")).subscribe_to_topic(tokens, "groups")

        assert [len(c.args[0]) for c in sub.call_args_list] == [1000, 500]
        assert all(c.args[1] == "groups" for c in sub.call_args_list)
        assert (outcome.success_count, outcome.failure_count) == (1499, 1)
        assert outcome.failures[0].token == "t3"
        assert outcome.failures[0].error_code == TOKEN_NOT_REGISTERED

    async def test_topic_unsubscribe(self):
        response = SimpleNamespace(success_count=1, failure_count=0, errors=[])
        with patch("chatrelay.services.push.messaging.unsubscribe_from_topic", return_value=response) as unsub:
            outcome = await PushGateway(_breaker("fcm")).unsubscribe_from_topic(["t1"], "messages")

        unsub.assert_called_once()
        assert outcome.success_count == 1


# ── Auth and Storage ────────────────────────────────────


class TestIdentityGateway:
    async def test_already_deleted_counts_as_deleted(self):
        with patch("chatrelay.services.firebase.auth.delete_user",
                   side_effect=firebase_auth.UserNotFoundError("no user")):
            assert await IdentityGateway().delete_user("ghost") is True


class TestStorageGateway:
    async def test_delete_prefix_ignores_vanished_blobs(self):
        vanished = MagicMock()
        vanished.delete.side_effect = gcloud_exceptions.NotFound("gone")
        bucket = MagicMock()
        bucket.list_blobs.return_value = [MagicMock(), vanished, MagicMock()]

        assert await StorageGateway(bucket).delete_prefix("stories/alice/") == 2
        bucket.list_blobs.assert_called_once_with(prefix="stories/alice/")

    async def test_delete_missing_blob(self):
        bucket = MagicMock()
        bucket.blob.return_value.delete.side_effect = gcloud_exceptions.NotFound("gone")
        assert await StorageGateway(bucket).delete_blob("stories/x.jpg") is False
