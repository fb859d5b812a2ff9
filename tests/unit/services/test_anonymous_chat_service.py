"""Tests for AnonymousChatService - session lifecycle and transcript log."""

import asyncio
from unittest.mock import AsyncMock

import pytest
from cryptography.fernet import Fernet
from sqlalchemy import exc as sa_exc
from sqlalchemy import func, select

from core.auth import AnonymousContext, AuthContext
from core.exceptions import (
    AuthenticationError,
    AuthorizationError,
    NotFoundError,
    StorageUnavailableError,
    ValidationError,
)
from core.retry import RetryPolicy
from core.security import FernetStrategy, PlaintextStrategy
from core.services.anonymous_chat_service import AnonymousChatService, sender_for
from core.services.broadcaster import CHAT_DELETED, CHAT_UPDATED, NEW_CHAT, NEW_MESSAGE
from models.message import ChatMessage, MessageSender
from models.session import ChatSession
from tests.factories import MessageFactory


async def _stored_state(session_factory, session_id: str) -> tuple[int, int]:
    """(total_messages, number of stored messages) for a session."""
    async with session_factory() as db:
        session = await db.get(ChatSession, session_id)
        count = await db.scalar(select(func.count(ChatMessage.id)).where(ChatMessage.session_id == session_id))
        return session.total_messages, count


# =============================================================================
# Session Creation
# =============================================================================


class TestCreateSession:
    async def test_fresh_session_is_unassigned_and_empty(self, chat_service, anon_id):
        session = await chat_service.create_session(anon_id, "personal")

        assert session.status == "unassigned"
        assert session.total_messages == 0
        assert session.counselor_id is None
        assert session.priority == "medium"
        assert session.last_activity is not None

    async def test_emergency_flag(self, chat_service, anon_id):
        session = await chat_service.create_session(anon_id, "mental_health", is_emergency=True)
        assert session.is_emergency is True

    async def test_requires_anonymous_id(self, chat_service):
        with pytest.raises(AuthenticationError):
            await chat_service.create_session("  ", "personal")

    async def test_rejects_unknown_category(self, chat_service, anon_id):
        with pytest.raises(ValidationError, match="category"):
            await chat_service.create_session(anon_id, "gossip")

    async def test_announces_new_chat(self, chat_service, mock_broadcaster, anon_id):
        session = await chat_service.create_session(anon_id, "social")

        mock_broadcaster.publish_many.assert_awaited_once()
        channels, event, data = mock_broadcaster.publish_many.await_args.args
        assert channels == [f"anon:{anon_id}", "counselors"]
        assert event == NEW_CHAT
        assert data["id"] == session.id
        assert data["metadata"]["totalMessages"] == 0
        assert "anonymousId" not in data

    async def test_broadcast_failure_does_not_fail_create(self, chat_service, mock_broadcaster, anon_id):
        mock_broadcaster.publish_many.side_effect = RuntimeError("socket layer down")

        session = await chat_service.create_session(anon_id, "other")

        assert session.id

    async def test_works_without_broadcaster(self, session_factory, retry_policy, anon_id):
        service = AnonymousChatService(session_factory, broadcaster=None, retry_policy=retry_policy)
        session = await service.create_session(anon_id, "academic")
        assert session.status == "unassigned"


# =============================================================================
# Appending Messages
# =============================================================================


class TestAppendMessage:
    async def test_lifecycle_walkthrough(self, chat_service, anon_id, anon_ctx, counselor_ctx):
        session = await chat_service.create_session(anon_id, "personal")
        assert session.status == "unassigned"

        await chat_service.append_message(session.id, anon_ctx, "Hi, is anyone there?")
        refreshed = await chat_service._load(session.id)
        assert refreshed.total_messages == 1
        assert refreshed.status == "unassigned"

        assigned = await chat_service.assign_counselor(session.id, counselor_ctx)
        assert assigned.status == "active"

        await chat_service.append_message(session.id, counselor_ctx, "Hello, I'm here to help.")
        refreshed = await chat_service._load(session.id)
        assert refreshed.total_messages == 2

    async def test_returns_stored_message(self, chat_service, chat, anon_ctx):
        message = await chat_service.append_message(chat.id, anon_ctx, "hello")

        assert message["content"] == "hello"
        assert message["sender"] == "anonymous"
        assert message["id"]
        assert message["timestamp"] is not None

    async def test_counter_matches_transcript(self, chat_service, session_factory, assigned_chat, anon_ctx, counselor_ctx):
        for i in range(3):
            await chat_service.append_message(assigned_chat.id, anon_ctx, f"a{i}")
            await chat_service.append_message(assigned_chat.id, counselor_ctx, f"c{i}")

        total, count = await _stored_state(session_factory, assigned_chat.id)
        assert total == count == 6

    async def test_positions_follow_append_order(self, chat_service, session_factory, chat, anon_ctx):
        for text in ("one", "two", "three"):
            await chat_service.append_message(chat.id, anon_ctx, text)

        async with session_factory() as db:
            rows = (
                await db.execute(
                    select(ChatMessage.position, ChatMessage.content)
                    .where(ChatMessage.session_id == chat.id)
                    .order_by(ChatMessage.position)
                )
            ).all()
        assert rows == [(1, "one"), (2, "two"), (3, "three")]

    async def test_updates_last_activity(self, chat_service, chat, anon_ctx):
        before = (await chat_service._load(chat.id)).last_activity
        await asyncio.sleep(0.01)
        await chat_service.append_message(chat.id, anon_ctx, "ping")
        after = (await chat_service._load(chat.id)).last_activity
        assert after > before

    @pytest.mark.parametrize("content", ["", "   ", "\n\t", None, 42])
    async def test_rejects_empty_or_non_string_content(self, chat_service, session_factory, chat, anon_ctx, content):
        with pytest.raises(ValidationError):
            await chat_service.append_message(chat.id, anon_ctx, content)

        assert await _stored_state(session_factory, chat.id) == (0, 0)

    async def test_rejects_oversized_content(self, chat_service, chat, anon_ctx, monkeypatch):
        monkeypatch.setattr("core.services.anonymous_chat_service.settings.MAX_MESSAGE_LENGTH", 10)
        with pytest.raises(ValidationError, match="exceeds"):
            await chat_service.append_message(chat.id, anon_ctx, "x" * 11)

    async def test_missing_session(self, chat_service, anon_ctx):
        with pytest.raises(NotFoundError):
            await chat_service.append_message("missing", anon_ctx, "hello")

    async def test_other_anonymous_party_cannot_write(self, chat_service, session_factory, chat):
        intruder = AnonymousContext(anonymous_id="anon_intruder")

        with pytest.raises(AuthorizationError):
            await chat_service.append_message(chat.id, intruder, "let me in")

        assert await _stored_state(session_factory, chat.id) == (0, 0)

    async def test_anonymous_without_id(self, chat_service, chat):
        with pytest.raises(AuthenticationError):
            await chat_service.append_message(chat.id, AnonymousContext(anonymous_id=None), "hello")

    async def test_counselor_cannot_write_to_unassigned_session(self, chat_service, session_factory, chat, counselor_ctx):
        with pytest.raises(AuthorizationError, match="no assigned counselor"):
            await chat_service.append_message(chat.id, counselor_ctx, "hello")

        assert await _stored_state(session_factory, chat.id) == (0, 0)

    async def test_other_counselor_cannot_write(self, chat_service, session_factory, assigned_chat, other_counselor_ctx):
        with pytest.raises(AuthorizationError):
            await chat_service.append_message(assigned_chat.id, other_counselor_ctx, "hello")

        assert await _stored_state(session_factory, assigned_chat.id) == (0, 0)

    async def test_sender_follows_principal(self, chat_service, assigned_chat, counselor_ctx):
        message = await chat_service.append_message(assigned_chat.id, counselor_ctx, "hi")
        assert message["sender"] == "counselor"

    async def test_broadcasts_to_session_room(self, chat_service, mock_broadcaster, chat, anon_ctx):
        message = await chat_service.append_message(chat.id, anon_ctx, "hello")

        mock_broadcaster.publish_many.assert_awaited_once()
        channels, event, data = mock_broadcaster.publish_many.await_args.args
        assert channels == [f"chat:{chat.id}"]
        assert event == NEW_MESSAGE
        assert data["sessionId"] == chat.id
        assert data["message"]["id"] == message["id"]
        assert data["message"]["content"] == "hello"

    async def test_failed_append_is_not_broadcast(self, chat_service, mock_broadcaster, chat):
        with pytest.raises(AuthorizationError):
            await chat_service.append_message(chat.id, AnonymousContext(anonymous_id="x"), "hello")
        mock_broadcaster.publish_many.assert_not_awaited()

    async def test_broadcast_failure_does_not_fail_append(self, chat_service, session_factory, mock_broadcaster, chat, anon_ctx):
        mock_broadcaster.publish_many.side_effect = RuntimeError("socket layer down")

        await chat_service.append_message(chat.id, anon_ctx, "still stored")

        assert await _stored_state(session_factory, chat.id) == (1, 1)


class TestAppendIdempotency:
    async def test_repeated_client_message_id_is_stored_once(self, chat_service, session_factory, mock_broadcaster, chat, anon_ctx):
        first = await chat_service.append_message(chat.id, anon_ctx, "hello", client_message_id="m-1")
        second = await chat_service.append_message(chat.id, anon_ctx, "hello", client_message_id="m-1")

        assert second["id"] == first["id"]
        assert await _stored_state(session_factory, chat.id) == (1, 1)
        assert mock_broadcaster.publish_many.await_count == 1

    async def test_distinct_client_message_ids(self, chat_service, session_factory, chat, anon_ctx):
        await chat_service.append_message(chat.id, anon_ctx, "a", client_message_id="m-1")
        await chat_service.append_message(chat.id, anon_ctx, "b", client_message_id="m-2")
        assert await _stored_state(session_factory, chat.id) == (2, 2)

    async def test_same_client_message_id_from_both_senders(
        self, chat_service, session_factory, mock_broadcaster, assigned_chat, anon_ctx, counselor_ctx
    ):
        first = await chat_service.append_message(assigned_chat.id, anon_ctx, "from anon", client_message_id="1")
        second = await chat_service.append_message(assigned_chat.id, counselor_ctx, "from counselor", client_message_id="1")

        assert first["sender"] == "anonymous"
        assert second["sender"] == "counselor"
        assert second["content"] == "from counselor"
        assert second["id"] != first["id"]
        assert await _stored_state(session_factory, assigned_chat.id) == (2, 2)
        events = [c.args[1] for c in mock_broadcaster.publish_many.await_args_list]
        assert events.count(NEW_MESSAGE) == 2

    @pytest.mark.parametrize("client_message_id", [7, 1.5, ["m-1"], {"id": "m-1"}])
    async def test_rejects_non_string_client_message_id(self, chat_service, session_factory, chat, anon_ctx, client_message_id):
        with pytest.raises(ValidationError, match="clientMessageId must be a string"):
            await chat_service.append_message(chat.id, anon_ctx, "hello", client_message_id=client_message_id)

        assert await _stored_state(session_factory, chat.id) == (0, 0)

    async def test_ambiguous_failure_after_commit_is_not_duplicated(self, session_factory, chat, anon_ctx):
        """A retry after a commit whose acknowledgement was lost finds the stored row."""
        sleep = AsyncMock()
        service = AnonymousChatService(
            _LostAckFactory(session_factory),
            retry_policy=RetryPolicy(attempts=3, delay=1.0, sleep=sleep),
        )

        message = await service.append_message(chat.id, anon_ctx, "only once")

        assert message["content"] == "only once"
        assert await _stored_state(session_factory, chat.id) == (1, 1)
        sleep.assert_awaited_once_with(1.0)


class TestConcurrentAppends:
    async def test_concurrent_appends_from_both_senders(self, chat_service, session_factory, assigned_chat, anon_ctx, counselor_ctx):
        results = await asyncio.gather(
            chat_service.append_message(assigned_chat.id, anon_ctx, "from student"),
            chat_service.append_message(assigned_chat.id, counselor_ctx, "from counselor"),
        )

        assert {r["sender"] for r in results} == {"anonymous", "counselor"}
        assert await _stored_state(session_factory, assigned_chat.id) == (2, 2)

    async def test_many_concurrent_appends_lose_no_updates(self, chat_service, session_factory, chat, anon_ctx):
        await asyncio.gather(*(chat_service.append_message(chat.id, anon_ctx, f"m{i}") for i in range(10)))

        async with session_factory() as db:
            positions = (
                await db.execute(select(ChatMessage.position).where(ChatMessage.session_id == chat.id))
            ).scalars().all()

        assert sorted(positions) == list(range(1, 11))
        assert await _stored_state(session_factory, chat.id) == (10, 10)


# =============================================================================
# Assignment and Status
# =============================================================================


class TestAssignCounselor:
    async def test_assign_activates_session(self, chat_service, mock_broadcaster, chat, counselor_ctx):
        session = await chat_service.assign_counselor(chat.id, counselor_ctx)

        assert session.counselor_id == counselor_ctx.user_id
        assert session.status == "active"
        channels, event, data = mock_broadcaster.publish_many.await_args.args
        assert f"chat:{chat.id}" in channels
        assert event == CHAT_UPDATED
        assert data["counselorId"] == counselor_ctx.user_id

    async def test_same_counselor_again_changes_nothing(self, chat_service, mock_broadcaster, assigned_chat, counselor_ctx):
        before = await chat_service._load(assigned_chat.id)

        session = await chat_service.assign_counselor(assigned_chat.id, counselor_ctx)

        assert session.counselor_id == before.counselor_id
        assert session.status == before.status
        assert session.last_activity == before.last_activity
        mock_broadcaster.publish_many.assert_not_awaited()

    async def test_different_counselor_overwrites(self, chat_service, assigned_chat, other_counselor_ctx):
        session = await chat_service.assign_counselor(assigned_chat.id, other_counselor_ctx)

        assert session.counselor_id == other_counselor_ctx.user_id
        assert session.status == "active"

    async def test_reassignment_keeps_non_open_status(self, chat_service, assigned_chat, counselor_ctx, other_counselor_ctx):
        await chat_service.update_status(assigned_chat.id, counselor_ctx, status="escalated")

        session = await chat_service.assign_counselor(assigned_chat.id, other_counselor_ctx)

        assert session.status == "escalated"

    async def test_missing_session(self, chat_service, counselor_ctx):
        with pytest.raises(NotFoundError):
            await chat_service.assign_counselor("missing", counselor_ctx)

    async def test_admin_cannot_claim(self, chat_service, chat, admin_ctx):
        with pytest.raises(AuthorizationError):
            await chat_service.assign_counselor(chat.id, admin_ctx)

    async def test_anonymous_cannot_claim(self, chat_service, chat, anon_ctx):
        with pytest.raises(AuthorizationError):
            await chat_service.assign_counselor(chat.id, anon_ctx)


class TestUpdateStatus:
    async def test_assigned_counselor_resolves(self, chat_service, mock_broadcaster, assigned_chat, counselor_ctx):
        session = await chat_service.update_status(assigned_chat.id, counselor_ctx, status="resolved", priority="high")

        assert session.status == "resolved"
        assert session.priority == "high"
        assert mock_broadcaster.publish_many.await_args.args[1] == CHAT_UPDATED

    async def test_cannot_set_unassigned(self, chat_service, assigned_chat, counselor_ctx):
        with pytest.raises(ValidationError):
            await chat_service.update_status(assigned_chat.id, counselor_ctx, status="unassigned")

    async def test_rejects_unknown_priority(self, chat_service, assigned_chat, counselor_ctx):
        with pytest.raises(ValidationError):
            await chat_service.update_status(assigned_chat.id, counselor_ctx, priority="whenever")

    async def test_requires_a_change(self, chat_service, assigned_chat, counselor_ctx):
        with pytest.raises(ValidationError):
            await chat_service.update_status(assigned_chat.id, counselor_ctx)

    async def test_other_counselor_forbidden(self, chat_service, assigned_chat, other_counselor_ctx):
        with pytest.raises(AuthorizationError):
            await chat_service.update_status(assigned_chat.id, other_counselor_ctx, status="resolved")

    async def test_anonymous_forbidden(self, chat_service, assigned_chat, anon_ctx):
        with pytest.raises(AuthorizationError):
            await chat_service.update_status(assigned_chat.id, anon_ctx, status="resolved")

    async def test_missing_session(self, chat_service, counselor_ctx):
        with pytest.raises(NotFoundError):
            await chat_service.update_status("missing", counselor_ctx, status="resolved")


# =============================================================================
# Listings
# =============================================================================


class TestListings:
    async def test_active_for_counselor_excludes_other_counselors_sessions(
        self, chat_service, counselor_ctx, other_counselor_ctx
    ):
        mine = await chat_service.create_session("anon_a", "academic")
        theirs = await chat_service.create_session("anon_b", "academic")
        unclaimed = await chat_service.create_session("anon_c", "academic")
        await chat_service.assign_counselor(mine.id, counselor_ctx)
        await chat_service.assign_counselor(theirs.id, other_counselor_ctx)

        listed = {s.id for s in await chat_service.list_active_for_counselor(counselor_ctx)}

        assert listed == {mine.id, unclaimed.id}

    async def test_active_excludes_closed_sessions(self, chat_service, assigned_chat, counselor_ctx):
        await chat_service.update_status(assigned_chat.id, counselor_ctx, status="resolved")
        assert await chat_service.list_active_for_counselor(counselor_ctx) == []

    async def test_active_ordered_by_last_activity(self, chat_service):
        older = await chat_service.create_session("anon_a", "academic")
        newer = await chat_service.create_session("anon_b", "academic")
        await asyncio.sleep(0.01)
        await chat_service.append_message(older.id, AnonymousContext(anonymous_id="anon_a"), "bump")

        ctx = AuthContext(user_id="counselor_x", role="counselor")
        listed = [s.id for s in await chat_service.list_active_for_counselor(ctx)]

        assert listed == [older.id, newer.id]

    async def test_active_requires_staff(self, chat_service, anon_ctx):
        with pytest.raises(AuthorizationError):
            await chat_service.list_active_for_counselor(anon_ctx)
        with pytest.raises(AuthorizationError):
            await chat_service.list_active_for_counselor(AuthContext(user_id="s1", role="student"))

    async def test_for_anonymous_only_own_open_sessions(self, chat_service, counselor_ctx):
        own = await chat_service.create_session("anon_a", "academic")
        closed = await chat_service.create_session("anon_a", "social")
        await chat_service.create_session("anon_b", "academic")
        await chat_service.assign_counselor(closed.id, counselor_ctx)
        await chat_service.update_status(closed.id, counselor_ctx, status="resolved")

        listed = [s.id for s in await chat_service.list_for_anonymous("anon_a")]

        assert listed == [own.id]

    async def test_for_anonymous_requires_id(self, chat_service):
        with pytest.raises(AuthenticationError):
            await chat_service.list_for_anonymous(None)

    async def test_assigned_to_includes_any_status(self, chat_service, assigned_chat, counselor_ctx, other_counselor_ctx):
        await chat_service.update_status(assigned_chat.id, counselor_ctx, status="resolved")

        assert [s.id for s in await chat_service.list_assigned_to(counselor_ctx)] == [assigned_chat.id]
        assert await chat_service.list_assigned_to(other_counselor_ctx) == []


# =============================================================================
# Transcript
# =============================================================================


class TestGetTranscript:
    async def test_assigned_counselor_reads_in_order(self, chat_service, assigned_chat, anon_ctx, counselor_ctx):
        await chat_service.append_message(assigned_chat.id, anon_ctx, "first")
        await chat_service.append_message(assigned_chat.id, counselor_ctx, "second")

        session, messages = await chat_service.get_transcript(assigned_chat.id, counselor_ctx)

        assert session.status == "active"
        assert [(m["sender"], m["content"]) for m in messages] == [("anonymous", "first"), ("counselor", "second")]

    async def test_admin_reads_any(self, chat_service, assigned_chat, admin_ctx):
        _, messages = await chat_service.get_transcript(assigned_chat.id, admin_ctx)
        assert messages == []

    async def test_owner_reads_own(self, chat_service, chat, anon_ctx):
        await chat_service.append_message(chat.id, anon_ctx, "mine")
        _, messages = await chat_service.get_transcript(chat.id, anon_ctx)
        assert [m["content"] for m in messages] == ["mine"]

    async def test_unassigned_counselor_forbidden(self, chat_service, assigned_chat, other_counselor_ctx):
        with pytest.raises(AuthorizationError):
            await chat_service.get_transcript(assigned_chat.id, other_counselor_ctx)

    async def test_other_anonymous_forbidden(self, chat_service, chat):
        with pytest.raises(AuthorizationError):
            await chat_service.get_transcript(chat.id, AnonymousContext(anonymous_id="anon_intruder"))

    async def test_missing_session(self, chat_service, admin_ctx):
        with pytest.raises(NotFoundError):
            await chat_service.get_transcript("missing", admin_ctx)

    async def test_undecodable_entry_is_reported(self, chat_service, session_factory, chat, anon_ctx):
        await chat_service.append_message(chat.id, anon_ctx, "readable")
        async with session_factory() as db:
            db.add(MessageFactory(session_id=chat.id, position=2, content="not-a-token", content_encoding="fernet"))
            await db.commit()

        _, messages = await chat_service.get_transcript(chat.id, anon_ctx)

        assert messages[0]["content"] == "readable"
        assert messages[1]["error"] is True
        assert "content" not in messages[1]

    async def test_mixed_encodings(self, session_factory, retry_policy, chat, anon_ctx, monkeypatch):
        key = Fernet.generate_key().decode()
        monkeypatch.setattr("core.security.settings.MESSAGE_ENCRYPTION_KEY", key)
        plain = AnonymousChatService(session_factory, retry_policy=retry_policy, content_strategy=PlaintextStrategy())
        sealed = AnonymousChatService(session_factory, retry_policy=retry_policy, content_strategy=FernetStrategy(key))

        await plain.append_message(chat.id, anon_ctx, "plain")
        await sealed.append_message(chat.id, anon_ctx, "sealed")

        async with session_factory() as db:
            stored = (
                await db.execute(select(ChatMessage).where(ChatMessage.session_id == chat.id).order_by(ChatMessage.position))
            ).scalars().all()
        assert [m.content_encoding for m in stored] == ["plaintext", "fernet"]
        assert stored[1].content != "sealed"

        _, messages = await plain.get_transcript(chat.id, anon_ctx)
        assert [m["content"] for m in messages] == ["plain", "sealed"]


# =============================================================================
# Deletion
# =============================================================================


class TestDeleteSession:
    async def test_owner_deletes_session_and_transcript(self, chat_service, session_factory, assigned_chat, anon_ctx, admin_ctx):
        await chat_service.append_message(assigned_chat.id, anon_ctx, "bye")

        await chat_service.delete_session(assigned_chat.id, anon_ctx)

        with pytest.raises(NotFoundError):
            await chat_service.get_transcript(assigned_chat.id, admin_ctx)
        async with session_factory() as db:
            remaining = await db.scalar(select(func.count(ChatMessage.id)).where(ChatMessage.session_id == assigned_chat.id))
        assert remaining == 0

    async def test_notifies_owner_and_counselor(self, chat_service, mock_broadcaster, assigned_chat, anon_id, anon_ctx, counselor_ctx):
        await chat_service.delete_session(assigned_chat.id, anon_ctx)

        channels, event, data = mock_broadcaster.publish_many.await_args.args
        assert channels == [f"anon:{anon_id}", f"user:{counselor_ctx.user_id}"]
        assert event == CHAT_DELETED
        assert data == {"sessionId": assigned_chat.id}

    async def test_unassigned_notifies_owner_only(self, chat_service, mock_broadcaster, chat, anon_id, anon_ctx):
        await chat_service.delete_session(chat.id, anon_ctx)
        assert mock_broadcaster.publish_many.await_args.args[0] == [f"anon:{anon_id}"]

    async def test_other_anonymous_forbidden(self, chat_service, chat):
        with pytest.raises(AuthorizationError):
            await chat_service.delete_session(chat.id, AnonymousContext(anonymous_id="anon_intruder"))

    async def test_counselor_forbidden(self, chat_service, assigned_chat, counselor_ctx):
        with pytest.raises(AuthorizationError):
            await chat_service.delete_session(assigned_chat.id, counselor_ctx)

    async def test_missing_session(self, chat_service, anon_ctx):
        with pytest.raises(NotFoundError):
            await chat_service.delete_session("missing", anon_ctx)

    async def test_second_delete_is_not_found(self, chat_service, chat, anon_ctx):
        await chat_service.delete_session(chat.id, anon_ctx)
        with pytest.raises(NotFoundError):
            await chat_service.delete_session(chat.id, anon_ctx)


# =============================================================================
# Storage Failures
# =============================================================================


class TestStorageFailures:
    async def test_exhausted_retries_surface_as_unavailable(self, anon_ctx):
        sleep = AsyncMock()
        service = AnonymousChatService(_DownFactory(), retry_policy=RetryPolicy(attempts=3, delay=1.0, sleep=sleep))

        with pytest.raises(StorageUnavailableError):
            await service.append_message("any", anon_ctx, "hello")

        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 1.0]


class TestSenderFor:
    def test_dispatch(self):
        assert sender_for(AuthContext(user_id="c", role="counselor")) is MessageSender.COUNSELOR
        assert sender_for(AnonymousContext(anonymous_id="a")) is MessageSender.ANONYMOUS

    def test_unknown_principal(self):
        with pytest.raises(TypeError):
            sender_for("counselor")


# =============================================================================
# Test doubles
# =============================================================================


class _DownFactory:
    """Session factory for a database that refuses every connection."""

    def __call__(self):
        return _DownSession()


class _DownSession:
    async def __aenter__(self):
        raise sa_exc.OperationalError("BEGIN", {}, ConnectionRefusedError("connection refused"))

    async def __aexit__(self, *exc):
        return False


class _LostAckFactory:
    """Wraps a real factory; the first session's commit succeeds but reports a dropped connection."""

    def __init__(self, real_factory):
        self.real_factory = real_factory
        self.calls = 0

    def __call__(self):
        self.calls += 1
        session = self.real_factory()
        if self.calls == 1:
            return _LostAckSession(session)
        return session


class _LostAckSession:
    def __init__(self, session):
        self._session = session

    async def __aenter__(self):
        db = await self._session.__aenter__()
        real_commit = db.commit

        async def commit():
            await real_commit()
            raise sa_exc.OperationalError("COMMIT", {}, ConnectionResetError("connection reset"))

        db.commit = commit
        return db

    async def __aexit__(self, *exc):
        return await self._session.__aexit__(*exc)
