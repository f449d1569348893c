"""
Tests for the streaming session manager
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from fakes import (
    COMPLETE,
    START,
    START_REASONING,
    FakeClock,
    FakeCredentials,
    FakeRepository,
    RecordingSleep,
    ScriptedTransport,
    delta,
    envelope,
    error,
    wait_until,
)
from services.chat_service.errors import AuthorizationError, ConversationNotFoundError, OwnershipError, PreconditionError
from services.chat_service.models import ASSISTANT, USER, Conversation, Message, SessionState
from services.chat_service.streaming_session import StreamingSessionManager
from services.chat_service.transcript_store import TranscriptStore
from infrastructure.resilience.retry_service import TransportError


MODEL = "openai/gpt-4o-mini"


class TestStreamingSessionManager:
    """Test one generation driven against the transcript store"""

    def setup_method(self):
        self.store = TranscriptStore()
        self.store.upsert_conversation(Conversation(conversation_id="c1", title="Chat"))
        self.repository = FakeRepository()
        self.credentials = FakeCredentials()
        self.sleep = RecordingSleep()
        self.clock = FakeClock()

    def make_manager(self, transport, **kwargs):
        return StreamingSessionManager(
            self.store,
            self.repository,
            transport,
            self.credentials,
            sleep=self.sleep,
            clock=self.clock,
            **kwargs,
        )

    def messages(self, conversation_id="c1"):
        return self.store.get_conversation(conversation_id).messages

    def test_deltas_are_applied_in_order(self):
        manager = self.make_manager(ScriptedTransport([START, delta("He"), delta("llo"), COMPLETE]))

        asyncio.run(manager.send("c1", "Say hello", MODEL))

        messages = self.messages()
        assert [m.role for m in messages] == [USER, ASSISTANT]
        assert messages[1].content == "Hello"
        assert messages[1].is_streaming is False
        assert self.store.lease_for("c1") is None

    def test_malformed_line_is_skipped(self):
        transport = ScriptedTransport([START, delta("foo"), b"{not json\n", delta("bar"), COMPLETE])
        manager = self.make_manager(transport)

        asyncio.run(manager.send("c1", "hi", MODEL))

        assert self.messages()[1].content == "foobar"
        assert self.sleep.delays == []

    def test_envelopes_split_across_chunks(self):
        payload = START + delta("Bon") + delta("jour ☀") + COMPLETE
        chunks = [payload[i:i + 7] for i in range(0, len(payload), 7)]
        manager = self.make_manager(ScriptedTransport(chunks))

        asyncio.run(manager.send("c1", "hi", MODEL))

        assert self.messages()[1].content == "Bonjour ☀"

    def test_request_carries_history_and_flags(self):
        self.store.append_message("c1", Message(role=USER, content="first"))
        self.store.append_message("c1", Message(role=ASSISTANT, content="reply"))
        transport = ScriptedTransport([START, delta("ok"), COMPLETE])
        manager = self.make_manager(transport)

        asyncio.run(manager.send("c1", "second", MODEL, web_search=True))

        request = transport.requests[0]
        assert request.messages == [
            {"role": "user", "content": "first"},
            {"role": "assistant", "content": "reply"},
            {"role": "user", "content": "second"},
        ]
        assert request.model_id == MODEL
        assert request.auth_token == "token-123"
        assert request.web_search is True
        assert request.conversation_id == "c1"
        assert request.is_temporary is False

    def test_prior_messages_override_history(self):
        transport = ScriptedTransport([START, delta("ok"), COMPLETE])
        manager = self.make_manager(transport)

        asyncio.run(manager.send("c1", "now", MODEL, prior_messages=[Message(role=USER, content="before")]))

        assert [m["content"] for m in transport.requests[0].messages] == ["before", "now"]

    def test_first_delta_flushes_and_later_deltas_are_throttled(self):
        transport = ScriptedTransport([
            START,
            delta("a"),
            lambda: self.clock.advance(0.01),
            delta("b"),
            lambda: self.clock.advance(0.05),
            delta("c"),
            delta("d"),
            COMPLETE,
        ])
        manager = self.make_manager(transport, update_interval_ms=50)
        seen = []
        self.store.subscribe(
            lambda new, old: seen.append(new),
            selector=lambda state: state.get_conversation("c1").messages[1].content
            if len(state.get_conversation("c1").messages) > 1 else None,
        )

        asyncio.run(manager.send("c1", "hi", MODEL))

        assert seen == ["", "a", "abc", "abcd"]

    def test_reasoning_forwarded_when_supported(self):
        transport = ScriptedTransport([
            START_REASONING,
            envelope("reasoning", content="think "),
            envelope("reasoning", content="hard"),
            delta("answer"),
            COMPLETE,
        ])
        manager = self.make_manager(transport)

        asyncio.run(manager.send("c1", "why?", MODEL))

        assert self.messages()[1].reasoning == "think hard"
        assert self.messages()[1].content == "answer"

    def test_reasoning_ignored_when_not_supported(self):
        transport = ScriptedTransport([START, envelope("reasoning", content="hidden"), delta("answer"), COMPLETE])
        manager = self.make_manager(transport)

        asyncio.run(manager.send("c1", "why?", MODEL))

        assert self.messages()[1].reasoning is None

    def test_send_creates_conversation_before_streaming(self):
        transport = ScriptedTransport([START, delta("hi"), COMPLETE])
        manager = self.make_manager(transport)
        created = []

        def on_created(conversation_id):
            created.append((conversation_id, len(transport.requests)))

        conversation_id = asyncio.run(manager.send(None, "Hello there", MODEL, on_conversation_created=on_created))

        assert conversation_id == "conv-1"
        assert created == [("conv-1", 0)]
        assert self.repository.created == [("New Chat", "Hello there")]
        assert self.store.state.current_conversation_id == "conv-1"
        assert self.messages("conv-1")[1].content == "hi"

    def test_unknown_conversation_is_rejected(self):
        manager = self.make_manager(ScriptedTransport())

        with pytest.raises(ConversationNotFoundError):
            asyncio.run(manager.send("missing", "hi", MODEL))

    def test_missing_credential_rejected_before_any_mutation(self):
        self.credentials.token = None
        transport = ScriptedTransport([START, delta("x"), COMPLETE])
        manager = self.make_manager(transport)
        before = self.store.state

        with pytest.raises(AuthorizationError):
            asyncio.run(manager.send("c1", "hi", MODEL))

        assert self.store.state is before
        assert transport.requests == []


class TestRetries:
    """Test retry budget and backoff"""

    def setup_method(self):
        self.store = TranscriptStore()
        self.store.upsert_conversation(Conversation(conversation_id="c1", title="Chat"))
        self.sleep = RecordingSleep()

    def make_manager(self, transport):
        return StreamingSessionManager(
            self.store, FakeRepository(), transport, FakeCredentials(),
            sleep=self.sleep, clock=FakeClock(),
        )

    def test_two_failures_then_success(self):
        transport = ScriptedTransport(
            [START, error("overloaded")],
            [TransportError("connection reset")],
            [START, delta("He"), delta("llo"), COMPLETE],
        )
        manager = self.make_manager(transport)

        text = asyncio.run(manager.send("c1", "hi", MODEL))

        assert text == "Hello"
        assert self.store.get_conversation("c1").messages[1].content == "Hello"
        assert self.sleep.delays == [1.0, 2.0]
        assert manager.get_retry_status("c1").current_attempt == 2
        assert len(transport.requests) == 3

    def test_exhausted_retries_annotate_message(self):
        transport = ScriptedTransport(
            [START, error("boom 1")],
            [START, error("boom 2")],
            [START, error("boom 3")],
        )
        manager = self.make_manager(transport)

        text = asyncio.run(manager.send("c1", "hi", MODEL))

        message = self.store.get_conversation("c1").messages[1]
        assert text == "Error after 3 attempts: boom 3"
        assert message.content == "Error after 3 attempts: boom 3"
        assert message.is_streaming is False
        assert self.store.lease_for("c1") is None
        assert self.sleep.delays == [1.0, 2.0]

    def test_stream_without_terminal_event_counts_as_error(self):
        transport = ScriptedTransport([START, delta("a")], [START], [START, delta("b")])
        manager = self.make_manager(transport)

        asyncio.run(manager.send("c1", "hi", MODEL))

        assert self.store.get_conversation("c1").messages[1].content == \
            "Error after 3 attempts: stream ended unexpectedly"

    def test_partial_content_kept_until_next_attempt_produces_text(self):
        transport = ScriptedTransport(
            [START, delta("partial"), TransportError("network down")],
            [START, delta("fresh"), COMPLETE],
        )
        manager = self.make_manager(transport)
        during_backoff = []
        self.sleep.on_sleep = lambda delay: during_backoff.append(
            (self.store.get_conversation("c1").messages[1].content, manager.active_session("c1").state)
        )

        asyncio.run(manager.send("c1", "hi", MODEL))

        assert during_backoff == [("partial", SessionState.RETRYING)]
        assert self.store.get_conversation("c1").messages[1].content == "fresh"

    def test_unauthorized_status_is_not_retried(self):
        transport = ScriptedTransport([TransportError("HTTP error! status: 401", 401)])
        manager = self.make_manager(transport)

        with pytest.raises(AuthorizationError):
            asyncio.run(manager.send("c1", "hi", MODEL))

        message = self.store.get_conversation("c1").messages[1]
        assert message.is_streaming is False
        assert "401" in message.content
        assert self.sleep.delays == []
        assert self.store.lease_for("c1") is None

    def test_idle_watchdog_abandons_stalled_attempt(self):
        transport = ScriptedTransport(
            [START, lambda: asyncio.sleep(1)],
            [START, delta("ok"), COMPLETE],
        )
        manager = StreamingSessionManager(
            self.store, FakeRepository(), transport, FakeCredentials(),
            idle_timeout=0.01, sleep=self.sleep, clock=FakeClock(),
        )

        asyncio.run(manager.send("c1", "hi", MODEL))

        assert self.store.get_conversation("c1").messages[1].content == "ok"
        assert self.sleep.delays == [1.0]


class TestSupersession:
    """Test that the last send into a conversation is the only writer"""

    def setup_method(self):
        self.store = TranscriptStore()
        self.store.upsert_conversation(Conversation(conversation_id="c1", title="Chat"))

    def test_second_send_supersedes_first(self):
        async def scenario():
            gate = asyncio.Event()
            transport = ScriptedTransport(
                [START, delta("first"), gate.wait, delta(" stale"), COMPLETE],
                [START, delta("second"), COMPLETE],
            )
            manager = StreamingSessionManager(
                self.store, FakeRepository(), transport, FakeCredentials(),
                sleep=RecordingSleep(), clock=FakeClock(),
            )

            first = asyncio.create_task(manager.send("c1", "one", MODEL))
            await wait_until(lambda: len(self.store.get_conversation("c1").messages) == 2
                             and self.store.get_conversation("c1").messages[1].content == "first")
            first_lease = self.store.lease_for("c1")

            second = asyncio.create_task(manager.send("c1", "two", MODEL))
            await wait_until(lambda: self.store.lease_for("c1") != first_lease)
            gate.set()
            await asyncio.gather(first, second)

        asyncio.run(scenario())

        messages = self.store.get_conversation("c1").messages
        assert [m.content for m in messages] == ["one", "first", "two", "second"]
        assert all(not m.is_streaming for m in messages)
        assert self.store.lease_for("c1") is None

    def test_stop_releases_lease_and_clears_flag(self):
        async def scenario():
            gate = asyncio.Event()
            transport = ScriptedTransport([START, delta("partial"), gate.wait, delta(" more"), COMPLETE])
            manager = StreamingSessionManager(
                self.store, FakeRepository(), transport, FakeCredentials(),
                sleep=RecordingSleep(), clock=FakeClock(),
            )
            task = asyncio.create_task(manager.send("c1", "hi", MODEL))
            await wait_until(lambda: len(self.store.get_conversation("c1").messages) == 2
                             and self.store.get_conversation("c1").messages[1].content == "partial")

            assert manager.stop("c1") is True
            assert manager.stop("c1") is False
            gate.set()
            await task

        asyncio.run(scenario())

        message = self.store.get_conversation("c1").messages[1]
        assert message.content == "partial"
        assert message.is_streaming is False
        assert self.store.lease_for("c1") is None

    def test_cancelled_caller_stops_session(self):
        async def scenario():
            transport = ScriptedTransport([START, delta("partial"), asyncio.Event().wait])
            manager = StreamingSessionManager(
                self.store, FakeRepository(), transport, FakeCredentials(),
                sleep=RecordingSleep(), clock=FakeClock(),
            )
            task = asyncio.create_task(manager.send("c1", "hi", MODEL))
            await wait_until(lambda: self.store.lease_for("c1") is not None
                             and self.store.get_conversation("c1").messages[1].content == "partial")
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            return manager

        manager = asyncio.run(scenario())

        assert self.store.lease_for("c1") is None
        assert self.store.get_conversation("c1").messages[1].is_streaming is False
        assert manager.active_session("c1") is None


class TestRegenerateAndEdit:
    """Test truncation flows"""

    def setup_method(self):
        self.store = TranscriptStore()
        self.repository = FakeRepository()
        self.store.upsert_conversation(Conversation(
            conversation_id="c1",
            title="Chat",
            messages=(
                Message(role=USER, content="q1"),
                Message(role=ASSISTANT, content="a1"),
                Message(role=USER, content="q2"),
                Message(role=ASSISTANT, content="a2"),
                Message(role=USER, content="q3"),
            ),
        ))

    def make_manager(self, transport):
        return StreamingSessionManager(
            self.store, self.repository, transport, FakeCredentials(),
            sleep=RecordingSleep(), clock=FakeClock(),
        )

    def test_edit_truncates_then_sends(self):
        transport = ScriptedTransport([START, delta("new answer"), COMPLETE])
        manager = self.make_manager(transport)
        lengths = []
        self.store.subscribe(lambda new, old: lengths.append(new),
                             selector=lambda state: len(state.get_conversation("c1").messages))

        asyncio.run(manager.edit_and_regenerate("c1", 2, "q2 edited", MODEL))

        messages = self.store.get_conversation("c1").messages
        assert lengths[0] == 2
        assert len(messages) == 4
        assert [m.content for m in messages] == ["q1", "a1", "q2 edited", "new answer"]
        assert self.repository.truncations == [("c1", 2)]
        assert [m["content"] for m in transport.requests[0].messages] == ["q1", "a1", "q2 edited"]

    def test_edit_rejects_assistant_message(self):
        manager = self.make_manager(ScriptedTransport())

        with pytest.raises(PreconditionError):
            asyncio.run(manager.edit_and_regenerate("c1", 1, "nope", MODEL))
        assert self.repository.truncations == []

    def test_edit_rejects_out_of_range_index(self):
        manager = self.make_manager(ScriptedTransport())

        with pytest.raises(PreconditionError):
            asyncio.run(manager.edit_and_regenerate("c1", 9, "nope", MODEL))

    def test_rejected_truncation_leaves_running_stream_alone(self):
        self.repository.truncate_messages = AsyncMock(side_effect=OwnershipError("c1"))

        async def scenario():
            gate = asyncio.Event()
            transport = ScriptedTransport([START, delta("a3"), gate.wait, delta(" done"), COMPLETE])
            manager = self.make_manager(transport)

            running = asyncio.create_task(manager.regenerate("c1", MODEL))
            await wait_until(lambda: self.store.get_conversation("c1").messages[-1].content == "a3")

            with pytest.raises(OwnershipError):
                await manager.edit_and_regenerate("c1", 2, "q2 edited", MODEL)

            assert manager.active_session("c1") is not None
            assert self.store.lease_for("c1") is not None
            gate.set()
            return await running

        text = asyncio.run(scenario())

        assert text == "a3 done"
        messages = self.store.get_conversation("c1").messages
        assert [m.content for m in messages] == ["q1", "a1", "q2", "a2", "q3", "a3 done"]

    def test_regenerate_after_trailing_user_message(self):
        transport = ScriptedTransport([START, delta("a3"), COMPLETE])
        manager = self.make_manager(transport)

        text = asyncio.run(manager.regenerate("c1", MODEL))

        assert text == "a3"
        assert [m.content for m in self.store.get_conversation("c1").messages] == ["q1", "a1", "q2", "a2", "q3", "a3"]
        assert self.repository.truncations == []

    def test_regenerate_replaces_trailing_assistant(self):
        self.store.append_message("c1", Message(role=ASSISTANT, content="a3"))
        transport = ScriptedTransport([START, delta("a3 again"), COMPLETE])
        manager = self.make_manager(transport)

        asyncio.run(manager.regenerate("c1", MODEL))

        messages = self.store.get_conversation("c1").messages
        assert len(messages) == 6
        assert messages[-1].content == "a3 again"
        assert self.repository.truncations == [("c1", 5)]
        assert [m["content"] for m in transport.requests[0].messages] == ["q1", "a1", "q2", "a2", "q3"]

    def test_regenerate_without_user_message_is_rejected(self):
        self.store.upsert_conversation(Conversation(conversation_id="empty", title="Empty"))
        manager = self.make_manager(ScriptedTransport())

        with pytest.raises(PreconditionError):
            asyncio.run(manager.regenerate("empty", MODEL))
