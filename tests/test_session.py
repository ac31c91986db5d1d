"""Tests for the per-connection relay state machine."""

from __future__ import annotations

import asyncio
from typing import Tuple

from stubs import StubClient, StubUpstream, wait_until

from ragrelay.embeddings import EmbeddingConfig, HashEmbeddingBackend, InMemoryDocumentStore
from ragrelay.relay import RelayConfig, SessionRelay, SessionState
from ragrelay.retrieval import RetrievalConfig, RetrievalEngine

PARIS = "Paris has the Eiffel Tower."


class BlockingBackend:
    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.cancelled = False

    async def embed_query(self, text: str) -> Tuple[float, ...]:
        self.started.set()
        try:
            await asyncio.sleep(60)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return (1.0,)


def make_engine(backend=None) -> RetrievalEngine:
    return RetrievalEngine(
        InMemoryDocumentStore(),
        backend or HashEmbeddingBackend(EmbeddingConfig(dim=64)),
        RetrievalConfig(top_k=1, min_score=0.1),
    )


def start(client, upstream, engine=None, **config) -> Tuple[SessionRelay, asyncio.Task]:
    config.setdefault("response_timeout_seconds", 0)
    session = SessionRelay(client, upstream, engine or make_engine(), RelayConfig(**config))
    return session, asyncio.create_task(session.run())


def test_messages_sent_before_ready_are_delivered_once_in_order():
    async def scenario():
        gate = asyncio.Event()
        client, upstream = StubClient(), StubUpstream(gate=gate)
        session, task = start(client, upstream)
        for index in range(3):
            client.push({"type": "session.update", "seq": index})
        await wait_until(lambda: session.pending == 3)
        assert session.state is SessionState.CONNECTING
        assert upstream.sends == []

        gate.set()
        await wait_until(lambda: len(upstream.sends) == 3)
        assert session.state is SessionState.READY
        client.push({"type": "session.update", "seq": 3})
        await wait_until(lambda: len(upstream.sends) == 4)
        await asyncio.sleep(0.05)

        client.disconnect()
        return await asyncio.wait_for(task, 2), upstream

    state, upstream = asyncio.run(scenario())
    assert state is SessionState.CLOSED
    assert [event["seq"] for kind, event in upstream.sends] == [0, 1, 2, 3]
    assert {kind for kind, _ in upstream.sends} == {"event"}


def test_text_turn_with_context_sends_context_then_query():
    async def scenario():
        engine = make_engine()
        await engine.ingest("doc1", "text/plain", PARIS.encode("utf-8"))
        client, upstream = StubClient(), StubUpstream()
        _, task = start(client, upstream, engine)
        client.push({"type": "input_text", "text": "What is in Paris?"})
        await wait_until(lambda: any(kind == "user" for kind, _ in upstream.sends))
        client.disconnect()
        await asyncio.wait_for(task, 2)
        return upstream

    upstream = asyncio.run(scenario())
    assert [kind for kind, _ in upstream.sends] == ["system", "user"]
    system_text = upstream.sends[0][1]
    assert PARIS in system_text
    assert "Source: doc1" in system_text
    assert upstream.sends[1] == ("user", "What is in Paris?")


def test_text_turn_without_context_sends_only_query():
    async def scenario():
        client, upstream = StubClient(), StubUpstream()
        _, task = start(client, upstream)
        client.push({"type": "input_text", "text": "What is in Paris?"})
        await wait_until(lambda: len(upstream.sends) == 1)
        await asyncio.sleep(0.05)
        client.disconnect()
        await asyncio.wait_for(task, 2)
        return upstream

    upstream = asyncio.run(scenario())
    assert upstream.sends == [("user", "What is in Paris?")]


def test_input_text_without_text_is_forwarded_verbatim():
    async def scenario():
        client, upstream = StubClient(), StubUpstream()
        _, task = start(client, upstream)
        client.push({"type": "input_text", "text": ""})
        await wait_until(lambda: len(upstream.sends) == 1)
        client.disconnect()
        await asyncio.wait_for(task, 2)
        return upstream

    upstream = asyncio.run(scenario())
    assert upstream.sends == [("event", {"type": "input_text", "text": ""})]


def test_malformed_message_reports_error_and_session_continues():
    async def scenario():
        client, upstream = StubClient(), StubUpstream()
        session, task = start(client, upstream)
        client.push("this is not json")
        client.push("[1, 2, 3]")
        client.push({"type": "response.create"})
        await wait_until(lambda: len(upstream.sends) == 1)
        state_while_open = session.state
        client.disconnect()
        await asyncio.wait_for(task, 2)
        return client, upstream, state_while_open

    client, upstream, state_while_open = asyncio.run(scenario())
    assert state_while_open is SessionState.READY
    assert [error["code"] for error in client.errors()] == ["processing_error", "processing_error"]
    assert upstream.sends == [("event", {"type": "response.create"})]


def test_upstream_connect_failure_fails_session():
    async def scenario():
        client, upstream = StubClient(), StubUpstream(fail_connect=True)
        client.push({"type": "session.update"})
        _, task = start(client, upstream)
        return await asyncio.wait_for(task, 2), client, upstream

    state, client, upstream = asyncio.run(scenario())
    assert state is SessionState.FAILED
    assert [error["code"] for error in client.errors()] == ["connection_failed"]
    assert client.closed
    assert upstream.sends == []


def test_upstream_events_are_forwarded_verbatim():
    event = {"type": "response.audio_transcript.delta", "delta": "Bonjour", "nested": {"a": [1, 2]}}

    async def scenario():
        client, upstream = StubClient(), StubUpstream()
        _, task = start(client, upstream)
        await wait_until(lambda: upstream.connected)
        upstream.emit(event)
        upstream.emit({"type": "error", "error": {"message": "upstream said no"}})
        await wait_until(lambda: len(client.sent) == 2)
        client.disconnect()
        await asyncio.wait_for(task, 2)
        return client

    client = asyncio.run(scenario())
    assert client.sent[0] == event
    assert client.sent[1] == {"type": "error", "error": {"message": "upstream said no"}}


def test_upstream_frames_that_are_not_objects_are_forwarded_raw():
    async def scenario():
        client, upstream = StubClient(), StubUpstream()
        _, task = start(client, upstream)
        await wait_until(lambda: upstream.connected)
        upstream.emit("not json")
        upstream.emit("[1, 2]")
        upstream.emit({"type": "response.done"})
        await wait_until(lambda: len(client.sent) == 3)
        client.disconnect()
        await asyncio.wait_for(task, 2)
        return client

    client = asyncio.run(scenario())
    assert client.sent == ["not json", [1, 2], {"type": "response.done"}]
    assert client.errors() == []


def test_disconnect_racing_connect_closes_without_draining_queue():
    async def scenario():
        gate = asyncio.Event()
        client, upstream = StubClient(), StubUpstream(gate=gate)
        session, task = start(client, upstream)
        client.push({"type": "session.update"})
        await wait_until(lambda: session.pending == 1)
        client.disconnect()
        gate.set()
        return await asyncio.wait_for(task, 2), upstream

    state, upstream = asyncio.run(scenario())
    assert state is SessionState.CLOSED
    assert upstream.connected
    assert upstream.closed
    assert upstream.sends == []


def test_client_disconnect_closes_upstream():
    async def scenario():
        client, upstream = StubClient(), StubUpstream()
        _, task = start(client, upstream)
        await wait_until(lambda: upstream.connected)
        client.disconnect()
        return await asyncio.wait_for(task, 2), upstream

    state, upstream = asyncio.run(scenario())
    assert state is SessionState.CLOSED
    assert upstream.closed


def test_upstream_close_closes_client():
    async def scenario():
        client, upstream = StubClient(), StubUpstream()
        _, task = start(client, upstream)
        await wait_until(lambda: upstream.connected)
        upstream.hang_up()
        return await asyncio.wait_for(task, 2), client

    state, client = asyncio.run(scenario())
    assert state is SessionState.CLOSED
    assert client.closed
    assert client.errors() == []


def test_upstream_error_fails_session_and_notifies_client():
    async def scenario():
        client, upstream = StubClient(), StubUpstream()
        _, task = start(client, upstream)
        await wait_until(lambda: upstream.connected)
        upstream.fail("socket reset")
        return await asyncio.wait_for(task, 2), client

    state, client = asyncio.run(scenario())
    assert state is SessionState.FAILED
    assert client.errors() == [{"message": "socket reset", "code": "unknown"}]
    assert client.closed


def test_close_during_connect_ends_session():
    async def scenario():
        client, upstream = StubClient(), StubUpstream(gate=asyncio.Event())
        session, task = start(client, upstream)
        await asyncio.sleep(0.02)
        session.close()
        return await asyncio.wait_for(task, 2), upstream

    state, upstream = asyncio.run(scenario())
    assert state is SessionState.CLOSED
    assert not upstream.connected
    assert upstream.closed


def test_closing_session_cancels_inflight_retrieval():
    backend = BlockingBackend()

    async def scenario():
        client, upstream = StubClient(), StubUpstream()
        _, task = start(client, upstream, make_engine(backend))
        client.push({"type": "input_text", "text": "What is in Paris?"})
        await backend.started.wait()
        client.disconnect()
        return await asyncio.wait_for(task, 2), upstream

    state, upstream = asyncio.run(scenario())
    assert state is SessionState.CLOSED
    assert backend.cancelled
    assert upstream.sends == []


def test_missing_response_triggers_timeout_error():
    async def scenario():
        client, upstream = StubClient(), StubUpstream()
        session, task = start(client, upstream, response_timeout_seconds=0.05)
        client.push({"type": "input_text", "text": "hello"})
        await wait_until(lambda: bool(client.errors()))
        state_after_timeout = session.state
        client.disconnect()
        await asyncio.wait_for(task, 2)
        return client, state_after_timeout

    client, state_after_timeout = asyncio.run(scenario())
    assert [error["code"] for error in client.errors()] == ["timeout"]
    assert state_after_timeout is SessionState.READY


def test_assistant_reply_disarms_timeout():
    async def scenario():
        client, upstream = StubClient(), StubUpstream(auto_reply=True)
        _, task = start(client, upstream, response_timeout_seconds=0.05)
        client.push({"type": "input_text", "text": "hello"})
        await wait_until(lambda: len(client.sent) == 1)
        await asyncio.sleep(0.15)
        client.disconnect()
        await asyncio.wait_for(task, 2)
        return client

    client = asyncio.run(scenario())
    assert client.errors() == []
    assert client.sent[0]["type"] == "conversation.item.created"


def test_terminal_session_ignores_writes():
    async def scenario():
        client, upstream = StubClient(), StubUpstream()
        session, task = start(client, upstream)
        await wait_until(lambda: upstream.connected)
        client.disconnect()
        await asyncio.wait_for(task, 2)
        client.closed = False
        await session._send_client({"type": "late"})
        return client

    client = asyncio.run(scenario())
    assert client.sent == []
