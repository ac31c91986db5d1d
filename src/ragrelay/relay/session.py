"""Per-connection relay between a browser client and the upstream API.

A session moves through CONNECTING -> READY -> CLOSED/FAILED. Client frames
are queued from the moment the session starts and are only processed once the
upstream link is READY, strictly in arrival order. Plain text turns are
augmented with retrieved context; every other client event and every upstream
event passes through unchanged.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Protocol
from uuid import uuid4

from starlette.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from ragrelay.errors import (
    CONNECTION_FAILED,
    PROCESSING_ERROR,
    TIMEOUT,
    UNKNOWN,
    ParseError,
    UpstreamError,
    error_event,
)
from ragrelay.metrics.observability import RelayMetrics, bind_session_id, clear_session_id, get_logger
from ragrelay.relay.prompt import ContextPromptBuilder
from ragrelay.relay.upstream import UpstreamConnection
from ragrelay.retrieval import RetrievalEngine

TEXT_TURN_TYPE = "input_text"


class SessionState(str, Enum):
    CONNECTING = "connecting"
    READY = "ready"
    CLOSED = "closed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.CLOSED, SessionState.FAILED)


_TRANSITIONS: Dict[SessionState, frozenset[SessionState]] = {
    SessionState.CONNECTING: frozenset({SessionState.READY, SessionState.CLOSED, SessionState.FAILED}),
    SessionState.READY: frozenset({SessionState.CLOSED, SessionState.FAILED}),
    SessionState.CLOSED: frozenset(),
    SessionState.FAILED: frozenset(),
}


@dataclass(frozen=True)
class RelayConfig:
    """Per-session behaviour shared by every session of a manager."""

    response_timeout_seconds: float = 30.0
    context_settle_seconds: float = 0.0
    top_k: int | None = None
    min_score: float | None = None


class ClientChannel(Protocol):
    """Text frame transport to the browser client."""

    async def receive(self) -> str | None:
        """Return the next frame, or ``None`` once the client disconnected."""

    async def send(self, text: str) -> None:
        """Send a frame; a no-op once the channel is closed."""

    async def close(self) -> None:
        """Close the channel; safe to call more than once."""


class WebSocketClientChannel:
    """``ClientChannel`` over an accepted Starlette websocket."""

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def receive(self) -> str | None:
        if self._closed:
            return None
        message = await self._websocket.receive()
        if message["type"] == "websocket.disconnect":
            self._closed = True
            return None
        text = message.get("text")
        if text is None and message.get("bytes") is not None:
            text = message["bytes"].decode("utf-8", errors="replace")
        return text or ""

    async def send(self, text: str) -> None:
        if self._closed or self._websocket.application_state != WebSocketState.CONNECTED:
            return
        try:
            await self._websocket.send_text(text)
        except (WebSocketDisconnect, RuntimeError):
            self._closed = True

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._websocket.application_state == WebSocketState.CONNECTED:
            try:
                await self._websocket.close()
            except RuntimeError:
                pass


class SessionRelay:
    """Owns one client channel and one upstream connection."""

    def __init__(
        self,
        client: ClientChannel,
        upstream: UpstreamConnection,
        engine: RetrievalEngine,
        config: RelayConfig | None = None,
        *,
        session_id: str | None = None,
        prompt_builder: ContextPromptBuilder | None = None,
    ) -> None:
        self._client = client
        self._upstream = upstream
        self._engine = engine
        self._config = config or RelayConfig()
        self._prompt_builder = prompt_builder or ContextPromptBuilder()
        self.session_id = session_id or uuid4().hex
        self._state = SessionState.CONNECTING
        self._pending: asyncio.Queue[str] = asyncio.Queue()
        self._reader: asyncio.Task[None] | None = None
        self._processor: asyncio.Task[None] | None = None
        self._pump: asyncio.Task[None] | None = None
        self._watchdog: asyncio.Task[None] | None = None
        self._response_seen = True
        self._logger = get_logger("relay")

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def pending(self) -> int:
        return self._pending.qsize()

    async def run(self) -> SessionState:
        """Drive the session until it reaches a terminal state."""

        bind_session_id(self.session_id)
        RelayMetrics.active_sessions.inc()
        self._logger.info("session.started")
        self._reader = asyncio.create_task(self._read_client())
        try:
            await self._connect_upstream()
            if self._state is SessionState.READY:
                await self._relay()
        finally:
            if not self._state.is_terminal:
                self._transition(SessionState.CLOSED, reason="session_stopped")
            await self._shutdown()
            RelayMetrics.active_sessions.dec()
            RelayMetrics.sessions_total.labels(state=self._state.value).inc()
            clear_session_id()
        return self._state

    def close(self) -> None:
        """Ask a running session to stop as if the client had left."""

        if self._reader is not None:
            self._reader.cancel()

    def _transition(self, target: SessionState, *, reason: str) -> bool:
        if target not in _TRANSITIONS[self._state]:
            self._logger.warning(
                "session.transition_ignored",
                current=self._state.value,
                target=target.value,
                reason=reason,
            )
            return False
        previous, self._state = self._state, target
        self._logger.info("session.state", previous=previous.value, state=target.value, reason=reason)
        return True

    async def _read_client(self) -> None:
        while True:
            message = await self._client.receive()
            if message is None or self._state.is_terminal:
                return
            self._pending.put_nowait(message)

    async def _connect_upstream(self) -> None:
        assert self._reader is not None
        connect_task = asyncio.create_task(self._upstream.connect())
        done, _ = await asyncio.wait({connect_task, self._reader}, return_when=asyncio.FIRST_COMPLETED)
        # a disconnect wins over a connect completing in the same turn
        if self._reader in done:
            if not connect_task.done():
                connect_task.cancel()
            await asyncio.gather(connect_task, return_exceptions=True)
            self._transition(SessionState.CLOSED, reason="client_disconnected")
            return
        try:
            connect_task.result()
        except Exception as exc:
            self._logger.error("session.upstream_connect_failed", error=str(exc))
            await self._send_error(f"Failed to connect to upstream: {exc}", CONNECTION_FAILED)
            self._transition(SessionState.FAILED, reason="upstream_connect_failed")
            return
        self._transition(SessionState.READY, reason="upstream_connected")
        if self._pending.qsize():
            self._logger.info("session.draining_queue", pending=self._pending.qsize())

    async def _relay(self) -> None:
        assert self._reader is not None
        self._processor = asyncio.create_task(self._process_pending())
        self._pump = asyncio.create_task(self._pump_upstream())
        done, _ = await asyncio.wait(
            {self._reader, self._processor, self._pump},
            return_when=asyncio.FIRST_COMPLETED,
        )
        if self._pump in done:
            error = None if self._pump.cancelled() else self._pump.exception()
            if error is None:
                self._transition(SessionState.CLOSED, reason="upstream_closed")
            else:
                self._logger.error("session.upstream_error", error=str(error))
                await self._send_error(str(error), getattr(error, "code", UNKNOWN))
                self._transition(SessionState.FAILED, reason="upstream_error")
        elif self._processor in done:
            error = None if self._processor.cancelled() else self._processor.exception()
            if error is None:
                self._transition(SessionState.CLOSED, reason="processor_stopped")
            else:
                self._logger.error("session.processing_failed", error=str(error))
                await self._send_error(str(error), getattr(error, "code", UNKNOWN))
                self._transition(SessionState.FAILED, reason="upstream_send_failed")
        else:
            self._transition(SessionState.CLOSED, reason="client_disconnected")

    async def _process_pending(self) -> None:
        while True:
            raw = await self._pending.get()
            await self._handle_client_message(raw)

    async def _handle_client_message(self, raw: str) -> None:
        try:
            event = self._parse(raw)
            event_type = event["type"]
            if event_type == TEXT_TURN_TYPE and event.get("text"):
                await self._handle_text_turn(str(event["text"]))
                return
            self._logger.info("client.forward", type=event_type)
            RelayMetrics.observe_forward("client", str(event_type))
            await self._upstream.send(event)
        except ParseError as exc:
            self._logger.warning("client.parse_error", error=str(exc), size=len(raw))
            await self._send_error(f"Error processing message: {exc}", exc.code)
        except UpstreamError:
            raise
        except Exception as exc:
            self._logger.error("client.processing_error", error=str(exc), error_type=type(exc).__name__)
            await self._send_error(f"Error processing message: {exc}", PROCESSING_ERROR)

    @staticmethod
    def _parse(raw: str) -> Dict[str, Any]:
        try:
            event = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise ParseError(f"invalid JSON: {exc}") from exc
        if not isinstance(event, dict):
            raise ParseError("expected a JSON object")
        if not isinstance(event.get("type"), str):
            raise ParseError("missing string 'type' field")
        return event

    async def _handle_text_turn(self, text: str) -> None:
        self._response_seen = False
        results = await self._engine.query_context(
            text,
            top_k=self._config.top_k,
            min_score=self._config.min_score,
        )
        if results:
            context = self._prompt_builder.build(results)
            self._logger.info(
                "client.forward",
                type="system_context",
                sources=[result.source_name for result in results],
            )
            RelayMetrics.observe_forward("client", "system_context")
            RelayMetrics.context_injections.inc()
            await self._upstream.send_system_message(context)
            if self._config.context_settle_seconds > 0:
                await asyncio.sleep(self._config.context_settle_seconds)
        self._logger.info("client.forward", type=TEXT_TURN_TYPE, with_context=bool(results))
        RelayMetrics.observe_forward("client", TEXT_TURN_TYPE)
        await self._upstream.send_user_message(text)
        self._arm_watchdog()

    def _arm_watchdog(self) -> None:
        self._cancel_watchdog()
        timeout = self._config.response_timeout_seconds
        if timeout > 0 and not self._response_seen:
            self._watchdog = asyncio.create_task(self._watch_response(timeout))

    def _cancel_watchdog(self) -> None:
        if self._watchdog is not None and not self._watchdog.done():
            self._watchdog.cancel()
        self._watchdog = None

    async def _watch_response(self, timeout: float) -> None:
        await asyncio.sleep(timeout)
        if not self._response_seen:
            self._logger.warning("session.response_timeout", timeout_seconds=timeout)
            await self._send_error("No response received from upstream within timeout period", TIMEOUT)

    async def _pump_upstream(self) -> None:
        async for event in self._upstream.events():
            if isinstance(event, str):
                RelayMetrics.observe_forward("upstream", "raw")
                await self._send_client(event)
                continue
            event_type = str(event.get("type", "unknown"))
            if event_type == "conversation.item.created" and (event.get("item") or {}).get("role") == "assistant":
                self._response_seen = True
                self._cancel_watchdog()
            RelayMetrics.observe_forward("upstream", event_type)
            self._logger.debug("upstream.forward", type=event_type)
            await self._send_client(event)

    async def _send_client(self, event: Dict[str, Any] | str) -> None:
        if self._state.is_terminal:
            return
        frame = event if isinstance(event, str) else json.dumps(event)
        try:
            await self._client.send(frame)
        except Exception as exc:
            self._logger.warning("client.send_failed", error=str(exc))

    async def _send_error(self, message: str, code: str) -> None:
        RelayMetrics.client_errors.labels(code=code).inc()
        await self._send_client(error_event(message, code))

    async def _shutdown(self) -> None:
        self._cancel_watchdog()
        tasks = [task for task in (self._reader, self._processor, self._pump) if task is not None]
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        dropped = 0
        while not self._pending.empty():
            self._pending.get_nowait()
            dropped += 1
        if dropped:
            self._logger.info("session.pending_dropped", count=dropped)
        try:
            await self._upstream.close()
        except Exception as exc:
            self._logger.warning("session.upstream_close_failed", error=str(exc))
        try:
            await self._client.close()
        except Exception as exc:
            self._logger.warning("session.client_close_failed", error=str(exc))
        self._logger.info("session.finished", state=self._state.value)
