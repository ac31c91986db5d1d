"""Connection to the upstream realtime conversation API."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Protocol
from urllib.parse import urlencode
from uuid import uuid4

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK

from ragrelay.errors import UpstreamConnectError, UpstreamError
from ragrelay.metrics.observability import get_logger

Event = Dict[str, Any]


class UpstreamConnection(Protocol):
    """Opaque bidirectional event stream to the conversation API."""

    async def connect(self) -> None:
        """Open the link; raises ``UpstreamConnectError`` on failure."""

    async def send(self, event: Event) -> None:
        """Send one event verbatim."""

    async def send_system_message(self, text: str) -> None:
        """Add a system message to the conversation."""

    async def send_user_message(self, text: str) -> None:
        """Add a user message and request a response."""

    def events(self) -> AsyncIterator[Event | str]:
        """Yield upstream events until the link closes.

        Frames that are not JSON objects are yielded as the raw text.
        """

    async def close(self) -> None:
        """Close the link; safe to call more than once."""


@dataclass(frozen=True)
class UpstreamConfig:
    """Connection settings for the realtime API."""

    url: str = "wss://api.openai.com/v1/realtime"
    model: str = "gpt-4o-realtime-preview-2024-10-01"
    api_key: str | None = None
    connect_timeout_seconds: float = 10.0

    @property
    def endpoint(self) -> str:
        return f"{self.url}?{urlencode({'model': self.model})}"


def _event_id() -> str:
    return f"evt_{uuid4().hex[:21]}"


def conversation_item(role: str, text: str) -> Event:
    return {
        "event_id": _event_id(),
        "type": "conversation.item.create",
        "item": {
            "type": "message",
            "role": role,
            "content": [{"type": "input_text", "text": text}],
        },
    }


class RealtimeUpstream:
    """``UpstreamConnection`` over a websocket to the realtime API."""

    def __init__(self, config: UpstreamConfig) -> None:
        self._config = config
        self._ws: ClientConnection | None = None
        self._closed = False
        self._logger = get_logger("upstream")

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and not self._closed

    async def connect(self) -> None:
        if self._closed:
            raise UpstreamConnectError("Upstream connection already closed")
        key = self._config.api_key or ""
        self._logger.info("upstream.connecting", endpoint=self._config.endpoint, key_prefix=key[:3])
        headers = {
            "Authorization": f"Bearer {key}",
            "OpenAI-Beta": "realtime=v1",
        }
        try:
            self._ws = await connect(
                self._config.endpoint,
                additional_headers=headers,
                open_timeout=self._config.connect_timeout_seconds,
                max_size=None,
            )
        except Exception as exc:
            self._logger.error("upstream.connect_failed", error=str(exc))
            raise UpstreamConnectError(f"Failed to connect to upstream: {exc}") from exc
        self._logger.info("upstream.connected")

    async def send(self, event: Event) -> None:
        if self._ws is None or self._closed:
            return
        try:
            await self._ws.send(json.dumps(event))
        except ConnectionClosed:
            self._logger.info("upstream.send_after_close", type=event.get("type"))

    async def send_system_message(self, text: str) -> None:
        await self.send(conversation_item("system", text))

    async def send_user_message(self, text: str) -> None:
        await self.send(conversation_item("user", text))
        await self.send({"event_id": _event_id(), "type": "response.create"})

    async def events(self) -> AsyncIterator[Event | str]:
        if self._ws is None:
            return
        try:
            async for raw in self._ws:
                if isinstance(raw, bytes):
                    raw = raw.decode("utf-8", errors="replace")
                try:
                    event = json.loads(raw)
                except json.JSONDecodeError:
                    event = None
                if isinstance(event, dict):
                    yield event
                else:
                    self._logger.debug("upstream.raw_frame", size=len(raw))
                    yield raw
        except ConnectionClosedOK:
            return
        except ConnectionClosed as exc:
            if self._closed:
                return
            raise UpstreamError(f"Upstream connection lost: {exc}") from exc

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._ws is not None:
            await self._ws.close()
            self._logger.info("upstream.closed")
