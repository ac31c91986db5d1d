"""Accepts client websockets and runs one relay session per connection."""

from __future__ import annotations

import asyncio
from typing import Callable, Set

from starlette.websockets import WebSocket

from ragrelay.errors import ProtocolViolation
from ragrelay.metrics.observability import RelayMetrics, get_logger
from ragrelay.relay.session import RelayConfig, SessionRelay, WebSocketClientChannel
from ragrelay.relay.upstream import UpstreamConnection
from ragrelay.retrieval import RetrievalEngine

UpstreamFactory = Callable[[], UpstreamConnection]


class ConnectionManager:
    """Validates the handshake path and supervises relay sessions.

    Sessions share nothing but the retrieval engine. There is no connection
    limit or admission control.
    """

    def __init__(
        self,
        engine: RetrievalEngine,
        upstream_factory: UpstreamFactory,
        config: RelayConfig | None = None,
        *,
        path: str = "/",
    ) -> None:
        self._engine = engine
        self._upstream_factory = upstream_factory
        self._config = config or RelayConfig()
        self._path = path
        self._sessions: Set[SessionRelay] = set()
        self._logger = get_logger("manager")

    @property
    def path(self) -> str:
        return self._path

    @property
    def active_sessions(self) -> int:
        return len(self._sessions)

    def validate_path(self, path: str) -> None:
        if path != self._path:
            raise ProtocolViolation(f'Invalid pathname: "{path}"')

    async def handle(self, websocket: WebSocket) -> None:
        try:
            self.validate_path(websocket.url.path)
        except ProtocolViolation as exc:
            RelayMetrics.rejected_connections.inc()
            self._logger.warning("connection.rejected", path=websocket.url.path, error=str(exc))
            await websocket.close()
            return

        await websocket.accept()
        session = SessionRelay(
            WebSocketClientChannel(websocket),
            self._upstream_factory(),
            self._engine,
            self._config,
        )
        self._sessions.add(session)
        self._logger.info("connection.accepted", session_id=session.session_id, active=len(self._sessions))
        try:
            state = await session.run()
            self._logger.info("connection.finished", session_id=session.session_id, state=state.value)
        except Exception as exc:
            self._logger.error(
                "connection.session_crashed",
                session_id=session.session_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
        finally:
            self._sessions.discard(session)

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Stop every live session and wait briefly for them to finish."""

        sessions = list(self._sessions)
        if not sessions:
            return
        self._logger.info("manager.shutdown", sessions=len(sessions))
        for session in sessions:
            session.close()
        deadline = asyncio.get_running_loop().time() + timeout
        while self._sessions and asyncio.get_running_loop().time() < deadline:
            await asyncio.sleep(0.05)
