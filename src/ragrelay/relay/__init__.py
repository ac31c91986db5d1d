"""Client <-> upstream relay sessions."""

from .manager import ConnectionManager, UpstreamFactory
from .prompt import ContextPromptBuilder, PromptBuilderConfig
from .session import ClientChannel, RelayConfig, SessionRelay, SessionState, WebSocketClientChannel
from .upstream import RealtimeUpstream, UpstreamConfig, UpstreamConnection

__all__ = [
    "ClientChannel",
    "ConnectionManager",
    "ContextPromptBuilder",
    "PromptBuilderConfig",
    "RealtimeUpstream",
    "RelayConfig",
    "SessionRelay",
    "SessionState",
    "UpstreamConfig",
    "UpstreamConnection",
    "UpstreamFactory",
    "WebSocketClientChannel",
]
