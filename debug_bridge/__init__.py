"""
Debug bridge: let an agent inspect and drive a running web app over JSON/WebSocket.

- relay: session-scoped router between app and agent clients
- bridge: app-side connection manager (collectors + command executor)
- agent: synchronous agent client
- page: the host page model the bridge instruments
"""

from .agent import AgentClient
from .bridge import ConnectionState, DebugBridge
from .config import BridgeConfig, RelayConfig
from .errors import AgentClientError, BridgeConnectionError, CommandError
from .page import Page
from .protocol import PROTOCOL_VERSION, ElementTarget, ErrorCode
from .relay import RelayServer
from .screenshot import Screenshot, WireframeRasterizer

__all__ = [
    "PROTOCOL_VERSION",
    "AgentClient",
    "AgentClientError",
    "BridgeConfig",
    "BridgeConnectionError",
    "CommandError",
    "ConnectionState",
    "DebugBridge",
    "ElementTarget",
    "ErrorCode",
    "Page",
    "RelayConfig",
    "RelayServer",
    "Screenshot",
    "WireframeRasterizer",
]
