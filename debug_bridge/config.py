from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name) or default)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name) or default)
    except ValueError:
        return default


@dataclass
class RelayConfig:
    host: str = "localhost"
    port: int = 4000
    path: str = "/debug"
    # Pin the relay to one session; None accepts any non-empty sessionId.
    session: str | None = None
    token: str | None = None
    rate_limit: float = 0.0
    rate_burst: int = 50
    max_frame_bytes: int = 5_000_000

    @staticmethod
    def normalize_path(raw: str | None) -> str:
        path = (raw or "").strip() or "/debug"
        if not path.startswith("/"):
            path = "/" + path
        return path.rstrip("/") or "/debug"

    @classmethod
    def from_env(cls) -> RelayConfig:
        return cls(
            host=(os.environ.get("DEBUG_BRIDGE_HOST") or "localhost").strip() or "localhost",
            port=_env_int("DEBUG_BRIDGE_PORT", 4000),
            path=cls.normalize_path(os.environ.get("DEBUG_BRIDGE_PATH")),
            session=(os.environ.get("DEBUG_BRIDGE_SESSION") or "").strip() or None,
            token=(os.environ.get("DEBUG_BRIDGE_TOKEN") or "").strip() or None,
            rate_limit=max(0.0, _env_float("DEBUG_BRIDGE_RATE_LIMIT", 0.0)),
            rate_burst=max(1, _env_int("DEBUG_BRIDGE_RATE_BURST", 50)),
            max_frame_bytes=max(1024, _env_int("DEBUG_BRIDGE_MAX_FRAME_BYTES", 5_000_000)),
        )


@dataclass
class BridgeConfig:
    """App-side bridge settings: where to connect, what to collect, how hard to retry."""

    url: str = "ws://localhost:4000/debug"
    session_id: str = "default"
    app_name: str = "app"
    app_version: str | None = None
    app_id: str | None = None
    token: str | None = None

    enable_dom_snapshot: bool = True
    enable_dom_mutations: bool = True
    enable_ui_tree: bool = True
    enable_console: bool = True
    enable_errors: bool = True
    enable_eval: bool = False
    enable_network: bool = True
    enable_navigation: bool = True

    dom_mutation_batch_ms: int = 100
    max_mutations_per_batch: int = 1000
    max_console_args: int = 10
    max_console_arg_length: int = 1000
    max_dom_snapshot_size: int = 5 * 1024 * 1024
    max_network_body_size: int = 10_000

    reconnect_base_ms: int = 1000
    reconnect_max_ms: int = 30_000
    reconnect_max_attempts: int = 10

    get_custom_state: Callable[[], dict[str, Any]] | None = None
    get_stable_id: Callable[[Any], str | None] | None = None
    network_url_filter: Callable[[str], bool] | None = None
    rasterizer: Callable[..., Any] | None = None

    on_connect: Callable[[], None] | None = None
    on_disconnect: Callable[[], None] | None = None
    on_error: Callable[[Exception], None] | None = None

    extra_capabilities: list[str] = field(default_factory=list)

    def capabilities(self) -> list[str]:
        flags = [
            ("dom_snapshot", self.enable_dom_snapshot),
            ("dom_mutations", self.enable_dom_mutations),
            ("ui_tree", self.enable_ui_tree),
            ("console", self.enable_console),
            ("errors", self.enable_errors),
            ("eval", self.enable_eval),
            ("custom_state", self.get_custom_state is not None),
            ("network", self.enable_network),
            ("navigation", self.enable_navigation),
            ("screenshot", self.rasterizer is not None),
        ]
        caps = [name for name, on in flags if on]
        for extra in self.extra_capabilities:
            if extra not in caps:
                caps.append(extra)
        return caps

    def reconnect_delay_ms(self, attempt: int) -> int:
        """Delay before reconnect ``attempt`` (1-based): min(base * 2**(attempt-1), max)."""
        n = max(1, int(attempt))
        return int(min(self.reconnect_base_ms * (2 ** (n - 1)), self.reconnect_max_ms))
