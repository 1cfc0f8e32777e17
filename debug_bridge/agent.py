from __future__ import annotations

import logging
import socket
import time
import urllib.parse
import uuid
from collections.abc import Callable
from contextlib import suppress
from typing import Any

import websocket

from .errors import AgentClientError
from .protocol import COMMAND_RESULT, ROLE_AGENT, encode, envelope, parse_frame

logger = logging.getLogger("debug_bridge.agent")

Predicate = Callable[[dict[str, Any]], bool]


class AgentClient:
    """Synchronous agent-side connection to the relay.

    Frames that arrive while a command waits for its ``command_result`` are
    buffered, so telemetry is never lost between calls.
    """

    def __init__(
        self,
        url: str = "ws://localhost:4000/debug",
        *,
        session_id: str = "default",
        agent_id: str | None = None,
        token: str | None = None,
        timeout: float = 5.0,
    ) -> None:
        self.url = url
        self.session_id = session_id
        self.agent_id = agent_id
        self.token = token
        self.timeout = float(timeout)
        self.ws: Any | None = None
        self.close_code: int | None = None
        self.close_reason: str | None = None
        self._buffer: list[dict[str, Any]] = []
        self._max_buffer = 5000
        # Last ui_tree items seen, for find().
        self.ui_tree: list[dict[str, Any]] = []

    def __enter__(self) -> AgentClient:
        self.connect()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # ─────────────────────────────────────────────────────────────────────────
    # Connection
    # ─────────────────────────────────────────────────────────────────────────

    @property
    def connect_url(self) -> str:
        query = {"role": ROLE_AGENT, "sessionId": self.session_id}
        if self.agent_id:
            query["agentId"] = self.agent_id
        if self.token:
            query["token"] = self.token
        parts = urllib.parse.urlsplit(self.url)
        merged = "&".join(p for p in (parts.query, urllib.parse.urlencode(query)) if p)
        return urllib.parse.urlunsplit((parts.scheme, parts.netloc, parts.path, merged, parts.fragment))

    def connect(self) -> None:
        if self.ws is not None:
            return
        try:
            self.ws = websocket.create_connection(self.connect_url, timeout=self.timeout)
        except Exception as exc:  # noqa: BLE001
            raise AgentClientError(f"Could not connect to relay at {self.url}: {exc}") from exc
        self.close_code = None
        self.close_reason = None
        logger.info("agent connected to %s (session %s)", self.url, self.session_id)

    def close(self) -> None:
        ws, self.ws = self.ws, None
        if ws is None:
            return
        with suppress(Exception):
            ws.close(timeout=1)
        with suppress(Exception):
            sock = getattr(ws, "sock", None)
            if sock is not None:
                sock.shutdown(socket.SHUT_RDWR)

    @property
    def connected(self) -> bool:
        return self.ws is not None

    # ─────────────────────────────────────────────────────────────────────────
    # Messages
    # ─────────────────────────────────────────────────────────────────────────

    def send(self, msg_type: str, **payload: Any) -> dict[str, Any]:
        ws = self._require_ws()
        msg = envelope(msg_type, session_id=self.session_id, origin=ROLE_AGENT, **payload)
        try:
            ws.send(encode(msg))
        except Exception as exc:  # noqa: BLE001
            raise AgentClientError(f"Send failed: {exc}") from exc
        return msg

    def command(self, command_type: str, *, timeout: float | None = None, **payload: Any) -> dict[str, Any]:
        """Send one command and return its ``command_result`` (success or failure)."""
        # The relay fans results out to every agent in the session; ids must not collide across agents.
        request_id = f"req-{uuid.uuid4().hex}"
        self.send(command_type, requestId=request_id, **payload)

        def _matches(msg: dict[str, Any]) -> bool:
            return msg.get("requestId") == request_id

        result = self.wait_for(COMMAND_RESULT, _matches, timeout=timeout)
        if result is None:
            raise AgentClientError(f"Timed out waiting for {command_type} result ({request_id})")
        return result

    def pop(self, msg_type: str, predicate: Predicate | None = None) -> dict[str, Any] | None:
        """Pop the oldest buffered message of ``msg_type`` (optionally matching ``predicate``)."""
        for i, msg in enumerate(self._buffer):
            if msg.get("type") == msg_type and (predicate is None or predicate(msg)):
                return self._buffer.pop(i)
        return None

    def drain(self) -> list[dict[str, Any]]:
        out, self._buffer = self._buffer, []
        return out

    def wait_for(
        self,
        msg_type: str,
        predicate: Predicate | None = None,
        *,
        timeout: float | None = None,
    ) -> dict[str, Any] | None:
        queued = self.pop(msg_type, predicate)
        if queued is not None:
            return queued

        deadline = time.time() + (self.timeout if timeout is None else max(0.0, float(timeout)))
        while True:
            remaining = deadline - time.time()
            if remaining <= 0:
                return None
            msg = self._recv(remaining)
            if msg is None:
                continue
            if msg.get("type") == msg_type and (predicate is None or predicate(msg)):
                return msg
            self._push(msg)

    # ─────────────────────────────────────────────────────────────────────────
    # UI tree helpers
    # ─────────────────────────────────────────────────────────────────────────

    def refresh_ui_tree(self, *, timeout: float | None = None) -> list[dict[str, Any]]:
        res = self.command("request_ui_tree", timeout=timeout)
        if not res.get("success"):
            err = res.get("error") or {}
            raise AgentClientError(f"request_ui_tree failed: {err.get('code')}: {err.get('message')}")
        request_id = res.get("requestId")
        tree = self.pop("ui_tree", lambda m: m.get("requestId") == request_id)
        if tree is None:
            tree = self.wait_for("ui_tree", lambda m: m.get("requestId") == request_id, timeout=timeout)
        if tree is not None:
            self.ui_tree = list(tree.get("items") or [])
        return self.ui_tree

    @staticmethod
    def find(items: list[dict[str, Any]], query: str | int) -> dict[str, Any] | None:
        """Pick a UI tree item by list index or by case-insensitive text/label/placeholder/name."""
        if isinstance(query, int) or (isinstance(query, str) and query.strip().isdigit()):
            idx = int(query)
            return items[idx] if 0 <= idx < len(items) else None
        needle = str(query or "").strip().lower()
        if not needle:
            return None
        for item in items:
            meta = item.get("meta") if isinstance(item.get("meta"), dict) else {}
            haystack = (
                item.get("text"),
                item.get("label"),
                meta.get("placeholder"),
                meta.get("name"),
            )
            if any(needle in str(v).lower() for v in haystack if v):
                return item
        return None

    # ─────────────────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────────────────

    def _require_ws(self) -> Any:
        if self.ws is None:
            raise AgentClientError("Agent is not connected")
        return self.ws

    def _push(self, msg: dict[str, Any]) -> None:
        if msg.get("type") == "ui_tree" and isinstance(msg.get("items"), list):
            self.ui_tree = list(msg["items"])
        self._buffer.append(msg)
        if len(self._buffer) > self._max_buffer:
            del self._buffer[: len(self._buffer) - self._max_buffer]

    def _recv(self, remaining: float) -> dict[str, Any] | None:
        """Receive one frame. ``None`` on timeout or for frames that are not JSON objects."""
        ws = self._require_ws()
        try:
            ws.settimeout(min(0.5, remaining))
            opcode, data = ws.recv_data(control_frame=True)
        except Exception as exc:  # noqa: BLE001
            if isinstance(exc, (TimeoutError, websocket.WebSocketTimeoutException)) or "timed out" in str(exc).lower():
                return None
            self.ws = None
            if self.close_code is not None:
                raise AgentClientError(f"Relay closed the connection: {self.close_code} {self.close_reason}") from exc
            raise AgentClientError(str(exc) or type(exc).__name__) from exc

        if opcode == websocket.ABNF.OPCODE_CLOSE:
            self._on_close_frame(data)
            self.ws = None
            raise AgentClientError(f"Relay closed the connection: {self.close_code} {self.close_reason}")
        if opcode not in (websocket.ABNF.OPCODE_TEXT, websocket.ABNF.OPCODE_BINARY):
            return None
        return parse_frame(data)

    def _on_close_frame(self, data: Any) -> None:
        raw = bytes(data or b"")
        if len(raw) >= 2:
            self.close_code = int.from_bytes(raw[:2], "big")
            self.close_reason = raw[2:].decode("utf-8", errors="replace")
        else:
            self.close_code = 1005
            self.close_reason = ""
        logger.info("agent connection closed by relay: %s %s", self.close_code, self.close_reason)
