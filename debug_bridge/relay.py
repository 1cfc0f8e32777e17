from __future__ import annotations

import asyncio
import contextlib
import hmac
import json
import logging
import threading
import time
import urllib.parse
from dataclasses import dataclass, field
from typing import Any

import websockets
from websockets.datastructures import Headers as WsHeaders
from websockets.exceptions import ConnectionClosed
from websockets.http11 import Response as WsResponse

from .config import RelayConfig
from .protocol import (
    COMMAND_RESULT,
    ORIGIN_SERVER,
    ROLE_AGENT,
    ROLE_APP,
    ROLES,
    ErrorCode,
    command_result,
    connection_event,
    encode,
    envelope,
    is_command,
    parse_frame,
)
from .rate_limit import TokenBucket

logger = logging.getLogger("debug_bridge.relay")

CLOSE_INVALID_SESSION = 4000
CLOSE_INVALID_ROLE = 4001
CLOSE_INVALID_TOKEN = 4003


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(eq=False)
class RelayClient:
    role: str
    session_id: str
    client_id: str
    ws: Any
    connected_at_ms: int = field(default_factory=_now_ms)
    bucket: TokenBucket | None = None


class RelayServer:
    """Session-scoped relay between app and agent clients.

    - Sync facade (start/stop/status); asyncio server runs in a daemon thread.
    - Every frame goes verbatim to the opposite role of the same session, never back to the sender.
    - Session and client maps are only mutated on the relay's event loop.
    """

    def __init__(self, config: RelayConfig | None = None) -> None:
        self.config = config or RelayConfig.from_env()
        self.config.path = RelayConfig.normalize_path(self.config.path)
        self.host = self.config.host
        self.port = int(self.config.port)

        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._server: Any | None = None
        self._stop_event: asyncio.Event | None = None
        self._bind_error: str | None = None
        self._started_at_ms = 0

        self._sessions: dict[str, list[RelayClient]] = {}
        self._seq = 0
        self._stats = {"forwarded": 0, "malformed": 0, "rateLimited": 0, "rejected": 0}

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def start(self, *, wait_timeout: float = 5.0) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        with self._lock:
            self._bind_error = None
            self._server = None

        t = threading.Thread(target=self._run_thread, name="debug-bridge-relay", daemon=True)
        self._thread = t
        t.start()

        deadline = time.time() + max(0.05, float(wait_timeout))
        while time.time() < deadline:
            with self._lock:
                server = self._server
                bind_error = self._bind_error
            if server is not None:
                return
            if bind_error or not t.is_alive():
                break
            time.sleep(0.02)

        with self._lock:
            bind_error = self._bind_error
            server = self._server
        if server is not None:
            return
        if bind_error:
            raise RuntimeError(f"Relay bind failed on {self.host}:{self.port}: {bind_error}")
        raise RuntimeError(f"Relay failed to start on {self.host}:{self.port}")

    def stop(self, *, timeout: float = 2.0) -> None:
        loop = self._loop
        stop_event = self._stop_event
        if loop is not None and stop_event is not None:
            with contextlib.suppress(RuntimeError):
                loop.call_soon_threadsafe(stop_event.set)
        t = self._thread
        if t is not None:
            t.join(timeout=timeout)

    def serve_forever(self) -> None:
        """Block the calling thread until the relay thread exits."""
        t = self._thread
        if t is not None:
            t.join()

    def status(self) -> dict[str, Any]:
        with self._lock:
            server = self._server
            bind_error = self._bind_error
            sessions = {
                sid: {
                    "apps": [c.client_id for c in clients if c.role == ROLE_APP],
                    "agents": [c.client_id for c in clients if c.role == ROLE_AGENT],
                }
                for sid, clients in self._sessions.items()
            }
            stats = dict(self._stats)
            started = self._started_at_ms
        return {
            "type": "debugBridgeRelay",
            "listening": server is not None,
            "host": self.host,
            "port": self.port,
            "path": self.config.path,
            **({"sessionPinned": True} if self.config.session else {}),
            **({"auth": "token"} if self.config.token else {}),
            **({"rateLimit": self.config.rate_limit} if self.config.rate_limit > 0 else {}),
            **({"bindError": bind_error} if bind_error else {}),
            **({"startedAtMs": started, "uptimeMs": max(0, _now_ms() - started)} if started else {}),
            "sessions": sessions,
            "clients": sum(len(v["apps"]) + len(v["agents"]) for v in sessions.values()),
            "stats": stats,
        }

    def _run_thread(self) -> None:
        asyncio.run(self._run_async())

    async def _run_async(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        try:
            server = await websockets.serve(
                self._handler,
                self.host,
                self.port,
                process_request=self._process_request,
                max_size=int(self.config.max_frame_bytes),
                ping_interval=None,
            )
        except OSError as exc:
            with self._lock:
                self._bind_error = str(exc)
            logger.error("relay bind failed on %s:%s: %s", self.host, self.port, exc)
            return

        with contextlib.suppress(Exception):
            sockets = list(server.sockets or [])
            if sockets:
                self.port = int(sockets[0].getsockname()[1])
        with self._lock:
            self._server = server
            self._started_at_ms = _now_ms()
        logger.info("relay listening on ws://%s:%s%s", self.host, self.port, self.config.path)

        try:
            await self._stop_event.wait()
        finally:
            await self._shutdown_async()

    async def _shutdown_async(self) -> None:
        with self._lock:
            srv = self._server
            self._server = None
        if srv is not None:
            with contextlib.suppress(Exception):
                srv.close()
                await srv.wait_closed()
        logger.info("relay stopped")

    # ─────────────────────────────────────────────────────────────────────────
    # HTTP
    # ─────────────────────────────────────────────────────────────────────────

    @staticmethod
    def _http_response(status: int, reason: str, body: bytes, content_type: str) -> WsResponse:
        headers = WsHeaders()
        headers["Content-Type"] = content_type
        headers["Cache-Control"] = "no-store"
        headers["Content-Length"] = str(len(body))
        return WsResponse(status, reason, headers, body)

    def _process_request(self, _conn: Any, request: Any) -> WsResponse | None:
        try:
            path = urllib.parse.urlsplit(str(request.path or "")).path.rstrip("/") or "/"
            if path == self.config.path:
                return None
            if path == f"{self.config.path}/health":
                body = json.dumps(self.status(), separators=(",", ":"), ensure_ascii=False).encode("utf-8")
                return self._http_response(200, "OK", body, "application/json")
            return self._http_response(404, "Not Found", b"not found", "text/plain")
        except Exception:  # noqa: BLE001
            logger.debug("process_request failed", exc_info=True)
            return None

    # ─────────────────────────────────────────────────────────────────────────
    # Connections
    # ─────────────────────────────────────────────────────────────────────────

    async def _reject(self, ws: Any, code: int, reason: str) -> None:
        with self._lock:
            self._stats["rejected"] += 1
        logger.info("relay rejected connection: %s", reason)
        with contextlib.suppress(Exception):
            await ws.close(code=code, reason=reason)

    def _check_handshake(self, query: dict[str, list[str]]) -> tuple[int, str] | None:
        def _first(key: str) -> str:
            values = query.get(key) or [""]
            return str(values[0] or "").strip()

        role = _first("role")
        session_id = _first("sessionId")
        if role not in ROLES:
            return CLOSE_INVALID_ROLE, "Invalid role"
        if not session_id or (self.config.session and session_id != self.config.session):
            return CLOSE_INVALID_SESSION, "Invalid session"
        if self.config.token:
            token = _first("token")
            if not hmac.compare_digest(token.encode("utf-8"), self.config.token.encode("utf-8")):
                return CLOSE_INVALID_TOKEN, "Invalid token"
        return None

    def _new_client_id(self, role: str, query: dict[str, list[str]]) -> str:
        key = "appId" if role == ROLE_APP else "agentId"
        requested = str((query.get(key) or [""])[0] or "").strip()
        if requested:
            return requested
        if role == ROLE_APP:
            return f"app-{_now_ms()}"
        with self._lock:
            self._seq += 1
            seq = self._seq
        return f"agent-{_now_ms()}-{seq}"

    def _roster(self, session_id: str) -> tuple[list[str], list[str]]:
        with self._lock:
            clients = list(self._sessions.get(session_id, ()))
        return (
            [c.client_id for c in clients if c.role == ROLE_APP],
            [c.client_id for c in clients if c.role == ROLE_AGENT],
        )

    def _members(self, session_id: str) -> list[RelayClient]:
        with self._lock:
            return list(self._sessions.get(session_id, ()))

    async def _handler(self, ws: Any) -> None:
        query = urllib.parse.parse_qs(urllib.parse.urlsplit(str(ws.request.path or "")).query)
        rejection = self._check_handshake(query)
        if rejection is not None:
            await self._reject(ws, *rejection)
            return

        role = str(query["role"][0]).strip()
        session_id = str(query["sessionId"][0]).strip()
        bucket = None
        if self.config.rate_limit > 0:
            bucket = TokenBucket(self.config.rate_limit, self.config.rate_burst)
        client = RelayClient(
            role=role,
            session_id=session_id,
            client_id=self._new_client_id(role, query),
            ws=ws,
            bucket=bucket,
        )

        with self._lock:
            self._sessions.setdefault(session_id, []).append(client)
        logger.info("%s %s connected to session %s", role, client.client_id, session_id)
        await self._announce(client, "connected")

        try:
            async for raw in ws:
                await self._on_frame(client, raw)
        except ConnectionClosed:
            pass
        finally:
            with self._lock:
                members = self._sessions.get(session_id, [])
                if client in members:
                    members.remove(client)
                if not members:
                    self._sessions.pop(session_id, None)
            logger.info("%s %s disconnected from session %s", role, client.client_id, session_id)
            await self._announce(client, "disconnected")

    async def _announce(self, client: RelayClient, what: str) -> None:
        apps, agents = self._roster(client.session_id)
        event = connection_event(
            client.session_id,
            f"{client.role}_{what}",
            connected_apps=apps,
            connected_agents=agents,
            app_id=client.client_id if client.role == ROLE_APP else None,
            agent_id=client.client_id if client.role == ROLE_AGENT else None,
        )
        others = [c for c in self._members(client.session_id) if c is not client]
        await self._broadcast(others, encode(event))

    # ─────────────────────────────────────────────────────────────────────────
    # Routing
    # ─────────────────────────────────────────────────────────────────────────

    async def _on_frame(self, client: RelayClient, raw: Any) -> None:
        msg = parse_frame(raw)
        if msg is None:
            with self._lock:
                self._stats["malformed"] += 1
            return

        if client.bucket is not None and not client.bucket.allow():
            with self._lock:
                self._stats["rateLimited"] += 1
            if client.role == ROLE_AGENT and is_command(msg):
                reply = envelope(
                    COMMAND_RESULT,
                    session_id=client.session_id,
                    origin=ORIGIN_SERVER,
                    **command_result(
                        str(msg["requestId"]),
                        str(msg.get("type") or ""),
                        success=False,
                        duration=0,
                        code=ErrorCode.RATE_LIMITED,
                        message="Rate limit exceeded",
                    ),
                )
                await self._broadcast([client], encode(reply))
            else:
                logger.debug("relay dropped rate-limited frame from %s", client.client_id)
            return

        text = raw if isinstance(raw, str) else bytes(raw).decode("utf-8", errors="replace")
        targets = [c for c in self._members(client.session_id) if c.role != client.role and c is not client]
        if targets:
            with self._lock:
                self._stats["forwarded"] += 1
        await self._broadcast(targets, text)

    @staticmethod
    async def _safe_send(ws: Any, text: str) -> None:
        with contextlib.suppress(Exception):
            await ws.send(text)

    async def _broadcast(self, clients: list[RelayClient], text: str) -> None:
        if not clients:
            return
        await asyncio.gather(*[self._safe_send(c.ws, text) for c in clients], return_exceptions=True)
