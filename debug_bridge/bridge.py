from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
import time
import urllib.parse
from collections.abc import Callable
from enum import Enum
from typing import Any

import websockets
from websockets.exceptions import ConnectionClosed

from .commands.executor import CommandExecutor
from .config import BridgeConfig
from .errors import BridgeConnectionError
from .page.window import Page
from .protocol import ROLE_APP, encode, envelope, is_command, parse_frame
from .telemetry import ConsoleHook, DomObserver, ErrorHook, NavigationHook, NetworkHook

logger = logging.getLogger("debug_bridge.bridge")


def _now_ms() -> int:
    return int(time.time() * 1000)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


class DebugBridge:
    """App-side connection manager: one socket to the relay, collectors, command dispatch.

    - Sync facade (connect/disconnect/send); the socket lives on an asyncio loop in a daemon thread.
    - Each command runs in a worker thread (asyncio.to_thread) under page.lock, so several
      requestIds can be in flight and a slow rasterizer never stalls the socket.
    - Collectors may emit from any thread.
    - Telemetry is fire-and-forget: nothing is queued while the socket is not open.
    """

    def __init__(self, page: Page, config: BridgeConfig | None = None) -> None:
        self.page = page
        self.config = config or BridgeConfig()
        self.app_id = self.config.app_id or f"app-{_now_ms()}"
        self.executor = CommandExecutor(page, self.send, self.config)

        self._lock = threading.Lock()
        self._state = ConnectionState.DISCONNECTED
        self._state_changed = threading.Condition(self._lock)
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._ws: Any | None = None
        self._outbox: asyncio.Queue[str] | None = None
        self._wake: asyncio.Event | None = None
        self._intentional = False
        self._attempt = 0
        self._last_error: str | None = None
        self._collectors: list[Any] = []
        self._inflight: set[asyncio.Task[Any]] = set()

    # ─────────────────────────────────────────────────────────────────────────
    # Public API
    # ─────────────────────────────────────────────────────────────────────────

    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    @property
    def attempt(self) -> int:
        with self._lock:
            return self._attempt

    @property
    def url(self) -> str:
        query = {"role": ROLE_APP, "sessionId": self.config.session_id, "appId": self.app_id}
        if self.config.token:
            query["token"] = self.config.token
        parts = urllib.parse.urlsplit(self.config.url)
        merged = "&".join(p for p in (parts.query, urllib.parse.urlencode(query)) if p)
        return urllib.parse.urlunsplit((parts.scheme, parts.netloc, parts.path, merged, parts.fragment))

    def connect(self) -> None:
        with self._lock:
            state = self._state
            loop = self._loop
            wake = self._wake
        if state in (ConnectionState.OPEN, ConnectionState.CONNECTING):
            return
        if state == ConnectionState.RECONNECTING and loop is not None and wake is not None:
            with contextlib.suppress(RuntimeError):
                loop.call_soon_threadsafe(wake.set)
            return

        t = self._thread
        if t is not None and t.is_alive():
            t.join(timeout=2.0)
        with self._lock:
            self._intentional = False
            self._attempt = 0
            self._last_error = None
            self._set_state_locked(ConnectionState.CONNECTING)
        t = threading.Thread(target=self._run_thread, name="debug-bridge-app", daemon=True)
        self._thread = t
        t.start()

    def disconnect(self, *, timeout: float = 2.0) -> None:
        with self._lock:
            self._intentional = True
            loop = self._loop
            wake = self._wake
        if loop is not None:
            with contextlib.suppress(Exception):
                asyncio.run_coroutine_threadsafe(self._close_socket(), loop).result(timeout=timeout)
            if wake is not None:
                with contextlib.suppress(RuntimeError):
                    loop.call_soon_threadsafe(wake.set)
        t = self._thread
        if t is not None and t is not threading.current_thread():
            t.join(timeout=timeout)
        self._stop_collectors()
        with self._lock:
            self._set_state_locked(ConnectionState.CLOSED)

    def wait_until_open(self, *, timeout: float = 5.0) -> bool:
        return self.wait_for_state(ConnectionState.OPEN, timeout=timeout)

    def wait_for_state(self, state: ConnectionState, *, timeout: float = 5.0) -> bool:
        deadline = time.time() + max(0.0, float(timeout))
        with self._state_changed:
            while self._state != state:
                remaining = deadline - time.time()
                if remaining <= 0:
                    return False
                self._state_changed.wait(timeout=remaining)
            return True

    def send(self, msg_type: str, payload: dict[str, Any] | None = None) -> None:
        """Queue one frame for the socket. Silently dropped unless OPEN."""
        with self._lock:
            if self._state != ConnectionState.OPEN:
                return
            loop = self._loop
            outbox = self._outbox
        if loop is None or outbox is None:
            return
        frame = envelope(msg_type, session_id=self.config.session_id, origin=ROLE_APP, **(payload or {}))
        with contextlib.suppress(RuntimeError):
            loop.call_soon_threadsafe(outbox.put_nowait, encode(frame))

    def send_state(self, scope: str, state: Any) -> None:
        self.send("state_update", {"scope": scope, "state": state})

    def status(self) -> dict[str, Any]:
        with self._lock:
            return {
                "state": self._state.value,
                "url": self.config.url,
                "sessionId": self.config.session_id,
                "appId": self.app_id,
                "attempt": self._attempt,
                **({"lastError": self._last_error} if self._last_error else {}),
            }

    # ─────────────────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────────────────

    def _set_state_locked(self, state: ConnectionState) -> None:
        if self._state != state:
            logger.debug("bridge state %s -> %s", self._state.value, state.value)
        self._state = state
        self._state_changed.notify_all()

    def _set_state(self, state: ConnectionState) -> None:
        with self._lock:
            self._set_state_locked(state)

    def _callback(self, name: str, *args: Any) -> None:
        cb: Callable[..., Any] | None = getattr(self.config, name, None)
        if cb is None:
            return
        try:
            cb(*args)
        except Exception:  # noqa: BLE001
            logger.exception("bridge %s callback failed", name)

    def _run_thread(self) -> None:
        asyncio.run(self._run_async())

    async def _run_async(self) -> None:
        with self._lock:
            self._loop = asyncio.get_running_loop()
            self._wake = asyncio.Event()

        try:
            while not self._intentional:
                self._set_state(ConnectionState.CONNECTING)
                opened = await self._run_once()

                self._stop_collectors()
                if opened:
                    self._callback("on_disconnect")
                if self._intentional:
                    break

                with self._lock:
                    attempt = self._attempt
                    last_error = self._last_error
                max_attempts = int(self.config.reconnect_max_attempts)
                if attempt >= max_attempts:
                    logger.warning("bridge giving up after %s reconnect attempts", attempt)
                    self._set_state(ConnectionState.DISCONNECTED)
                    self._callback(
                        "on_error",
                        BridgeConnectionError(
                            f"Could not reach {self.config.url} after {attempt} reconnect attempts"
                            + (f": {last_error}" if last_error else "")
                        ),
                    )
                    return

                with self._lock:
                    self._attempt += 1
                    attempt = self._attempt
                delay_ms = self.config.reconnect_delay_ms(attempt)
                logger.info("bridge reconnect %s/%s in %sms", attempt, max_attempts, delay_ms)
                self._set_state(ConnectionState.RECONNECTING)
                assert self._wake is not None
                self._wake.clear()
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(self._wake.wait(), timeout=delay_ms / 1000.0)
        finally:
            with self._lock:
                self._loop = None
                self._wake = None
                self._outbox = None

    async def _run_once(self) -> bool:
        """One socket lifetime. Returns True when the socket reached OPEN."""
        opened = False
        writer: asyncio.Task[None] | None = None
        try:
            async with websockets.connect(self.url, ping_interval=None, open_timeout=5.0, max_size=None) as ws:
                outbox: asyncio.Queue[str] = asyncio.Queue()
                with self._lock:
                    self._ws = ws
                    self._outbox = outbox
                    self._attempt = 0
                    self._last_error = None
                    if self._intentional:
                        return False
                    self._set_state_locked(ConnectionState.OPEN)
                opened = True
                logger.info("bridge connected to %s (session %s)", self.config.url, self.config.session_id)
                writer = asyncio.create_task(self._writer(ws, outbox))
                self._on_open()

                async for raw in ws:
                    self._on_frame(raw)
        except Exception as exc:  # noqa: BLE001
            with self._lock:
                self._last_error = str(exc) or type(exc).__name__
            logger.debug("bridge socket closed: %s", exc)
        finally:
            with self._lock:
                self._ws = None
                self._outbox = None
                if self._state == ConnectionState.OPEN:
                    self._set_state_locked(ConnectionState.CONNECTING)
            if writer is not None:
                writer.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await writer
        return opened

    @staticmethod
    async def _writer(ws: Any, outbox: asyncio.Queue[str]) -> None:
        while True:
            text = await outbox.get()
            try:
                await ws.send(text)
            except ConnectionClosed:
                return

    async def _close_socket(self) -> None:
        with self._lock:
            ws = self._ws
        if ws is not None:
            with contextlib.suppress(Exception):
                await ws.close()

    def _on_open(self) -> None:
        page = self.page
        cfg = self.config
        self.send(
            "hello",
            {
                "appName": cfg.app_name,
                "appVersion": cfg.app_version,
                "url": page.location.href,
                "userAgent": page.navigator.user_agent,
                "viewport": {"width": page.viewport.inner_width, "height": page.viewport.inner_height},
            },
        )
        self.send("capabilities", {"capabilities": cfg.capabilities()})

        try:
            with page.lock:
                if cfg.enable_dom_snapshot:
                    html, _truncated = self.executor.dom_snapshot()
                    self.send("dom_snapshot", {"html": html})
                if cfg.enable_ui_tree:
                    self.send("ui_tree", {"items": self.executor.ui_tree.build_dicts()})
                for scope, state in self.executor.custom_state().items():
                    self.send_state(scope, state)
        except Exception:  # noqa: BLE001
            logger.exception("bridge initial telemetry failed")

        self._start_collectors()
        self._callback("on_connect")

    def _on_frame(self, raw: Any) -> None:
        msg = parse_frame(raw)
        if msg is None or not is_command(msg):
            return
        task = asyncio.create_task(asyncio.to_thread(self.executor.handle, msg))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    def _start_collectors(self) -> None:
        cfg = self.config
        page = self.page
        collectors: list[Any] = []
        if cfg.enable_dom_mutations:
            collectors.append(
                DomObserver(page, self.send, batch_ms=cfg.dom_mutation_batch_ms, max_mutations=cfg.max_mutations_per_batch)
            )
        if cfg.enable_console:
            collectors.append(
                ConsoleHook(
                    page.console,
                    self.send,
                    max_args=cfg.max_console_args,
                    max_arg_length=cfg.max_console_arg_length,
                )
            )
        if cfg.enable_errors:
            collectors.append(ErrorHook(page, self.send))
        if cfg.enable_network:
            collectors.append(
                NetworkHook(
                    page,
                    self.send,
                    max_body_size=cfg.max_network_body_size,
                    url_filter=cfg.network_url_filter,
                    bridge_url=cfg.url,
                )
            )
        if cfg.enable_navigation:
            collectors.append(NavigationHook(page, self.send))

        started: list[Any] = []
        for collector in collectors:
            try:
                collector.start()
            except Exception:  # noqa: BLE001
                logger.exception("bridge collector %s failed to start", type(collector).__name__)
                continue
            started.append(collector)
        with self._lock:
            self._collectors = started

    def _stop_collectors(self) -> None:
        with self._lock:
            collectors, self._collectors = self._collectors, []
        for collector in reversed(collectors):
            try:
                collector.stop()
            except Exception:  # noqa: BLE001
                logger.exception("bridge collector %s failed to stop", type(collector).__name__)
