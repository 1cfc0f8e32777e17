from __future__ import annotations

import json
import threading
import time
import urllib.parse
from collections.abc import Callable
from contextlib import suppress
from typing import Any

from ..page.window import FormData, Page

_MISSING = object()


def _now_ms() -> int:
    return int(time.time() * 1000)


def _is_sensitive_header_name(name: str) -> bool:
    lk = str(name or "").strip().lower()
    if not lk:
        return True
    if "authorization" in lk or "cookie" in lk:
        return True
    # Heuristic: names that usually carry credentials.
    return any(frag in lk for frag in ("token", "secret", "password", "api-key", "apikey", "session"))


def safe_headers(headers: Any) -> dict[str, str]:
    if not isinstance(headers, dict):
        return {}
    return {str(k): str(v) for k, v in headers.items() if not _is_sensitive_header_name(k)}


def _truncate(text: str, max_len: int) -> str:
    if len(text) <= max_len:
        return text
    return f"{text[:max_len]}... [truncated {len(text) - max_len} chars]"


def _content_type(headers: Any) -> str:
    if not isinstance(headers, dict):
        return ""
    for k, v in headers.items():
        if str(k).lower() == "content-type":
            return str(v).split(";")[0].strip().lower()
    return ""


def _is_textual(content_type: str) -> bool:
    if not content_type:
        return True
    return content_type.startswith("text/") or any(
        frag in content_type for frag in ("json", "xml", "javascript", "x-www-form-urlencoded", "graphql")
    )


def request_body_summary(body: Any, max_len: int) -> str | None:
    if body is None:
        return None
    if isinstance(body, str):
        return _truncate(body, max_len)
    if isinstance(body, FormData):
        return "[FormData]"
    if isinstance(body, (bytes, bytearray)):
        return f"[Binary data: {len(body)} bytes]"
    try:
        return _truncate(json.dumps(body, ensure_ascii=False), max_len)
    except (TypeError, ValueError):
        return _truncate(str(body), max_len)


def response_body_summary(body: Any, headers: Any, max_len: int) -> str | None:
    if body is None:
        return None
    if isinstance(body, str):
        return _truncate(body, max_len)
    if isinstance(body, (bytes, bytearray)):
        ctype = _content_type(headers)
        if not _is_textual(ctype):
            return f"[{ctype}: {len(body)} bytes]"
        return _truncate(bytes(body).decode("utf-8", errors="replace"), max_len)
    return _truncate(str(body), max_len)


class NetworkHook:
    """Intercepts ``page.fetch`` and the page's XHR ``open``/``send``."""

    def __init__(
        self,
        page: Page,
        emit: Callable[[str, dict[str, Any]], None],
        *,
        max_body_size: int = 10_000,
        url_filter: Callable[[str], bool] | None = None,
        bridge_url: str | None = None,
    ) -> None:
        self.page = page
        self._emit = emit
        self.max_body_size = max(0, int(max_body_size))
        self.url_filter = url_filter
        self._bridge_prefixes = self._relay_prefixes(bridge_url)
        self._seq = 0
        self._seq_lock = threading.Lock()
        self._saved_fetch: Any = None
        self._saved_xhr: dict[str, Any] = {}
        self._started = False

    @staticmethod
    def _relay_prefixes(bridge_url: str | None) -> tuple[str, ...]:
        if not bridge_url:
            return ()
        parts = urllib.parse.urlsplit(bridge_url)
        if not parts.netloc:
            return ()
        http_scheme = "https" if parts.scheme == "wss" else "http"
        return (f"{parts.scheme}://{parts.netloc}", f"{http_scheme}://{parts.netloc}{parts.path}")

    def _next_request_id(self) -> str:
        with self._seq_lock:
            self._seq += 1
            return f"net-{self._seq}-{_now_ms()}"

    def should_capture(self, url: str) -> bool:
        scheme = urllib.parse.urlsplit(url).scheme.lower()
        if scheme in ("ws", "wss"):
            return False
        if any(url.startswith(p) for p in self._bridge_prefixes):
            return False
        if self.url_filter is not None:
            try:
                return bool(self.url_filter(url))
            except Exception:  # noqa: BLE001
                return False
        return True

    def _safe_emit(self, msg_type: str, payload: dict[str, Any]) -> None:
        with suppress(Exception):
            self._emit(msg_type, {k: v for k, v in payload.items() if v is not None})

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        page = self.page
        self._saved_fetch = vars(page).get("fetch", _MISSING)
        page.fetch = self._wrap_fetch(page.fetch)

        xhr_cls = page.XMLHttpRequest
        for name in ("open", "send"):
            self._saved_xhr[name] = xhr_cls.__dict__.get(name, _MISSING)
        setattr(xhr_cls, "open", self._wrap_xhr_open(xhr_cls.open))
        setattr(xhr_cls, "send", self._wrap_xhr_send(xhr_cls.send))

    def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        page = self.page
        if self._saved_fetch is _MISSING:
            with suppress(AttributeError):
                del page.fetch
        else:
            page.fetch = self._saved_fetch
        xhr_cls = page.XMLHttpRequest
        for name, before in self._saved_xhr.items():
            if before is _MISSING:
                with suppress(AttributeError):
                    delattr(xhr_cls, name)
            else:
                setattr(xhr_cls, name, before)
        self._saved_fetch = None
        self._saved_xhr = {}

    # ─────────────────────────────────────────────────────────────────────────
    # fetch
    # ─────────────────────────────────────────────────────────────────────────

    def _wrap_fetch(self, original: Callable[..., Any]) -> Callable[..., Any]:
        def fetch(url: str, *, method: str = "GET", headers: dict[str, str] | None = None, body: Any = None) -> Any:
            resolved = self.page.resolve_url(url)
            if not self.should_capture(resolved):
                return original(url, method=method, headers=headers, body=body)

            request_id = self._next_request_id()
            self._safe_emit(
                "network_request",
                {
                    "requestId": request_id,
                    "method": str(method or "GET").upper(),
                    "url": resolved,
                    "headers": safe_headers(headers),
                    "body": request_body_summary(body, self.max_body_size),
                    "initiator": "fetch",
                },
            )
            started = time.perf_counter()
            try:
                resp = original(url, method=method, headers=headers, body=body)
            except Exception as exc:
                self._safe_emit(
                    "network_response",
                    {
                        "requestId": request_id,
                        "status": 0,
                        "statusText": str(exc),
                        "headers": {},
                        "duration": int((time.perf_counter() - started) * 1000),
                        "ok": False,
                        "error": str(exc),
                    },
                )
                raise
            self._safe_emit(
                "network_response",
                {
                    "requestId": request_id,
                    "status": int(resp.status),
                    "statusText": resp.status_text,
                    "headers": safe_headers(resp.headers),
                    "body": response_body_summary(resp.body, resp.headers, self.max_body_size),
                    "duration": int((time.perf_counter() - started) * 1000),
                    "ok": bool(resp.ok),
                },
            )
            return resp

        return fetch

    # ─────────────────────────────────────────────────────────────────────────
    # XMLHttpRequest
    # ─────────────────────────────────────────────────────────────────────────

    def _wrap_xhr_open(self, original: Callable[..., Any]) -> Callable[..., Any]:
        def open(xhr: Any, method: str, url: str) -> Any:  # noqa: A001
            result = original(xhr, method, url)
            xhr._bridge_request = {"method": xhr.method, "url": xhr.url}
            return result

        return open

    def _wrap_xhr_send(self, original: Callable[..., Any]) -> Callable[..., Any]:
        hook = self

        def send(xhr: Any, body: Any = None) -> Any:
            info = getattr(xhr, "_bridge_request", None)
            if not isinstance(info, dict) or not hook.should_capture(info["url"]):
                return original(xhr, body)

            request_id = hook._next_request_id()
            started = time.perf_counter()
            hook._safe_emit(
                "network_request",
                {
                    "requestId": request_id,
                    "method": info["method"],
                    "url": info["url"],
                    "headers": safe_headers(xhr.request_headers),
                    "body": request_body_summary(body, hook.max_body_size),
                    "initiator": "xhr",
                },
            )

            def on_loadend(done: Any) -> None:
                hook._safe_emit(
                    "network_response",
                    {
                        "requestId": request_id,
                        "status": int(done.status),
                        "statusText": done.status_text,
                        "headers": safe_headers(done.response_headers),
                        "body": response_body_summary(done.response_text, done.response_headers, hook.max_body_size)
                        if done.status
                        else None,
                        "duration": int((time.perf_counter() - started) * 1000),
                        "ok": 200 <= int(done.status) < 300,
                    },
                )

            xhr.add_event_listener("loadend", on_loadend)
            return original(xhr, body)

        return send
