from __future__ import annotations

import json
import logging
import ssl
import sys
import urllib.parse
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import HTTPSHandler, Request as UrllibRequest, build_opener

from .dom import DomHost, Event

console_logger = logging.getLogger("debug_bridge.page.console")

_CONSOLE_LOG_LEVELS = {
    "log": logging.INFO,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "debug": logging.DEBUG,
}


class NetworkError(Exception):
    pass


@dataclass(frozen=True)
class Location:
    href: str

    @property
    def _parts(self) -> urllib.parse.SplitResult:
        return urllib.parse.urlsplit(self.href)

    @property
    def protocol(self) -> str:
        return f"{self._parts.scheme}:" if self._parts.scheme else ""

    @property
    def host(self) -> str:
        return self._parts.netloc.rsplit("@", 1)[-1]

    @property
    def hostname(self) -> str:
        return self._parts.hostname or ""

    @property
    def port(self) -> str:
        try:
            return str(self._parts.port or "")
        except ValueError:
            return ""

    @property
    def origin(self) -> str:
        if self._parts.scheme in ("http", "https", "ws", "wss") and self.host:
            return f"{self._parts.scheme}://{self.host}"
        return "null"

    @property
    def pathname(self) -> str:
        parts = self._parts
        if parts.scheme in ("http", "https") and not parts.path:
            return "/"
        return parts.path

    @property
    def search(self) -> str:
        return f"?{self._parts.query}" if self._parts.query else ""

    @property
    def hash(self) -> str:
        return f"#{self._parts.fragment}" if self._parts.fragment else ""

    def without_hash(self) -> str:
        return urllib.parse.urldefrag(self.href)[0]

    def to_dict(self) -> dict[str, Any]:
        return {
            "href": self.href,
            "origin": self.origin,
            "pathname": self.pathname,
            "search": self.search,
            "hash": self.hash,
            "host": self.host,
        }


class History:
    def __init__(self, page: Page) -> None:
        self._page = page
        self._entries: list[tuple[str, Any]] = [(page.location.href, None)]
        self._index = 0

    @property
    def length(self) -> int:
        return len(self._entries)

    @property
    def state(self) -> Any:
        return self._entries[self._index][1]

    def _push_entry(self, url: str, state: Any = None) -> None:
        del self._entries[self._index + 1 :]
        self._entries.append((url, state))
        self._index = len(self._entries) - 1
        self._page._set_location(url)

    def push_state(self, state: Any, title: str = "", url: str | None = None) -> None:
        target = self._page.resolve_url(url) if url else self._page.location.href
        self._push_entry(target, state)

    def replace_state(self, state: Any, title: str = "", url: str | None = None) -> None:
        target = self._page.resolve_url(url) if url else self._page.location.href
        self._entries[self._index] = (target, state)
        self._page._set_location(target)

    def go(self, delta: int = 0) -> None:
        target = self._index + int(delta)
        if delta == 0 or not 0 <= target < len(self._entries):
            return
        previous = self._page.location
        self._index = target
        url, state = self._entries[target]
        self._page._set_location(url)
        self._page.dispatch_event(
            self._page, Event("popstate", bubbles=False, cancelable=False, detail={"state": state})
        )
        current = self._page.location
        if current.without_hash() == previous.without_hash() and current.hash != previous.hash:
            self._page._fire_hashchange(previous.href, current.href)

    def back(self) -> None:
        self.go(-1)

    def forward(self) -> None:
        self.go(1)


class Storage:
    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    @property
    def length(self) -> int:
        return len(self._data)

    def key(self, index: int) -> str | None:
        keys = list(self._data)
        return keys[index] if 0 <= index < len(keys) else None

    def get_item(self, key: str) -> str | None:
        return self._data.get(str(key))

    def set_item(self, key: str, value: Any) -> None:
        self._data[str(key)] = str(value)

    def remove_item(self, key: str) -> None:
        self._data.pop(str(key), None)

    def clear(self) -> None:
        self._data.clear()

    def to_dict(self) -> dict[str, str]:
        return dict(self._data)


@dataclass
class Navigator:
    user_agent: str = "debug-bridge/0.1 (python)"
    language: str = "en-US"
    languages: list[str] = field(default_factory=lambda: ["en-US", "en"])
    online: bool = True
    cookie_enabled: bool = True
    platform: str = sys.platform


@dataclass
class Screen:
    width: int = 1920
    height: int = 1080
    avail_width: int = 1920
    avail_height: int = 1040
    color_depth: int = 24
    pixel_ratio: float = 1.0


@dataclass
class Viewport:
    inner_width: int = 1280
    inner_height: int = 720
    scroll_x: float = 0.0
    scroll_y: float = 0.0


def _console_arg(arg: Any) -> str:
    if isinstance(arg, str):
        return arg
    try:
        return json.dumps(arg, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(arg)


class Console:
    """Page console. Output goes to the ``debug_bridge.page.console`` logger."""

    def _write(self, level: str, args: tuple[Any, ...]) -> None:
        console_logger.log(_CONSOLE_LOG_LEVELS[level], " ".join(_console_arg(a) for a in args))

    def log(self, *args: Any) -> None:
        self._write("log", args)

    def info(self, *args: Any) -> None:
        self._write("info", args)

    def warn(self, *args: Any) -> None:
        self._write("warn", args)

    def error(self, *args: Any) -> None:
        self._write("error", args)

    def debug(self, *args: Any) -> None:
        self._write("debug", args)


class FormData(dict):
    """Form fields for a fetch/XHR body; sent url-encoded."""


@dataclass
class Request:
    url: str
    method: str = "GET"
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes | None = None


@dataclass
class Response:
    url: str
    status: int
    status_text: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    @property
    def ok(self) -> bool:
        return 200 <= int(self.status) < 300

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        return json.loads(self.text())


class UrllibTransport:
    def __init__(self, *, timeout: float = 10.0, max_bytes: int = 10_000_000) -> None:
        self.timeout = timeout
        self.max_bytes = max_bytes

    def __call__(self, request: Request) -> Response:
        parsed = urllib.parse.urlparse(request.url)
        if parsed.scheme not in ("http", "https"):
            raise NetworkError("Only http/https are supported")
        req = UrllibRequest(request.url, data=request.body, headers=dict(request.headers), method=request.method)
        try:
            opener = build_opener(HTTPSHandler(context=ssl.create_default_context()))
            with opener.open(req, timeout=self.timeout) as resp:
                body = resp.read(self.max_bytes)
                return Response(
                    url=request.url,
                    status=int(resp.status),
                    status_text=str(resp.reason or ""),
                    headers=dict(resp.headers),
                    body=body,
                )
        except HTTPError as exc:
            return Response(
                url=request.url,
                status=int(exc.code),
                status_text=str(exc.reason or ""),
                headers=dict(exc.headers or {}),
                body=exc.read() or b"",
            )
        except (TimeoutError, URLError) as exc:
            raise NetworkError(str(exc)) from exc


def encode_body(body: Any, headers: dict[str, str]) -> bytes | None:
    if body is None:
        return None
    if isinstance(body, (bytes, bytearray)):
        return bytes(body)
    if isinstance(body, str):
        return body.encode("utf-8")
    if isinstance(body, FormData):
        headers.setdefault("Content-Type", "application/x-www-form-urlencoded")
        return urllib.parse.urlencode(body).encode("utf-8")
    headers.setdefault("Content-Type", "application/json")
    return json.dumps(body, ensure_ascii=False).encode("utf-8")


class XMLHttpRequest:
    """Synchronous XHR bound to a page through a per-page subclass (``page.XMLHttpRequest``)."""

    page: Page

    UNSENT = 0
    OPENED = 1
    DONE = 4

    def __init__(self) -> None:
        self.method = "GET"
        self.url = ""
        self.ready_state = self.UNSENT
        self.status = 0
        self.status_text = ""
        self.response_text = ""
        self.request_headers: dict[str, str] = {}
        self.response_headers: dict[str, str] = {}
        self._listeners: dict[str, list[Callable[[XMLHttpRequest], Any]]] = {}

    def add_event_listener(self, event_type: str, listener: Callable[[XMLHttpRequest], Any]) -> None:
        self._listeners.setdefault(event_type, []).append(listener)

    def _fire(self, event_type: str) -> None:
        for listener in list(self._listeners.get(event_type, ())):
            try:
                listener(self)
            except Exception as exc:  # noqa: BLE001
                self.page.report_error(exc)

    def open(self, method: str, url: str) -> None:
        self.method = str(method or "GET").upper()
        self.url = self.page.resolve_url(url)
        self.request_headers = {}
        self.ready_state = self.OPENED

    def set_request_header(self, name: str, value: str) -> None:
        self.request_headers[str(name)] = str(value)

    def send(self, body: Any = None) -> None:
        if self.ready_state != self.OPENED:
            raise RuntimeError("XMLHttpRequest.send() called before open()")
        headers = dict(self.request_headers)
        data = encode_body(body, headers)
        try:
            resp = self.page._perform_request(Request(self.url, self.method, headers, data))
        except NetworkError:
            self.status = 0
            self.status_text = ""
            self.ready_state = self.DONE
            self._fire("error")
            self._fire("loadend")
            return
        self.status = resp.status
        self.status_text = resp.status_text
        self.response_headers = dict(resp.headers)
        self.response_text = resp.text()
        self.ready_state = self.DONE
        self._fire("load")
        self._fire("loadend")


class Page(DomHost):
    """Window-level host model: document + location/history/storage/console/network.

    A host application (or a test) drives this object; the bridge's collectors hook
    its attributes the way a browser build hooks window built-ins.
    """

    def __init__(
        self,
        html: str = "",
        *,
        url: str = "about:blank",
        user_agent: str | None = None,
        viewport: tuple[int, int] = (1280, 720),
        fetch_transport: Callable[[Request], Response] | None = None,
        navigation_handler: Callable[[str], Any] | None = None,
    ) -> None:
        self.location = Location(url)
        super().__init__(html)
        self.history = History(self)
        self.local_storage = Storage()
        self.session_storage = Storage()
        self.navigator = Navigator(user_agent=user_agent or Navigator.user_agent)
        self.screen = Screen()
        self.viewport = Viewport(inner_width=int(viewport[0]), inner_height=int(viewport[1]))
        self.console = Console()
        self.fetch_transport = fetch_transport or UrllibTransport()
        self.navigation_handler = navigation_handler
        self.last_scrolled_into_view: Any = None
        self._cookies: dict[str, str] = {}
        self.XMLHttpRequest = type("XMLHttpRequest", (XMLHttpRequest,), {"page": self})

    @property
    def title(self) -> str:
        node = self.document.find("title")
        return node.get_text().strip() if node is not None else ""

    def load(self, html: str, *, url: str | None = None) -> None:
        """Replace the document (a full page load). Window listeners and hooks survive."""
        if url:
            self._set_location(self.resolve_url(url))
        self._load_document(html)

    # ─────────────────────────────────────────────────────────────────────────
    # Location
    # ─────────────────────────────────────────────────────────────────────────

    def resolve_url(self, url: str) -> str:
        return urllib.parse.urljoin(self.location.href, str(url or ""))

    def _set_location(self, href: str) -> None:
        self.location = Location(href)

    def _fire_hashchange(self, old_url: str, new_url: str) -> None:
        self.dispatch_event(
            self,
            Event("hashchange", bubbles=False, cancelable=False, detail={"oldURL": old_url, "newURL": new_url}),
        )

    def navigate(self, url: str) -> None:
        previous = self.location
        resolved = self.resolve_url(url)
        self.history._push_entry(resolved)
        current = self.location
        if current.without_hash() == previous.without_hash() and current.href != previous.href:
            self._fire_hashchange(previous.href, current.href)
            return
        if self.navigation_handler is not None:
            self.navigation_handler(resolved)

    # ─────────────────────────────────────────────────────────────────────────
    # Cookies & viewport
    # ─────────────────────────────────────────────────────────────────────────

    @property
    def cookie(self) -> str:
        return "; ".join(f"{k}={v}" for k, v in self._cookies.items())

    @cookie.setter
    def cookie(self, raw: str) -> None:
        first, *attrs = [p.strip() for p in str(raw or "").split(";")]
        name, sep, value = first.partition("=")
        name = name.strip()
        if not name or not sep:
            return
        if any(a.lower().replace(" ", "") == "max-age=0" for a in attrs):
            self._cookies.pop(name, None)
            return
        self._cookies[name] = value.strip()

    def scroll_to(self, x: float | None = None, y: float | None = None) -> None:
        if x is not None:
            self.viewport.scroll_x = max(0.0, float(x))
        if y is not None:
            self.viewport.scroll_y = max(0.0, float(y))
        self.dispatch_event(self, Event("scroll", bubbles=False, cancelable=False))

    def scroll_into_view(self, el: Any) -> None:
        self.last_scrolled_into_view = el

    # ─────────────────────────────────────────────────────────────────────────
    # Network
    # ─────────────────────────────────────────────────────────────────────────

    def _perform_request(self, request: Request) -> Response:
        return self.fetch_transport(request)

    def fetch(
        self,
        url: str,
        *,
        method: str = "GET",
        headers: dict[str, str] | None = None,
        body: Any = None,
    ) -> Response:
        hdrs = {str(k): str(v) for k, v in (headers or {}).items()}
        data = encode_body(body, hdrs)
        return self._perform_request(Request(self.resolve_url(url), str(method or "GET").upper(), hdrs, data))
