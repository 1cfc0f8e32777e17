"""Command dispatch for the in-app side of the bridge.

Every inbound command (a frame with a ``requestId``) produces exactly one
``command_result``. Expected failures are raised as CommandError and mapped to
their ErrorCode; anything else is reported as UNKNOWN_ERROR with the caught message.
"""

from __future__ import annotations

import json
import logging
import time
import urllib.parse
from collections.abc import Callable
from typing import Any

from bs4 import Tag

from ..config import BridgeConfig
from ..errors import CommandError
from ..page.dom import Event, input_type, is_content_editable
from ..page.window import Page
from ..protocol import PROTOCOL_VERSION, ElementTarget, ErrorCode, command_result
from ..telemetry.ui_tree import UiTreeBuilder
from .targets import resolve_target

logger = logging.getLogger("debug_bridge.commands")

Send = Callable[[str, dict[str, Any]], None]

BUILTIN_STATE_SCOPES = ("cookies", "localStorage", "sessionStorage", "location", "navigator", "screen", "viewport")

_NAVIGABLE_SCHEMES = ("http", "https", "about", "data", "blob", "file")

# Rasterizers hold page.lock only while they read the page, not while they encode.
_UNLOCKED_COMMANDS = frozenset({"request_screenshot"})


def ensure_allowed_navigation(url: str) -> None:
    """Reject empty URLs and schemes a page must not be sent to (javascript:, vbscript:, ...)."""
    raw = str(url or "").strip()
    if not raw:
        raise CommandError(ErrorCode.NAVIGATION_FAILED, "navigate requires a non-empty url")
    scheme = urllib.parse.urlparse(raw).scheme.lower()
    if scheme and scheme not in _NAVIGABLE_SCHEMES:
        raise CommandError(
            ErrorCode.NAVIGATION_FAILED,
            f"Unsupported scheme: {scheme} (allowed: {', '.join(_NAVIGABLE_SCHEMES)})",
        )


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
        return value
    except (TypeError, ValueError):
        return repr(value)


class CommandExecutor:
    def __init__(self, page: Page, send: Send, config: BridgeConfig | None = None) -> None:
        self.page = page
        self._send = send
        self.config = config or BridgeConfig()
        self.ui_tree = UiTreeBuilder(page, self.config.get_stable_id)
        self._handlers: dict[str, Callable[[dict[str, Any]], Any]] = {
            "click": self._click,
            "type": self._type,
            "navigate": self._navigate,
            "evaluate": self._evaluate,
            "scroll": self._scroll,
            "hover": self._hover,
            "select": self._select,
            "focus": self._focus,
            "request_ui_tree": self._request_ui_tree,
            "request_dom_snapshot": self._request_dom_snapshot,
            "request_screenshot": self._request_screenshot,
            "request_state": self._request_state,
        }

    def handle(self, msg: dict[str, Any]) -> dict[str, Any] | None:
        """Run one command and send its result. Frames without a requestId are ignored."""
        request_id = msg.get("requestId") if isinstance(msg, dict) else None
        if not isinstance(request_id, str) or not request_id:
            return None
        ctype = str(msg.get("type") or "")
        started = time.perf_counter()
        try:
            version = msg.get("protocolVersion", PROTOCOL_VERSION)
            if version != PROTOCOL_VERSION:
                raise CommandError(
                    ErrorCode.INVALID_COMMAND, f"Unsupported protocolVersion {version!r} (expected {PROTOCOL_VERSION})"
                )
            handler = self._handlers.get(ctype)
            if handler is None:
                raise CommandError(ErrorCode.INVALID_COMMAND, f"Unknown: {ctype}")
            if ctype in _UNLOCKED_COMMANDS:
                result = handler(msg)
            else:
                with self.page.lock:
                    result = handler(msg)
            payload = command_result(request_id, ctype, success=True, duration=self._elapsed(started), result=result)
        except CommandError as exc:
            payload = command_result(
                request_id, ctype, success=False, duration=self._elapsed(started), code=exc.code, message=exc.message
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("command %s (%s) failed", ctype, request_id)
            payload = command_result(
                request_id,
                ctype,
                success=False,
                duration=self._elapsed(started),
                code=ErrorCode.UNKNOWN_ERROR,
                message=str(exc) or type(exc).__name__,
            )
        self._send("command_result", payload)
        return payload

    @staticmethod
    def _elapsed(started: float) -> int:
        return max(0, int(round((time.perf_counter() - started) * 1000)))

    # ─────────────────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────────────────

    def _target(self, msg: dict[str, Any]) -> Tag:
        return resolve_target(self.page, ElementTarget.from_payload(msg.get("target")))

    def _ensure_actionable(self, el: Tag) -> None:
        if el.has_attr("disabled") or str(el.get("aria-disabled") or "").lower() == "true":
            raise CommandError(ErrorCode.TARGET_DISABLED, f"<{el.name}> is disabled")
        if not self.page.is_visible(el):
            raise CommandError(ErrorCode.TARGET_NOT_VISIBLE, f"<{el.name}> is not visible")

    def _dispatch(self, el: Tag, event_type: str, **detail: Any) -> None:
        self.page.dispatch_event(el, Event(event_type, detail=detail))

    # ─────────────────────────────────────────────────────────────────────────
    # Element commands
    # ─────────────────────────────────────────────────────────────────────────

    def _click(self, msg: dict[str, Any]) -> Any:
        el = self._target(msg)
        self._ensure_actionable(el)
        self.page.scroll_into_view(el)
        self.page.click(el)
        return None

    def _type(self, msg: dict[str, Any]) -> Any:
        el = self._target(msg)
        text = msg.get("text")
        if not isinstance(text, str):
            raise CommandError(ErrorCode.INVALID_COMMAND, "type requires a string 'text'")
        editable = el.name == "textarea" or (
            el.name == "input" and input_type(el) not in ("checkbox", "radio", "button", "submit", "reset", "image")
        )
        if not editable and not is_content_editable(el):
            raise CommandError(ErrorCode.INVALID_COMMAND, f"<{el.name}> does not accept text input")
        self._ensure_actionable(el)
        options = msg.get("options") if isinstance(msg.get("options"), dict) else {}

        page = self.page
        page.focus(el)
        current = "" if options.get("clear") else page.get_value(el)
        page.set_value(el, current + text)
        self._dispatch(el, "input")
        self._dispatch(el, "change")
        if options.get("pressEnter"):
            self._dispatch(el, "keydown", key="Enter", code="Enter")
        return {"value": page.get_value(el)}

    def _hover(self, msg: dict[str, Any]) -> Any:
        el = self._target(msg)
        self._dispatch(el, "mouseenter")
        self._dispatch(el, "mouseover")
        return None

    def _focus(self, msg: dict[str, Any]) -> Any:
        el = self._target(msg)
        self.page.focus(el)
        return None

    def _select(self, msg: dict[str, Any]) -> Any:
        el = self._target(msg)
        if el.name != "select":
            raise CommandError(ErrorCode.INVALID_COMMAND, f"select requires a <select>, got <{el.name}>")
        self._ensure_actionable(el)
        value, label, index = msg.get("value"), msg.get("label"), msg.get("index")
        if value is None and label is None and index is None:
            raise CommandError(ErrorCode.INVALID_COMMAND, "select requires value, label or index")
        try:
            idx = int(index) if index is not None else None
        except (TypeError, ValueError) as exc:
            raise CommandError(ErrorCode.INVALID_COMMAND, f"Invalid option index {index!r}") from exc
        option = self.page.select_option(
            el,
            value=str(value) if value is not None else None,
            label=str(label) if label is not None and value is None else None,
            index=idx if value is None and label is None else None,
        )
        if option is None:
            raise CommandError(ErrorCode.INVALID_COMMAND, "No matching option")
        self._dispatch(el, "input")
        self._dispatch(el, "change")
        return {"value": self.page.get_value(el), "selectedIndex": self.page.selected_index(el)}

    def _scroll(self, msg: dict[str, Any]) -> Any:
        page = self.page
        if msg.get("target"):
            el = self._target(msg)
            page.scroll_into_view(el)
            return {"scrolledIntoView": True}

        def _coord(key: str) -> float | None:
            raw = msg.get(key)
            if raw is None:
                return None
            try:
                return float(raw)
            except (TypeError, ValueError) as exc:
                raise CommandError(ErrorCode.INVALID_COMMAND, f"scroll '{key}' must be a number") from exc

        page.scroll_to(_coord("x"), _coord("y"))
        return {"scrollX": round(page.viewport.scroll_x), "scrollY": round(page.viewport.scroll_y)}

    # ─────────────────────────────────────────────────────────────────────────
    # Page commands
    # ─────────────────────────────────────────────────────────────────────────

    def _navigate(self, msg: dict[str, Any]) -> Any:
        url = msg.get("url")
        ensure_allowed_navigation(url if isinstance(url, str) else "")
        try:
            self.page.navigate(url)
        except Exception as exc:  # noqa: BLE001
            raise CommandError(ErrorCode.NAVIGATION_FAILED, f"Navigation to {url} failed: {exc}") from exc
        return {"url": self.page.location.href}

    def _evaluate(self, msg: dict[str, Any]) -> Any:
        if not self.config.enable_eval:
            raise CommandError(ErrorCode.EVAL_DISABLED, "Eval disabled")
        code = msg.get("code")
        if not isinstance(code, str) or not code.strip():
            raise CommandError(ErrorCode.INVALID_COMMAND, "evaluate requires 'code'")
        page = self.page
        namespace: dict[str, Any] = {
            "page": page,
            "window": page,
            "document": page.document,
            "console": page.console,
        }
        try:
            try:
                compiled = compile(code, "<evaluate>", "eval")
            except SyntaxError:
                # Statements: run them; the result is whatever was bound to ``result``.
                exec(compile(code, "<evaluate>", "exec"), namespace)  # noqa: S102
                return _jsonable(namespace.get("result"))
            return _jsonable(eval(compiled, namespace))  # noqa: S307
        except Exception as exc:  # noqa: BLE001
            raise CommandError(ErrorCode.EVAL_ERROR, f"{type(exc).__name__}: {exc}") from exc

    def _request_ui_tree(self, msg: dict[str, Any]) -> Any:
        items = self.ui_tree.build_dicts()
        self._send("ui_tree", {"requestId": msg["requestId"], "items": items})
        return {"count": len(items)}

    def _request_dom_snapshot(self, msg: dict[str, Any]) -> Any:
        html, truncated = self.dom_snapshot()
        self._send("dom_snapshot", {"requestId": msg["requestId"], "html": html})
        return {"length": len(html), **({"truncated": True} if truncated else {})}

    def dom_snapshot(self) -> tuple[str, bool]:
        html = self.page.outer_html()
        limit = max(0, int(self.config.max_dom_snapshot_size))
        if len(html) > limit:
            return html[:limit], True
        return html, False

    def _request_screenshot(self, msg: dict[str, Any]) -> Any:
        page = self.page
        request_id = msg["requestId"]
        selector = msg.get("selector") if isinstance(msg.get("selector"), str) else None
        rasterizer = self.config.rasterizer
        try:
            if rasterizer is None:
                raise RuntimeError("No screenshot rasterizer configured")
            shot = rasterizer(page, selector=selector, full_page=bool(msg.get("fullPage")))
        except Exception as exc:  # noqa: BLE001
            logger.warning("screenshot capture failed: %s", exc)
            self._send(
                "screenshot",
                {
                    "requestId": request_id,
                    "data": "",
                    "width": page.viewport.inner_width,
                    "height": page.viewport.inner_height,
                    "timestamp": int(time.time() * 1000),
                    "error": {"code": "SCREENSHOT_FAILED", "message": str(exc) or type(exc).__name__},
                },
            )
            return {"captured": False}
        self._send(
            "screenshot",
            {
                "requestId": request_id,
                "data": shot.data,
                "width": shot.width,
                "height": shot.height,
                "timestamp": int(time.time() * 1000),
            },
        )
        return {"captured": True, "width": shot.width, "height": shot.height}

    def browser_state(self) -> dict[str, Any]:
        page = self.page
        nav = page.navigator
        screen = page.screen
        cookies: dict[str, str] = {}
        for part in page.cookie.split(";"):
            key, _, value = part.strip().partition("=")
            if key:
                cookies[key] = value
        return {
            "cookies": cookies,
            "localStorage": page.local_storage.to_dict(),
            "sessionStorage": page.session_storage.to_dict(),
            "location": page.location.to_dict(),
            "navigator": {
                "userAgent": nav.user_agent,
                "language": nav.language,
                "languages": list(nav.languages),
                "online": nav.online,
                "cookieEnabled": nav.cookie_enabled,
                "platform": nav.platform,
            },
            "screen": {
                "width": screen.width,
                "height": screen.height,
                "availWidth": screen.avail_width,
                "availHeight": screen.avail_height,
                "colorDepth": screen.color_depth,
                "pixelRatio": screen.pixel_ratio,
            },
            "viewport": {
                "innerWidth": page.viewport.inner_width,
                "innerHeight": page.viewport.inner_height,
                "scrollX": round(page.viewport.scroll_x),
                "scrollY": round(page.viewport.scroll_y),
            },
        }

    def custom_state(self) -> dict[str, Any]:
        getter = self.config.get_custom_state
        if getter is None:
            return {}
        state = getter()
        return dict(state) if isinstance(state, dict) else {}

    def _request_state(self, msg: dict[str, Any]) -> Any:
        scope = msg.get("scope")
        builtin = self.browser_state()
        custom = self.custom_state()
        if scope:
            scope = str(scope)
            if scope in custom:
                self._send("state_update", {"scope": scope, "state": custom[scope]})
            elif scope in builtin:
                self._send("state_update", {"scope": scope, "state": builtin[scope]})
            else:
                raise CommandError(ErrorCode.INVALID_COMMAND, f"Unknown state scope: {scope}")
            return {"scopes": [scope]}
        scopes = {**builtin, **custom}
        for name, state in scopes.items():
            self._send("state_update", {"scope": name, "state": state})
        return {"scopes": list(scopes)}
