from __future__ import annotations

import traceback
from collections.abc import Callable
from contextlib import suppress
from typing import Any

from ..page.dom import Event
from ..page.window import Page


class ErrorHook:
    """Normalizes window ``error`` and ``unhandledrejection`` events into ``error`` messages."""

    def __init__(self, page: Page, emit: Callable[[str, dict[str, Any]], None]) -> None:
        self.page = page
        self._emit = emit
        self._started = False

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        self.page.add_event_listener("error", self._on_error)
        self.page.add_event_listener("unhandledrejection", self._on_rejection)

    def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        self.page.remove_event_listener("error", self._on_error)
        self.page.remove_event_listener("unhandledrejection", self._on_rejection)

    def _on_error(self, event: Event) -> None:
        detail = event.detail
        error = detail.get("error")
        payload = {
            "errorType": "runtime",
            "message": str(detail.get("message") or (str(error) if error is not None else "Unknown error")),
            "stack": detail.get("stack"),
            "filename": detail.get("filename"),
            "lineno": detail.get("lineno"),
            "colno": detail.get("colno"),
        }
        with suppress(Exception):
            self._emit("error", {k: v for k, v in payload.items() if v is not None})

    def _on_rejection(self, event: Event) -> None:
        reason = event.detail.get("reason")
        stack = None
        if isinstance(reason, BaseException):
            message = f"{type(reason).__name__}: {reason}"
            if reason.__traceback__ is not None:
                stack = "".join(traceback.format_exception(type(reason), reason, reason.__traceback__))
        else:
            message = str(reason) if reason is not None else "Unhandled rejection"
        payload = {"errorType": "unhandledrejection", "message": message}
        if stack:
            payload["stack"] = stack
        with suppress(Exception):
            self._emit("error", payload)
