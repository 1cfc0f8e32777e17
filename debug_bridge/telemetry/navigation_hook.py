from __future__ import annotations

from collections.abc import Callable
from contextlib import suppress
from typing import Any

from ..page.dom import Event
from ..page.window import Page

_MISSING = object()


class NavigationHook:
    """Reports SPA navigations: pushState/replaceState, popstate, hashchange, plus one ``initial``."""

    def __init__(self, page: Page, emit: Callable[[str, dict[str, Any]], None]) -> None:
        self.page = page
        self._emit = emit
        self._last_url: str | None = None
        self._saved: dict[str, Any] = {}
        self._history: Any = None
        self._started = False

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        page = self.page
        self._last_url = page.location.href
        self._send(page.location.href, None, "initial")

        history = page.history
        self._history = history
        for name, trigger in (("push_state", "pushstate"), ("replace_state", "replacestate")):
            self._saved[name] = vars(history).get(name, _MISSING)
            setattr(history, name, self._wrap(getattr(history, name), trigger))

        page.add_event_listener("popstate", self._on_popstate)
        page.add_event_listener("hashchange", self._on_hashchange)

    def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        history = self._history
        for name, before in self._saved.items():
            if before is _MISSING:
                with suppress(AttributeError):
                    delattr(history, name)
            else:
                setattr(history, name, before)
        self._saved = {}
        self._history = None
        self.page.remove_event_listener("popstate", self._on_popstate)
        self.page.remove_event_listener("hashchange", self._on_hashchange)

    def _wrap(self, original: Callable[..., Any], trigger: str) -> Callable[..., Any]:
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            result = original(*args, **kwargs)
            self._check(trigger)
            return result

        return wrapper

    def _on_popstate(self, _event: Event) -> None:
        self._check("popstate")

    def _on_hashchange(self, _event: Event) -> None:
        self._check("hashchange")

    def _check(self, trigger: str) -> None:
        url = self.page.location.href
        if url == self._last_url:
            return
        previous, self._last_url = self._last_url, url
        self._send(url, previous, trigger)

    def _send(self, url: str, previous: str | None, trigger: str) -> None:
        with suppress(Exception):
            self._emit(
                "navigation",
                {
                    "url": url,
                    **({"previousUrl": previous} if previous is not None else {}),
                    "trigger": trigger,
                },
            )
