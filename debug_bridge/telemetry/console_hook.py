from __future__ import annotations

import json
from collections.abc import Callable
from contextlib import suppress
from typing import Any

from ..protocol import CONSOLE_LEVELS

_MISSING = object()


def stringify_arg(arg: Any, max_len: int) -> str:
    if isinstance(arg, str):
        text = arg
    elif isinstance(arg, BaseException):
        text = f"{type(arg).__name__}: {arg}"
    else:
        try:
            text = json.dumps(arg, ensure_ascii=False)
        except (TypeError, ValueError):
            text = str(arg)
    if len(text) > max_len:
        return text[:max_len] + "..."
    return text


class ConsoleHook:
    """Wraps each console level; the original method always still runs."""

    def __init__(
        self,
        console: Any,
        emit: Callable[[str, dict[str, Any]], None],
        *,
        max_args: int = 10,
        max_arg_length: int = 1000,
    ) -> None:
        self.console = console
        self._emit = emit
        self.max_args = max(0, int(max_args))
        self.max_arg_length = max(1, int(max_arg_length))
        # level -> instance attribute before patching (_MISSING when it came from the class)
        self._saved: dict[str, Any] = {}

    def start(self) -> None:
        if self._saved:
            return
        for level in CONSOLE_LEVELS:
            original = getattr(self.console, level, None)
            if not callable(original):
                continue
            self._saved[level] = vars(self.console).get(level, _MISSING)
            setattr(self.console, level, self._wrap(level, original))

    def stop(self) -> None:
        saved, self._saved = self._saved, {}
        for level, before in saved.items():
            if before is _MISSING:
                with suppress(AttributeError):
                    delattr(self.console, level)
            else:
                setattr(self.console, level, before)

    def _wrap(self, level: str, original: Callable[..., Any]) -> Callable[..., Any]:
        def wrapper(*args: Any) -> Any:
            try:
                return original(*args)
            finally:
                with suppress(Exception):
                    self._emit(
                        "console",
                        {
                            "level": level,
                            "args": [stringify_arg(a, self.max_arg_length) for a in args[: self.max_args]],
                        },
                    )

        return wrapper
