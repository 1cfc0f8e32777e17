from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .protocol import ErrorCode


@dataclass
class CommandError(Exception):
    """Expected command failure; converted into a ``command_result`` at the executor boundary."""

    code: ErrorCode
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            **({"details": self.details} if self.details else {}),
        }


class BridgeConnectionError(Exception):
    pass


class AgentClientError(Exception):
    pass
