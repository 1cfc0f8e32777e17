"""Wire vocabulary shared by the relay, the in-app bridge and agent clients.

Every frame is one JSON object:
    {"protocolVersion": 1, "sessionId": ..., "timestamp": <ms>, "origin": "app|agent|server", "type": ..., ...}

Keep this module free of third-party imports.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

PROTOCOL_VERSION = 1

ROLE_APP = "app"
ROLE_AGENT = "agent"
ROLES = frozenset({ROLE_APP, ROLE_AGENT})

ORIGIN_SERVER = "server"

# Bookkeeping attribute written onto elements by the UI tree builder.
STABLE_ID_ATTR = "data-debug-bridge-id"

COMMAND_TYPES = frozenset(
    {
        "click",
        "type",
        "navigate",
        "evaluate",
        "scroll",
        "hover",
        "select",
        "focus",
        "request_ui_tree",
        "request_dom_snapshot",
        "request_screenshot",
        "request_state",
    }
)

TELEMETRY_TYPES = frozenset(
    {
        "hello",
        "capabilities",
        "dom_snapshot",
        "dom_mutations",
        "ui_tree",
        "console",
        "error",
        "state_update",
        "screenshot",
        "network_request",
        "network_response",
        "navigation",
    }
)

COMMAND_RESULT = "command_result"
CONNECTION_EVENT = "connection_event"

CAPABILITIES = (
    "dom_snapshot",
    "dom_mutations",
    "ui_tree",
    "console",
    "errors",
    "eval",
    "custom_state",
    "network",
    "navigation",
    "screenshot",
)

CONSOLE_LEVELS = ("log", "info", "warn", "error", "debug")


class ErrorCode(str, Enum):
    TARGET_NOT_FOUND = "TARGET_NOT_FOUND"
    TARGET_NOT_VISIBLE = "TARGET_NOT_VISIBLE"
    TARGET_DISABLED = "TARGET_DISABLED"
    TIMEOUT = "TIMEOUT"
    EVAL_DISABLED = "EVAL_DISABLED"
    EVAL_ERROR = "EVAL_ERROR"
    NAVIGATION_FAILED = "NAVIGATION_FAILED"
    INVALID_COMMAND = "INVALID_COMMAND"
    RATE_LIMITED = "RATE_LIMITED"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


ERROR_CODES = frozenset(code.value for code in ErrorCode)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _drop_none(d: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in d.items() if v is not None}


@dataclass(frozen=True, slots=True)
class ElementTarget:
    """How an agent asks for one element. Resolution order: stable_id > selector > text."""

    stable_id: str | None = None
    selector: str | None = None
    text: str | None = None
    role: str | None = None

    @classmethod
    def from_payload(cls, raw: Any) -> ElementTarget:
        if not isinstance(raw, dict):
            return cls()

        def _opt(key: str) -> str | None:
            v = raw.get(key)
            return v if isinstance(v, str) and v else None

        return cls(
            stable_id=_opt("stableId"),
            selector=_opt("selector"),
            text=_opt("text"),
            role=_opt("role"),
        )

    def is_empty(self) -> bool:
        return not (self.stable_id or self.selector or self.text)

    def to_dict(self) -> dict[str, Any]:
        return _drop_none(
            {"stableId": self.stable_id, "selector": self.selector, "text": self.text, "role": self.role}
        )


@dataclass(frozen=True, slots=True)
class UiTreeMeta:
    tag_name: str
    type: str | None = None
    name: str | None = None
    href: str | None = None
    placeholder: str | None = None
    # Forward-compatible side map; merged into the wire form.
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        out = _drop_none(
            {
                "tagName": self.tag_name,
                "type": self.type,
                "name": self.name,
                "href": self.href,
                "placeholder": self.placeholder,
            }
        )
        for k, v in self.extra.items():
            if isinstance(k, str) and k not in out:
                out[k] = v
        return out


@dataclass(frozen=True, slots=True)
class UiTreeItem:
    stable_id: str
    selector: str
    role: str
    text: str | None
    label: str | None
    disabled: bool
    visible: bool
    meta: UiTreeMeta
    checked: bool | None = None
    value: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "stableId": self.stable_id,
            "selector": self.selector,
            "role": self.role,
            **({"text": self.text} if self.text else {}),
            **({"label": self.label} if self.label else {}),
            "disabled": bool(self.disabled),
            "visible": bool(self.visible),
            **({"checked": bool(self.checked)} if self.checked is not None else {}),
            **({"value": self.value} if self.value else {}),
            "meta": self.meta.to_dict(),
        }


@dataclass(slots=True)
class DomMutation:
    mutation_type: str
    target_selector: str
    attribute_name: str | None = None
    added_nodes: list[dict[str, Any]] = field(default_factory=list)
    removed_nodes: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "mutationType": self.mutation_type,
            "targetSelector": self.target_selector,
            **({"attributeName": self.attribute_name} if self.attribute_name else {}),
            "addedNodes": list(self.added_nodes),
            "removedNodes": list(self.removed_nodes),
        }


def envelope(msg_type: str, *, session_id: str, origin: str, **payload: Any) -> dict[str, Any]:
    """Build one wire frame. ``None`` payload values are omitted."""
    return {
        "protocolVersion": PROTOCOL_VERSION,
        "sessionId": session_id,
        "timestamp": _now_ms(),
        "origin": origin,
        "type": msg_type,
        **_drop_none(payload),
    }


def encode(msg: dict[str, Any]) -> str:
    return json.dumps(msg, separators=(",", ":"), ensure_ascii=False, default=str)


def parse_frame(raw: Any) -> dict[str, Any] | None:
    """Decode one inbound frame. Malformed input and non-object JSON yield ``None``."""
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = bytes(raw).decode("utf-8")
        except UnicodeDecodeError:
            return None
    if not isinstance(raw, str):
        return None
    try:
        data = json.loads(raw)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def is_command(msg: dict[str, Any]) -> bool:
    request_id = msg.get("requestId")
    if not isinstance(request_id, str) or not request_id:
        return False
    mtype = msg.get("type")
    return mtype not in TELEMETRY_TYPES and mtype not in (COMMAND_RESULT, CONNECTION_EVENT)


def command_result(
    request_id: str,
    request_type: str,
    *,
    success: bool,
    duration: int,
    result: Any = None,
    code: ErrorCode | str | None = None,
    message: str | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "requestId": request_id,
        "requestType": request_type,
        "success": bool(success),
        "duration": max(0, int(duration)),
    }
    if not success:
        code_s = code.value if isinstance(code, ErrorCode) else str(code or ErrorCode.UNKNOWN_ERROR.value)
        if code_s not in ERROR_CODES:
            code_s = ErrorCode.UNKNOWN_ERROR.value
        payload["error"] = {"code": code_s, "message": str(message or code_s)}
    elif result is not None:
        payload["result"] = result
    return payload


def connection_event(
    session_id: str,
    event: str,
    *,
    connected_apps: list[str],
    connected_agents: list[str],
    app_id: str | None = None,
    agent_id: str | None = None,
) -> dict[str, Any]:
    return envelope(
        CONNECTION_EVENT,
        session_id=session_id,
        origin=ORIGIN_SERVER,
        event=event,
        appId=app_id,
        agentId=agent_id,
        connectedApps=list(connected_apps),
        connectedAgents=list(connected_agents),
    )
