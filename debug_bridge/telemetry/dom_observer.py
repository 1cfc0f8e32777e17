from __future__ import annotations

import threading
import time
from collections.abc import Callable
from contextlib import suppress
from typing import Any

from ..page.dom import MutationObserverHandle, MutationRecord, is_element
from ..page.window import Page
from ..protocol import STABLE_ID_ATTR, DomMutation

MAX_NODE_HTML = 500
MAX_NODES_PER_RECORD = 20


def _target_selector(node: Any) -> str:
    if not is_element(node):
        return ""
    node_id = node.get("id")
    return f"#{node_id}" if node_id else str(node.name)


def _added_node(node: Any) -> dict[str, Any]:
    if is_element(node):
        return {"type": "element", "tagName": node.name, "html": str(node)[:MAX_NODE_HTML]}
    return {"type": "text", "text": str(node)[:MAX_NODE_HTML]}


def _removed_node(node: Any) -> dict[str, Any]:
    if is_element(node):
        return {"type": "element", "tagName": node.name}
    return {"type": "text"}


def serialize_record(record: MutationRecord) -> DomMutation:
    return DomMutation(
        mutation_type=record.type,
        target_selector=_target_selector(record.target),
        attribute_name=record.attribute_name,
        added_nodes=[_added_node(n) for n in record.added_nodes[:MAX_NODES_PER_RECORD]],
        removed_nodes=[_removed_node(n) for n in record.removed_nodes[:MAX_NODES_PER_RECORD]],
    )


class DomObserver:
    """Batches page mutations: one ``dom_mutations`` message per window, never one per change."""

    def __init__(
        self,
        page: Page,
        emit: Callable[[str, dict[str, Any]], None],
        *,
        batch_ms: int = 100,
        max_mutations: int = 1000,
    ) -> None:
        self.page = page
        self._emit = emit
        self.batch_ms = max(0, int(batch_ms))
        self.max_mutations = max(1, int(max_mutations))
        self._lock = threading.Lock()
        self._pending: list[DomMutation] = []
        self._dropped = 0
        self._timer: threading.Timer | None = None
        self._handle: MutationObserverHandle | None = None
        self._batch_seq = 0

    def start(self) -> None:
        if self._handle is not None:
            return
        self._handle = self.page.observe(self._on_records)

    def stop(self) -> None:
        handle = self._handle
        self._handle = None
        if handle is not None:
            handle.disconnect()
        with self._lock:
            timer = self._timer
            self._timer = None
            self._pending = []
            self._dropped = 0
        if timer is not None:
            timer.cancel()

    def _on_records(self, records: list[MutationRecord]) -> None:
        with self._lock:
            if self._handle is None:
                return
            for record in records:
                if record.type == "attributes" and record.attribute_name == STABLE_ID_ATTR:
                    continue
                if len(self._pending) >= self.max_mutations:
                    self._dropped += 1
                    continue
                self._pending.append(serialize_record(record))
            if self._pending and self._timer is None:
                timer = threading.Timer(self.batch_ms / 1000.0, self.flush)
                timer.daemon = True
                self._timer = timer
                timer.start()

    def flush(self) -> None:
        # Records were serialized on the mutating thread; the timer thread never reads the page.
        with self._lock:
            pending, dropped = self._pending, self._dropped
            self._pending, self._dropped = [], 0
            self._timer = None
            self._batch_seq += 1
            seq = self._batch_seq
        if not pending:
            return
        payload: dict[str, Any] = {
            "batchId": f"batch-{seq}-{int(time.time() * 1000)}",
            "mutations": [m.to_dict() for m in pending],
        }
        if dropped:
            payload["droppedCount"] = dropped
        with suppress(Exception):
            self._emit("dom_mutations", payload)
