"""Document model for the page the bridge instruments.

The tree itself is a BeautifulSoup document. On top of it this module keeps what a
browser keeps outside the markup:
- open/closed shadow roots (declarative ``<template shadowrootmode>`` or attach_shadow)
- event listeners with bubbling that crosses shadow boundaries up to the window
- mutation observers fed by the mutating helpers (set_attribute, append_child, ...)
- live form state (value/checked/selectedIndex), which is not reflected into attributes
- focus and a tiny computed-style model (inline style + the UA ``hidden`` rule)

Element identity matters everywhere: bs4 ``Tag.__eq__`` compares markup, so side maps
are keyed by ``id(el)`` and entries keep the element to guard against id reuse.
"""

from __future__ import annotations

import logging
import re
import threading
import time
import traceback
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any

import soupsieve
from bs4 import BeautifulSoup, NavigableString, Tag

logger = logging.getLogger("debug_bridge.page")

Listener = Callable[["Event"], Any]

_STYLE_DECL = re.compile(r"([A-Za-z-]+)\s*:\s*([^;]+)")
_UA_HIDDEN_TAGS = frozenset({"head", "script", "style", "template", "title", "meta", "link", "noscript"})


def _now_ms() -> int:
    return int(time.time() * 1000)


class InvalidSelectorError(ValueError):
    pass


def parse_html(html: str) -> BeautifulSoup:
    # Keep "class" a plain string so attributes round-trip exactly.
    return BeautifulSoup(html or "", "html.parser", multi_valued_attributes=None)


def compile_selector(selector: str) -> Any:
    if not isinstance(selector, str) or not selector.strip():
        raise InvalidSelectorError("Empty selector")
    try:
        return soupsieve.compile(selector)
    except (soupsieve.SelectorSyntaxError, NotImplementedError, ValueError) as exc:
        # soupsieve reports pseudo-elements and at-rules as NotImplementedError.
        raise InvalidSelectorError(f"Invalid selector {selector!r}: {exc}") from exc


def is_element(node: Any) -> bool:
    return isinstance(node, Tag) and not isinstance(node, BeautifulSoup)


def collapse_ws(text: str) -> str:
    return " ".join(str(text or "").split())


def input_type(el: Tag) -> str:
    if el.name != "input":
        return ""
    return str(el.get("type") or "text").strip().lower()


def is_content_editable(el: Tag) -> bool:
    raw = el.get("contenteditable")
    if raw is None:
        return False
    return str(raw).strip().lower() in ("", "true", "plaintext-only")


@dataclass(eq=False)
class Event:
    type: str
    bubbles: bool = True
    cancelable: bool = True
    detail: dict[str, Any] = field(default_factory=dict)
    target: Any = None
    current_target: Any = None
    default_prevented: bool = False
    propagation_stopped: bool = False
    timestamp: int = field(default_factory=_now_ms)

    def prevent_default(self) -> None:
        if self.cancelable:
            self.default_prevented = True

    def stop_propagation(self) -> None:
        self.propagation_stopped = True


@dataclass(eq=False)
class ShadowRoot:
    host: Tag
    root: BeautifulSoup
    mode: str = "open"


@dataclass(eq=False)
class MutationRecord:
    type: str  # attributes | childList | characterData
    target: Any
    attribute_name: str | None = None
    old_value: str | None = None
    added_nodes: list[Any] = field(default_factory=list)
    removed_nodes: list[Any] = field(default_factory=list)


class MutationObserverHandle:
    def __init__(self, host: DomHost, callback: Callable[[list[MutationRecord]], Any]) -> None:
        self._host = host
        self.callback = callback

    def disconnect(self) -> None:
        self._host._remove_observer(self)


class DomHost(ABC):
    """The document plus the window-level event target (the host itself).

    The model is not thread-safe on its own. Whoever drives it from more than one
    thread (the bridge runs commands on worker threads) holds ``lock`` around each
    unit of work; it is reentrant, so listeners that call back into the page are fine.
    """

    def __init__(self, html: str = "") -> None:
        self.lock = threading.RLock()
        self._listeners: dict[int, tuple[Any, dict[str, list[Listener]]]] = {}
        self._observers: list[MutationObserverHandle] = []
        self._observers_lock = threading.Lock()
        self._reporting_error = False
        self._load_document(html)

    def _load_document(self, html: str) -> None:
        self.document = parse_html(html)
        self._shadow_roots: dict[int, ShadowRoot] = {}
        self._fragment_roots: dict[int, ShadowRoot] = {}
        self._props: dict[int, tuple[Tag, dict[str, Any]]] = {}
        self.active_element: Tag | None = None
        # Listeners on the old tree die with it; window listeners survive.
        self._listeners = {k: v for k, v in self._listeners.items() if v[0] is self}
        self._attach_declarative_shadow_roots(self.document)

    @abstractmethod
    def navigate(self, url: str) -> None:
        """Follow a link or form action; the window layer owns location and history."""

    # ─────────────────────────────────────────────────────────────────────────
    # Shadow DOM
    # ─────────────────────────────────────────────────────────────────────────

    def _attach_declarative_shadow_roots(self, root: BeautifulSoup) -> None:
        # One template at a time: nested templates leave the tree with their parent.
        while True:
            template = root.find("template", attrs={"shadowrootmode": True})
            if template is None:
                return
            host = template.parent
            mode = str(template.get("shadowrootmode") or "open").strip().lower()
            inner = template.decode_contents()
            template.decompose()
            if is_element(host) and id(host) not in self._shadow_roots:
                self._install_shadow(host, inner, mode)

    def _install_shadow(self, host: Tag, html: str, mode: str) -> ShadowRoot:
        fragment = parse_html(html)
        shadow = ShadowRoot(host=host, root=fragment, mode="closed" if mode == "closed" else "open")
        self._shadow_roots[id(host)] = shadow
        self._fragment_roots[id(fragment)] = shadow
        self._attach_declarative_shadow_roots(fragment)
        return shadow

    def attach_shadow(self, host: Tag, html: str = "", *, mode: str = "open") -> ShadowRoot:
        if not is_element(host):
            raise TypeError("attach_shadow() requires an element host")
        existing = self._shadow_roots.get(id(host))
        if existing is not None and existing.host is host:
            raise ValueError(f"<{host.name}> already hosts a shadow root")
        return self._install_shadow(host, html, mode)

    def shadow_root(self, host: Any) -> ShadowRoot | None:
        """Open shadow root of ``host`` (closed roots are not exposed)."""
        shadow = self._shadow_roots.get(id(host))
        if shadow is None or shadow.host is not host or shadow.mode != "open":
            return None
        return shadow

    def shadow_host_of(self, fragment: Any) -> Tag | None:
        shadow = self._fragment_roots.get(id(fragment))
        if shadow is None or shadow.root is not fragment:
            return None
        return shadow.host

    def root_of(self, node: Any) -> Any:
        cur = node
        while cur.parent is not None:
            cur = cur.parent
        return cur

    def composed_parent(self, node: Any) -> Tag | None:
        """Parent element, stepping from a shadow root to its host."""
        parent = getattr(node, "parent", None)
        if parent is None:
            return None
        if isinstance(parent, BeautifulSoup):
            return self.shadow_host_of(parent)
        return parent

    def is_connected(self, node: Any) -> bool:
        cur = node
        while cur is not None:
            if cur is self.document:
                return True
            if cur.parent is None:
                cur = self.shadow_host_of(cur)
                continue
            cur = cur.parent
        return False

    # ─────────────────────────────────────────────────────────────────────────
    # Queries
    # ─────────────────────────────────────────────────────────────────────────

    def iter_elements(self, root: Any = None) -> Iterator[Tag]:
        """Depth-first over ``root`` and every open shadow root below it; shadow content follows its host."""
        root = self.document if root is None else root
        for child in list(root.children):
            if not is_element(child):
                continue
            yield child
            shadow = self.shadow_root(child)
            if shadow is not None:
                yield from self.iter_elements(shadow.root)
            yield from self.iter_elements(child)

    def query(self, selector: str, root: Any = None) -> Tag | None:
        return compile_selector(selector).select_one(self.document if root is None else root)

    def query_all(self, selector: str, root: Any = None) -> list[Tag]:
        return list(compile_selector(selector).select(self.document if root is None else root))

    def query_all_deep(self, selector: str) -> list[Tag]:
        compiled = compile_selector(selector)
        return [el for el in self.iter_elements() if compiled.match(el)]

    def query_deep(self, selector: str) -> Tag | None:
        compiled = compile_selector(selector)
        for el in self.iter_elements():
            if compiled.match(el):
                return el
        return None

    def find_first(self, predicate: Callable[[Tag], bool], *, deep: bool = True) -> Tag | None:
        elements = self.iter_elements() if deep else self.document.find_all(True)
        for el in elements:
            if predicate(el):
                return el
        return None

    def get_element_by_id(self, element_id: str, root: Any = None) -> Tag | None:
        scope = self.document if root is None else root
        found = scope.find(attrs={"id": element_id})
        return found if is_element(found) else None

    def outer_html(self) -> str:
        return str(self.document)

    # ─────────────────────────────────────────────────────────────────────────
    # Events
    # ─────────────────────────────────────────────────────────────────────────

    def add_event_listener(self, event_type: str, listener: Listener, target: Any = None) -> None:
        node = self if target is None else target
        entry = self._listeners.get(id(node))
        if entry is None or entry[0] is not node:
            entry = (node, {})
            self._listeners[id(node)] = entry
        bucket = entry[1].setdefault(event_type, [])
        if listener not in bucket:
            bucket.append(listener)

    def remove_event_listener(self, event_type: str, listener: Listener, target: Any = None) -> None:
        node = self if target is None else target
        entry = self._listeners.get(id(node))
        if entry is None or entry[0] is not node:
            return
        bucket = entry[1].get(event_type)
        if bucket and listener in bucket:
            bucket.remove(listener)

    def _listeners_for(self, node: Any, event_type: str) -> list[Listener]:
        entry = self._listeners.get(id(node))
        if entry is None or entry[0] is not node:
            return []
        return list(entry[1].get(event_type, ()))

    def _event_path(self, target: Any) -> list[Any]:
        if target is self:
            return [self]
        path: list[Any] = []
        cur = target
        while cur is not None:
            if cur is self.document:
                path.extend([self.document, self])
                return path
            if isinstance(cur, BeautifulSoup):
                # Composed events leave a shadow tree through its host.
                cur = self.shadow_host_of(cur)
                continue
            path.append(cur)
            cur = cur.parent
        return path

    def dispatch_event(self, target: Any, event: Event) -> bool:
        """Run listeners along the composed path. Returns False when default was prevented."""
        event.target = target
        path = self._event_path(target)
        if not event.bubbles:
            path = path[:1]
        for node in path:
            event.current_target = node
            for listener in self._listeners_for(node, event.type):
                try:
                    listener(event)
                except Exception as exc:  # noqa: BLE001
                    self._report_listener_error(exc)
            if event.propagation_stopped:
                break
        event.current_target = None
        return not event.default_prevented

    def _report_listener_error(self, exc: Exception) -> None:
        if self._reporting_error:
            logger.debug("error listener raised while reporting an error", exc_info=exc)
            return
        self._reporting_error = True
        try:
            self.report_error(exc)
        finally:
            self._reporting_error = False

    def report_error(
        self,
        error: BaseException | None = None,
        *,
        message: str | None = None,
        filename: str | None = None,
        lineno: int | None = None,
        colno: int | None = None,
    ) -> bool:
        """Fire the window ``error`` event the way a browser reports an uncaught exception."""
        stack = None
        if isinstance(error, BaseException):
            frames = traceback.extract_tb(error.__traceback__) if error.__traceback__ is not None else []
            if frames:
                top = frames[-1]
                filename = filename or top.filename
                lineno = lineno if lineno is not None else top.lineno
                colno = colno if colno is not None else getattr(top, "colno", None)
            message = message or f"{type(error).__name__}: {error}"
            stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        detail = {
            "message": message or "",
            "error": error,
            "stack": stack,
            "filename": filename,
            "lineno": lineno,
            "colno": colno,
        }
        return self.dispatch_event(self, Event("error", bubbles=False, detail=detail))

    def report_unhandled_rejection(self, reason: Any) -> bool:
        return self.dispatch_event(self, Event("unhandledrejection", bubbles=False, detail={"reason": reason}))

    # ─────────────────────────────────────────────────────────────────────────
    # Mutations
    # ─────────────────────────────────────────────────────────────────────────

    def observe(self, callback: Callable[[list[MutationRecord]], Any]) -> MutationObserverHandle:
        handle = MutationObserverHandle(self, callback)
        with self._observers_lock:
            self._observers.append(handle)
        return handle

    def _remove_observer(self, handle: MutationObserverHandle) -> None:
        with self._observers_lock:
            if handle in self._observers:
                self._observers.remove(handle)

    def _notify(self, record: MutationRecord) -> None:
        with self._observers_lock:
            observers = list(self._observers)
        for handle in observers:
            with suppress(Exception):
                handle.callback([record])

    def create_element(self, tag: str, attrs: dict[str, Any] | None = None, text: str | None = None) -> Tag:
        el = self.document.new_tag(tag, attrs={k: str(v) for k, v in (attrs or {}).items()})
        if text is not None:
            el.string = text
        return el

    def set_attribute(self, el: Tag, name: str, value: Any) -> None:
        old = el.get(name)
        el[name] = str(value)
        self._notify(MutationRecord("attributes", el, attribute_name=name, old_value=old))

    def remove_attribute(self, el: Tag, name: str) -> None:
        if name not in el.attrs:
            return
        old = el.get(name)
        del el[name]
        self._notify(MutationRecord("attributes", el, attribute_name=name, old_value=old))

    def append_child(self, parent: Any, child: Tag | str) -> list[Any]:
        if isinstance(child, str):
            fragment = parse_html(child)
            self._attach_declarative_shadow_roots(fragment)
            nodes = list(fragment.contents)
        else:
            nodes = [child]
            old_parent = child.parent
            if old_parent is not None:
                child.extract()
                self._notify(MutationRecord("childList", old_parent, removed_nodes=[child]))
        for node in nodes:
            parent.append(node)
        self._notify(MutationRecord("childList", parent, added_nodes=list(nodes)))
        return nodes

    def remove_node(self, node: Any) -> None:
        parent = node.parent
        if parent is None:
            return
        active = self.active_element
        if active is not None and (active is node or any(p is node for p in active.parents)):
            self.active_element = None
        node.extract()
        self._notify(MutationRecord("childList", parent, removed_nodes=[node]))

    def set_text(self, el: Tag, text: str) -> None:
        removed = list(el.contents)
        el.clear()
        added = NavigableString(str(text))
        el.append(added)
        self._notify(MutationRecord("childList", el, added_nodes=[added], removed_nodes=removed))

    # ─────────────────────────────────────────────────────────────────────────
    # Form state
    # ─────────────────────────────────────────────────────────────────────────

    def _props_of(self, el: Tag) -> dict[str, Any]:
        entry = self._props.get(id(el))
        if entry is None or entry[0] is not el:
            entry = (el, {})
            self._props[id(el)] = entry
        return entry[1]

    def _prop(self, el: Tag, name: str) -> tuple[bool, Any]:
        entry = self._props.get(id(el))
        if entry is None or entry[0] is not el or name not in entry[1]:
            return False, None
        return True, entry[1][name]

    @staticmethod
    def options_of(select: Tag) -> list[Tag]:
        return list(select.find_all("option"))

    @staticmethod
    def option_value(option: Tag) -> str:
        if option.has_attr("value"):
            return str(option.get("value"))
        return collapse_ws(option.get_text())

    @staticmethod
    def option_label(option: Tag) -> str:
        return str(option.get("label") or collapse_ws(option.get_text()))

    def selected_index(self, select: Tag) -> int:
        found, idx = self._prop(select, "selectedIndex")
        if found:
            return int(idx)
        options = self.options_of(select)
        for i, opt in enumerate(options):
            if opt.has_attr("selected"):
                return i
        return 0 if options else -1

    def select_option(
        self,
        select: Tag,
        *,
        value: str | None = None,
        label: str | None = None,
        index: int | None = None,
    ) -> Tag | None:
        options = self.options_of(select)
        chosen = -1
        if value is not None:
            chosen = next((i for i, o in enumerate(options) if self.option_value(o) == value), -1)
        elif label is not None:
            chosen = next((i for i, o in enumerate(options) if self.option_label(o) == label), -1)
        elif index is not None and 0 <= int(index) < len(options):
            chosen = int(index)
        if chosen < 0:
            return None
        self._props_of(select)["selectedIndex"] = chosen
        return options[chosen]

    def get_value(self, el: Tag) -> str:
        if el.name == "select":
            options = self.options_of(el)
            idx = self.selected_index(el)
            return self.option_value(options[idx]) if 0 <= idx < len(options) else ""
        found, value = self._prop(el, "value")
        if found:
            return str(value)
        if el.name == "textarea":
            return el.get_text()
        if el.name == "option":
            return self.option_value(el)
        if el.name == "input":
            if input_type(el) in ("checkbox", "radio"):
                return str(el.get("value") or "on")
            return str(el.get("value") or "")
        if is_content_editable(el):
            return el.get_text()
        return str(el.get("value") or "")

    def set_value(self, el: Tag, value: Any) -> None:
        text = "" if value is None else str(value)
        if el.name == "select":
            self.select_option(el, value=text)
            return
        if el.name not in ("input", "textarea") and is_content_editable(el):
            self.set_text(el, text)
            return
        self._props_of(el)["value"] = text

    def get_checked(self, el: Tag) -> bool:
        found, checked = self._prop(el, "checked")
        if found:
            return bool(checked)
        return el.has_attr("checked")

    def set_checked(self, el: Tag, checked: bool) -> None:
        self._props_of(el)["checked"] = bool(checked)
        if checked and input_type(el) == "radio" and el.get("name"):
            root = self.root_of(el)
            for other in root.find_all("input", attrs={"name": el.get("name")}):
                if other is not el and input_type(other) == "radio":
                    self._props_of(other)["checked"] = False

    # ─────────────────────────────────────────────────────────────────────────
    # Focus & activation
    # ─────────────────────────────────────────────────────────────────────────

    def focus(self, el: Tag) -> None:
        if el is self.active_element:
            return
        self.blur()
        self.active_element = el
        self.dispatch_event(el, Event("focus", bubbles=False, cancelable=False))
        self.dispatch_event(el, Event("focusin", cancelable=False))

    def blur(self) -> None:
        prev = self.active_element
        if prev is None:
            return
        self.active_element = None
        self.dispatch_event(prev, Event("blur", bubbles=False, cancelable=False))
        self.dispatch_event(prev, Event("focusout", cancelable=False))

    def click(self, el: Tag) -> bool:
        """Synthetic click plus default activation (checkbox toggle, link follow, form submit)."""
        not_prevented = self.dispatch_event(el, Event("click", detail={"button": 0}))
        if not_prevented:
            self._activate(el)
        return not_prevented

    def _activation_target(self, el: Tag) -> Tag | None:
        cur: Tag | None = el
        while cur is not None:
            if cur.name in ("button", "input", "label") or (cur.name == "a" and cur.has_attr("href")):
                return cur
            cur = self.composed_parent(cur)
        return None

    def _activate(self, el: Tag) -> None:
        target = self._activation_target(el)
        if target is None or target.has_attr("disabled"):
            return
        kind = input_type(target)
        if kind == "checkbox":
            self.set_checked(target, not self.get_checked(target))
            self._fire_input_change(target)
        elif kind == "radio":
            if not self.get_checked(target):
                self.set_checked(target, True)
                self._fire_input_change(target)
        elif target.name == "a":
            self.navigate(str(target.get("href")))
        elif kind in ("submit", "image") or (
            target.name == "button" and str(target.get("type") or "submit").lower() == "submit"
        ):
            form = self.form_owner(target)
            if form is not None:
                self.submit(form)
        elif target.name == "label":
            control = self._labelled_control(target)
            if control is not None and control is not el:
                self.click(control)

    def _labelled_control(self, label: Tag) -> Tag | None:
        for_id = label.get("for")
        if for_id:
            return self.get_element_by_id(str(for_id), self.root_of(label))
        return label.find(["input", "select", "textarea", "button"])

    def _fire_input_change(self, el: Tag) -> None:
        self.dispatch_event(el, Event("input", cancelable=False))
        self.dispatch_event(el, Event("change", cancelable=False))

    def form_owner(self, el: Tag) -> Tag | None:
        form_id = el.get("form")
        if form_id:
            return self.get_element_by_id(str(form_id), self.root_of(el))
        return el.find_parent("form")

    def submit(self, form: Tag) -> bool:
        not_prevented = self.dispatch_event(form, Event("submit"))
        if not_prevented and form.get("action"):
            self.navigate(str(form.get("action")))
        return not_prevented

    # ─────────────────────────────────────────────────────────────────────────
    # Style & visibility
    # ─────────────────────────────────────────────────────────────────────────

    @staticmethod
    def inline_style(el: Tag) -> dict[str, str]:
        raw = el.get("style")
        if not raw:
            return {}
        return {m.group(1).strip().lower(): m.group(2).strip().lower() for m in _STYLE_DECL.finditer(str(raw))}

    def computed_style(self, el: Tag) -> dict[str, str]:
        inline = self.inline_style(el)
        display = inline.get("display")
        if display is None:
            hidden = el.has_attr("hidden") or el.name in _UA_HIDDEN_TAGS or input_type(el) == "hidden"
            display = "none" if hidden else "block"
        visibility = "visible"
        cur: Tag | None = el
        while cur is not None:
            declared = self.inline_style(cur).get("visibility")
            if declared:
                visibility = declared
                break
            cur = self.composed_parent(cur)
        return {"display": display, "visibility": visibility, "opacity": inline.get("opacity", "1")}

    def is_visible(self, el: Tag) -> bool:
        if not self.is_connected(el):
            return False
        cur: Tag | None = el
        while cur is not None:
            if self.computed_style(cur)["display"] == "none":
                return False
            cur = self.composed_parent(cur)
        return self.computed_style(el)["visibility"] not in ("hidden", "collapse")
