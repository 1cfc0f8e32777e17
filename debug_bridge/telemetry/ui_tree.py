"""Interactive-element discovery and stable-id assignment.

Stable ids, in priority order:
1. caller-supplied ``get_stable_id(el)``
2. ``data-testid``
3. a non-auto-generated ``id``
4. ``<role>-<base36 |hash(text[:20])|>`` (hash-derived ids that repeat in one pass get ``-2``, ``-3``, ...)
5. the sanitized structural CSS path

The id is written back onto the element (``data-debug-bridge-id``) so a later command can
find the exact node again.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from typing import Any

import soupsieve
from bs4 import BeautifulSoup, Tag

from ..page.dom import collapse_ws, compile_selector, input_type, is_element
from ..page.window import Page
from ..protocol import STABLE_ID_ATTR, UiTreeItem, UiTreeMeta

logger = logging.getLogger("debug_bridge.ui_tree")

INTERACTIVE_SELECTOR = ", ".join(
    [
        "a[href]",
        "button",
        "input",
        "select",
        "textarea",
        '[role="button"]',
        '[role="link"]',
        '[role="menuitem"]',
        '[role="tab"]',
        '[role="checkbox"]',
        '[role="radio"]',
        "[tabindex]",
        "[onclick]",
    ]
)

SHADOW_MARKER = "::shadow"

# Framework-generated ids (React useId, Radix, Headless UI, MUI, React Aria) change between renders.
_AUTO_ID = re.compile(r"^(?::|radix-|headlessui-|mui-|react-aria)")
_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]")
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"

_INPUT_ROLES = {
    "button": "button",
    "submit": "button",
    "reset": "button",
    "image": "button",
    "checkbox": "checkbox",
    "radio": "radio",
    "range": "slider",
    "number": "spinbutton",
    "search": "searchbox",
}


def string_hash(text: str) -> int:
    """32-bit ``h = (h << 5) - h + code`` over UTF-16 code units, wrapped to int32."""
    h = 0
    data = text.encode("utf-16-le")
    for i in range(0, len(data), 2):
        code = data[i] | (data[i + 1] << 8)
        h = ((h << 5) - h + code) & 0xFFFFFFFF
    return h - 0x100000000 if h >= 0x80000000 else h


def to_base36(n: int) -> str:
    if n == 0:
        return "0"
    out = []
    while n:
        n, rem = divmod(n, 36)
        out.append(_BASE36[rem])
    return "".join(reversed(out))


def implicit_role(el: Tag) -> str:
    tag = el.name
    if tag == "a":
        return "link" if el.has_attr("href") else "a"
    if tag == "button":
        return "button"
    if tag == "textarea":
        return "textbox"
    if tag == "select":
        multiple = el.has_attr("multiple") or str(el.get("size") or "1") not in ("", "0", "1")
        return "listbox" if multiple else "combobox"
    if tag == "input":
        return _INPUT_ROLES.get(input_type(el), "textbox")
    return tag


def element_role(el: Tag) -> str:
    explicit = str(el.get("role") or "").strip()
    return explicit.split()[0] if explicit else implicit_role(el)


def css_path(page: Page, el: Tag) -> str:
    """Structural selector; ``::shadow`` marks a hop from a host into its shadow root."""
    if el.get("id"):
        return "#" + soupsieve.escape(str(el["id"]))
    parts: list[str] = []
    cur: Any = el
    while is_element(cur) and cur.name != "body":
        if cur.get("id"):
            parts.insert(0, "#" + soupsieve.escape(str(cur["id"])))
            break
        selector = cur.name
        parent = cur.parent
        if parent is not None:
            same = [c for c in parent.children if is_element(c) and c.name == cur.name]
            if len(same) > 1:
                index = next(i for i, c in enumerate(same) if c is cur) + 1
                selector += f":nth-of-type({index})"
        parts.insert(0, selector)
        if isinstance(parent, BeautifulSoup):
            host = page.shadow_host_of(parent)
            if host is not None:
                return " > ".join([css_path(page, host), SHADOW_MARKER, *parts])
            break
        cur = parent
    return " > ".join(parts)


class UiTreeBuilder:
    def __init__(self, page: Page, get_stable_id: Callable[[Tag], str | None] | None = None) -> None:
        self.page = page
        self.get_stable_id = get_stable_id
        self._matcher = compile_selector(INTERACTIVE_SELECTOR)

    def build(self) -> list[UiTreeItem]:
        items: list[UiTreeItem] = []
        seen: set[int] = set()
        fallback_counts: dict[str, int] = {}
        for el in self.page.iter_elements():
            if id(el) in seen or not self._matcher.match(el):
                continue
            seen.add(id(el))
            items.append(self._build_item(el, fallback_counts))
        return items

    def build_dicts(self) -> list[dict[str, Any]]:
        return [item.to_dict() for item in self.build()]

    def _build_item(self, el: Tag, fallback_counts: dict[str, int]) -> UiTreeItem:
        page = self.page
        selector = css_path(page, el)
        stable_id = self._stable_id(el, selector, fallback_counts)
        if el.get(STABLE_ID_ATTR) != stable_id:
            page.set_attribute(el, STABLE_ID_ATTR, stable_id)

        kind = input_type(el)
        checked: bool | None = None
        if kind in ("checkbox", "radio"):
            checked = page.get_checked(el)
        elif str(el.get("role") or "") in ("checkbox", "radio"):
            checked = str(el.get("aria-checked") or "").lower() == "true"

        value = None
        if el.name in ("input", "select", "textarea"):
            value = page.get_value(el) or None

        extra: dict[str, Any] = {}
        if el.get("data-testid"):
            extra["testId"] = str(el["data-testid"])
        if page.root_of(el) is not page.document:
            extra["inShadowRoot"] = True

        href = el.get("href") if el.name == "a" else None
        meta = UiTreeMeta(
            tag_name=el.name,
            type=str(el.get("type")) if el.get("type") else None,
            name=str(el.get("name")) if el.get("name") else None,
            href=page.resolve_url(str(href)) if href else None,
            placeholder=str(el.get("placeholder")) if el.get("placeholder") else None,
            extra=extra,
        )
        return UiTreeItem(
            stable_id=stable_id,
            selector=selector,
            role=element_role(el),
            text=self._text(el) or None,
            label=self._label(el) or None,
            disabled=el.has_attr("disabled") or str(el.get("aria-disabled") or "").lower() == "true",
            visible=page.is_visible(el),
            meta=meta,
            checked=checked,
            value=value,
        )

    def _stable_id(self, el: Tag, selector: str, fallback_counts: dict[str, int]) -> str:
        if self.get_stable_id is not None:
            try:
                custom = self.get_stable_id(el)
            except Exception:  # noqa: BLE001
                logger.debug("get_stable_id failed for <%s>", el.name, exc_info=True)
                custom = None
            if custom:
                return str(custom)

        test_id = str(el.get("data-testid") or "")
        if test_id:
            return test_id
        el_id = str(el.get("id") or "")
        if el_id and not _AUTO_ID.match(el_id):
            return el_id

        text = collapse_ws(el.get_text())[:20]
        if text:
            role = str(el.get("role") or "") or el.name
            base = f"{role}-{to_base36(abs(string_hash(text)))}"
        else:
            base = _NON_ALNUM.sub("-", selector)[:50]
        n = fallback_counts.get(base, 0) + 1
        fallback_counts[base] = n
        return base if n == 1 else f"{base}-{n}"

    def _text(self, el: Tag) -> str:
        if el.name == "textarea" or (el.name == "input" and input_type(el) not in ("checkbox", "radio")):
            return self.page.get_value(el) or str(el.get("placeholder") or "")
        return collapse_ws(el.get_text())[:100]

    def _label(self, el: Tag) -> str:
        page = self.page
        aria = collapse_ws(str(el.get("aria-label") or ""))
        if aria:
            return aria

        root = page.root_of(el)
        labelled_by = str(el.get("aria-labelledby") or "").split()
        if labelled_by:
            texts = []
            for ref in labelled_by:
                node = page.get_element_by_id(ref, root)
                if node is not None:
                    texts.append(collapse_ws(node.get_text()))
            joined = " ".join(t for t in texts if t)
            if joined:
                return joined

        el_id = el.get("id")
        if el_id:
            label = root.find("label", attrs={"for": str(el_id)})
            if label is not None:
                text = collapse_ws(label.get_text())
                if text:
                    return text

        enclosing = el.find_parent("label")
        if enclosing is not None:
            text = collapse_ws(enclosing.get_text())
            if text:
                return text

        return collapse_ws(str(el.get("title") or ""))
