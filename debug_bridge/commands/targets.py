from __future__ import annotations

from bs4 import Tag

from ..errors import CommandError
from ..page.dom import InvalidSelectorError
from ..page.window import Page
from ..protocol import STABLE_ID_ATTR, ElementTarget, ErrorCode
from ..telemetry.ui_tree import SHADOW_MARKER, element_role

TEXT_CANDIDATES = 'button, a, [role="button"], input'


def _by_attr(page: Page, name: str, value: str, *, deep: bool) -> Tag | None:
    return page.find_first(lambda el: el.get(name) == value, deep=deep)


def _resolve_stable_id(page: Page, stable_id: str) -> Tag | None:
    return (
        _by_attr(page, STABLE_ID_ATTR, stable_id, deep=True)
        or _by_attr(page, "data-testid", stable_id, deep=False)
        or _by_attr(page, "id", stable_id, deep=False)
        or _by_attr(page, "data-testid", stable_id, deep=True)
        or _by_attr(page, "id", stable_id, deep=True)
    )


def _resolve_shadow_path(page: Page, selector: str) -> Tag | None:
    segments = [seg.strip().strip(">").strip() for seg in selector.split(SHADOW_MARKER)]
    if any(not seg for seg in segments):
        raise InvalidSelectorError(f"Invalid selector {selector!r}: empty segment around {SHADOW_MARKER}")
    el = page.query_deep(segments[0])
    for seg in segments[1:]:
        if el is None:
            return None
        shadow = page.shadow_root(el)
        if shadow is None:
            return None
        el = page.query(seg, shadow.root)
    return el


def _resolve_selector(page: Page, selector: str) -> Tag | None:
    if SHADOW_MARKER in selector:
        return _resolve_shadow_path(page, selector)
    return page.query(selector) or page.query_deep(selector)


def _resolve_text(page: Page, text: str, role: str | None) -> Tag | None:
    for el in page.query_all_deep(TEXT_CANDIDATES):
        if role and element_role(el) != role:
            continue
        content = el.get_text() or str(el.get("placeholder") or "")
        if text in content:
            return el
    return None


def resolve_target(page: Page, target: ElementTarget) -> Tag:
    """Locate exactly one element: stableId, then selector, then text. Never guesses."""
    if target.is_empty():
        raise CommandError(ErrorCode.INVALID_COMMAND, "Target requires stableId, selector or text")
    el: Tag | None = None
    try:
        if target.stable_id:
            el = _resolve_stable_id(page, target.stable_id)
        if el is None and target.selector:
            el = _resolve_selector(page, target.selector)
        if el is None and target.text:
            el = _resolve_text(page, target.text, target.role)
    except InvalidSelectorError as exc:
        raise CommandError(ErrorCode.INVALID_COMMAND, str(exc)) from exc
    if el is None:
        raise CommandError(ErrorCode.TARGET_NOT_FOUND, f"Not found: {target.to_dict()}", {"target": target.to_dict()})
    return el
