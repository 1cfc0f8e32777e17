"""Default ``request_screenshot`` rasterizer.

The page model has no layout engine, so the capture is a wireframe: a header with the
page title and URL, then one labelled box per visible interactive element in document order.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass
from io import BytesIO

from bs4 import Tag
from PIL import Image, ImageDraw, ImageFont

from .page.dom import collapse_ws, compile_selector
from .page.window import Page
from .telemetry.ui_tree import INTERACTIVE_SELECTOR, element_role

HEADER_HEIGHT = 28
ROW_HEIGHT = 24
ROW_GAP = 6
MARGIN = 8
MAX_LABEL = 80

_ROLE_COLORS = {
    "button": (37, 99, 235),
    "link": (5, 150, 105),
    "textbox": (217, 119, 6),
    "checkbox": (124, 58, 237),
    "radio": (124, 58, 237),
    "combobox": (219, 39, 119),
}
_DEFAULT_COLOR = (75, 85, 99)


@dataclass(frozen=True, slots=True)
class Screenshot:
    data: str
    width: int
    height: int


def _describe(el: Tag, role: str) -> str:
    text = collapse_ws(el.get_text()) or str(el.get("aria-label") or el.get("placeholder") or el.get("name") or "")
    label = f"{role}: {text}" if text else role
    if el.has_attr("disabled"):
        label += " (disabled)"
    return label if len(label) <= MAX_LABEL else label[: MAX_LABEL - 3] + "..."


class WireframeRasterizer:
    def __init__(self, *, background: str = "white") -> None:
        self.background = background

    def _elements(self, page: Page, selector: str | None) -> list[Tag]:
        matcher = compile_selector(INTERACTIVE_SELECTOR)
        if selector:
            root = page.query(selector) or page.query_deep(selector)
            if root is None:
                raise ValueError(f"No element matches {selector!r}")
            candidates = [root]
            shadow = page.shadow_root(root)
            if shadow is not None:
                candidates.extend(page.iter_elements(shadow.root))
            candidates.extend(page.iter_elements(root))
        else:
            candidates = list(page.iter_elements())
        return [el for el in candidates if matcher.match(el) and page.is_visible(el)]

    def __call__(self, page: Page, *, selector: str | None = None, full_page: bool = False) -> Screenshot:
        # Read the page under its lock; drawing and encoding run without it.
        with page.lock:
            rows: list[tuple[str, str]] = []
            for el in self._elements(page, selector):
                role = element_role(el)
                rows.append((role, _describe(el, role)))
            header = page.title or page.location.href
            width = max(1, int(page.viewport.inner_width))
            height = max(1, int(page.viewport.inner_height))
        needed = HEADER_HEIGHT + MARGIN + len(rows) * (ROW_HEIGHT + ROW_GAP)
        if full_page:
            height = max(height, needed)

        img = Image.new("RGB", (width, height), self.background)
        draw = ImageDraw.Draw(img)
        font = ImageFont.load_default()

        draw.rectangle([0, 0, width, HEADER_HEIGHT], fill=(243, 244, 246))
        draw.text((MARGIN, 8), header[:120], fill=(17, 24, 39), font=font)

        y = HEADER_HEIGHT + MARGIN
        for role, label in rows:
            if y + ROW_HEIGHT > height:
                break
            color = _ROLE_COLORS.get(role, _DEFAULT_COLOR)
            draw.rectangle([MARGIN, y, width - MARGIN, y + ROW_HEIGHT], outline=color, width=2)
            draw.text((MARGIN + 6, y + 6), label, fill=color, font=font)
            y += ROW_HEIGHT + ROW_GAP

        buffer = BytesIO()
        img.save(buffer, format="PNG")
        data = "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode("ascii")
        return Screenshot(data=data, width=width, height=height)
