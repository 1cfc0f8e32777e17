"""
Host page model the bridge instruments.

- dom: document tree, shadow roots, events, mutations, form state, visibility
- window: Page (location/history/storage/console/fetch/XHR) on top of the document
"""

from .dom import (
    DomHost,
    Event,
    InvalidSelectorError,
    MutationObserverHandle,
    MutationRecord,
    ShadowRoot,
    collapse_ws,
    input_type,
    is_content_editable,
    is_element,
)
from .window import (
    Console,
    FormData,
    History,
    Location,
    NetworkError,
    Page,
    Request,
    Response,
    Storage,
    UrllibTransport,
    XMLHttpRequest,
)

__all__ = [
    "Console",
    "DomHost",
    "Event",
    "FormData",
    "History",
    "InvalidSelectorError",
    "Location",
    "MutationObserverHandle",
    "MutationRecord",
    "NetworkError",
    "Page",
    "Request",
    "Response",
    "ShadowRoot",
    "Storage",
    "UrllibTransport",
    "XMLHttpRequest",
    "collapse_ws",
    "input_type",
    "is_content_editable",
    "is_element",
]
