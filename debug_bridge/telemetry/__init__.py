"""
Telemetry collectors. Each exposes start()/stop(); stop() restores whatever start() patched.

- dom_observer: batched dom_mutations
- console_hook: console level wrappers
- error_hook: window error / unhandledrejection
- network_hook: fetch + XHR request/response
- navigation_hook: history + popstate/hashchange
- ui_tree: interactive element snapshot with stable ids
"""

from .console_hook import ConsoleHook
from .dom_observer import DomObserver
from .error_hook import ErrorHook
from .navigation_hook import NavigationHook
from .network_hook import NetworkHook
from .ui_tree import UiTreeBuilder, css_path, element_role

__all__ = [
    "ConsoleHook",
    "DomObserver",
    "ErrorHook",
    "NavigationHook",
    "NetworkHook",
    "UiTreeBuilder",
    "css_path",
    "element_role",
]
