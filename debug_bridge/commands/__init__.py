"""
Agent commands executed inside the app.

- targets: ElementTarget resolution (stableId > selector > text)
- executor: dispatch table, actionability checks, typed command_result
"""

from .executor import BUILTIN_STATE_SCOPES, CommandExecutor, ensure_allowed_navigation
from .targets import resolve_target

__all__ = ["BUILTIN_STATE_SCOPES", "CommandExecutor", "ensure_allowed_navigation", "resolve_target"]
