"""Hook engine: user-configured commands run at lifecycle events."""

from .executor import (
    DEFAULT_TIMEOUT_SECONDS,
    MAX_TIMEOUT_SECONDS,
    build_hook_payload,
    execute_command,
    is_command_safe,
)
from .manager import HookManager, validate_hooks_section
from .matcher import is_valid_pattern, matches
from .models import (
    HookCommand,
    HookConfiguration,
    HookEvent,
    HookEventConfig,
    HookExecutionContext,
    HookExecutionResult,
    HookOutcome,
    ParsedHookOutput,
)
from .output_parser import extract_json, parse_hook_output, validate_json_output

__all__ = [
    "DEFAULT_TIMEOUT_SECONDS",
    "MAX_TIMEOUT_SECONDS",
    "HookCommand",
    "HookConfiguration",
    "HookEvent",
    "HookEventConfig",
    "HookExecutionContext",
    "HookExecutionResult",
    "HookManager",
    "HookOutcome",
    "ParsedHookOutput",
    "build_hook_payload",
    "execute_command",
    "extract_json",
    "is_command_safe",
    "is_valid_pattern",
    "matches",
    "parse_hook_output",
    "validate_hooks_section",
    "validate_json_output",
]
