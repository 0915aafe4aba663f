"""Agent configuration, resolved once at construction.

Every value follows the same precedence: explicit argument, then
environment variable, then built-in default. The resolved AgentConfig is
passed explicitly to each component; nothing else reads the environment.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import ConfigurationError
from .models import PermissionDecision, PermissionMode, ToolPermissionContext

logger = logging.getLogger(__name__)

DEFAULT_AGENT_MODEL = "claude-sonnet-4-20250514"
DEFAULT_FAST_MODEL = "gemini-2.5-flash"
DEFAULT_TOKEN_LIMIT = 64000

# Optional async callback for real-time event observation.
# Signature: async def callback(event: dict[str, Any]) -> None
EventCallback = Callable[[dict[str, Any]], Awaitable[None]]

# Async callback asked to decide a restricted tool call (usually a user prompt).
# Signature: async def callback(context: ToolPermissionContext) -> PermissionDecision
PermissionCallback = Callable[[ToolPermissionContext], Awaitable[PermissionDecision]]

_ENV_PREFIXES = ("AIGW_", "WAVE_", "TOKEN_LIMIT")


async def fire_event(
    callback: EventCallback | None,
    event: dict[str, Any],
) -> None:
    """Fire an event callback if set, never letting it break the caller."""
    if callback is None:
        return
    try:
        await callback(event)
    except Exception:
        logger.debug("Event callback failed for %s", event.get("event"), exc_info=True)


def _pick_str(
    override: str | None, environ: Mapping[str, str], key: str, default: str,
) -> str:
    # An explicit empty string is kept so validation can reject it.
    if override is not None:
        return override
    return environ.get(key) or default


def _pick_number(
    override: float | int | None,
    environ: Mapping[str, str],
    key: str,
    default: float | int,
    cast: Callable[[str], Any],
) -> Any:
    if override is not None:
        return override
    raw = environ.get(key)
    if raw:
        try:
            return cast(raw)
        except ValueError:
            logger.warning(
                "AgentConfig: ignoring non-numeric %s=%r, using default %s",
                key, raw, default,
            )
    return default


@dataclass
class AgentConfig:
    """Agent runtime configuration."""

    # Model gateway
    api_key: str = ""
    base_url: str = ""
    agent_model: str = DEFAULT_AGENT_MODEL
    fast_model: str = DEFAULT_FAST_MODEL
    # Cumulative token usage that triggers history compression.
    token_limit: int = DEFAULT_TOKEN_LIMIT

    # Filesystem roots
    workdir: str = "."
    home_dir: str = "~"
    # Where session JSONL files live. None means <home_dir>/.wave/projects.
    sessions_dir: str | None = None
    persist_sessions: bool = True

    # Permission policy
    default_permission_mode: PermissionMode = PermissionMode.DEFAULT
    additional_directories: list[str] = field(default_factory=list)
    plan_file_path: str | None = None

    # Hooks
    hook_timeout_seconds: float = 10.0
    # Extra variables layered into every hook process environment.
    hook_env: dict[str, str] = field(default_factory=dict)

    # Subagents
    max_subagent_depth: int = 3

    # Background shells: grace before SIGTERM escalates to SIGKILL.
    kill_grace_seconds: float = 1.0

    log_level: str = "INFO"

    def __post_init__(self) -> None:
        self.workdir = str(Path(self.workdir).expanduser().resolve())
        self.home_dir = str(Path(self.home_dir).expanduser())

    @property
    def wave_home(self) -> Path:
        return Path(self.home_dir) / ".wave"

    @property
    def project_wave_dir(self) -> Path:
        return Path(self.workdir) / ".wave"

    @property
    def resolved_sessions_dir(self) -> Path:
        if self.sessions_dir:
            return Path(self.sessions_dir)
        return self.wave_home / "projects"

    @classmethod
    def resolve(
        cls,
        *,
        environ: Mapping[str, str] | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        agent_model: str | None = None,
        fast_model: str | None = None,
        token_limit: int | None = None,
        workdir: str | None = None,
        home_dir: str | None = None,
        sessions_dir: str | None = None,
        hook_timeout_seconds: float | None = None,
        max_subagent_depth: int | None = None,
        log_level: str | None = None,
        **extra: Any,
    ) -> AgentConfig:
        """Build and validate a config: arguments > environment > defaults.

        ``extra`` holds fields with no environment fallback
        (``additional_directories``, ``plan_file_path``, ...).
        Raises ConfigurationError when a required value is missing.
        """
        env = os.environ if environ is None else environ
        config = cls(
            api_key=_pick_str(api_key, env, "AIGW_TOKEN", ""),
            base_url=_pick_str(base_url, env, "AIGW_URL", ""),
            agent_model=agent_model or env.get("AIGW_MODEL") or DEFAULT_AGENT_MODEL,
            fast_model=fast_model or env.get("AIGW_FAST_MODEL") or DEFAULT_FAST_MODEL,
            token_limit=_pick_number(
                token_limit, env, "TOKEN_LIMIT", DEFAULT_TOKEN_LIMIT, int,
            ),
            workdir=str(Path(workdir or os.getcwd()).resolve()),
            home_dir=str(Path(home_dir) if home_dir else Path.home()),
            sessions_dir=sessions_dir or env.get("WAVE_SESSIONS_DIR") or None,
            hook_timeout_seconds=_pick_number(
                hook_timeout_seconds, env, "WAVE_HOOK_TIMEOUT",
                cls.hook_timeout_seconds, float,
            ),
            max_subagent_depth=_pick_number(
                max_subagent_depth, env, "WAVE_MAX_SUBAGENT_DEPTH",
                cls.max_subagent_depth, int,
            ),
            log_level=log_level or env.get("WAVE_LOG_LEVEL") or cls.log_level,
            **extra,
        )
        config.validate()
        return config

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> AgentConfig:
        """Load configuration from AIGW_* / WAVE_* environment variables."""
        env = os.environ if environ is None else environ
        set_vars = sorted(k for k in env if k.startswith(_ENV_PREFIXES))
        if set_vars:
            logger.info(
                "AgentConfig.from_env: env overrides: %s", ", ".join(set_vars),
            )
        else:
            logger.debug("AgentConfig.from_env: no overrides set, using defaults")
        config = cls.resolve(environ=env)
        logger.info(
            "AgentConfig.from_env: model=%s fast_model=%s token_limit=%d workdir=%s",
            config.agent_model, config.fast_model,
            config.token_limit, config.workdir,
        )
        return config

    def validate(self) -> None:
        """Fail fast on values the runtime cannot work with."""
        if not self.api_key.strip():
            raise ConfigurationError(
                "api_key",
                "API key is required (pass api_key or set AIGW_TOKEN)",
            )
        if not self.base_url.strip():
            raise ConfigurationError(
                "base_url",
                "base URL is required (pass base_url or set AIGW_URL)",
            )
        if not isinstance(self.token_limit, int) or self.token_limit <= 0:
            raise ConfigurationError(
                "token_limit", f"must be a positive integer, got {self.token_limit!r}",
            )
        if self.hook_timeout_seconds <= 0:
            raise ConfigurationError(
                "hook_timeout_seconds",
                f"must be positive, got {self.hook_timeout_seconds!r}",
            )
        if self.max_subagent_depth < 1:
            raise ConfigurationError(
                "max_subagent_depth",
                f"must be at least 1, got {self.max_subagent_depth!r}",
            )
        if not self.agent_model.strip() or not self.fast_model.strip():
            raise ConfigurationError("agent_model", "model names must be non-empty")
