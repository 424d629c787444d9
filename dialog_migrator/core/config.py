"""
Configuration module for the conversation migration tool.

This module loads settings from a YAML file, applies environment variable
overrides, creates default configuration files, and decides which
conversations should be processed based on the configured filters.
"""

from __future__ import annotations

import importlib
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Optional

import yaml

from dialog_migrator.constants import (
    DEFAULT_BATCH_DELAY,
    DEFAULT_BATCH_SIZE,
    DEFAULT_DESTINATION_PREFIX,
    DEFAULT_MAX_BATCH_DELAY,
    DEFAULT_MAX_ENUMERATE_RETRIES,
    DEFAULT_MAX_QUEUE_SIZE,
    DEFAULT_MAX_REQUESTS_PER_MINUTE,
    DEFAULT_MAX_RESUME_ATTEMPTS,
    DEFAULT_MIN_BATCH_DELAY,
    DEFAULT_PROGRESS_PATH,
    DEFAULT_QUEUE_MAX_RETRIES,
    DEFAULT_RATE_EXCEEDED_THRESHOLD,
    DEFAULT_RECOVERY_WINDOW,
    DEFAULT_SHUTDOWN_GRACE_PERIOD,
    ENV_PREFIX,
)
from dialog_migrator.exceptions import ConfigError
from dialog_migrator.services.rate_limiter import RateLimitConfig
from dialog_migrator.types import ConversationInfo, DialogType
from dialog_migrator.utils.logging import log_with_context


@dataclass
class RateLimitSettings:
    """Flow control settings (all durations in seconds)."""

    batch_delay: float = DEFAULT_BATCH_DELAY
    min_batch_delay: float = DEFAULT_MIN_BATCH_DELAY
    max_batch_delay: float = DEFAULT_MAX_BATCH_DELAY
    max_requests_per_minute: int = DEFAULT_MAX_REQUESTS_PER_MINUTE
    rate_exceeded_threshold: float = DEFAULT_RATE_EXCEEDED_THRESHOLD
    adaptive: bool = True
    recovery_window: float = DEFAULT_RECOVERY_WINDOW
    max_retries: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> RateLimitSettings:
        if not data:
            return cls()
        return cls(
            batch_delay=data.get("batch_delay", DEFAULT_BATCH_DELAY),
            min_batch_delay=data.get("min_batch_delay", DEFAULT_MIN_BATCH_DELAY),
            max_batch_delay=data.get("max_batch_delay", DEFAULT_MAX_BATCH_DELAY),
            max_requests_per_minute=data.get(
                "max_requests_per_minute", DEFAULT_MAX_REQUESTS_PER_MINUTE
            ),
            rate_exceeded_threshold=data.get(
                "rate_exceeded_threshold", DEFAULT_RATE_EXCEEDED_THRESHOLD
            ),
            adaptive=data.get("adaptive", True),
            recovery_window=data.get("recovery_window", DEFAULT_RECOVERY_WINDOW),
            max_retries=data.get("max_retries"),
        )

    def to_limiter_config(self) -> RateLimitConfig:
        return RateLimitConfig(
            batch_delay=self.batch_delay,
            max_requests_per_minute=self.max_requests_per_minute,
            rate_exceeded_threshold=self.rate_exceeded_threshold,
            adaptive_enabled=self.adaptive,
            min_batch_delay=self.min_batch_delay,
            max_batch_delay=self.max_batch_delay,
        )


@dataclass
class RealtimeSyncSettings:
    """Live-update capture while a conversation is being migrated."""

    enabled: bool = True
    max_queue_size: int = DEFAULT_MAX_QUEUE_SIZE
    max_retries: int = DEFAULT_QUEUE_MAX_RETRIES

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> RealtimeSyncSettings:
        if not data:
            return cls()
        return cls(
            enabled=data.get("enabled", True),
            max_queue_size=data.get("max_queue_size", DEFAULT_MAX_QUEUE_SIZE),
            max_retries=data.get("max_retries", DEFAULT_QUEUE_MAX_RETRIES),
        )


@dataclass
class FilterSettings:
    """Which conversations take part in the migration."""

    include_ids: list[str] = field(default_factory=list)
    exclude_ids: list[str] = field(default_factory=list)
    include_types: list[DialogType] = field(default_factory=list)
    exclude_types: list[DialogType] = field(default_factory=list)
    min_message_count: Optional[int] = None
    max_message_count: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> FilterSettings:
        if not data:
            return cls()
        return cls(
            include_ids=[str(i) for i in data.get("include_ids") or []],
            exclude_ids=[str(i) for i in data.get("exclude_ids") or []],
            include_types=_parse_types(data.get("include_types"), "include_types"),
            exclude_types=_parse_types(data.get("exclude_types"), "exclude_types"),
            min_message_count=data.get("min_message_count"),
            max_message_count=data.get("max_message_count"),
        )


def _parse_types(values: Iterable[str] | None, key: str) -> list[DialogType]:
    parsed = []
    for value in values or []:
        try:
            parsed.append(DialogType(value))
        except ValueError as e:
            valid = ", ".join(t.value for t in DialogType)
            raise ConfigError(f"Invalid {key} entry '{value}' (expected one of: {valid})") from e
    return parsed


@dataclass
class MigrationConfig:
    """Typed configuration for the migration tool.

    All fields have defaults so an empty or missing config file still yields a
    usable configuration for the read-only commands.
    """

    # Accounts
    source_account: str = ""
    target_recipient: str = ""

    # "package.module:callable" returning a RemoteClient
    client_factory: str = ""

    progress_path: str = DEFAULT_PROGRESS_PATH
    destination_prefix: str = DEFAULT_DESTINATION_PREFIX
    batch_size: int = DEFAULT_BATCH_SIZE

    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)
    realtime_sync: RealtimeSyncSettings = field(default_factory=RealtimeSyncSettings)
    filters: FilterSettings = field(default_factory=FilterSettings)

    # Orchestration
    max_enumerate_retries: int = DEFAULT_MAX_ENUMERATE_RETRIES
    max_resume_attempts: int = DEFAULT_MAX_RESUME_ATTEMPTS
    shutdown_grace_period: float = DEFAULT_SHUTDOWN_GRACE_PERIOD

    # Logging
    log_file: Optional[str] = None
    log_format: str = "text"
    # One log file per conversation in this directory
    dialog_log_dir: Optional[str] = None

    # Options passed through to the client factory
    client_options: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> MigrationConfig:
        """Create a MigrationConfig from a raw config dictionary."""
        return cls(
            source_account=str(data.get("source_account") or ""),
            target_recipient=str(data.get("target_recipient") or ""),
            client_factory=data.get("client_factory") or "",
            progress_path=data.get("progress_path") or DEFAULT_PROGRESS_PATH,
            destination_prefix=data.get("destination_prefix", DEFAULT_DESTINATION_PREFIX),
            batch_size=data.get("batch_size", DEFAULT_BATCH_SIZE),
            rate_limit=RateLimitSettings.from_dict(data.get("rate_limit")),
            realtime_sync=RealtimeSyncSettings.from_dict(data.get("realtime_sync")),
            filters=FilterSettings.from_dict(data.get("filters")),
            max_enumerate_retries=data.get(
                "max_enumerate_retries", DEFAULT_MAX_ENUMERATE_RETRIES
            ),
            max_resume_attempts=data.get("max_resume_attempts", DEFAULT_MAX_RESUME_ATTEMPTS),
            shutdown_grace_period=data.get(
                "shutdown_grace_period", DEFAULT_SHUTDOWN_GRACE_PERIOD
            ),
            log_file=data.get("log_file"),
            log_format=data.get("log_format", "text"),
            dialog_log_dir=data.get("dialog_log_dir"),
            client_options=data.get("client_options") or {},
        )

    def validate(self) -> None:
        """
        Check value ranges.

        Raises:
            ConfigError: On the first invalid setting
        """
        if not isinstance(self.batch_size, int) or self.batch_size < 1:
            raise ConfigError(f"batch_size must be a positive integer, got {self.batch_size!r}")

        rl = self.rate_limit
        if rl.min_batch_delay < 0:
            raise ConfigError(f"rate_limit.min_batch_delay must be >= 0, got {rl.min_batch_delay}")
        if rl.min_batch_delay > rl.max_batch_delay:
            raise ConfigError(
                "rate_limit.min_batch_delay must not exceed rate_limit.max_batch_delay"
            )
        if not rl.min_batch_delay <= rl.batch_delay <= rl.max_batch_delay:
            raise ConfigError(
                f"rate_limit.batch_delay must be between {rl.min_batch_delay} "
                f"and {rl.max_batch_delay}, got {rl.batch_delay}"
            )
        if rl.max_requests_per_minute < 0:
            raise ConfigError("rate_limit.max_requests_per_minute must be >= 0")
        if rl.rate_exceeded_threshold < 0:
            raise ConfigError("rate_limit.rate_exceeded_threshold must be >= 0")
        if rl.max_retries is not None and rl.max_retries < 0:
            raise ConfigError("rate_limit.max_retries must be >= 0 or null")

        if self.realtime_sync.max_queue_size < 1:
            raise ConfigError("realtime_sync.max_queue_size must be >= 1")
        if self.realtime_sync.max_retries < 1:
            raise ConfigError("realtime_sync.max_retries must be >= 1")

        if self.max_enumerate_retries < 1:
            raise ConfigError("max_enumerate_retries must be >= 1")
        if self.max_resume_attempts < 0:
            raise ConfigError("max_resume_attempts must be >= 0")
        if self.shutdown_grace_period <= 0:
            raise ConfigError("shutdown_grace_period must be > 0")
        if self.log_format not in ("text", "json"):
            raise ConfigError(f"log_format must be 'text' or 'json', got {self.log_format!r}")


# ---------------------------------------------------------------------------
# Environment overrides
# ---------------------------------------------------------------------------

# env suffix -> (path in raw config, converter)
_ENV_OVERRIDES: dict[str, tuple[tuple[str, ...], Callable[[str], Any]]] = {
    "SOURCE_ACCOUNT": (("source_account",), str),
    "TARGET_RECIPIENT": (("target_recipient",), str),
    "CLIENT_FACTORY": (("client_factory",), str),
    "PROGRESS_PATH": (("progress_path",), str),
    "DESTINATION_PREFIX": (("destination_prefix",), str),
    "BATCH_SIZE": (("batch_size",), int),
    "BATCH_DELAY": (("rate_limit", "batch_delay"), float),
    "RATE_EXCEEDED_THRESHOLD": (("rate_limit", "rate_exceeded_threshold"), float),
}


def apply_env_overrides(
    raw: dict[str, Any], environ: Optional[Mapping[str, str]] = None
) -> dict[str, Any]:
    """
    Overlay ``DIALOG_MIGRATOR_*`` environment variables on a raw config dict.

    Args:
        raw: Config as read from YAML (not modified)
        environ: Environment to read; defaults to ``os.environ``

    Returns:
        A new dict with the overrides applied

    Raises:
        ConfigError: If a numeric variable cannot be parsed
    """
    env = os.environ if environ is None else environ
    merged = dict(raw)

    for suffix, (path, convert) in _ENV_OVERRIDES.items():
        name = f"{ENV_PREFIX}{suffix}"
        value = env.get(name)
        if value is None or value == "":
            continue
        try:
            converted = convert(value)
        except ValueError as e:
            raise ConfigError(f"Invalid value for {name}: {value!r}") from e

        target = merged
        for key in path[:-1]:
            nested = dict(target.get(key) or {})
            target[key] = nested
            target = nested
        target[path[-1]] = converted
        log_with_context(logging.DEBUG, f"Config override from environment: {name}")

    return merged


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def load_config(
    config_path: Path, environ: Optional[Mapping[str, str]] = None
) -> MigrationConfig:
    """
    Load configuration from YAML file and apply default values.

    Loads the configuration from the specified YAML file, overlays environment
    variable overrides and applies defaults for anything missing. A missing
    file only logs a warning; an unparsable one or invalid values raise.

    Args:
        config_path: Path to the config YAML file
        environ: Environment used for overrides (defaults to ``os.environ``)

    Returns:
        MigrationConfig with all necessary defaults applied

    Raises:
        ConfigError: If the file cannot be parsed or a value is invalid
    """
    raw: dict[str, Any] = {}

    if config_path.exists():
        try:
            with open(config_path, encoding="utf-8") as f:
                loaded_config = yaml.safe_load(f)
        except (yaml.YAMLError, OSError) as e:
            raise ConfigError(f"Failed to load config file {config_path}: {e}") from e

        # Handle None result from empty file
        if loaded_config is not None:
            if not isinstance(loaded_config, dict):
                raise ConfigError(f"Config file {config_path} must contain a mapping")
            raw = loaded_config
        log_with_context(logging.INFO, f"Loaded configuration from {config_path}")
    else:
        log_with_context(
            logging.WARNING,
            f"Config file {config_path} not found, using default settings",
        )

    try:
        config = MigrationConfig.from_dict(apply_env_overrides(raw, environ))
    except (TypeError, ValueError, AttributeError) as e:
        raise ConfigError(f"Invalid configuration in {config_path}: {e}") from e
    config.validate()
    return config


def create_default_config(output_path: Path) -> bool:
    """
    Create a default configuration file with recommended settings.

    The file will not overwrite an existing configuration.

    Args:
        output_path: Path where the default config should be saved

    Returns:
        True if the config file was created successfully, False otherwise
    """
    if output_path.exists():
        log_with_context(
            logging.WARNING,
            f"Config file {output_path} already exists, not overwriting",
        )
        return False

    default_config = {
        "source_account": "",
        "target_recipient": "",
        "client_factory": "my_platform.client:create_client",
        "progress_path": DEFAULT_PROGRESS_PATH,
        "destination_prefix": DEFAULT_DESTINATION_PREFIX,
        "batch_size": DEFAULT_BATCH_SIZE,
        "rate_limit": {
            "batch_delay": DEFAULT_BATCH_DELAY,
            "min_batch_delay": DEFAULT_MIN_BATCH_DELAY,
            "max_batch_delay": DEFAULT_MAX_BATCH_DELAY,
            "max_requests_per_minute": DEFAULT_MAX_REQUESTS_PER_MINUTE,
            "rate_exceeded_threshold": DEFAULT_RATE_EXCEEDED_THRESHOLD,
            "adaptive": True,
        },
        "realtime_sync": {
            "enabled": True,
            "max_queue_size": DEFAULT_MAX_QUEUE_SIZE,
            "max_retries": DEFAULT_QUEUE_MAX_RETRIES,
        },
        "filters": {
            "include_ids": [],
            "exclude_ids": [],
            "include_types": [],
            "exclude_types": ["bot"],
        },
    }

    try:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, "w", encoding="utf-8") as f:
            f.write("# dialog-migrator configuration\n")
            yaml.safe_dump(default_config, f, default_flow_style=False, sort_keys=False)
        log_with_context(logging.INFO, f"Created default config file at {output_path}")
        return True
    except OSError as e:
        log_with_context(logging.ERROR, f"Failed to create default config file: {e}")
        return False


def load_client_factory(import_path: str) -> Callable[..., Any]:
    """
    Import the callable that builds the remote client.

    Args:
        import_path: ``"package.module:callable"``

    Returns:
        The callable

    Raises:
        ConfigError: If the path is empty, malformed or cannot be imported
    """
    if not import_path:
        raise ConfigError(
            "No client_factory configured; set it in the config file or "
            f"via {ENV_PREFIX}CLIENT_FACTORY"
        )
    module_name, sep, attr = import_path.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigError(f"client_factory must look like 'module:callable', got {import_path!r}")

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigError(f"Cannot import client factory module {module_name!r}: {e}") from e

    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ConfigError(f"{import_path!r} is not a callable")
    return factory


# ---------------------------------------------------------------------------
# Conversation filtering
# ---------------------------------------------------------------------------


def should_process_conversation(
    conversation: ConversationInfo, filters: FilterSettings
) -> bool:
    """
    Determine if a conversation should be processed based on the filters.

    Rules, in order:
    1. If ``include_ids`` is set, only those conversations are processed
    2. Conversations in ``exclude_ids`` are skipped
    3. If ``include_types`` is set, only those kinds are processed
    4. Kinds in ``exclude_types`` are skipped
    5. Message count must fall within the optional min/max bounds

    Args:
        conversation: The candidate conversation
        filters: The configured filters

    Returns:
        True if the conversation should be processed
    """
    if filters.include_ids and conversation.id not in filters.include_ids:
        return False
    if conversation.id in filters.exclude_ids:
        return False
    if filters.include_types and conversation.type not in filters.include_types:
        return False
    if conversation.type in filters.exclude_types:
        return False
    if (
        filters.min_message_count is not None
        and conversation.message_count < filters.min_message_count
    ):
        return False
    if (
        filters.max_message_count is not None
        and conversation.message_count > filters.max_message_count
    ):
        return False
    return True


def filter_conversations(
    conversations: Iterable[ConversationInfo],
    filters: FilterSettings,
    conversation_id: Optional[str] = None,
) -> list[ConversationInfo]:
    """Apply the configured filters plus an optional single-conversation selector."""
    selected = []
    for conversation in conversations:
        if conversation_id is not None and conversation.id != conversation_id:
            continue
        if should_process_conversation(conversation, filters):
            selected.append(conversation)
        else:
            log_with_context(
                logging.DEBUG,
                f"Skipping conversation '{conversation.name}' based on configuration",
                dialog=conversation.id,
            )
    return selected
