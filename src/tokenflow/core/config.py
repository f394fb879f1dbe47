# src/tokenflow/core/config.py
"""
Engine settings schema and loading.

Uses Pydantic for validation and Dynaconf for multi-source loading.
Settings are frozen (immutable) after construction.

These are ENGINE settings (retention limits, playback speed, seed, replay
behaviour, logging). The simulated model itself is a scenario definition;
see core/scenario.py.
"""

import os
import re
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator


class LimitSettings(BaseModel):
    """Retention bounds that keep a long-running simulation's memory flat.

    Every bound evicts oldest-first.
    """

    model_config = {"frozen": True}

    max_sink_tokens: int = Field(default=50, gt=0, description="Most recent tokens retained per sink")
    max_node_activity_logs: int = Field(default=500, gt=0, description="Activity entries retained per node")
    max_global_activity_logs: int = Field(default=1000, gt=0, description="Activity entries retained globally")
    max_transition_history: int = Field(default=10, gt=0, description="FSM transitions retained per node")
    max_undo_snapshots: int = Field(default=20, gt=0, description="Model snapshots retained for undo/redo")
    max_lineage_records: int = Field(default=10_000, gt=0, description="Token records retained for lineage queries")


class PlaybackSettings(BaseModel):
    """Real-time playback configuration.

    play() waits 1000ms / speed between ticks.
    """

    model_config = {"frozen": True}

    speed: float = Field(default=1.0, gt=0, description="Speed multiplier for play()")
    seed: int = Field(default=0, description="Seed for value generation (determinism)")

    @property
    def tick_interval_seconds(self) -> float:
        return 1.0 / self.speed


class ReplaySettings(BaseModel):
    """Recording and replay configuration."""

    model_config = {"frozen": True, "populate_by_name": True}

    snapshot_interval: int | None = Field(
        default=None,
        gt=0,
        description="Ticks between automatic snapshots while recording (None disables)",
    )
    validate_replay: bool = Field(
        default=True,
        alias="validate",
        description="Compare replayed state against the recorded snapshot",
    )


class LoggingSettings(BaseModel):
    """Operator logging configuration (structlog)."""

    model_config = {"frozen": True}

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    json_output: bool = False

    @field_validator("level", mode="before")
    @classmethod
    def normalize_level(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.upper()
        return v


class TokenflowSettings(BaseModel):
    """Top-level engine configuration.

    Every section has defaults, so an empty settings file (or no file at
    all) yields a valid configuration.
    """

    model_config = {"frozen": True}

    limits: LimitSettings = Field(
        default_factory=LimitSettings,
        description="Retention bounds for logs, sinks, FSM history and undo",
    )
    playback: PlaybackSettings = Field(
        default_factory=PlaybackSettings,
        description="Playback speed and random seed",
    )
    replay: ReplaySettings = Field(
        default_factory=ReplaySettings,
        description="Recording and replay configuration",
    )
    logging: LoggingSettings = Field(
        default_factory=LoggingSettings,
        description="Operator logging configuration",
    )


# Regex pattern for ${VAR} or ${VAR:-default} syntax
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")


def _expand_env_vars(config: dict[str, Any]) -> dict[str, Any]:
    """Recursively expand ${VAR} and ${VAR:-default} patterns in config values.

    Args:
        config: Configuration dict (may contain nested structures)

    Returns:
        New dict with environment variables expanded
    """

    def _expand_string(value: str) -> str:
        def replacer(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default = match.group(2)
            env_value = os.environ.get(var_name)
            if env_value is not None:
                return env_value
            if default is not None:
                return default
            # No env var and no default - keep original (will likely fail validation)
            return match.group(0)

        return _ENV_VAR_PATTERN.sub(replacer, value)

    def _expand_value(value: Any) -> Any:
        if isinstance(value, str):
            return _expand_string(value)
        elif isinstance(value, dict):
            return {k: _expand_value(v) for k, v in value.items()}
        elif isinstance(value, list):
            return [_expand_value(item) for item in value]
        else:
            return value

    return {k: _expand_value(v) for k, v in config.items()}


def _lowercase_keys(value: Any) -> Any:
    """Dynaconf uppercases top-level keys and may uppercase env-provided nested keys."""
    if isinstance(value, dict):
        return {str(k).lower(): _lowercase_keys(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_lowercase_keys(v) for v in value]
    return value


def load_settings(config_path: Path | None = None) -> TokenflowSettings:
    """Load engine settings with environment variable overrides.

    Uses Dynaconf for multi-source loading with precedence:
    1. Environment variables (TOKENFLOW_*) - highest priority
    2. Config file (tokenflow.yaml)
    3. Defaults from Pydantic schema - lowest priority

    Environment variable format: TOKENFLOW_PLAYBACK__SPEED for nested keys.

    Args:
        config_path: Path to YAML settings file, or None for env + defaults only

    Returns:
        Validated TokenflowSettings instance

    Raises:
        ValidationError: If configuration fails Pydantic validation
        FileNotFoundError: If an explicit config file doesn't exist
    """
    from dynaconf import Dynaconf

    # Dynaconf silently accepts missing files
    if config_path is not None and not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    dynaconf_settings = Dynaconf(
        envvar_prefix="TOKENFLOW",
        settings_files=[str(config_path)] if config_path is not None else [],
        environments=False,
        load_dotenv=False,
        merge_enabled=True,
    )

    internal_keys = {"LOAD_DOTENV", "ENVIRONMENTS", "SETTINGS_FILES"}
    raw_config = {k: v for k, v in dynaconf_settings.as_dict().items() if k not in internal_keys}
    raw_config = _lowercase_keys(raw_config)
    raw_config = _expand_env_vars(raw_config)

    return TokenflowSettings(**raw_config)


def resolve_config(settings: TokenflowSettings) -> dict[str, Any]:
    """Convert validated settings to a plain dict for storage in a recorded scenario.

    Replays rebuild settings from this dict so that limits and the seed match
    the original run.
    """
    return settings.model_dump(mode="json", by_alias=True)
