# src/sqlsalvage/config.py
"""Configuration schema and loading for the sqlsalvage service.

Uses Pydantic for validation with frozen (immutable) models.
Configuration precedence: CLI > environment > YAML file > preset > defaults.

Every timing threshold of the watchdog and the strategy chain lives here so
tests can shrink minutes to fractions of a second without touching code.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, model_validator

MIB = 1024 * 1024


class ServerConfig(BaseModel):
    """HTTP binding and upload limits."""

    model_config = {"frozen": True, "extra": "forbid"}

    host: str = Field(default="127.0.0.1", description="Host address to bind to")
    port: int = Field(default=5000, gt=0, le=65535, description="Port to listen on")
    max_upload_bytes: int = Field(
        default=100 * MIB,
        gt=0,
        description="Largest accepted upload in bytes",
    )
    allowed_extensions: tuple[str, ...] = Field(
        default=(".db", ".sqlite", ".sqlite3", ".zip"),
        description="Upload file extensions accepted by the recovery endpoints",
    )
    keepalive_sec: float = Field(
        default=15.0,
        gt=0,
        description="Idle interval after which a progress stream sends a keepalive comment",
    )


class ToolConfig(BaseModel):
    """The external sqlite3 shell and per-invocation timeouts."""

    model_config = {"frozen": True, "extra": "forbid"}

    binary: str = Field(default="sqlite3", description="sqlite3 executable name or path")
    kill_grace_sec: float = Field(
        default=1.0,
        gt=0,
        description="Grace period between SIGTERM and SIGKILL",
    )
    probe_timeout_sec: float = Field(default=10.0, gt=0, description="Timeout for the startup capability probe")
    primary_timeout_sec: float = Field(default=300.0, gt=0, description="Timeout for the .recover strategy")
    query_timeout_sec: float = Field(default=60.0, gt=0, description="Timeout for metadata queries")
    table_timeout_sec: float = Field(default=30.0, gt=0, description="Timeout for each per-table dump")
    schema_timeout_sec: float = Field(default=60.0, gt=0, description="Timeout for .schema and .tables")
    force_stop_system_wide: bool = Field(
        default=True,
        description="Abort control also kills unregistered processes named like the binary",
    )


class WatchdogConfig(BaseModel):
    """Thresholds for killing a streamed process that hangs on corruption."""

    model_config = {"frozen": True, "extra": "forbid"}

    no_output_sec: float = Field(
        default=20.0,
        gt=0,
        description="Kill when zero bytes have arrived after this long",
    )
    stall_min_bytes: int = Field(
        default=1 * MIB,
        gt=0,
        description="Minimum growth expected within the stall window",
    )
    stall_window_sec: float = Field(
        default=120.0,
        gt=0,
        description="Window over which stall_min_bytes must arrive",
    )
    significant_bytes: int = Field(
        default=10 * MIB,
        gt=0,
        description="Growth that counts as a significant jump for the ceiling",
    )
    ceiling_sec: float = Field(
        default=180.0,
        gt=0,
        description="Kill when no significant jump happened for this long",
    )
    check_interval_sec: float = Field(default=1.0, gt=0, description="Kill-detection tick")
    progress_interval_sec: float = Field(default=3.0, gt=0, description="Progress report cadence")
    progress_quantum_bytes: int = Field(
        default=50 * MIB,
        gt=0,
        description="Also report progress each time this many bytes arrive",
    )
    chunk_size: int = Field(default=64 * 1024, gt=0, description="Read size for streamed stdout")

    @model_validator(mode="after")
    def validate_tick(self) -> WatchdogConfig:
        """The tick must be finer than the shortest kill threshold."""
        shortest = min(self.no_output_sec, self.stall_window_sec, self.ceiling_sec)
        if self.check_interval_sec > shortest:
            raise ValueError(f"check_interval_sec ({self.check_interval_sec}) must be <= the shortest threshold ({shortest})")
        return self


class SessionConfig(BaseModel):
    """Outer ceilings for whole recovery sessions."""

    model_config = {"frozen": True, "extra": "forbid"}

    standard_ceiling_sec: float = Field(default=600.0, gt=0, description="Ceiling for the full strategy chain")
    table_by_table_ceiling_sec: float = Field(
        default=1800.0,
        gt=0,
        description="Ceiling for exhaustive table-by-table sessions",
    )
    session_ttl_sec: float = Field(
        default=300.0,
        gt=0,
        description="How long finished sessions stay in the session store",
    )


class StorageConfig(BaseModel):
    """Artifact directory and retention."""

    model_config = {"frozen": True, "extra": "forbid"}

    artifact_dir: Path = Field(default=Path("uploads"), description="Directory holding uploads and artifacts")
    retention_sec: float = Field(
        default=300.0,
        gt=0,
        description="Artifacts older than this are removed before each new recovery",
    )
    download_delete_delay_sec: float = Field(
        default=5.0,
        ge=0,
        description="Delay before a downloaded artifact is deleted",
    )
    stuck_after_sec: float = Field(
        default=120.0,
        gt=0,
        description="Status probe reports stalled after this much artifact idleness",
    )


class LoggingConfig(BaseModel):
    """Log output settings."""

    model_config = {"frozen": True, "extra": "forbid"}

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO", description="Log level")
    json_output: bool = Field(default=False, description="Emit JSON log lines instead of console output")


class SalvageConfig(BaseModel):
    """Top-level sqlsalvage configuration.

    Configuration precedence (highest to lowest):
    1. CLI flags
    2. Environment (PORT, SQLSALVAGE_ARTIFACT_DIR, SQLSALVAGE_SQLITE3)
    3. YAML config file
    4. Preset
    5. Built-in defaults
    """

    model_config = {"frozen": True, "extra": "forbid"}

    server: ServerConfig = Field(default_factory=ServerConfig)
    tool: ToolConfig = Field(default_factory=ToolConfig)
    watchdog: WatchdogConfig = Field(default_factory=WatchdogConfig)
    sessions: SessionConfig = Field(default_factory=SessionConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    allow_external_bind: bool = Field(
        default=False,
        description="Allow binding to 0.0.0.0 or :: (all interfaces)",
    )
    preset_name: str | None = Field(default=None, description="Preset name used to build this config (if any)")

    @model_validator(mode="after")
    def validate_host_binding(self) -> SalvageConfig:
        """Uploads are unauthenticated, so all-interface binding is opt-in."""
        dangerous_hosts = {"0.0.0.0", "::", "0:0:0:0:0:0:0:0"}
        if self.server.host in dangerous_hosts and not self.allow_external_bind:
            raise ValueError(
                f"Binding to '{self.server.host}' exposes the recovery service to the network. "
                f"Use allow_external_bind: true to override, or bind to 127.0.0.1."
            )
        return self


# === Loading ===

_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "PORT": ("server", "port"),
    "SQLSALVAGE_ARTIFACT_DIR": ("storage", "artifact_dir"),
    "SQLSALVAGE_SQLITE3": ("tool", "binary"),
}


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dicts, with override taking precedence.

    Returns a new dict; neither input is mutated.
    """
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _get_presets_dir() -> Path:
    return Path(__file__).parent / "presets"


def list_presets() -> list[str]:
    """List available preset names, sorted."""
    presets_dir = _get_presets_dir()
    if not presets_dir.exists():
        return []
    return sorted(p.stem for p in presets_dir.glob("*.yaml"))


def _read_mapping(path: Path, what: str) -> dict[str, Any]:
    with path.open() as f:
        loaded = yaml.safe_load(f) or {}
    if not isinstance(loaded, dict):
        raise ValueError(f"{what} must be a YAML mapping, got {type(loaded).__name__}")
    return loaded


def load_preset(preset_name: str) -> dict[str, Any]:
    """Load a preset configuration by name.

    Raises:
        FileNotFoundError: If the preset does not exist.
        ValueError: If the preset is not a YAML mapping.
    """
    preset_path = _get_presets_dir() / f"{preset_name}.yaml"
    if not preset_path.exists():
        raise FileNotFoundError(f"Preset '{preset_name}' not found. Available presets: {list_presets()}")
    return _read_mapping(preset_path, f"Preset '{preset_name}'")


def env_overrides(environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Collect overrides from environment variables."""
    source = os.environ if environ is None else environ
    overrides: dict[str, Any] = {}
    for var, (section, key) in _ENV_OVERRIDES.items():
        value = source.get(var)
        if value:
            overrides.setdefault(section, {})[key] = value
    return overrides


def load_config(
    *,
    preset: str | None = None,
    config_file: Path | None = None,
    cli_overrides: dict[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
) -> SalvageConfig:
    """Load configuration with precedence handling.

    Raises:
        FileNotFoundError: If preset or config_file not found.
        yaml.YAMLError: If YAML is malformed.
        pydantic.ValidationError: If the final config fails validation.
    """
    config_dict: dict[str, Any] = {}

    if preset is not None:
        config_dict = load_preset(preset)

    if config_file is not None:
        if not config_file.exists():
            raise FileNotFoundError(f"Config file not found: {config_file}")
        config_dict = deep_merge(config_dict, _read_mapping(config_file, f"Config file '{config_file}'"))

    config_dict = deep_merge(config_dict, env_overrides(environ))

    if cli_overrides is not None:
        config_dict = deep_merge(config_dict, cli_overrides)

    config_dict["preset_name"] = preset
    return SalvageConfig(**config_dict)
