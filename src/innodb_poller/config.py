"""
Configuration management for the InnoDB metrics poller.

Configuration is loaded from multiple sources with layered precedence:
1. Built-in defaults (Pydantic model defaults)
2. YAML config file (/etc/innodb-poller/config.yml or --config path)
3. Environment variables (INNODB_POLLER_* prefix, __ for nesting)
4. Command-line arguments (highest precedence)
"""

from __future__ import annotations

import argparse
import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

DEFAULT_CONFIG_PATH = Path("/etc/innodb-poller/config.yml")
DEFAULT_ENV_PREFIX = "INNODB_POLLER_"
DEFAULT_DSN = "mysql+pymysql://root@localhost/?unix_socket=/var/run/mysqld/mysqld.sock"

UNKNOWN_METRIC_POLICIES = ("register", "skip")

# schema.table, letters/digits/underscore only
_VIEW_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")

# =============================================================================
# Source Configuration
# =============================================================================


class SourceConfig(BaseModel):
    """Monitored server settings.

    Attributes:
        dsn: SQLAlchemy URL of the monitored MySQL server.
        engine_metrics_view: View exposing InnoDB counters.
        status_view: View exposing global status variables.
        connect_timeout_seconds: Connection timeout passed to the driver.
    """

    dsn: str = Field(
        default=DEFAULT_DSN,
        description="SQLAlchemy URL that points to the MySQL server",
    )
    engine_metrics_view: str = Field(
        default="information_schema.INNODB_METRICS",
        description="View exposing SUBSYSTEM/NAME/TYPE/COUNT/STATUS/TIME_ENABLED/TIME_ELAPSED",
    )
    status_view: str = Field(
        default="information_schema.GLOBAL_STATUS",
        description="View exposing VARIABLE_NAME/VARIABLE_VALUE "
        "(performance_schema.global_status on MySQL 8)",
    )
    connect_timeout_seconds: int = Field(
        default=10,
        description="Connection timeout in seconds",
        ge=1,
        le=300,
    )

    @field_validator("dsn")
    @classmethod
    def validate_dsn(cls, v: str) -> str:
        """Reject empty connection strings."""
        if not v.strip():
            raise ValueError("dsn must not be empty")
        return v.strip()

    @field_validator("engine_metrics_view", "status_view")
    @classmethod
    def validate_view_name(cls, v: str) -> str:
        """Only allow plain (optionally schema-qualified) identifiers."""
        if not _VIEW_NAME_RE.match(v):
            raise ValueError(f"Invalid view name: {v!r}")
        return v


# =============================================================================
# Storage Configuration
# =============================================================================


class StorageConfig(BaseModel):
    """Local measurement store settings.

    Attributes:
        path: Path to the SQLite database file.
    """

    path: str = Field(
        default="./current.db",
        description="Path to the SQLite measurement store",
    )


# =============================================================================
# Poller Configuration
# =============================================================================


class PollerConfig(BaseModel):
    """Poll loop settings.

    Attributes:
        interval_seconds: Delay between two consecutive polls.
        json_output: Echo every cycle's measurements as one JSON line on stdout.
        unknown_metric_policy: What to do with metric names missing from the
            catalog: 'register' them on the fly or 'skip' the rows.
    """

    interval_seconds: float = Field(
        default=1.0,
        description="How long to sleep between two consecutive polls",
        gt=0,
        le=86400,
    )
    json_output: bool = Field(
        default=False,
        description="Also output the metrics in JSON format",
    )
    unknown_metric_policy: str = Field(
        default="register",
        description="Handling of names absent from the catalog: 'register' or 'skip'",
    )

    @field_validator("unknown_metric_policy")
    @classmethod
    def validate_unknown_metric_policy(cls, v: str) -> str:
        """Validate and normalize the unknown-metric policy."""
        v_lower = v.lower()
        if v_lower not in UNKNOWN_METRIC_POLICIES:
            raise ValueError(
                f"Invalid unknown metric policy: {v}. "
                f"Must be one of: {', '.join(UNKNOWN_METRIC_POLICIES)}"
            )
        return v_lower


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level.
        json_format: Emit JSON log records instead of plain text.
        log_to_stderr: Whether to log to stderr.
        debug_mode: Force debug level.
    """

    level: str = Field(
        default="info",
        description="Log level: debug, info, warn, error",
    )
    json_format: bool = Field(
        default=True,
        description="Emit JSON formatted log records",
    )
    log_to_stderr: bool = Field(
        default=True,
        description="Whether to log to stderr",
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable extra diagnostic logging",
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        valid_levels = {"debug", "info", "warn", "warning", "error", "critical"}
        v_lower = v.lower()
        if v_lower not in valid_levels:
            raise ValueError(
                f"Invalid log level: {v}. Must be one of: {', '.join(sorted(valid_levels))}"
            )
        if v_lower == "warn":
            return "warning"
        return v_lower


# =============================================================================
# Main Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """
    Main application configuration model.

    Attributes:
        source: Monitored server settings.
        storage: Local store settings.
        poller: Poll loop settings.
        logging: Logging configuration.
    """

    source: SourceConfig = Field(
        default_factory=SourceConfig,
        description="Monitored server settings",
    )
    storage: StorageConfig = Field(
        default_factory=StorageConfig,
        description="Local measurement store settings",
    )
    poller: PollerConfig = Field(
        default_factory=PollerConfig,
        description="Poll loop settings",
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Logging configuration",
    )


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: The base dictionary.
        override: The dictionary with values to override.

    Returns:
        A new dictionary with merged values.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """
    Load configuration from a YAML file.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the YAML is invalid.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def _parse_env_value(value: str) -> Any:
    """
    Parse an environment variable value to appropriate Python type.

    Args:
        value: String value from environment variable.

    Returns:
        Parsed value (bool, int, float or string).
    """
    if value.lower() in ("true", "yes", "on"):
        return True
    if value.lower() in ("false", "no", "off"):
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    return value


def _load_env_config(prefix: str = DEFAULT_ENV_PREFIX) -> dict[str, Any]:
    """
    Load configuration from environment variables.

    Nested keys use a double underscore separator, e.g.
    INNODB_POLLER_POLLER__INTERVAL_SECONDS=5.

    Args:
        prefix: Environment variable prefix.

    Returns:
        Dictionary with configuration values.
    """
    result: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        parts = key[len(prefix) :].lower().split("__")

        current = result
        for part in parts[:-1]:
            if part not in current:
                current[part] = {}
            current = current[part]

        current[parts[-1]] = _parse_env_value(value)

    return result


def _parse_cli_args(args: list[str] | None = None) -> dict[str, Any]:
    """
    Parse command-line arguments.

    Args:
        args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Dictionary with parsed arguments, shaped like AppConfig.
    """
    parser = argparse.ArgumentParser(
        prog="innodb-poller",
        description="Poll InnoDB metrics and global status into a SQLite database",
    )

    parser.add_argument(
        "--config",
        "-c",
        type=str,
        help="Path to configuration file",
    )
    parser.add_argument(
        "--dsn",
        type=str,
        help="SQLAlchemy URL that points to the MySQL server",
    )
    parser.add_argument(
        "--sleep",
        type=float,
        help="How long to sleep between two consecutive polls, in seconds",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Also output the metrics in JSON format",
    )
    parser.add_argument(
        "--db",
        type=str,
        help="Path to the SQLite measurement store",
    )
    parser.add_argument(
        "--unknown-metrics",
        type=str,
        choices=list(UNKNOWN_METRIC_POLICIES),
        help="Handling of metric names that appear after startup",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error"],
        help="Override log level",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode",
    )

    parsed = parser.parse_args(args)

    result: dict[str, Any] = {}

    def _section(name: str) -> dict[str, Any]:
        return result.setdefault(name, {})

    if parsed.config:
        result["_config_path"] = parsed.config
    if parsed.dsn:
        _section("source")["dsn"] = parsed.dsn
    if parsed.sleep is not None:
        _section("poller")["interval_seconds"] = parsed.sleep
    if parsed.json:
        _section("poller")["json_output"] = True
    if parsed.unknown_metrics:
        _section("poller")["unknown_metric_policy"] = parsed.unknown_metrics
    if parsed.db:
        _section("storage")["path"] = parsed.db
    if parsed.log_level:
        _section("logging")["level"] = parsed.log_level
    if parsed.debug:
        _section("logging")["debug_mode"] = True

    return result


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = DEFAULT_ENV_PREFIX,
    cli_args: list[str] | None = None,
) -> AppConfig:
    """
    Load configuration from all sources with layered precedence.

    Later sources override earlier ones: defaults, YAML file, environment
    variables, command-line arguments.

    Args:
        config_path: Path to YAML configuration file. If None, uses the
            --config argument or the default path when it exists.
        env_prefix: Prefix for environment variables.
        cli_args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Fully configured AppConfig instance.

    Raises:
        FileNotFoundError: If specified config file doesn't exist.
        ValidationError: If configuration is invalid.

    Example:
        >>> config = load_config(cli_args=["--sleep", "5", "--json"])
        >>> config.poller.interval_seconds
        5.0
    """
    config_dict: dict[str, Any] = {}

    cli_config = _parse_cli_args(cli_args)

    if config_path is None:
        if "_config_path" in cli_config:
            config_path = Path(cli_config.pop("_config_path"))
        elif DEFAULT_CONFIG_PATH.exists():
            config_path = DEFAULT_CONFIG_PATH
    else:
        cli_config.pop("_config_path", None)
        config_path = Path(config_path)

    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_yaml_config(config_path))

    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix))
    config_dict = _deep_merge(config_dict, cli_config)

    return AppConfig(**config_dict)
