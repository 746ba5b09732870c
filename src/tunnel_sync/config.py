"""Runtime configuration with validation.

Credentials and scheduling knobs come from the environment. The tunnel
document itself (which resources track which tunnel) is validated separately
by tunnel_loader, once per run.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class RunMode(str, Enum):
    """How the host drives the engine."""

    ONCE = "once"
    WATCH = "watch"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_RUN_INTERVAL_SECONDS = 300
MIN_RUN_INTERVAL_SECONDS = 60
MAX_RUN_INTERVAL_SECONDS = 86400

DEFAULT_RUN_TIMEOUT_SECONDS = 0  # 0 = bounded only by the host
MAX_RUN_TIMEOUT_SECONDS = 3600

DEFAULT_SMTP_PORT = 587
DEFAULT_ALERT_SENDER_NAME = "DNS Updater"

MAX_TUNNEL_CONFIG_FILE_SIZE_BYTES = 1024 * 1024  # 1MB

VALID_ACCOUNT_ID_PATTERN = r"^[0-9a-f]{32}$"
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class SmtpConfig:
    """Outbound mail settings for tunnel-down alerts.

    Alerting is disabled entirely when no host is configured.
    """

    host: str | None = None
    port: int = DEFAULT_SMTP_PORT
    username: str | None = None
    password: str | None = None
    start_tls: bool = True
    sender_name: str = DEFAULT_ALERT_SENDER_NAME

    @property
    def enabled(self) -> bool:
        return bool(self.host)


@dataclass(frozen=True)
class Config:
    """Host configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    # Required fields
    api_token: str
    account_id: str

    # Tunnel document source: exactly one of these
    tunnel_config: str | None = None
    tunnel_config_path: Path | None = None

    # Scheduling
    mode: RunMode = RunMode.ONCE
    run_interval_seconds: int = DEFAULT_RUN_INTERVAL_SECONDS
    run_timeout_seconds: int = DEFAULT_RUN_TIMEOUT_SECONDS

    # Alerting
    smtp: SmtpConfig = field(default_factory=SmtpConfig)

    # Logging
    log_level: str = "INFO"
    json_logging: bool = True

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.api_token:
            errors.append("CLOUDFLARE_API_TOKEN is required")

        if not self.account_id:
            errors.append("CLOUDFLARE_ACCOUNT_ID is required")
        elif not re.match(VALID_ACCOUNT_ID_PATTERN, self.account_id.lower()):
            errors.append(f"CLOUDFLARE_ACCOUNT_ID must be 32 hex digits: {self.account_id}")

        if self.tunnel_config and self.tunnel_config_path:
            errors.append("Set only one of TUNNEL_CONFIG or TUNNEL_CONFIG_PATH")
        elif not self.tunnel_config and not self.tunnel_config_path:
            errors.append("One of TUNNEL_CONFIG or TUNNEL_CONFIG_PATH is required")
        elif self.tunnel_config_path and not self.tunnel_config_path.is_file():
            errors.append(f"Tunnel config file does not exist: {self.tunnel_config_path}")

        if self.mode == RunMode.WATCH and not (
            MIN_RUN_INTERVAL_SECONDS <= self.run_interval_seconds <= MAX_RUN_INTERVAL_SECONDS
        ):
            errors.append(
                f"RUN_INTERVAL must be between {MIN_RUN_INTERVAL_SECONDS} "
                f"and {MAX_RUN_INTERVAL_SECONDS} seconds"
            )

        if not (0 <= self.run_timeout_seconds <= MAX_RUN_TIMEOUT_SECONDS):
            errors.append(f"RUN_TIMEOUT_SECONDS must be between 0 and {MAX_RUN_TIMEOUT_SECONDS}")

        if self.smtp.enabled and not (1 <= self.smtp.port <= 65535):
            errors.append(f"SMTP_PORT must be a valid TCP port: {self.smtp.port}")

        if bool(self.smtp.username) != bool(self.smtp.password):
            errors.append("SMTP_USERNAME and SMTP_PASSWORD must be set together")

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            errors.append(f"LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}: {self.log_level}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    def read_tunnel_document(self) -> object:
        """Return the raw tunnel document, re-read on every call.

        Raises:
            TunnelConfigLoadError: If the configured file cannot be read or parsed.
        """
        from .tunnel_loader import read_tunnel_config_file

        if self.tunnel_config_path is not None:
            return read_tunnel_config_file(self.tunnel_config_path)
        return self.tunnel_config

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            CLOUDFLARE_API_TOKEN: API token with DNS, Zero Trust and Spectrum edit rights
            CLOUDFLARE_ACCOUNT_ID: Account owning the tunnels and gateway locations
            TUNNEL_CONFIG: Inline JSON tunnel document
            TUNNEL_CONFIG_PATH: Path to a YAML or JSON tunnel document
            RUN_MODE: "once" (default) or "watch"
            RUN_INTERVAL: Seconds between runs in watch mode (default: 300)
            RUN_TIMEOUT_SECONDS: Upper bound for a single run, 0 disables (default: 0)
            LOG_LEVEL: Root log level (default: INFO)
            ENABLE_JSON_LOGGING: JSON log lines on stdout (default: true)

        Alerting Variables:
            SMTP_HOST: Mail relay; alerts are disabled when unset
            SMTP_PORT: Mail relay port (default: 587)
            SMTP_USERNAME / SMTP_PASSWORD: Optional relay credentials
            SMTP_START_TLS: Upgrade with STARTTLS (default: true)
            ALERT_SENDER_NAME: Display name on alert mails (default: DNS Updater)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_mode(value: str | None) -> RunMode:
            if not value:
                return RunMode.ONCE
            try:
                return RunMode(value.lower())
            except ValueError as e:
                valid = [m.value for m in RunMode]
                raise ConfigurationError(f"RUN_MODE must be one of {valid}: {value}") from e

        config_path = os.environ.get("TUNNEL_CONFIG_PATH")

        return cls(
            api_token=os.environ.get("CLOUDFLARE_API_TOKEN", ""),
            account_id=os.environ.get("CLOUDFLARE_ACCOUNT_ID", ""),
            tunnel_config=os.environ.get("TUNNEL_CONFIG") or None,
            tunnel_config_path=Path(config_path) if config_path else None,
            mode=get_mode(os.environ.get("RUN_MODE")),
            run_interval_seconds=get_int("RUN_INTERVAL", DEFAULT_RUN_INTERVAL_SECONDS),
            run_timeout_seconds=get_int("RUN_TIMEOUT_SECONDS", DEFAULT_RUN_TIMEOUT_SECONDS),
            smtp=SmtpConfig(
                host=os.environ.get("SMTP_HOST") or None,
                port=get_int("SMTP_PORT", DEFAULT_SMTP_PORT),
                username=os.environ.get("SMTP_USERNAME") or None,
                password=os.environ.get("SMTP_PASSWORD") or None,
                start_tls=get_bool("SMTP_START_TLS", True),
                sender_name=os.environ.get("ALERT_SENDER_NAME", DEFAULT_ALERT_SENDER_NAME),
            ),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
            json_logging=get_bool("ENABLE_JSON_LOGGING", True),
        )
