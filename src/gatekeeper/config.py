"""
Configuration management for USB Gatekeeper.

Handles loading, validation, and access to daemon configuration.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


# Default configuration paths
DEFAULT_CONFIG_PATH = Path("/etc/usb-gatekeeper/gatekeeper.yaml")
DEFAULT_RULES_PATH = Path("/etc/usb-gatekeeper/rules.yaml")
DEFAULT_SYSFS_PATH = Path("/sys/bus/usb/devices")


@dataclass
class DaemonConfig:
    """Daemon general settings."""

    log_level: str = "info"
    log_file: str | None = None
    require_root: bool = True


@dataclass
class PolicyConfig:
    """Rule store and evaluation settings."""

    rules_file: str = str(DEFAULT_RULES_PATH)
    default_action: str = "block"
    # Default allow is a deployment decision and must be opted into
    permit_default_allow: bool = False
    hot_reload: bool = True  # Reload the rule file when another process changes it
    reload_interval: float = 5.0


@dataclass
class InterceptorConfig:
    """Device event source and enforcement settings."""

    platform: str = "auto"
    sysfs_path: str = str(DEFAULT_SYSFS_PATH)
    poll_interval: float = 0.5
    receive_buffer_size: int = 4 * 1024 * 1024


@dataclass
class EngineConfig:
    """Authorization engine settings."""

    max_concurrent: int = 8
    retry_interval: float = 30.0  # Seconds between retries of failed enforcement


@dataclass
class APIConfig:
    """API server settings."""

    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 8000
    api_key: str | None = None

    def __post_init__(self) -> None:
        # Load API key from environment if not set
        if self.api_key is None:
            self.api_key = os.environ.get("GATEKEEPER_API_KEY")


@dataclass
class GatekeeperConfig:
    """Main configuration container."""

    daemon: DaemonConfig = field(default_factory=DaemonConfig)
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    interceptor: InterceptorConfig = field(default_factory=InterceptorConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    api: APIConfig = field(default_factory=APIConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GatekeeperConfig:
        """Create configuration from dictionary."""
        return cls(
            daemon=DaemonConfig(**data.get("daemon", {})),
            policy=PolicyConfig(**data.get("policy", {})),
            interceptor=InterceptorConfig(**data.get("interceptor", {})),
            engine=EngineConfig(**data.get("engine", {})),
            api=APIConfig(**data.get("api", {})),
        )


def load_config(path: str | Path | None = None) -> GatekeeperConfig:
    """
    Load configuration from YAML file.

    Args:
        path: Path to configuration file. If None, uses default paths.

    Returns:
        GatekeeperConfig instance with loaded settings.

    Raises:
        FileNotFoundError: If an explicit config file does not exist.
        yaml.YAMLError: If config file is invalid YAML.
    """
    if path is None:
        candidates = [
            DEFAULT_CONFIG_PATH,
            Path("config/gatekeeper.yaml"),
            Path("gatekeeper.yaml"),
        ]
        for candidate in candidates:
            if candidate.exists():
                path = candidate
                break

    if path is None:
        return GatekeeperConfig()

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    return GatekeeperConfig.from_dict(data)


def validate_config(config: GatekeeperConfig) -> list[str]:
    """
    Validate configuration and return list of errors.

    Args:
        config: Configuration to validate.

    Returns:
        List of error messages. Empty list if valid.
    """
    errors: list[str] = []

    valid_log_levels = {"debug", "info", "warning", "error"}
    if config.daemon.log_level not in valid_log_levels:
        errors.append(f"Invalid log_level: {config.daemon.log_level}")

    valid_actions = {"allow", "block"}
    if config.policy.default_action not in valid_actions:
        errors.append(f"Invalid default_action: {config.policy.default_action}")
    elif (
        config.policy.default_action == "allow"
        and not config.policy.permit_default_allow
    ):
        errors.append(
            "default_action 'allow' requires permit_default_allow: true"
        )

    valid_platforms = {"auto", "linux"}
    if config.interceptor.platform not in valid_platforms:
        errors.append(f"Invalid interceptor platform: {config.interceptor.platform}")

    if config.policy.reload_interval <= 0:
        errors.append(f"Invalid reload_interval: {config.policy.reload_interval}")

    if config.interceptor.poll_interval <= 0:
        errors.append(f"Invalid poll_interval: {config.interceptor.poll_interval}")

    if config.engine.max_concurrent < 1:
        errors.append(f"Invalid max_concurrent: {config.engine.max_concurrent}")

    if config.engine.retry_interval <= 0:
        errors.append(f"Invalid retry_interval: {config.engine.retry_interval}")

    if not (1 <= config.api.port <= 65535):
        errors.append(f"Invalid API port: {config.api.port}")

    return errors
