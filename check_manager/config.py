"""
Check Manager - Configuration.

============================================================
CONFIGURABLE CHECK MANAGEMENT
============================================================

Recognized options:
- Backend API access (token, app name, url, timeout)
- Check identity (id, submission url, instance id, target,
  search tags, display name, type, secret)
- Broker selection (designated broker, select tag,
  max response time, probe concurrency)
- Behavior flags (enabled, force update, metric activation,
  debug logging)

Configuration can be loaded from:
- Default values
- Environment variables (CHECKMGR_*, .env supported)
- YAML config file

============================================================
"""

import logging
import os
import socket
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import find_dotenv, load_dotenv

from .exceptions import ConfigurationError
from .models import CHECK_TYPE_HTTPTRAP


logger = logging.getLogger(__name__)


DEFAULT_API_URL = "https://api.circonus.com/v2"


def _app_name() -> str:
    name = os.path.basename(sys.argv[0]) if sys.argv and sys.argv[0] else ""
    return name or "check_manager"


def _split_tags(value: str) -> list[str]:
    return [t.strip() for t in value.split(",") if t.strip()]


def _env_bool(name: str) -> Optional[bool]:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return value.strip().lower() in ("1", "true", "yes", "on")


# =============================================================
# API SETTINGS
# =============================================================


@dataclass
class ApiSettings:
    """Backend API access."""
    token: str = ""
    app_name: str = "check_manager"
    url: str = DEFAULT_API_URL
    timeout_seconds: float = 10.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "token": "***" if self.token else "",
            "app_name": self.app_name,
            "url": self.url,
            "timeout_seconds": self.timeout_seconds,
        }


# =============================================================
# CHECK SETTINGS
# =============================================================


@dataclass
class CheckSettings:
    """
    Identity of the check to find or create.

    Empty identity fields are derived from the host name and
    the running program name in __post_init__.
    """
    id: int = 0
    submission_url: str = ""
    instance_id: str = ""
    target: str = ""
    search_tags: list[str] = field(default_factory=list)
    display_name: str = ""
    tags: list[str] = field(default_factory=list)
    secret: str = ""
    type: str = CHECK_TYPE_HTTPTRAP
    max_url_age_seconds: float = 300.0
    force_metric_activation: bool = False
    force_update: bool = False
    custom_config: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        hostname = socket.gethostname()
        app = _app_name()
        if not self.instance_id:
            self.instance_id = f"{hostname}:{app}"
        if not self.target:
            self.target = hostname
        if not self.search_tags:
            self.search_tags = [f"service:{app}"]
        if not self.display_name:
            self.display_name = f"{self.instance_id} /cgm"

    @property
    def notes(self) -> str:
        """Notes marker that ties a bundle to this instance."""
        return f"cgm_instanceid|{self.instance_id}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "submission_url": self.submission_url,
            "instance_id": self.instance_id,
            "target": self.target,
            "search_tags": list(self.search_tags),
            "display_name": self.display_name,
            "tags": list(self.tags),
            "type": self.type,
            "max_url_age_seconds": self.max_url_age_seconds,
            "force_metric_activation": self.force_metric_activation,
            "force_update": self.force_update,
        }


# =============================================================
# BROKER SETTINGS
# =============================================================


@dataclass
class BrokerSettings:
    """Broker selection for newly created checks."""
    id: int = 0
    select_tag: str = ""
    max_response_time_seconds: float = 0.5
    probe_concurrency: int = 4

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "select_tag": self.select_tag,
            "max_response_time_seconds": self.max_response_time_seconds,
            "probe_concurrency": self.probe_concurrency,
        }


# =============================================================
# MAIN CONFIGURATION
# =============================================================


@dataclass
class CheckManagerConfig:
    """
    Main configuration for the check manager.

    Combines all sub-configurations.
    """
    api: ApiSettings = field(default_factory=ApiSettings)
    check: CheckSettings = field(default_factory=CheckSettings)
    broker: BrokerSettings = field(default_factory=BrokerSettings)

    enabled: bool = True
    refresh_before_update: bool = True
    debug: bool = False

    def validate(self) -> None:
        """Raise ConfigurationError on inconsistent settings."""
        if self.check.id < 0:
            raise ConfigurationError(
                "check id must not be negative",
                config_key="check.id",
                actual_value=str(self.check.id),
            )
        if self.broker.max_response_time_seconds <= 0:
            raise ConfigurationError(
                "broker max response time must be positive",
                config_key="broker.max_response_time_seconds",
                actual_value=str(self.broker.max_response_time_seconds),
            )
        if self.broker.probe_concurrency < 1:
            raise ConfigurationError(
                "probe concurrency must be at least 1",
                config_key="broker.probe_concurrency",
                actual_value=str(self.broker.probe_concurrency),
            )
        if self.check.submission_url and not self.check.submission_url.startswith(
            ("http://", "https://")
        ):
            raise ConfigurationError(
                "submission url must be http or https",
                config_key="check.submission_url",
                actual_value=self.check.submission_url,
            )
        if not self.check.type:
            raise ConfigurationError("check type is required", config_key="check.type")

    @classmethod
    def from_env(cls) -> "CheckManagerConfig":
        """
        Load configuration from environment variables.

        A .env file in the working directory is loaded first.

        Environment variables:
        - CHECKMGR_API_TOKEN, CHECKMGR_API_APP, CHECKMGR_API_URL
        - CHECKMGR_CHECK_ID, CHECKMGR_SUBMISSION_URL
        - CHECKMGR_INSTANCE_ID, CHECKMGR_TARGET, CHECKMGR_DISPLAY_NAME
        - CHECKMGR_SEARCH_TAGS, CHECKMGR_TAGS (comma separated)
        - CHECKMGR_CHECK_TYPE, CHECKMGR_SECRET
        - CHECKMGR_MAX_URL_AGE
        - CHECKMGR_BROKER_ID, CHECKMGR_BROKER_SELECT_TAG
        - CHECKMGR_BROKER_MAX_RESPONSE_TIME
        - CHECKMGR_ENABLED, CHECKMGR_FORCE_UPDATE, CHECKMGR_DEBUG
        """
        load_dotenv(find_dotenv(usecwd=True))

        token = os.getenv("CHECKMGR_API_TOKEN", "")
        api = ApiSettings(
            token=token,
            app_name=os.getenv("CHECKMGR_API_APP", _app_name()),
            url=os.getenv("CHECKMGR_API_URL", DEFAULT_API_URL),
        )
        check = CheckSettings(
            id=int(os.getenv("CHECKMGR_CHECK_ID", "0") or 0),
            submission_url=os.getenv("CHECKMGR_SUBMISSION_URL", ""),
            instance_id=os.getenv("CHECKMGR_INSTANCE_ID", ""),
            target=os.getenv("CHECKMGR_TARGET", ""),
            display_name=os.getenv("CHECKMGR_DISPLAY_NAME", ""),
            search_tags=_split_tags(os.getenv("CHECKMGR_SEARCH_TAGS", "")),
            tags=_split_tags(os.getenv("CHECKMGR_TAGS", "")),
            type=os.getenv("CHECKMGR_CHECK_TYPE", CHECK_TYPE_HTTPTRAP),
            secret=os.getenv("CHECKMGR_SECRET", ""),
            max_url_age_seconds=float(os.getenv("CHECKMGR_MAX_URL_AGE", "300")),
            force_update=bool(_env_bool("CHECKMGR_FORCE_UPDATE")),
        )
        broker = BrokerSettings(
            id=int(os.getenv("CHECKMGR_BROKER_ID", "0") or 0),
            select_tag=os.getenv("CHECKMGR_BROKER_SELECT_TAG", ""),
            max_response_time_seconds=float(
                os.getenv("CHECKMGR_BROKER_MAX_RESPONSE_TIME", "0.5")
            ),
        )

        enabled = _env_bool("CHECKMGR_ENABLED")
        if enabled is None:
            # no token means there is nothing to manage against
            enabled = bool(token)

        return cls(
            api=api,
            check=check,
            broker=broker,
            enabled=enabled,
            debug=bool(_env_bool("CHECKMGR_DEBUG")),
        )

    @classmethod
    def from_yaml(cls, path: Path) -> "CheckManagerConfig":
        """Load configuration from a YAML file."""
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"failed to load YAML config from {path}: {e}")

        if not isinstance(data, dict):
            raise ConfigurationError(f"YAML config {path} must be a mapping")

        try:
            api = ApiSettings(**(data.get("api") or {}))
            check = CheckSettings(**(data.get("check") or {}))
            broker = BrokerSettings(**(data.get("broker") or {}))
        except TypeError as e:
            raise ConfigurationError(f"unknown option in {path}: {e}")

        enabled = data.get("enabled")
        if enabled is None:
            enabled = bool(api.token)

        config = cls(
            api=api,
            check=check,
            broker=broker,
            enabled=bool(enabled),
            refresh_before_update=bool(data.get("refresh_before_update", True)),
            debug=bool(data.get("debug", False)),
        )
        config.validate()
        return config

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "api": self.api.to_dict(),
            "check": self.check.to_dict(),
            "broker": self.broker.to_dict(),
            "enabled": self.enabled,
            "refresh_before_update": self.refresh_before_update,
            "debug": self.debug,
        }


# =============================================================
# GLOBAL CONFIG SINGLETON
# =============================================================


_default_config: Optional[CheckManagerConfig] = None


def get_config() -> CheckManagerConfig:
    """Get the global check manager configuration."""
    global _default_config
    if _default_config is None:
        _default_config = CheckManagerConfig.from_env()
    return _default_config


def set_config(config: CheckManagerConfig) -> None:
    """Set the global check manager configuration."""
    global _default_config
    _default_config = config
