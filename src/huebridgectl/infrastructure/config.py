import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from huebridgectl.infrastructure.cloud_gateway import DEFAULT_REGISTRY_URL
from huebridgectl.infrastructure.mdns_gateway import HUE_SERVICE_TYPE

try:
    import tomllib
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib


@dataclass(frozen=True)
class DiscoveryConfig:
    overall_timeout_s: float = 15.0
    probe_timeout_s: float = 2.0
    validator_timeout_s: float = 3.0
    service_type: str = HUE_SERVICE_TYPE
    mdns_lifetime_s: float = 6.0
    scan_workers: int = 8
    permission_timeout_s: float = 30.0
    cloud_url: str = DEFAULT_REGISTRY_URL
    cloud_timeout_s: float = 8.0
    cloud_fallback_delay_s: float = 5.0
    settle_s: float = 0.5
    ssdp_lifetime_s: float = 6.0


@dataclass(frozen=True)
class ConnectionConfig:
    health_interval_s: float = 10.0
    health_failure_threshold: int = 3
    handshake_timeout_s: float = 5.0
    retry_base_delay_s: float = 2.0
    retry_max_delay_s: float = 30.0
    retry_max_attempts: int = 5
    reachability_interval_s: float = 2.0


@dataclass(frozen=True)
class AppConfig:
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    credentials_path: str | None = None
    log_level: str = "INFO"


def _toml_error_type():
    return getattr(tomllib, "TOMLDecodeError", ValueError)


def _reject_bool(value):
    if isinstance(value, bool):
        raise ValueError("boolean values are not valid for numeric fields")
    return value


class _DiscoveryConfigModel(BaseModel):
    overall_timeout_s: float = Field(default=15.0, gt=0)
    probe_timeout_s: float = Field(default=2.0, gt=0)
    validator_timeout_s: float = Field(default=3.0, gt=0)
    service_type: str = HUE_SERVICE_TYPE
    mdns_lifetime_s: float = Field(default=6.0, gt=0)
    scan_workers: int = Field(default=8, ge=1, le=64)
    permission_timeout_s: float = Field(default=30.0, gt=0)
    cloud_url: str = DEFAULT_REGISTRY_URL
    cloud_timeout_s: float = Field(default=8.0, gt=0)
    cloud_fallback_delay_s: float = Field(default=5.0, ge=0)
    settle_s: float = Field(default=0.5, ge=0)
    ssdp_lifetime_s: float = Field(default=6.0, gt=0)

    @field_validator(
        "overall_timeout_s",
        "probe_timeout_s",
        "validator_timeout_s",
        "mdns_lifetime_s",
        "scan_workers",
        "permission_timeout_s",
        "cloud_timeout_s",
        "cloud_fallback_delay_s",
        "settle_s",
        "ssdp_lifetime_s",
        mode="before",
    )
    @classmethod
    def _reject_bool_numbers(cls, value):
        return _reject_bool(value)

    @field_validator("service_type", mode="before")
    @classmethod
    def _fully_qualify_service_type(cls, value):
        raw = str(value).strip()
        if not raw.endswith(".local."):
            raw = raw.rstrip(".") + ".local."
        return raw


class _ConnectionConfigModel(BaseModel):
    health_interval_s: float = Field(default=10.0, gt=0)
    health_failure_threshold: int = Field(default=3, ge=1)
    handshake_timeout_s: float = Field(default=5.0, gt=0)
    retry_base_delay_s: float = Field(default=2.0, gt=0)
    retry_max_delay_s: float = Field(default=30.0, gt=0)
    retry_max_attempts: int = Field(default=5, ge=0)
    reachability_interval_s: float = Field(default=2.0, gt=0)

    @field_validator(
        "health_interval_s",
        "health_failure_threshold",
        "handshake_timeout_s",
        "retry_base_delay_s",
        "retry_max_delay_s",
        "retry_max_attempts",
        "reachability_interval_s",
        mode="before",
    )
    @classmethod
    def _reject_bool_numbers(cls, value):
        return _reject_bool(value)


class _AppConfigModel(BaseModel):
    discovery: _DiscoveryConfigModel = Field(default_factory=_DiscoveryConfigModel)
    connection: _ConnectionConfigModel = Field(default_factory=_ConnectionConfigModel)
    credentials_path: str | None = None
    log_level: str = "INFO"

    @field_validator("log_level", mode="before")
    @classmethod
    def _uppercase_log_level(cls, value):
        return str(value).upper()


def _default_config_path() -> Path:
    xdg = os.getenv("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "huebridgectl" / "config.toml"
    return Path.home() / ".config" / "huebridgectl" / "config.toml"


def _load_toml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    if not path.is_file():
        raise ValueError(f"Config path is not a file: {path}")
    try:
        with path.open("rb") as f:
            data = tomllib.load(f)
    except OSError as exc:
        raise ValueError(f"Cannot read config file: {path}") from exc
    except _toml_error_type() as exc:
        raise ValueError(f"Invalid TOML in config file: {path}") from exc
    return data if isinstance(data, dict) else {}


def _merge_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    merged = dict(data)
    discovery_data = (
        dict(merged.get("discovery")) if isinstance(merged.get("discovery"), dict) else {}
    )

    env_log_level = os.getenv("HUEBRIDGECTL_LOG_LEVEL")
    env_credentials = os.getenv("HUEBRIDGECTL_CREDENTIALS")
    env_timeout = os.getenv("HUEBRIDGECTL_DISCOVERY_TIMEOUT")
    env_cloud_url = os.getenv("HUEBRIDGECTL_CLOUD_URL")
    if env_log_level is not None:
        merged["log_level"] = env_log_level
    if env_credentials is not None:
        merged["credentials_path"] = env_credentials
    if env_timeout is not None:
        discovery_data["overall_timeout_s"] = env_timeout
    if env_cloud_url is not None:
        discovery_data["cloud_url"] = env_cloud_url

    merged["discovery"] = discovery_data
    return merged


def load_config(path: str | None = None) -> AppConfig:
    cfg_path = Path(path) if path else _default_config_path()
    data = _merge_env_overrides(_load_toml(cfg_path))
    try:
        parsed = _AppConfigModel.model_validate(data)
    except ValidationError as exc:
        raise ValueError(f"Invalid config values: {exc}") from exc

    return AppConfig(
        discovery=DiscoveryConfig(**parsed.discovery.model_dump()),
        connection=ConnectionConfig(**parsed.connection.model_dump()),
        credentials_path=parsed.credentials_path,
        log_level=parsed.log_level,
    )
