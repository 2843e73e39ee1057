"""Runtime configuration for the bin agent."""
from __future__ import annotations

import json
import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Literal, Optional

from pydantic import Field, SecretStr, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from bin_agent import build_info
from bin_agent.services.connection import BrokerIdentity, normalize_broker_url
from bin_agent.services.discovery import DiscoveryDescriptor

logger = logging.getLogger(__name__)

MIN_INTERVAL_SECONDS = 1.0
MAX_INTERVAL_SECONDS = 3600.0
LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


def _clamp_interval_seconds(value: float, *, field: str) -> float:
    try:
        parsed = float(value)
    except Exception as exc:
        raise ValueError(f"{field} must be a number") from exc
    if parsed != parsed:  # NaN
        raise ValueError(f"{field} must be a real number")
    return max(MIN_INTERVAL_SECONDS, min(parsed, MAX_INTERVAL_SECONDS))


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


class Settings(BaseSettings):
    """Environment driven settings; defaults match a stock robot vacuum install."""

    sensor_name: str = Field(default="vacuumbin", min_length=1, description="Name of the sensor in Home Assistant")
    service_name: str = "bin-agent"
    service_version: str = build_info.VERSION
    log_level: str = "INFO"

    mqtt_server: str = Field(default="mqtt://localhost:1883", description="MQTT broker URL (mqtt, mqtts, tcp or ssl)")
    mqtt_user: Optional[str] = None
    mqtt_password: SecretStr | None = None
    mqtt_state_topic: str = Field(
        default="homeassistant/sensor/{sensor_name}/state",
        description="State topic; {sensor_name} is replaced with the sensor name",
    )
    mqtt_discovery_prefix: str = "homeassistant"
    mqtt_timeout: float = Field(default=60.0, ge=0, description="Total time (seconds) to retry the broker connection")
    ca_cert: Optional[str] = Field(default=None, description="CA bundle (PEM) for TLS connections")
    tls_cert: Optional[str] = Field(default=None, description="Client certificate for TLS connections")
    tls_key: Optional[str] = Field(default=None, description="Client private key for TLS connections")

    file_path: str = Field(
        default="/mnt/data/rockrobo/RoboController.cfg",
        description="Controller config file holding the bin usage counter",
    )
    full_time: float = Field(default=2400.0, gt=0, description="Seconds of use after which the bin counts as full")
    measurement_unit: Literal["%", "sec", "min"] = "%"
    update_interval_seconds: float = 60.0
    debounce_seconds: float = Field(default=1.0, ge=0, le=60)

    status_enabled: bool = True
    status_address: str = "127.0.0.1"
    status_port: int = Field(default=9999, ge=0, le=65535)

    model_config = SettingsConfigDict(
        env_prefix="BIN_AGENT_",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("update_interval_seconds")
    @classmethod
    def _clamp_update_interval(cls, value: float) -> float:
        return _clamp_interval_seconds(value, field="update_interval_seconds")

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        level = str(value).strip().upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        return level

    @field_validator("mqtt_server")
    @classmethod
    def _check_broker_url(cls, value: str) -> str:
        normalize_broker_url(value)
        return value

    @field_validator("mqtt_user", "ca_cert", "tls_cert", "tls_key", mode="before")
    @classmethod
    def _empty_strings_unset(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @property
    def state_topic(self) -> str:
        return self.mqtt_state_topic.replace("{sensor_name}", self.sensor_name)

    @property
    def config_topic(self) -> str:
        prefix = self.mqtt_discovery_prefix.strip("/")
        return f"{prefix}/sensor/{self.sensor_name}/config"

    def broker_identity(self) -> BrokerIdentity:
        return BrokerIdentity.from_url(
            self.mqtt_server,
            client_id=self.sensor_name,
            username=self.mqtt_user,
            password=self.mqtt_password,
            ca_path=self.ca_cert,
            cert_path=self.tls_cert,
            key_path=self.tls_key,
            max_connect_seconds=self.mqtt_timeout,
        )

    def discovery_descriptor(self) -> DiscoveryDescriptor:
        return DiscoveryDescriptor(
            name=self.sensor_name,
            unit_of_measurement=self.measurement_unit,
            state_topic=self.state_topic,
            unique_id=self.sensor_name,
            config_topic=self.config_topic,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


def load_config_file(path: Path) -> Optional[Dict[str, Any]]:
    """Read a JSON config file; a missing file is not an error."""

    if not path.exists():
        logger.info("No config file at %s; using environment settings", path)
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ValueError(f"Config file {path} could not be read: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ValueError(f"Config file {path} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a JSON object")
    return data


def apply_config(settings: Settings, payload: Dict[str, Any]) -> Settings:
    """Apply a config payload on top of the live settings.

    The merged candidate is validated as a whole first, so an invalid payload
    leaves the live settings untouched.
    """

    candidate = settings.model_dump(mode="python")
    for key, value in payload.items():
        if key in Settings.model_fields:
            candidate[key] = value
        else:
            logger.warning("Ignoring unknown config key %s", key)
    try:
        validated = Settings.model_validate(candidate)
    except ValidationError as exc:
        raise ValueError(str(exc)) from exc

    for field in Settings.model_fields:
        setattr(settings, field, getattr(validated, field))
    return settings
