"""Application configuration powered by ``pydantic-settings``.

Settings are grouped into typed sections (engine scheduling, device polling,
recorder, MES reporting, MQTT publishing) so the components receive a single
object instead of reading environment variables on their own.  Nested
values can be overridden with ``__`` delimited variables, e.g.
``ENGINE__TICK_INTERVAL_S=0.5``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal, Optional

from dotenv import load_dotenv
from flask import Flask, current_app
from pydantic import AliasChoices, BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = BASE_DIR.parent.parent

load_dotenv(PROJECT_ROOT / ".env", override=False)


class EngineSettings(BaseModel):
    """State machine scheduling and script budgets."""

    tick_interval_s: float = Field(default=1.0, gt=0)
    script_timeout_ms: int = Field(default=200, gt=0)
    mes_script_timeout_ms: int = Field(default=10000, gt=0)
    history_limit: int = Field(default=50, ge=0)
    script_workers: int = Field(default=8, gt=0)


class PollingSettings(BaseModel):
    """Device polling behaviour."""

    enabled: bool = True
    default_interval_ms: int = Field(default=1000, gt=0)
    offline_after_failures: int = Field(default=3, gt=0)
    request_timeout_ms: int = Field(default=3000, gt=0)
    backoff_initial_s: float = Field(default=1.0, gt=0)
    backoff_max_s: float = Field(default=30.0, gt=0)


class RecorderSettings(BaseModel):
    """Defaults for run recording."""

    default_interval_s: float = Field(default=5.0, gt=0)
    max_samples_per_point: int = Field(default=100_000, gt=0)


class MesSettings(BaseModel):
    """Outbound MES reporting endpoint."""

    enabled: bool = True
    url: Optional[str] = None
    timeout_s: float = Field(default=5.0, gt=0)


class MqttSettings(BaseModel):
    """Status publication to an MQTT broker."""

    enabled: bool = False
    host: str = "localhost"
    port: int = 1883
    username: Optional[str] = None
    password: Optional[str] = None
    base_topic: str = "burnin"
    client_id: Optional[str] = None
    keepalive: int = 60
    qos: int = Field(default=1, ge=0, le=2)
    retain: bool = False


class AppSettings(BaseSettings):
    """Typed application configuration backed by environment variables."""

    model_config = SettingsConfigDict(
        env_file=PROJECT_ROOT / ".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    environment: Literal["development", "production", "testing"] = Field(
        default="development",
        validation_alias=AliasChoices("APP_ENV", "FLASK_ENV", "ENVIRONMENT"),
    )
    debug: bool = Field(default=False)
    testing: bool = Field(default=False)
    log_level: str = Field(default="INFO", validation_alias=AliasChoices("LOG_LEVEL"))
    config_file: Optional[Path] = Field(
        default=None, validation_alias=AliasChoices("BURNIN_CONFIG", "CONFIG_FILE")
    )
    command_timeout_s: float = Field(
        default=10.0, validation_alias=AliasChoices("COMMAND_TIMEOUT_S")
    )
    engine: EngineSettings = Field(default_factory=EngineSettings)
    polling: PollingSettings = Field(default_factory=PollingSettings)
    recorder: RecorderSettings = Field(default_factory=RecorderSettings)
    mes: MesSettings = Field(default_factory=MesSettings)
    mqtt: MqttSettings = Field(default_factory=MqttSettings)

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalise_level(cls, value: Any) -> str:
        text = str(value or "INFO").strip().upper()
        if text not in {"DEBUG", "INFO", "PROCESS", "WARNING", "ERROR", "CRITICAL"}:
            return "INFO"
        return text

    def with_environment(self, environment: Optional[str]) -> "AppSettings":
        """Return a copy adjusted for the selected environment."""

        env = (environment or self.environment or "development").lower()
        debug = self.debug
        testing = self.testing
        mes = self.mes
        mqtt = self.mqtt
        polling = self.polling

        if env == "development":
            debug = True
        elif env == "production":
            debug = False
        elif env == "testing":
            testing = True
            debug = False
            mes = mes.model_copy(update={"url": None})
            mqtt = mqtt.model_copy(update={"enabled": False})
            polling = polling.model_copy(
                update={"backoff_initial_s": 0.01, "backoff_max_s": 0.05}
            )

        return self.model_copy(
            update={
                "environment": env,
                "debug": debug,
                "testing": testing,
                "mes": mes,
                "mqtt": mqtt,
                "polling": polling,
            }
        )

    def as_flask_config(self) -> dict[str, Any]:
        """Translate settings into the dict expected by ``Flask``."""

        return {
            "DEBUG": self.debug,
            "TESTING": self.testing,
            "JSON_SORT_KEYS": False,
            "COMMAND_TIMEOUT_S": self.command_timeout_s,
            "ENGINE_TICK_INTERVAL_S": self.engine.tick_interval_s,
        }


def load_settings(config_name: Optional[str] = None) -> AppSettings:
    """Instantiate :class:`AppSettings` applying environment overrides."""

    base = AppSettings()
    return base.with_environment(config_name)


def store_settings(app: Flask, settings: AppSettings) -> None:
    """Attach the settings object to the Flask application instance."""

    app.extensions["app_settings"] = settings
    app.config["APP_SETTINGS"] = settings


def get_app_settings(app: Optional[Flask] = None) -> AppSettings:
    """Return the settings registered on the Flask application."""

    app_obj = app or current_app
    settings = app_obj.extensions.get("app_settings")
    if isinstance(settings, AppSettings):
        return settings
    raise RuntimeError("AppSettings not initialised for this Flask application")


__all__ = [
    "AppSettings",
    "EngineSettings",
    "MesSettings",
    "MqttSettings",
    "PollingSettings",
    "RecorderSettings",
    "get_app_settings",
    "load_settings",
    "store_settings",
]
