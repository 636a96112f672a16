"""Load configuration from YAML and environment variables. No hardcoded secrets."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Default config lives next to this module
_DEFAULT_CONFIG_PATH = Path(__file__).parent / "default.yaml"

DEFAULT_MODEL = "meta-llama/llama-3.2-11b-vision-instruct:free"
PLACEHOLDER_TITLE = "Nouvelle conversation"


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    result = dict(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


class RedisSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="REDIS_", extra="ignore")
    url: str = "redis://localhost:6379/0"
    key_prefix: str = "chatrelay:"


class ModelSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="MODEL_", extra="ignore")
    base_url: str = "https://openrouter.ai/api/v1"
    api_key: str = ""
    default_model: str = DEFAULT_MODEL
    title_model: Optional[str] = None
    temperature: float = 0.7
    timeout_seconds: float = 120.0


class StreamingSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="STREAMING_", extra="ignore")
    flush_interval_ms: int = 100
    fragment_delay_ms: int = 100
    liveness_window_seconds: float = 5.0
    poll_interval_seconds: float = 0.5
    request_timeout_seconds: float = 120.0
    event_name: str = "message.streamed"


class TitleSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="TITLE_", extra="ignore")
    placeholder: str = PLACEHOLDER_TITLE
    period: int = 7
    context_messages: int = 7


class WebSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="WEB_", extra="ignore")
    secret_key: str = ""
    host: str = "0.0.0.0"
    port: int = 8080


class LoggingSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="LOG_", extra="ignore")
    level: str = "INFO"
    use_json: bool = True


class Config(BaseSettings):
    """Application config: YAML + env. Secrets from env only."""

    model_config = SettingsConfigDict(env_nested_delimiter="__", extra="ignore")

    redis: RedisSettings = Field(default_factory=RedisSettings)
    model: ModelSettings = Field(default_factory=ModelSettings)
    streaming: StreamingSettings = Field(default_factory=StreamingSettings)
    title: TitleSettings = Field(default_factory=TitleSettings)
    web: WebSettings = Field(default_factory=WebSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @classmethod
    def load(cls, config_path: str | Path | None = None) -> "Config":
        path = Path(config_path) if config_path else _DEFAULT_CONFIG_PATH
        yaml_data = _load_yaml(path)
        env_name = os.getenv("CHATRELAY_ENV", "")
        if env_name:
            yaml_data = _deep_merge(yaml_data, _load_yaml(Path(f"config/{env_name}.yaml")))
        redis_url = os.getenv("REDIS_URL")
        if redis_url:
            yaml_data.setdefault("redis", {})["url"] = redis_url
        api_key = os.getenv("OPENAI_API_KEY")
        if api_key:
            yaml_data.setdefault("model", {})["api_key"] = api_key
        base_url = os.getenv("OPENAI_BASE_URL")
        if base_url:
            yaml_data.setdefault("model", {})["base_url"] = base_url
        secret = os.getenv("CHATRELAY_SECRET_KEY")
        if secret:
            yaml_data.setdefault("web", {})["secret_key"] = secret
        return cls(**yaml_data)


def get_config(config_path: str | Path | None = None) -> Config:
    return Config.load(config_path)
