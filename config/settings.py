"""
Configuration loader for the FlowDesk orchestration engine.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class ChannelConfig:
    enabled: bool = False
    credentials: dict[str, Any] = field(default_factory=dict)


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./flowdesk.db"               # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory"


@dataclass
class QueueConfig:
    backend: str = "memory"             # "memory" for dev, "redis" for production
    redis_url: str = "redis://localhost:6379"
    consumer_group: str = "flowdesk-workers"
    ingestion_concurrency: int = 50     # prefetch / max concurrent turns per worker
    delivery_concurrency: int = 50      # prefetch / max concurrent sends per worker
    max_ingestion_attempts: int = 5
    max_delivery_attempts: int = 4
    delayed_promote_interval: int = 1   # seconds between delayed-queue scans
    retry_backoff_base: int = 2         # base seconds for exponential retry backoff


@dataclass
class FlowConfig:
    farewell_block: str = "despedida"
    error_block: str = "onerror"
    human_return_block: str = "onhumanreturn"
    offhours_block: str = "offhours"
    default_channel: str = "whatsapp"
    inline_delay_max_seconds: float = 10.0
    script_timeout_seconds: float = 2.0
    script_memory_mb: int = 128
    http_timeout_seconds: float = 15.0
    flow_error_text: str = "Erro interno no bot"
    offhours_fallback_text: str = "Nosso atendimento está fora do horário no momento."
    media_fallback_text: str = "Não foi possível enviar o conteúdo solicitado."
    media_fallback_prefix: str = "Aqui está seu conteúdo: "


@dataclass
class SupportConfig:
    hours_cache_ttl_seconds: int = 60
    default_distribution_mode: str = "manual"     # "manual" | "auto"
    default_queue: str = "Default"
    default_timezone: str = "America/Sao_Paulo"


@dataclass
class Settings:
    app_name: str = "FlowDesk"
    debug: bool = False
    timezone: str = "America/Sao_Paulo"
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    flow: FlowConfig = field(default_factory=FlowConfig)
    support: SupportConfig = field(default_factory=SupportConfig)
    channels: dict[str, ChannelConfig] = field(default_factory=dict)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _overlay(section: Any, values: dict[str, Any]) -> Any:
    """Return a copy of a config dataclass with known keys taken from ``values``."""
    known = {k: v for k, v in values.items() if k in section.__dataclass_fields__}
    return type(section)(**{**section.__dict__, **known})


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "FLOWDESK_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.timezone = raw.get("timezone", settings.timezone)

        if "database" in raw:
            settings.database = _overlay(settings.database, raw["database"])
        if "queue" in raw:
            settings.queue = _overlay(settings.queue, raw["queue"])
        if "flow" in raw:
            settings.flow = _overlay(settings.flow, raw["flow"])
        if "support" in raw:
            settings.support = _overlay(settings.support, raw["support"])

        if "channels" in raw:
            for ch_name, ch_data in raw["channels"].items():
                settings.channels[ch_name] = ChannelConfig(
                    enabled=ch_data.get("enabled", False),
                    credentials=ch_data.get("credentials", {}),
                )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings (used by tests)."""
    global _settings
    _settings = None
