"""Server configuration.

Loads from config.yaml if present, with environment variable overrides.
Environment variables use the pattern: TELERENT_<SECTION>_<KEY> (uppercase).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path

import yaml


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8000
    env: str = "dev"  # "dev" or "prod"


@dataclass
class StorageConfig:
    database_url: str = "sqlite+aiosqlite:///data/telerent.db"
    echo: bool = False


@dataclass
class PricingConfig:
    per_km: float = 1.0
    drive_per_minute: float = 2.0
    park_per_minute: float = 1.0


@dataclass
class DecoderConfig:
    # Off by default: deployed units may send a placeholder checksum.
    verify_crc: bool = False


@dataclass
class LimitsConfig:
    active_window_seconds: float = 120.0
    default_trip_limit: int = 100
    max_trip_limit: int = 1000


@dataclass
class LoggingConfig:
    level: str = "info"
    format: str = "console"  # "console" or "json"


@dataclass
class AppConfig:
    server: ServerConfig = field(default_factory=ServerConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    pricing: PricingConfig = field(default_factory=PricingConfig)
    decoder: DecoderConfig = field(default_factory=DecoderConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _apply_env_overrides(config: AppConfig) -> None:
    """Override config values from environment variables."""
    mapping = {
        "TELERENT_SERVER_HOST": lambda v: setattr(config.server, "host", v),
        "TELERENT_SERVER_PORT": lambda v: setattr(config.server, "port", int(v)),
        "TELERENT_SERVER_ENV": lambda v: setattr(config.server, "env", v),
        "TELERENT_STORAGE_DATABASE_URL": lambda v: setattr(config.storage, "database_url", v),
        "TELERENT_STORAGE_ECHO": lambda v: setattr(config.storage, "echo", _parse_bool(v)),
        "TELERENT_PRICING_PER_KM": lambda v: setattr(config.pricing, "per_km", float(v)),
        "TELERENT_PRICING_DRIVE_PER_MINUTE": lambda v: setattr(config.pricing, "drive_per_minute", float(v)),
        "TELERENT_PRICING_PARK_PER_MINUTE": lambda v: setattr(config.pricing, "park_per_minute", float(v)),
        "TELERENT_DECODER_VERIFY_CRC": lambda v: setattr(config.decoder, "verify_crc", _parse_bool(v)),
        "TELERENT_LIMITS_ACTIVE_WINDOW_SECONDS": lambda v: setattr(config.limits, "active_window_seconds", float(v)),
        "TELERENT_LIMITS_DEFAULT_TRIP_LIMIT": lambda v: setattr(config.limits, "default_trip_limit", int(v)),
        "TELERENT_LIMITS_MAX_TRIP_LIMIT": lambda v: setattr(config.limits, "max_trip_limit", int(v)),
        "TELERENT_LOGGING_LEVEL": lambda v: setattr(config.logging, "level", v),
        "TELERENT_LOGGING_FORMAT": lambda v: setattr(config.logging, "format", v),
    }
    for env_key, setter in mapping.items():
        val = os.environ.get(env_key)
        if val is not None:
            setter(val)


def _merge_yaml(config: AppConfig, raw: dict) -> None:
    """Copy known keys of each YAML section onto the matching dataclass."""
    for section in fields(config):
        values = raw.get(section.name)
        if not isinstance(values, dict):
            continue
        target = getattr(config, section.name)
        for key, value in values.items():
            if hasattr(target, key):
                setattr(target, key, value)


def load_config(config_path: str | Path | None = None) -> AppConfig:
    """Build the config: defaults, then the YAML file, then the environment.

    The file is ``config_path``, else ``$TELERENT_CONFIG``, else ./config.yaml.
    A missing file is not an error.
    """
    config = AppConfig()

    path = Path(config_path or os.environ.get("TELERENT_CONFIG", "config.yaml"))
    if path.exists():
        _merge_yaml(config, yaml.safe_load(path.read_text()) or {})

    _apply_env_overrides(config)
    return config
