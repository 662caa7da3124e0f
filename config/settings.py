"""
Configuration loader for the FlowRelay workflow engine.
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
class DatabaseConfig:
    url: str = "sqlite:///./flowrelay.db"        # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                 # "sql" | "memory"


@dataclass
class WhapiConfig:
    base_url: str = "https://gate.whapi.cloud"
    timeout: float = 15.0               # seconds per provider call
    mock: bool = False                  # log sends instead of calling the gateway
    inquiry_label_id: str = ""          # label applied to repeat-of-day text messages
    chatbot_label_id: str = ""          # label applied when the first message of the day starts workflows


@dataclass
class HttpActionConfig:
    default_timeout: float = 10.0
    max_timeout: float = 30.0
    max_response_bytes: int = 5 * 1024 * 1024
    allowlist_setting_key: str = "http_allowed_domains"
    user_agent: str = "FlowRelay-Workflow/1.0"


@dataclass
class BookingConfig:
    max_list_rows: int = 10             # WhatsApp list messages cap rows at 10
    max_advance_days: int = 30
    slot_unavailable_message: str = (
        "Sorry, this time slot is no longer available. Please start again to pick another time."
    )
    already_booked_message: str = "You already have an upcoming booking."


@dataclass
class Settings:
    app_name: str = "FlowRelay"
    debug: bool = False
    timezone: str = "Asia/Bahrain"      # reference zone for first-message-of-day
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    whapi: WhapiConfig = field(default_factory=WhapiConfig)
    http_action: HttpActionConfig = field(default_factory=HttpActionConfig)
    booking: BookingConfig = field(default_factory=BookingConfig)


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


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "FLOWRELAY_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = _as_bool(raw.get("debug"), settings.debug)
        settings.timezone = raw.get("timezone", settings.timezone)

        if "database" in raw:
            db = raw["database"] or {}
            settings.database = DatabaseConfig(
                url=db.get("url", settings.database.url),
                store_backend=db.get("store_backend", settings.database.store_backend),
            )

        if "whapi" in raw:
            wh = raw["whapi"] or {}
            defaults = WhapiConfig()
            settings.whapi = WhapiConfig(
                base_url=wh.get("base_url", defaults.base_url),
                timeout=float(wh.get("timeout", defaults.timeout)),
                mock=_as_bool(wh.get("mock"), defaults.mock),
                inquiry_label_id=str(wh.get("inquiry_label_id", "") or ""),
                chatbot_label_id=str(wh.get("chatbot_label_id", "") or ""),
            )

        if "http_action" in raw:
            ha = raw["http_action"] or {}
            defaults = HttpActionConfig()
            settings.http_action = HttpActionConfig(
                default_timeout=float(ha.get("default_timeout", defaults.default_timeout)),
                max_timeout=float(ha.get("max_timeout", defaults.max_timeout)),
                max_response_bytes=int(ha.get("max_response_bytes", defaults.max_response_bytes)),
                allowlist_setting_key=ha.get("allowlist_setting_key", defaults.allowlist_setting_key),
                user_agent=ha.get("user_agent", defaults.user_agent),
            )

        if "booking" in raw:
            bk = raw["booking"] or {}
            defaults = BookingConfig()
            settings.booking = BookingConfig(
                max_list_rows=int(bk.get("max_list_rows", defaults.max_list_rows)),
                max_advance_days=int(bk.get("max_advance_days", defaults.max_advance_days)),
                slot_unavailable_message=bk.get(
                    "slot_unavailable_message", defaults.slot_unavailable_message),
                already_booked_message=bk.get(
                    "already_booked_message", defaults.already_booked_message),
            )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
