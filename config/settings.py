"""
Configuration loader for the gatekeeper.
Reads settings from YAML file with environment variable substitution,
falling back to plain environment variables for the common deployment knobs.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class RedisConfig:
    url: str = "redis://localhost:6379"
    connect_attempts: int = 3


@dataclass
class QueueConfig:
    backend: str = "redis"              # "redis" for production, "memory" for dev/tests
    name: str = "balance-checks"
    consumer_group: str = "balance-workers"
    max_length: int = 10000             # approximate stream trim
    remove_on_complete: bool = True
    remove_on_fail: bool = True


@dataclass
class TelegramConfig:
    bot_token: str = ""
    api_base_url: str = "https://api.telegram.org"
    request_timeout: float = 10.0


@dataclass
class ReconcilerConfig:
    chat_id: str = ""                   # gated group; empty disables enforcement
    interval_seconds: int = 60
    key_pattern: str = "user:*:permissions"


@dataclass
class SentimentConfig:
    channel: str = "sentiment:updates"
    chat_id: str = ""                   # alert destination; empty disables delivery
    max_topics: int = 3


@dataclass
class Settings:
    app_name: str = "Gatekeeper"
    debug: bool = False
    redis: RedisConfig = field(default_factory=RedisConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    telegram: TelegramConfig = field(default_factory=TelegramConfig)
    reconciler: ReconcilerConfig = field(default_factory=ReconcilerConfig)
    sentiment: SentimentConfig = field(default_factory=SentimentConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, "")
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


def _pick(section: dict[str, Any], key: str, env_var: str, default: Any) -> Any:
    """File value, then environment variable, then default. Empty strings count as unset."""
    value = section.get(key)
    if value not in (None, ""):
        return value
    if env_var:
        env_value = os.environ.get(env_var, "")
        if env_value:
            return env_value
    return default


def _as_chat_id(value: Any) -> str:
    # YAML turns bare ids like -100123 into ints
    return str(value).strip() if value not in (None, "") else ""


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file, with environment fallbacks."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "GATEKEEPER_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    raw: dict[str, Any] = {}
    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

    settings = Settings()
    settings.app_name = raw.get("app_name", settings.app_name)
    settings.debug = bool(raw.get("debug", settings.debug))

    r = raw.get("redis") or {}
    settings.redis = RedisConfig(
        url=_pick(r, "url", "REDIS_URL", RedisConfig.url),
        connect_attempts=int(r.get("connect_attempts", RedisConfig.connect_attempts)),
    )

    q = raw.get("queue") or {}
    settings.queue = QueueConfig(
        backend=_pick(q, "backend", "QUEUE_BACKEND", QueueConfig.backend),
        name=q.get("name", QueueConfig.name),
        consumer_group=q.get("consumer_group", QueueConfig.consumer_group),
        max_length=int(q.get("max_length", QueueConfig.max_length)),
        remove_on_complete=bool(q.get("remove_on_complete", True)),
        remove_on_fail=bool(q.get("remove_on_fail", True)),
    )

    tg = raw.get("telegram") or {}
    settings.telegram = TelegramConfig(
        bot_token=_pick(tg, "bot_token", "TELEGRAM_BOT_TOKEN", ""),
        api_base_url=tg.get("api_base_url", TelegramConfig.api_base_url),
        request_timeout=float(tg.get("request_timeout", TelegramConfig.request_timeout)),
    )

    rc = raw.get("reconciler") or {}
    settings.reconciler = ReconcilerConfig(
        chat_id=_as_chat_id(_pick(rc, "chat_id", "TELEGRAM_CHAT_ID", "")),
        interval_seconds=int(rc.get("interval_seconds", ReconcilerConfig.interval_seconds)),
        key_pattern=rc.get("key_pattern", ReconcilerConfig.key_pattern),
    )

    st = raw.get("sentiment") or {}
    settings.sentiment = SentimentConfig(
        channel=st.get("channel", SentimentConfig.channel),
        chat_id=_as_chat_id(_pick(st, "chat_id", "PRIVATE_GROUP_ID", "")),
        max_topics=int(st.get("max_topics", SentimentConfig.max_topics)),
    )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
