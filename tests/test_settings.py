"""Tests for configuration loading."""
import pytest

from config.settings import (
    QueueConfig, ReconcilerConfig, SentimentConfig, Settings, get_settings, load_settings,
)

ENV_VARS = ("REDIS_URL", "QUEUE_BACKEND", "TELEGRAM_BOT_TOKEN", "TELEGRAM_CHAT_ID", "PRIVATE_GROUP_ID")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in ENV_VARS:
        monkeypatch.delenv(var, raising=False)


class TestDefaults:
    def test_dataclass_defaults(self):
        s = Settings()
        assert s.redis.url == "redis://localhost:6379"
        assert s.queue.name == "balance-checks"
        assert s.reconciler.interval_seconds == 60
        assert s.reconciler.key_pattern == "user:*:permissions"
        assert s.sentiment.channel == "sentiment:updates"

    def test_missing_file_uses_defaults(self, tmp_path):
        s = load_settings(str(tmp_path / "absent.yaml"))
        assert s.redis.url == "redis://localhost:6379"
        assert s.reconciler.chat_id == ""
        assert s.sentiment.chat_id == ""

    def test_queue_removes_jobs_by_default(self):
        cfg = QueueConfig()
        assert cfg.remove_on_complete is True
        assert cfg.remove_on_fail is True


class TestLoading:
    def test_env_fallback(self, tmp_path, monkeypatch):
        monkeypatch.setenv("REDIS_URL", "redis://cache:6380/2")
        monkeypatch.setenv("TELEGRAM_CHAT_ID", "-100555")
        monkeypatch.setenv("PRIVATE_GROUP_ID", "123456")
        monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "123:abc")

        s = load_settings(str(tmp_path / "absent.yaml"))

        assert s.redis.url == "redis://cache:6380/2"
        assert s.reconciler.chat_id == "-100555"
        assert s.sentiment.chat_id == "123456"
        assert s.telegram.bot_token == "123:abc"

    def test_yaml_with_substitution(self, tmp_path, monkeypatch):
        monkeypatch.setenv("MY_REDIS", "redis://yaml-host:6379")
        path = tmp_path / "settings.yaml"
        path.write_text(
            "redis:\n"
            "  url: ${MY_REDIS}\n"
            "queue:\n"
            "  backend: memory\n"
            "reconciler:\n"
            "  chat_id: -100777\n"
            "  interval_seconds: 30\n"
            "sentiment:\n"
            "  chat_id: ${UNSET_GROUP}\n"
            "  max_topics: 5\n"
        )

        s = load_settings(str(path))

        assert s.redis.url == "redis://yaml-host:6379"
        assert s.queue.backend == "memory"
        assert s.reconciler.chat_id == "-100777"
        assert s.reconciler.interval_seconds == 30
        assert s.sentiment.chat_id == ""
        assert s.sentiment.max_topics == 5

    def test_file_value_wins_over_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TELEGRAM_CHAT_ID", "-100111")
        path = tmp_path / "settings.yaml"
        path.write_text("reconciler:\n  chat_id: '-100222'\n")
        assert load_settings(str(path)).reconciler.chat_id == "-100222"

    def test_get_settings_caches(self, tmp_path, monkeypatch):
        monkeypatch.setenv("GATEKEEPER_CONFIG", str(tmp_path / "absent.yaml"))
        loaded = load_settings()
        assert get_settings() is loaded

    def test_config_dataclasses(self):
        assert ReconcilerConfig(chat_id="-1").chat_id == "-1"
        assert SentimentConfig().max_topics == 3
