"""Tests for config loading."""

from __future__ import annotations

from chatrelay.config.loader import PLACEHOLDER_TITLE, Config, _deep_merge, _load_yaml, get_config


def test_load_yaml_missing(tmp_path):
    assert _load_yaml(tmp_path / "nonexistent.yaml") == {}


def test_load_yaml_exists(tmp_path):
    path = tmp_path / "test.yaml"
    path.write_text("redis:\n  url: redis://custom:6380/2\n")
    data = _load_yaml(path)
    assert data["redis"]["url"] == "redis://custom:6380/2"


def test_default_config_values():
    config = get_config()
    assert config.streaming.flush_interval_ms == 100
    assert config.streaming.fragment_delay_ms == 100
    assert config.streaming.liveness_window_seconds == 5
    assert config.streaming.event_name == "message.streamed"
    assert config.title.placeholder == PLACEHOLDER_TITLE
    assert config.title.period == 7
    assert config.model.default_model == "meta-llama/llama-3.2-11b-vision-instruct:free"
    assert config.redis.key_prefix == "chatrelay:"


def test_config_load_from_path(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("streaming:\n  flush_interval_ms: 250\ntitle:\n  period: 3\n")
    config = Config.load(config_path=path)
    assert config.streaming.flush_interval_ms == 250
    assert config.streaming.fragment_delay_ms == 100
    assert config.title.period == 3


def test_config_env_override(monkeypatch):
    monkeypatch.setenv("REDIS_URL", "redis://test:6379/5")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("OPENAI_BASE_URL", "http://localhost:11434/v1")
    monkeypatch.setenv("CHATRELAY_SECRET_KEY", "s3cret")
    config = Config.load()
    assert config.redis.url == "redis://test:6379/5"
    assert config.model.api_key == "sk-test"
    assert config.model.base_url == "http://localhost:11434/v1"
    assert config.web.secret_key == "s3cret"


def test_config_env_overlay(tmp_path, monkeypatch):
    (tmp_path / "config").mkdir()
    (tmp_path / "config" / "dev.yaml").write_text("logging:\n  use_json: false\n")
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("CHATRELAY_ENV", "dev")
    config = Config.load()
    assert config.logging.use_json is False
    assert config.streaming.flush_interval_ms == 100


def test_deep_merge():
    base = {"a": 1, "b": {"x": 10, "y": 20}}
    override = {"b": {"y": 22, "z": 30}, "c": 3}
    out = _deep_merge(base, override)
    assert out == {"a": 1, "b": {"x": 10, "y": 22, "z": 30}, "c": 3}
    assert base["b"] == {"x": 10, "y": 20}
