"""Pytest fixtures and config."""


import pytest


@pytest.fixture(autouse=True)
def env_cleanup(monkeypatch):
    """Keep real credentials and overlays out of tests."""
    for name in ("OPENAI_API_KEY", "OPENAI_BASE_URL", "CHATRELAY_SECRET_KEY", "CHATRELAY_ENV"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/1")
    yield
