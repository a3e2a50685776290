"""
Pytest configuration and shared fixtures.

This file is automatically loaded by pytest and provides:
- Project root on sys.path so tests can import the flat modules
- Test environment variables
- Shared configuration and fake-discovery fixtures
"""

import os
import sys
from pathlib import Path

import pytest

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

os.environ.setdefault("LOG_LEVEL", "DEBUG")
os.environ.setdefault("LOG_PATH", "/tmp/llm_gateway_test.log")
os.environ.setdefault("LOG_COLOR", "false")

from config import AppConfig  # noqa: E402
from runtime_config import compile_config  # noqa: E402


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDiscovery:
    """Async fetch_models stand-in keyed by server name."""

    def __init__(self, models_by_server):
        self.models_by_server = dict(models_by_server)
        self.calls = []

    async def __call__(self, server):
        self.calls.append(server.name)
        result = self.models_by_server.get(server.name, [])
        if isinstance(result, Exception):
            raise result
        return list(result)


@pytest.fixture
def test_config():
    """Create test process settings."""
    return AppConfig(
        config_path="config.toml",
        host="127.0.0.1",
        port=3000,
        api_prefix="/v1",
        max_request_bytes=1_000_000,
        user_agent="test-agent",
        model_refresh_ttl_s=60.0,
        model_refresh_interval_s=0.0,
        model_connect_timeout_s=1.0,
        model_request_timeout_s=2.0,
        connect_timeout_s=5.0,
        request_timeout_s=30.0,
        log_level="DEBUG",
        log_path="/tmp/llm_gateway_test.log",
        debug_request=True,
    )


@pytest.fixture
def raw_config():
    """A routing config tree with two servers and profiles."""
    return {
        "OpenAI": {
            "endpoints": ["https://api.openai.example/v1"],
            "api_key": "sk-openai-test",
            "models": ["gpt-5", "gpt-4.1"],
            "defaults": {"temperature": 0.2, "metadata": {"source": "gateway"}},
            "overrides": {"stream": True, "reasoning": {"effort": "medium"}},
            "deny": ["/temperature"],
            "high": {
                "overrides": {"reasoning": {"effort": "high"}},
                "defaults": {"temperature": 0.9},
                "deny": ["stream_options.include_usage"],
                "system_message": "You are precise.",
            },
        },
        "Local": {
            "endpoint": "http://localhost:8080",
            "ports": [8080, 8081],
        },
    }


@pytest.fixture
def runtime(raw_config):
    """Compiled routing configuration."""
    return compile_config(raw_config)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def discovery():
    return FakeDiscovery(
        {
            "OpenAI": ["gpt-5", "gpt-4.1", "dall-e-3"],
            "Local": ["qwen3-8b"],
        }
    )
