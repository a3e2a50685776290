"""
Tests for process settings, logging helpers and startup.

Tests cover:
- AppConfig loading from environment and validation
- Secret masking
- Fatal exit on invalid routing configuration
"""

import logging
import os
from dataclasses import replace
from unittest.mock import patch

import pytest

import gateway_service
from config import AppConfig
from logger import mask_secret


class TestConfig:
    """Test configuration management."""

    def test_from_env_defaults(self):
        """Test loading config with default values."""
        with patch.dict(os.environ, {}, clear=True):
            cfg = AppConfig.from_env()
            assert cfg.config_path == "config.toml"
            assert cfg.port == 3000
            assert cfg.api_prefix == "/v1"
            assert cfg.model_refresh_ttl_s == 60.0
            assert cfg.model_request_timeout_s == 5.0
            assert cfg.model_connect_timeout_s == 2.0
            assert cfg.request_timeout_s == 300.0
            assert cfg.debug_request is False
            cfg.validate()

    def test_from_env_custom_values(self):
        """Test loading config with custom environment values."""
        env_vars = {
            "GATEWAY_CONFIG": "/etc/gateway/servers.yaml",
            "PORT": "9000",
            "API_PREFIX": "/v2/",
            "MODEL_REFRESH_TTL_S": "15",
            "MODEL_REFRESH_INTERVAL_S": "0",
            "DEBUG_REQUEST": "yes",
            "LOG_LEVEL": "debug",
        }
        with patch.dict(os.environ, env_vars, clear=True):
            cfg = AppConfig.from_env()
            assert cfg.config_path == "/etc/gateway/servers.yaml"
            assert cfg.port == 9000
            assert cfg.api_prefix == "/v2"
            assert cfg.model_refresh_ttl_s == 15.0
            assert cfg.model_refresh_interval_s == 0.0
            assert cfg.debug_request is True
            assert cfg.log_level == "DEBUG"

    def test_bad_numbers_fall_back(self):
        with patch.dict(os.environ, {"PORT": "abc", "REQUEST_TIMEOUT_S": "soon"}, clear=True):
            cfg = AppConfig.from_env()
            assert cfg.port == 3000
            assert cfg.request_timeout_s == 300.0

    def test_validate_success(self, test_config):
        test_config.validate()

    @pytest.mark.parametrize(
        "field,value,match",
        [
            ("port", 0, "PORT"),
            ("api_prefix", "v1", "API_PREFIX"),
            ("max_request_bytes", 0, "MAX_REQUEST_BYTES"),
            ("model_request_timeout_s", 0, "MODEL_REQUEST_TIMEOUT_S"),
            ("model_refresh_interval_s", -1, "MODEL_REFRESH_INTERVAL_S"),
            ("config_path", "", "GATEWAY_CONFIG"),
        ],
    )
    def test_validate_errors(self, test_config, field, value, match):
        cfg = replace(test_config, **{field: value})
        with pytest.raises(ValueError, match=match):
            cfg.validate()


class TestMaskSecret:
    """Test secret masking for logs."""

    def test_long_secret(self):
        assert mask_secret("sk-abcdefghijklmnop") == "sk-abc...mnop"

    def test_short_secret(self):
        assert mask_secret("short") == "*****"

    def test_empty(self):
        assert mask_secret(None) == ""
        assert mask_secret("  ") == ""


class TestMain:
    """Test startup behavior."""

    @pytest.fixture(autouse=True)
    def restore_logging(self):
        """main() reconfigures the app logger; put it back afterwards."""
        logger = logging.getLogger("llm_gateway")
        handlers, propagate, level = list(logger.handlers), logger.propagate, logger.level
        yield
        logging.disable(logging.NOTSET)
        logger.handlers[:] = handlers
        logger.propagate = propagate
        logger.setLevel(level)

    def test_invalid_routing_config_exits(self, tmp_path):
        bad = tmp_path / "config.toml"
        bad.write_text('[Broken]\napi_key = "k"\n', encoding="utf-8")
        env = {
            "GATEWAY_CONFIG": str(bad),
            "LOG_LEVEL": "DISABLE",
            "LOG_PATH": str(tmp_path / "gw.log"),
        }
        with patch.dict(os.environ, env), \
                patch.object(gateway_service, "load_env_files"), \
                patch("uvicorn.run") as run:
            with pytest.raises(SystemExit) as exc:
                gateway_service.main()
        assert exc.value.code == 1
        run.assert_not_called()

    def test_valid_routing_config_serves(self, tmp_path):
        good = tmp_path / "config.toml"
        good.write_text('[Local]\nendpoint = "http://localhost:8080"\n', encoding="utf-8")
        env = {
            "GATEWAY_CONFIG": str(good),
            "LOG_LEVEL": "DISABLE",
            "LOG_PATH": str(tmp_path / "gw.log"),
            "PORT": "3123",
        }
        with patch.dict(os.environ, env), \
                patch.object(gateway_service, "load_env_files"), \
                patch("uvicorn.run") as run:
            gateway_service.main()
        run.assert_called_once()
        assert run.call_args.kwargs["port"] == 3123
