"""
Unit tests for ServerConfig.
"""

import pytest

from sihttp.config import ServerConfig, parse_address


class TestParseAddress:
    """Parsing of "host:port" listen addresses."""

    @pytest.mark.parametrize("address,expected", [
        ("127.0.0.1:8080", ("127.0.0.1", 8080)),
        (":9000", ("", 9000)),
        ("localhost:0", ("localhost", 0)),
        ("[::1]:8080", ("::1", 8080)),
    ])
    def test_valid(self, address, expected):
        assert parse_address(address) == expected

    @pytest.mark.parametrize("address", ["8080", "localhost", "host:http", "host:"])
    def test_invalid(self, address):
        with pytest.raises(ValueError):
            parse_address(address)


class TestServerConfig:
    """Defaults, environment and validation."""

    def test_defaults_are_valid(self):
        config = ServerConfig()
        config.validate()

        assert config.address == "127.0.0.1:8080"

    def test_with_address_returns_copy(self):
        base = ServerConfig(max_workers=8)
        bound = base.with_address(":3000")

        assert (bound.host, bound.port) == ("", 3000)
        assert bound.max_workers == 8
        assert (base.host, base.port) == ("127.0.0.1", 8080)

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("HTTP_HOST", "0.0.0.0")
        monkeypatch.setenv("HTTP_PORT", "9090")
        monkeypatch.setenv("HTTP_WORKERS", "12")
        monkeypatch.setenv("HTTP_LOG_FORMAT", "json")
        monkeypatch.setenv("HTTP_NO_COLOR", "1")

        config = ServerConfig.from_env()

        assert config.host == "0.0.0.0"
        assert config.port == 9090
        assert config.max_workers == 12
        assert config.log_format == "json"
        assert config.use_color is False

    def test_from_env_defaults(self, monkeypatch):
        for name in ("HTTP_HOST", "HTTP_PORT", "HTTP_NO_COLOR", "HTTP_LOG_FORMAT"):
            monkeypatch.delenv(name, raising=False)

        config = ServerConfig.from_env()

        assert config.port == 8080
        assert config.use_color is None

    @pytest.mark.parametrize("overrides", [
        {"port": 70000},
        {"port": -1},
        {"min_workers": 0},
        {"min_workers": 8, "max_workers": 4},
        {"queue_size": 0},
        {"buffer_size": 100},
        {"timeout": 0},
        {"shutdown_timeout": -1},
        {"log_format": "xml"},
    ])
    def test_validate_rejects(self, overrides):
        with pytest.raises(ValueError):
            ServerConfig(**overrides).validate()

    def test_port_zero_allowed(self):
        ServerConfig(port=0).validate()
