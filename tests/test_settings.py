"""
Unit Tests for environment settings
"""

import pytest

from utils.settings import Settings, SettingsError, split_address


class TestFromEnv:

    def test_defaults(self):
        settings = Settings.from_env({})

        assert settings == Settings()
        assert settings.http_address == ":8080"
        assert settings.grpc_address == ":8081"
        assert settings.relay_timeout == 30.0
        assert settings.websocket_ping_interval == 25.0
        assert settings.websocket_read_timeout == 30.0

    def test_overrides(self):
        settings = Settings.from_env({
            "HTTP_ADDRESS": "127.0.0.1:9090",
            "GRPC_ADDRESS": "",
            "LOG_LEVEL": "debug",
            "LOG_FORMAT": "JSON",
            "TRACER_ENABLED": "true",
            "TRACER_SERVICE": "edge",
            "TRACER_ADDRESS": "collector:4317",
            "RELAY_TIMEOUT": "1m",
            "WEBSOCKET_READ_TIMEOUT": "500ms",
        })

        assert settings.http_address == "127.0.0.1:9090"
        assert settings.grpc_address == ""
        assert settings.log_level == "DEBUG"
        assert settings.log_format == "json"
        assert settings.tracer_enabled is True
        assert settings.tracer_service == "edge"
        assert settings.tracer_address == "collector:4317"
        assert settings.relay_timeout == 60.0
        assert settings.websocket_read_timeout == 0.5

    def test_warn_is_an_alias(self):
        assert Settings.from_env({"LOG_LEVEL": "WARN"}).log_level == "WARNING"

    @pytest.mark.parametrize("env", [
        {"LOG_LEVEL": "verbose"},
        {"LOG_FORMAT": "xml"},
        {"TRACER_ENABLED": "maybe"},
        {"HTTP_ADDRESS": "localhost"},
        {"GRPC_ADDRESS": ":port"},
        {"HTTP_ADDRESS": ":70000"},
        {"RELAY_TIMEOUT": "soon"},
        {"WEBSOCKET_READ_TIMEOUT": "0s"},
        {"WEBSOCKET_PING_INTERVAL": "-1s"},
    ])
    def test_invalid_values(self, env):
        with pytest.raises(SettingsError):
            Settings.from_env(env)

    def test_settings_are_immutable(self):
        settings = Settings()
        with pytest.raises(AttributeError):
            settings.log_level = "DEBUG"


class TestSplitAddress:

    def test_empty_host_means_all_interfaces(self):
        assert split_address(":8080") == ("0.0.0.0", 8080)

    def test_host_and_port(self):
        assert split_address("127.0.0.1:8081") == ("127.0.0.1", 8081)

    def test_ipv6(self):
        assert split_address("[::1]:8080") == ("::1", 8080)
