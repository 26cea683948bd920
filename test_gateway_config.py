"""
Tests for gateway configuration.
"""

import pytest

from gateway_config import DEFAULT_SCOPES, GatewayConfig


def _config(**overrides):
    values = dict(
        server_url="https://gw.example.com/",
        cookie_encryption_key="secret",
        upstream_client_id="client",
        upstream_client_secret="client-secret",
    )
    values.update(overrides)
    return GatewayConfig(**values)


class TestCallbackPath:
    def test_default_callback_url(self):
        assert _config().callback_url == "https://gw.example.com/callback"

    def test_leading_slash_added_at_construction(self):
        config = _config(callback_path="oauth/callback")
        assert config.callback_path == "/oauth/callback"
        assert config.callback_url == "https://gw.example.com/oauth/callback"

    def test_reassigned_path_normalized_on_use(self):
        config = _config()
        config.callback_path = "oauth/google/callback"

        assert config.callback_route == "/oauth/google/callback"
        assert config.callback_url == "https://gw.example.com/oauth/google/callback"


class TestFromEnv:
    @pytest.fixture
    def required_env(self, monkeypatch):
        monkeypatch.setenv("COOKIE_ENCRYPTION_KEY", "secret")
        monkeypatch.setenv("UPSTREAM_CLIENT_ID", "client")
        monkeypatch.setenv("UPSTREAM_CLIENT_SECRET", "client-secret")
        for name in ("GATEWAY_SERVER_URL", "REDIS_URL", "STATE_TTL", "CALLBACK_PATH", "GATEWAY_CLIENTS", "UPSTREAM_SCOPES"):
            monkeypatch.delenv(name, raising=False)

    def test_defaults(self, required_env):
        config = GatewayConfig.from_env()

        assert config.server_url == "http://localhost:8080"
        assert config.redis_url is None
        assert config.state_ttl == 600
        assert config.approval_ttl == 2592000
        assert config.upstream_scopes == DEFAULT_SCOPES
        assert config.clients == {}

    def test_overrides(self, required_env, monkeypatch):
        monkeypatch.setenv("STATE_TTL", "120")
        monkeypatch.setenv("CALLBACK_PATH", "auth/cb")
        monkeypatch.setenv("GATEWAY_CLIENTS", '{"abc123": {"client_name": "Example"}}')

        config = GatewayConfig.from_env()

        assert config.state_ttl == 120
        assert config.callback_path == "/auth/cb"
        assert config.clients["abc123"]["client_name"] == "Example"

    def test_missing_required(self, required_env, monkeypatch):
        monkeypatch.delenv("UPSTREAM_CLIENT_SECRET")

        with pytest.raises(ValueError, match="UPSTREAM_CLIENT_SECRET"):
            GatewayConfig.from_env()

    def test_invalid_integer(self, required_env, monkeypatch):
        monkeypatch.setenv("STATE_TTL", "ten minutes")

        with pytest.raises(ValueError, match="STATE_TTL"):
            GatewayConfig.from_env()

    def test_invalid_clients_json(self, required_env, monkeypatch):
        monkeypatch.setenv("GATEWAY_CLIENTS", "{not json")

        with pytest.raises(ValueError, match="GATEWAY_CLIENTS"):
            GatewayConfig.from_env()
