"""
Tests for the upstream identity provider client.

All HTTP calls are mocked at upstream_exchange.requests.
"""

import urllib.parse
from unittest.mock import Mock, patch

import pytest
import requests

from gateway_errors import InvalidRequestError, UpstreamExchangeError, UpstreamResponseInvalidError
from upstream_exchange import UpstreamExchange, UpstreamTokenSet


def _response(status_code=200, json_data=None, text=""):
    response = Mock()
    response.status_code = status_code
    response.text = text
    if isinstance(json_data, Exception):
        response.json.side_effect = json_data
    else:
        response.json.return_value = json_data
    return response


@pytest.fixture
def upstream():
    return UpstreamExchange(
        client_id="gateway-client",
        client_secret="gateway-secret",
        authorize_url="https://idp.example.com/auth",
        token_url="https://idp.example.com/token",
        userinfo_url="https://idp.example.com/userinfo",
        timeout=5
    )


class TestAuthorizeUrl:
    def test_required_parameters(self, upstream):
        url = upstream.build_authorize_url(
            redirect_uri="https://gw.example.com/callback",
            scope="email profile",
            state="state-token"
        )
        parsed = urllib.parse.urlsplit(url)
        params = dict(urllib.parse.parse_qsl(parsed.query))

        assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == "https://idp.example.com/auth"
        assert params == {
            "client_id": "gateway-client",
            "redirect_uri": "https://gw.example.com/callback",
            "scope": "email profile",
            "response_type": "code",
            "access_type": "offline",
            "prompt": "consent",
            "state": "state-token",
        }

    def test_state_omitted_when_absent(self, upstream):
        url = upstream.build_authorize_url("https://gw.example.com/callback", "email")
        assert "state" not in dict(urllib.parse.parse_qsl(urllib.parse.urlsplit(url).query))

    def test_existing_query_preserved(self):
        upstream = UpstreamExchange(
            client_id="c", client_secret="s",
            authorize_url="https://idp.example.com/auth?hd=example.com"
        )
        url = upstream.build_authorize_url("https://gw.example.com/callback", "email", "st")
        params = dict(urllib.parse.parse_qsl(urllib.parse.urlsplit(url).query))

        assert params["hd"] == "example.com"
        assert params["state"] == "st"


class TestExchangeCode:
    @patch("upstream_exchange.requests.post")
    def test_success(self, mock_post, upstream):
        mock_post.return_value = _response(200, {
            "access_token": "ya29.access",
            "refresh_token": "1//refresh",
            "expires_in": 3599,
            "scope": "email",
            "token_type": "Bearer",
        })

        with patch("upstream_exchange.time.time", return_value=1_000_000):
            tokens = upstream.exchange_code("auth-code", "https://gw.example.com/callback")

        assert tokens == UpstreamTokenSet(
            access_token="ya29.access",
            refresh_token="1//refresh",
            expires_at=1_003_599,
            scope="email",
            token_type="Bearer",
        )
        args, kwargs = mock_post.call_args
        assert args[0] == "https://idp.example.com/token"
        assert kwargs["data"] == {
            "grant_type": "authorization_code",
            "code": "auth-code",
            "redirect_uri": "https://gw.example.com/callback",
            "client_id": "gateway-client",
            "client_secret": "gateway-secret",
        }
        assert kwargs["timeout"] == 5

    @patch("upstream_exchange.requests.post")
    def test_missing_code(self, mock_post, upstream):
        with pytest.raises(InvalidRequestError):
            upstream.exchange_code(None, "https://gw.example.com/callback")
        mock_post.assert_not_called()

    @patch("upstream_exchange.requests.post")
    def test_http_error(self, mock_post, upstream):
        mock_post.return_value = _response(500, text="internal error with secret detail")

        with pytest.raises(UpstreamExchangeError) as exc_info:
            upstream.exchange_code("auth-code", "https://gw.example.com/callback")
        assert exc_info.value.status_code == 502
        assert "secret detail" not in exc_info.value.error_description

    @patch("upstream_exchange.requests.post")
    def test_invalid_grant(self, mock_post, upstream):
        mock_post.return_value = _response(400, {"error": "invalid_grant"})

        with pytest.raises(UpstreamExchangeError):
            upstream.exchange_code("auth-code", "https://gw.example.com/callback")

    @patch("upstream_exchange.requests.post")
    def test_transport_error(self, mock_post, upstream):
        mock_post.side_effect = requests.exceptions.ConnectionError("refused")

        with pytest.raises(UpstreamExchangeError):
            upstream.exchange_code("auth-code", "https://gw.example.com/callback")
        assert mock_post.call_count == 1

    @patch("upstream_exchange.requests.post")
    def test_missing_access_token(self, mock_post, upstream):
        mock_post.return_value = _response(200, {"refresh_token": "1//refresh"})

        with pytest.raises(UpstreamResponseInvalidError) as exc_info:
            upstream.exchange_code("auth-code", "https://gw.example.com/callback")
        assert exc_info.value.error_description == "Missing access token in upstream response"

    @patch("upstream_exchange.requests.post")
    def test_non_json_body(self, mock_post, upstream):
        mock_post.return_value = _response(200, ValueError("not json"))

        with pytest.raises(UpstreamResponseInvalidError):
            upstream.exchange_code("auth-code", "https://gw.example.com/callback")

    @patch("upstream_exchange.requests.post")
    def test_default_expiry_and_absent_refresh_token(self, mock_post, upstream):
        mock_post.return_value = _response(200, {"access_token": "ya29.access"})

        with patch("upstream_exchange.time.time", return_value=1_000_000):
            tokens = upstream.exchange_code("auth-code", "https://gw.example.com/callback")

        assert tokens.expires_at == 1_003_600
        assert tokens.refresh_token is None


class TestRefresh:
    @patch("upstream_exchange.requests.post")
    def test_refresh_without_rotation(self, mock_post, upstream):
        mock_post.return_value = _response(200, {"access_token": "ya29.new", "expires_in": 3600})

        tokens = upstream.refresh("1//old")

        assert tokens.access_token == "ya29.new"
        assert tokens.refresh_token is None
        assert mock_post.call_args[1]["data"]["grant_type"] == "refresh_token"
        assert mock_post.call_args[1]["data"]["refresh_token"] == "1//old"

    @patch("upstream_exchange.requests.post")
    def test_renew_retains_refresh_token(self, mock_post, upstream):
        mock_post.return_value = _response(200, {"access_token": "ya29.new", "expires_in": 3600})
        current = UpstreamTokenSet(access_token="ya29.old", expires_at=0, refresh_token="1//old")

        renewed = upstream.renew(current)

        assert renewed.access_token == "ya29.new"
        assert renewed.refresh_token == "1//old"

    @patch("upstream_exchange.requests.post")
    def test_renew_takes_rotated_refresh_token(self, mock_post, upstream):
        mock_post.return_value = _response(200, {"access_token": "ya29.new", "refresh_token": "1//new"})
        current = UpstreamTokenSet(access_token="ya29.old", expires_at=0, refresh_token="1//old")

        assert upstream.renew(current).refresh_token == "1//new"

    def test_renew_requires_refresh_token(self, upstream):
        with pytest.raises(InvalidRequestError):
            upstream.renew(UpstreamTokenSet(access_token="ya29.old", expires_at=0))

    def test_retaining(self):
        fresh = UpstreamTokenSet(access_token="a", expires_at=1)

        assert fresh.retaining("1//old").refresh_token == "1//old"
        assert fresh.retaining(None).refresh_token is None


class TestFetchIdentity:
    @patch("upstream_exchange.requests.get")
    def test_email_is_user_id(self, mock_get, upstream):
        mock_get.return_value = _response(200, {"id": "1234", "email": "user@example.com", "name": "User"})

        identity = upstream.fetch_identity("ya29.access")

        assert identity.user_id == "user@example.com"
        assert identity.label == "User"
        assert mock_get.call_args[1]["headers"]["Authorization"] == "Bearer ya29.access"

    @patch("upstream_exchange.requests.get")
    def test_falls_back_to_subject(self, mock_get, upstream):
        mock_get.return_value = _response(200, {"sub": "abc"})
        assert upstream.fetch_identity("ya29.access").user_id == "abc"

    @patch("upstream_exchange.requests.get")
    def test_no_identifier(self, mock_get, upstream):
        mock_get.return_value = _response(200, {"name": "Nobody"})

        with pytest.raises(UpstreamResponseInvalidError):
            upstream.fetch_identity("ya29.access")

    @patch("upstream_exchange.requests.get")
    def test_http_error(self, mock_get, upstream):
        mock_get.return_value = _response(401, text="unauthorized")

        with pytest.raises(UpstreamExchangeError) as exc_info:
            upstream.fetch_identity("ya29.access")
        assert exc_info.value.error_description == "Failed to fetch user info"


class TestConfiguration:
    def test_missing_credentials(self, monkeypatch):
        monkeypatch.delenv("UPSTREAM_CLIENT_ID", raising=False)
        monkeypatch.delenv("UPSTREAM_CLIENT_SECRET", raising=False)

        with pytest.raises(ValueError):
            UpstreamExchange()

    def test_credentials_from_environment(self, monkeypatch):
        monkeypatch.setenv("UPSTREAM_CLIENT_ID", "env-client")
        monkeypatch.setenv("UPSTREAM_CLIENT_SECRET", "env-secret")
        monkeypatch.delenv("UPSTREAM_TOKEN_URL", raising=False)

        upstream = UpstreamExchange()
        assert upstream.client_id == "env-client"
        assert upstream.token_url == "https://oauth2.googleapis.com/token"
