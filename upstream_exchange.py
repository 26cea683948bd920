"""
Upstream Exchange

Talks to the upstream OAuth2 identity provider (Google by default):
builds the authorization URL, exchanges authorization codes, refreshes access
tokens and looks up the signed-in identity.

Every call is attempted exactly once. Authorization codes are single-use, so a
blind retry after a transient failure could double-spend the code or lose a
grant the provider already completed.
"""

import logging
import os
import time
import urllib.parse
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional

import requests

from gateway_errors import InvalidRequestError, UpstreamExchangeError, UpstreamResponseInvalidError


DEFAULT_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
DEFAULT_TOKEN_URL = "https://oauth2.googleapis.com/token"
DEFAULT_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"


@dataclass(frozen=True)
class UpstreamTokenSet:
    """Tokens returned by one successful exchange or refresh."""
    access_token: str
    expires_at: int
    refresh_token: Optional[str] = None
    scope: str = ""
    token_type: str = "Bearer"

    def retaining(self, previous_refresh_token: Optional[str]) -> "UpstreamTokenSet":
        """
        Keep the prior refresh token when the provider did not rotate it.

        Refresh responses usually omit refresh_token; dropping the old one
        would silently end the ability to refresh.
        """
        if self.refresh_token or not previous_refresh_token:
            return self
        return replace(self, refresh_token=previous_refresh_token)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at,
            "scope": self.scope,
            "token_type": self.token_type,
        }


@dataclass(frozen=True)
class UpstreamIdentity:
    """Signed-in user as reported by the provider's userinfo endpoint."""
    user_id: str
    email: str = ""
    name: str = ""
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def label(self) -> str:
        return self.name or self.email or self.user_id


class UpstreamExchange:
    """
    Client for the upstream provider's authorize, token and userinfo endpoints.
    """

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        authorize_url: Optional[str] = None,
        token_url: Optional[str] = None,
        userinfo_url: Optional[str] = None,
        timeout: Optional[float] = None
    ):
        """
        Args default to the UPSTREAM_* environment variables.

        Raises:
            ValueError: If client credentials are not configured
        """
        self.client_id = client_id or os.getenv("UPSTREAM_CLIENT_ID")
        self.client_secret = client_secret or os.getenv("UPSTREAM_CLIENT_SECRET")
        if not self.client_id or not self.client_secret:
            raise ValueError("UPSTREAM_CLIENT_ID and UPSTREAM_CLIENT_SECRET are required")

        self.authorize_url = authorize_url or os.getenv("UPSTREAM_AUTHORIZE_URL", DEFAULT_AUTHORIZE_URL)
        self.token_url = token_url or os.getenv("UPSTREAM_TOKEN_URL", DEFAULT_TOKEN_URL)
        self.userinfo_url = userinfo_url or os.getenv("UPSTREAM_USERINFO_URL", DEFAULT_USERINFO_URL)
        self.timeout = timeout or float(os.getenv("UPSTREAM_TIMEOUT", "10"))
        logging.info(f"Upstream exchange configured for client {self.client_id[:12]}...")

    # ===== Authorization URL =====

    def build_authorize_url(self, redirect_uri: str, scope: str, state: Optional[str] = None) -> str:
        """
        Build the provider authorization URL.

        Always requests offline access with forced consent so the provider
        issues a refresh token.
        """
        parsed = urllib.parse.urlsplit(self.authorize_url)
        params = dict(urllib.parse.parse_qsl(parsed.query))
        params.update({
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "scope": scope,
            "response_type": "code",
            "access_type": "offline",
            "prompt": "consent",
        })
        if state:
            params["state"] = state
        return urllib.parse.urlunsplit(parsed._replace(query=urllib.parse.urlencode(params)))

    # ===== Token endpoint =====

    def exchange_code(self, code: Optional[str], redirect_uri: str) -> UpstreamTokenSet:
        """
        Exchange an authorization code for tokens.

        Raises:
            InvalidRequestError: If no code was supplied
            UpstreamExchangeError: Transport failure or non-success status
            UpstreamResponseInvalidError: Response lacks an access token
        """
        if not code:
            raise InvalidRequestError("Missing code")

        data = self._post_token({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }, "code exchange")
        tokens = self._parse_token_set(data)
        logging.info("Exchanged authorization code for upstream tokens")
        return tokens

    def refresh(self, refresh_token: str) -> UpstreamTokenSet:
        """
        Obtain a new access token from a refresh token.

        The returned set carries refresh_token=None when the provider did not
        issue a new one; use `UpstreamTokenSet.retaining` to keep the old one.
        """
        if not refresh_token:
            raise InvalidRequestError("Missing refresh_token")

        data = self._post_token({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }, "token refresh")
        tokens = self._parse_token_set(data)
        logging.info(f"Refreshed upstream access token (rotated refresh token: {bool(tokens.refresh_token)})")
        return tokens

    def renew(self, tokens: UpstreamTokenSet) -> UpstreamTokenSet:
        """Refresh `tokens`, carrying their refresh token forward if not rotated."""
        if not tokens.refresh_token:
            raise InvalidRequestError("Token set has no refresh_token")
        return self.refresh(tokens.refresh_token).retaining(tokens.refresh_token)

    def _post_token(self, payload: Dict[str, str], operation: str) -> Dict[str, Any]:
        try:
            response = requests.post(
                self.token_url,
                data=payload,
                headers={"Accept": "application/json"},
                timeout=self.timeout
            )
        except requests.exceptions.RequestException as e:
            logging.error(f"Upstream {operation} failed: {e}")
            raise UpstreamExchangeError()

        if not 200 <= response.status_code < 300:
            # SECURITY: body goes to logs only, never to the client
            logging.error(f"Upstream {operation} returned HTTP {response.status_code}: {response.text[:500]}")
            raise UpstreamExchangeError()

        try:
            data = response.json()
        except ValueError:
            logging.error(f"Upstream {operation} returned a non-JSON body")
            raise UpstreamResponseInvalidError()

        if not isinstance(data, dict):
            raise UpstreamResponseInvalidError()
        return data

    def _parse_token_set(self, data: Dict[str, Any]) -> UpstreamTokenSet:
        access_token = data.get("access_token")
        if not access_token:
            logging.error(f"Upstream token response missing access_token. Present fields: {sorted(data.keys())}")
            raise UpstreamResponseInvalidError("Missing access token in upstream response")

        try:
            expires_in = int(data.get("expires_in", 3600))
        except (TypeError, ValueError):
            logging.error(f"Upstream token response has invalid expires_in: {data.get('expires_in')!r}")
            raise UpstreamResponseInvalidError()

        return UpstreamTokenSet(
            access_token=access_token,
            refresh_token=data.get("refresh_token") or None,
            expires_at=int(time.time()) + expires_in,
            scope=data.get("scope", ""),
            token_type=data.get("token_type", "Bearer"),
        )

    # ===== Identity =====

    def fetch_identity(self, access_token: str) -> UpstreamIdentity:
        """
        Look up the signed-in user.

        Raises:
            UpstreamExchangeError: Transport failure or non-success status
            UpstreamResponseInvalidError: No usable user identifier
        """
        try:
            response = requests.get(
                self.userinfo_url,
                headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
                timeout=self.timeout
            )
        except requests.exceptions.RequestException as e:
            logging.error(f"Upstream userinfo request failed: {e}")
            raise UpstreamExchangeError("Failed to fetch user info")

        if not 200 <= response.status_code < 300:
            logging.error(f"Upstream userinfo returned HTTP {response.status_code}: {response.text[:500]}")
            raise UpstreamExchangeError("Failed to fetch user info")

        try:
            data = response.json()
        except ValueError:
            raise UpstreamResponseInvalidError("Invalid user info response")

        if not isinstance(data, dict):
            raise UpstreamResponseInvalidError("Invalid user info response")

        email = data.get("email") or ""
        user_id = email or data.get("id") or data.get("sub")
        if not user_id:
            logging.error(f"Userinfo response without email or id. Present fields: {sorted(data.keys())}")
            raise UpstreamResponseInvalidError("Invalid user info response")

        return UpstreamIdentity(user_id=str(user_id), email=email, name=data.get("name") or "", raw=data)
