"""
Gateway Configuration

All settings come from environment variables; see GatewayConfig.from_env for
names and defaults.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from upstream_exchange import DEFAULT_AUTHORIZE_URL, DEFAULT_TOKEN_URL, DEFAULT_USERINFO_URL


DEFAULT_SCOPES = " ".join([
    "email",
    "profile",
    "https://www.googleapis.com/auth/drive",
    "https://www.googleapis.com/auth/spreadsheets",
    "https://www.googleapis.com/auth/documents",
])


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


@dataclass
class GatewayConfig:
    """Runtime configuration of the authorization gateway."""
    server_url: str
    cookie_encryption_key: str
    upstream_client_id: str
    upstream_client_secret: str
    upstream_authorize_url: str = DEFAULT_AUTHORIZE_URL
    upstream_token_url: str = DEFAULT_TOKEN_URL
    upstream_userinfo_url: str = DEFAULT_USERINFO_URL
    upstream_scopes: str = DEFAULT_SCOPES
    upstream_timeout: float = 10.0
    redis_url: Optional[str] = None
    state_ttl: int = 600
    csrf_ttl: int = 600
    approval_ttl: int = 2592000
    callback_path: str = "/callback"
    server_name: str = "Authorization Gateway"
    server_description: str = ""
    server_logo: str = ""
    clients: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def __post_init__(self):
        # Ensure no trailing slash
        self.server_url = self.server_url.rstrip('/')
        self.callback_path = self.callback_route

    @property
    def callback_route(self) -> str:
        """Callback path with a leading slash, even if the field was reassigned."""
        return '/' + self.callback_path.lstrip('/')

    @property
    def callback_url(self) -> str:
        return f"{self.server_url.rstrip('/')}{self.callback_route}"

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        """
        Load configuration from the environment.

        Raises:
            ValueError: If a required setting is missing or malformed
        """
        missing = [
            name for name in ("COOKIE_ENCRYPTION_KEY", "UPSTREAM_CLIENT_ID", "UPSTREAM_CLIENT_SECRET")
            if not os.getenv(name)
        ]
        if missing:
            raise ValueError(f"Missing required environment variables: {', '.join(missing)}")

        clients_raw = os.getenv("GATEWAY_CLIENTS", "")
        try:
            clients = json.loads(clients_raw) if clients_raw else {}
        except ValueError as e:
            raise ValueError(f"GATEWAY_CLIENTS is not valid JSON: {e}")

        config = cls(
            server_url=os.getenv("GATEWAY_SERVER_URL", "http://localhost:8080"),
            cookie_encryption_key=os.environ["COOKIE_ENCRYPTION_KEY"],
            upstream_client_id=os.environ["UPSTREAM_CLIENT_ID"],
            upstream_client_secret=os.environ["UPSTREAM_CLIENT_SECRET"],
            upstream_authorize_url=os.getenv("UPSTREAM_AUTHORIZE_URL", DEFAULT_AUTHORIZE_URL),
            upstream_token_url=os.getenv("UPSTREAM_TOKEN_URL", DEFAULT_TOKEN_URL),
            upstream_userinfo_url=os.getenv("UPSTREAM_USERINFO_URL", DEFAULT_USERINFO_URL),
            upstream_scopes=os.getenv("UPSTREAM_SCOPES", DEFAULT_SCOPES),
            upstream_timeout=float(os.getenv("UPSTREAM_TIMEOUT", "10")),
            redis_url=os.getenv("REDIS_URL") or None,
            state_ttl=_env_int("STATE_TTL", 600),
            csrf_ttl=_env_int("CSRF_TTL", 600),
            approval_ttl=_env_int("APPROVAL_TTL", 2592000),
            callback_path=os.getenv("CALLBACK_PATH", "/callback"),
            server_name=os.getenv("GATEWAY_NAME", "Authorization Gateway"),
            server_description=os.getenv("GATEWAY_DESCRIPTION", ""),
            server_logo=os.getenv("GATEWAY_LOGO_URL", ""),
            clients=clients,
        )
        logging.info(f"Gateway configured for server URL: {config.server_url}")
        return config
