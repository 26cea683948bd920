"""
External Collaborators

Interfaces the gateway consumes but does not own, plus small default
implementations so the HTTP app runs out of the box:

- AuthRequestParser: turns inbound query parameters into an AuthorizationRequest
- ClientDirectory: client metadata for the consent dialog
- ApprovalDialogRenderer: renders the consent dialog HTML
- CompletionSink: receives the validated identity and tokens after callback
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Protocol

from jinja2 import Environment, FileSystemLoader, select_autoescape

from state_store import AuthorizationRequest
from upstream_exchange import UpstreamIdentity, UpstreamTokenSet


@dataclass(frozen=True)
class ClientMetadata:
    """Display information about a registered client."""
    client_id: str
    client_name: str = ""
    client_uri: str = ""
    logo_uri: str = ""
    redirect_uris: List[str] = field(default_factory=list)

    @property
    def display_name(self) -> str:
        return self.client_name or self.client_id


@dataclass(frozen=True)
class ServerInfo:
    """Branding shown on the consent dialog."""
    name: str
    description: str = ""
    logo: str = ""


class AuthRequestParser(Protocol):
    def parse(self, params: Mapping[str, str]) -> AuthorizationRequest:
        ...


class ClientDirectory(Protocol):
    def lookup(self, client_id: str) -> Optional[ClientMetadata]:
        ...


class ApprovalDialogRenderer(Protocol):
    def render(
        self,
        request: AuthorizationRequest,
        csrf_token: str,
        encoded_state: str,
        client: Optional[ClientMetadata]
    ) -> str:
        ...


class CompletionSink(Protocol):
    def complete_authorization(
        self,
        user_id: str,
        identity: UpstreamIdentity,
        tokens: UpstreamTokenSet,
        request: AuthorizationRequest
    ) -> str:
        """Take ownership of identity and tokens; return the redirect target."""
        ...


class QueryAuthRequestParser:
    """Reads a standard OAuth2 authorization request from query parameters."""

    KNOWN_PARAMS = ("client_id", "redirect_uri", "scope", "response_type", "state")

    def parse(self, params: Mapping[str, str]) -> AuthorizationRequest:
        metadata = {k: v for k, v in params.items() if k not in self.KNOWN_PARAMS}
        return AuthorizationRequest(
            client_id=(params.get("client_id") or "").strip(),
            redirect_uri=params.get("redirect_uri", ""),
            scope=params.get("scope", ""),
            response_type=params.get("response_type", "code"),
            state=params.get("state", ""),
            metadata=metadata,
        )


class StaticClientDirectory:
    """Client metadata from configuration (GATEWAY_CLIENTS JSON object)."""

    def __init__(self, clients: Optional[Dict[str, Dict[str, Any]]] = None):
        if clients is None:
            raw = os.getenv("GATEWAY_CLIENTS", "")
            clients = json.loads(raw) if raw else {}
        self.clients = {
            client_id: ClientMetadata(
                client_id=client_id,
                client_name=info.get("client_name", ""),
                client_uri=info.get("client_uri", ""),
                logo_uri=info.get("logo_uri", ""),
                redirect_uris=list(info.get("redirect_uris", [])),
            )
            for client_id, info in clients.items()
        }

    def lookup(self, client_id: str) -> Optional[ClientMetadata]:
        client = self.clients.get(client_id)
        if client is None:
            logging.debug(f"No metadata for client {client_id}")
        return client


class JinjaApprovalDialogRenderer:
    """Renders templates/approval_dialog.html with autoescaping."""

    def __init__(self, server: ServerInfo, action_path: str = "/authorize", template_dir: Optional[Path] = None):
        self.server = server
        self.action_path = action_path
        template_dir = template_dir or Path(__file__).parent / "templates"
        self.jinja_env = Environment(
            loader=FileSystemLoader(str(template_dir)),
            autoescape=select_autoescape(['html', 'xml'])
        )

    def render(
        self,
        request: AuthorizationRequest,
        csrf_token: str,
        encoded_state: str,
        client: Optional[ClientMetadata]
    ) -> str:
        template = self.jinja_env.get_template("approval_dialog.html")
        return template.render(
            server=self.server,
            client=client,
            client_name=client.display_name if client else request.client_id,
            redirect_uri=request.redirect_uri,
            scopes=[s for s in request.scope.split() if s],
            action_path=self.action_path,
            csrf_field="csrf_token",
            csrf_token=csrf_token,
            encoded_state=encoded_state,
        )
