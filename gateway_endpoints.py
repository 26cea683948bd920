"""
Authorization Gateway Endpoints

Implements the two-leg authorization flow in front of the upstream provider:
- GET /authorize: auto-approve known clients or show the consent dialog
- POST /authorize: consent form submission
- GET /callback: provider callback, code exchange and downstream hand-off

Handlers are transport-neutral: they take plain mappings of parameters and
cookies and return a GatewayResponse that server.py turns into a Starlette
response. Failures are raised as GatewayError.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import List, Mapping, Optional

from approval_registry import ApprovalRegistry
from audit_logger import AuditAction, AuditLogger, AuditSeverity, get_audit_logger
from collaborators import (
    ApprovalDialogRenderer,
    AuthRequestParser,
    ClientDirectory,
    CompletionSink,
    JinjaApprovalDialogRenderer,
    QueryAuthRequestParser,
    ServerInfo,
    StaticClientDirectory,
)
from cookie_codec import CookieCodec, CookieDecryptError, CookieSpec
from csrf_guard import CSRFGuard
from gateway_config import GatewayConfig
from gateway_errors import (
    GatewayError,
    InvalidRequestError,
    SessionBindingMismatchError,
    StateNotFoundError,
)
from session_binding import SessionBinder
from state_store import (
    AuthorizationRequest,
    InMemoryStateBackend,
    RedisStateBackend,
    StateBackend,
    StateStore,
)
from upstream_exchange import UpstreamExchange


@dataclass
class GatewayResponse:
    """Transport-neutral HTTP response produced by a gateway handler."""
    status_code: int
    location: Optional[str] = None
    body: str = ""
    media_type: str = "text/plain"
    cookies: List[CookieSpec] = field(default_factory=list)


class GatewayEndpoints:
    """
    Authorization gateway handlers.

    Wires the CSRF guard, state store, session binder, approval registry and
    upstream exchange into the authorize and callback legs.
    """

    STATE_FIELD = "state"

    def __init__(
        self,
        config: GatewayConfig,
        completion_sink: CompletionSink,
        state_backend: Optional[StateBackend] = None,
        upstream: Optional[UpstreamExchange] = None,
        request_parser: Optional[AuthRequestParser] = None,
        client_directory: Optional[ClientDirectory] = None,
        renderer: Optional[ApprovalDialogRenderer] = None,
        audit_logger: Optional[AuditLogger] = None
    ):
        """
        Initialize gateway endpoints.

        Args:
            config: Gateway configuration
            completion_sink: Downstream receiver of identity and tokens
            state_backend: Pending-request storage (Redis if configured, else in-memory)
            upstream: Upstream provider client
            request_parser: Parses inbound authorize requests
            client_directory: Client metadata for the consent dialog
            renderer: Consent dialog renderer
            audit_logger: Audit event sink
        """
        self.config = config
        self.completion_sink = completion_sink

        self.codec = CookieCodec(config.cookie_encryption_key)
        self.csrf_guard = CSRFGuard(self.codec, ttl=config.csrf_ttl)
        self.state_store = StateStore(state_backend or self._default_backend(config), ttl=config.state_ttl)
        self.session_binder = SessionBinder(self.codec, ttl=config.state_ttl)
        self.approval_registry = ApprovalRegistry(self.codec, ttl=config.approval_ttl)

        self.upstream = upstream or UpstreamExchange(
            client_id=config.upstream_client_id,
            client_secret=config.upstream_client_secret,
            authorize_url=config.upstream_authorize_url,
            token_url=config.upstream_token_url,
            userinfo_url=config.upstream_userinfo_url,
            timeout=config.upstream_timeout
        )
        self.request_parser = request_parser or QueryAuthRequestParser()
        self.client_directory = client_directory or StaticClientDirectory(config.clients)
        self.renderer = renderer or JinjaApprovalDialogRenderer(
            ServerInfo(
                name=config.server_name,
                description=config.server_description,
                logo=config.server_logo,
            )
        )
        self.audit = audit_logger or get_audit_logger()

        logging.info("Authorization gateway endpoints initialized")

    @staticmethod
    def _default_backend(config: GatewayConfig) -> StateBackend:
        if config.redis_url:
            return RedisStateBackend(redis_url=config.redis_url)
        logging.warning("REDIS_URL not set - using in-memory state storage (single instance only)")
        return InMemoryStateBackend()

    # ===== Authorize leg =====

    def handle_authorize(
        self,
        params: Mapping[str, str],
        cookies: Mapping[str, str],
        source_ip: Optional[str] = None,
        user_agent: Optional[str] = None
    ) -> GatewayResponse:
        """
        Handle GET /authorize.

        Returns:
            302 to the provider for an already-approved client, otherwise
            200 with the consent dialog and a CSRF cookie

        Raises:
            InvalidRequestError: If the request has no client_id
        """
        auth_req = self.request_parser.parse(params)
        if not auth_req.client_id:
            raise InvalidRequestError("Invalid request")

        approved_cookie = cookies.get(ApprovalRegistry.COOKIE_NAME)
        if self.approval_registry.is_approved(approved_cookie, auth_req.client_id):
            logging.info(f"Client {auth_req.client_id} previously approved, skipping consent")
            self.audit.log_event(
                "authorize_auto_approved", AuditSeverity.LOW, AuditAction.AUTHORIZE, "success",
                client_id=auth_req.client_id, source_ip=source_ip, user_agent=user_agent
            )
            return self._redirect_upstream(auth_req)

        challenge = self.csrf_guard.issue()
        html = self.renderer.render(
            auth_req,
            challenge.token,
            self.encode_form_state(auth_req),
            self.client_directory.lookup(auth_req.client_id)
        )
        self.audit.log_event(
            "consent_dialog_shown", AuditSeverity.LOW, AuditAction.AUTHORIZE, "success",
            client_id=auth_req.client_id, source_ip=source_ip, user_agent=user_agent
        )
        return GatewayResponse(status_code=200, body=html, media_type="text/html", cookies=[challenge.cookie])

    def handle_authorize_submit(
        self,
        form: Mapping[str, str],
        cookies: Mapping[str, str],
        source_ip: Optional[str] = None,
        user_agent: Optional[str] = None
    ) -> GatewayResponse:
        """
        Handle POST /authorize (user approved the client).

        Raises:
            CSRFMismatchError: CSRF form field and cookie disagree
            InvalidRequestError: Form state missing or undecodable
        """
        try:
            clear_csrf = self.csrf_guard.validate(
                form.get(CSRFGuard.FORM_FIELD),
                cookies.get(CSRFGuard.COOKIE_NAME)
            )
        except GatewayError as e:
            self.audit.log_event(
                "consent_csrf_rejected", AuditSeverity.HIGH, AuditAction.CONSENT, "failure",
                status_code=e.status_code, source_ip=source_ip, user_agent=user_agent
            )
            raise

        auth_req = self.decode_form_state(form.get(self.STATE_FIELD))

        approval_cookie = self.approval_registry.add(
            cookies.get(ApprovalRegistry.COOKIE_NAME),
            auth_req.client_id
        )
        self.audit.log_event(
            "consent_granted", AuditSeverity.MEDIUM, AuditAction.CONSENT, "success",
            client_id=auth_req.client_id, source_ip=source_ip, user_agent=user_agent
        )

        response = self._redirect_upstream(auth_req)
        response.cookies = [approval_cookie, clear_csrf] + response.cookies
        return response

    def _redirect_upstream(self, auth_req: AuthorizationRequest) -> GatewayResponse:
        state_token = self.state_store.create(auth_req)
        binding_cookie = self.session_binder.bind(state_token)
        location = self.upstream.build_authorize_url(
            redirect_uri=self.config.callback_url,
            scope=self.config.upstream_scopes,
            state=state_token
        )
        return GatewayResponse(status_code=302, location=location, cookies=[binding_cookie])

    def encode_form_state(self, auth_req: AuthorizationRequest) -> str:
        """Seal the pending request into the consent form's hidden field."""
        return self.codec.encrypt(json.dumps(auth_req.to_dict()), self.csrf_guard.ttl)

    def decode_form_state(self, encoded: Optional[str]) -> AuthorizationRequest:
        if not encoded:
            raise InvalidRequestError("Missing state in form data")

        try:
            auth_req = AuthorizationRequest.from_dict(json.loads(self.codec.decrypt(encoded)))
        except CookieDecryptError as e:
            logging.warning(f"Consent form state rejected: {e.reason}")
            raise InvalidRequestError("Invalid state data")
        except (ValueError, KeyError, TypeError) as e:
            logging.warning(f"Consent form state undecodable: {e}")
            raise InvalidRequestError("Invalid state data")

        if not auth_req.client_id:
            raise InvalidRequestError("Invalid request")
        return auth_req

    # ===== Callback leg =====

    def handle_callback(
        self,
        params: Mapping[str, str],
        cookies: Mapping[str, str],
        source_ip: Optional[str] = None,
        user_agent: Optional[str] = None
    ) -> GatewayResponse:
        """
        Handle GET /callback from the upstream provider.

        Verifies the session binding, consumes the pending request, exchanges
        the code, fetches the identity and hands everything to the sink.
        Once the pending request is consumed, every outcome clears the
        binding cookie, errors included.

        Raises:
            InvalidRequestError: Bad parameters, or state/binding rejected
            UpstreamExchangeError: Provider unreachable or returned an error
            UpstreamResponseInvalidError: Provider response missing required fields
        """
        state_token = params.get("state")
        if not state_token:
            raise InvalidRequestError("Missing state parameter")

        try:
            clear_binding = self.session_binder.verify(
                cookies.get(SessionBinder.COOKIE_NAME),
                state_token
            )
            auth_req = self.state_store.consume(state_token)
        except (SessionBindingMismatchError, StateNotFoundError) as e:
            # SECURITY: one generic answer for both defenses
            logging.warning(f"Callback rejected ({type(e).__name__}) for state {state_token[:10]}...")
            self.audit.log_event(
                "callback_state_rejected", AuditSeverity.HIGH, AuditAction.CALLBACK, "failure",
                status_code=400, source_ip=source_ip, user_agent=user_agent,
                additional_safe_fields={"reason": type(e).__name__}
            )
            raise InvalidRequestError("Invalid or expired authorization request")

        upstream_error = params.get("error")
        if upstream_error:
            logging.warning(f"Upstream returned error on callback: {upstream_error}")
            self.audit.log_event(
                "callback_upstream_denied", AuditSeverity.MEDIUM, AuditAction.CALLBACK, "failure",
                client_id=auth_req.client_id, status_code=400, source_ip=source_ip, user_agent=user_agent
            )
            error = InvalidRequestError("Authorization was not granted by the identity provider")
            error.cookies.append(clear_binding)
            raise error

        try:
            tokens = self.upstream.exchange_code(params.get("code"), self.config.callback_url)
            identity = self.upstream.fetch_identity(tokens.access_token)
        except GatewayError as e:
            self.audit.log_event(
                "callback_upstream_failed", AuditSeverity.HIGH, AuditAction.CALLBACK, "failure",
                client_id=auth_req.client_id, status_code=e.status_code,
                error_message=e.error_description, source_ip=source_ip, user_agent=user_agent
            )
            e.cookies.append(clear_binding)
            raise

        redirect_to = self.completion_sink.complete_authorization(
            identity.user_id,
            identity,
            tokens,
            auth_req
        )

        logging.info(f"Authorization completed for client {auth_req.client_id}, user {identity.user_id}")
        self.audit.log_event(
            "authorization_completed", AuditSeverity.MEDIUM, AuditAction.CALLBACK, "success",
            client_id=auth_req.client_id, user_id=identity.user_id, status_code=302,
            source_ip=source_ip, user_agent=user_agent
        )
        return GatewayResponse(status_code=302, location=redirect_to, cookies=[clear_binding])
