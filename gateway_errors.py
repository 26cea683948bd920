"""
Gateway Errors

Error taxonomy for the authorization gateway. Every failure that can reach an
HTTP client is a GatewayError carrying an OAuth-style error code, a
client-safe description and the HTTP status to answer with.
"""

from typing import Any, Dict, List

from cookie_codec import CookieSpec


class GatewayError(Exception):
    """Authorization gateway protocol error."""

    error = "server_error"
    status_code = 500

    def __init__(self, error_description: str, error: str = None, status_code: int = None):
        self.error_description = error_description
        # Set-Cookie headers to send with the error response
        self.cookies: List[CookieSpec] = []
        if error is not None:
            self.error = error
        if status_code is not None:
            self.status_code = status_code
        super().__init__(f"{self.error}: {error_description}")

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.error, "error_description": self.error_description}


class InvalidRequestError(GatewayError):
    """Malformed or missing client id, form state or callback parameters."""

    error = "invalid_request"
    status_code = 400


class CSRFMismatchError(GatewayError):
    """Consent form CSRF token absent, expired or not matching its cookie."""

    error = "invalid_request"
    status_code = 400

    def __init__(self, error_description: str = "Invalid CSRF token"):
        super().__init__(error_description)


class StateNotFoundError(GatewayError):
    """State token unknown, expired or already consumed."""

    error = "invalid_request"
    status_code = 400

    def __init__(self, error_description: str = "Invalid or expired authorization request"):
        super().__init__(error_description)


class SessionBindingMismatchError(GatewayError):
    """Callback state not bound to this browser."""

    error = "invalid_request"
    status_code = 400

    def __init__(self, error_description: str = "Invalid or expired authorization request"):
        super().__init__(error_description)


class UpstreamExchangeError(GatewayError):
    """Transport or HTTP failure talking to the upstream identity provider."""

    error = "server_error"
    status_code = 502

    def __init__(self, error_description: str = "Upstream identity provider request failed"):
        super().__init__(error_description)


class UpstreamResponseInvalidError(GatewayError):
    """Upstream answered successfully but without a required field."""

    error = "server_error"
    status_code = 502

    def __init__(self, error_description: str = "Invalid response from upstream identity provider"):
        super().__init__(error_description)
