"""
Session Binding

Ties a state token to the browser that started the authorization. The bare
`state` echoed by the provider can be replayed into another browser; the
binding cookie, encrypted by this server and only ever set on the initiating
browser, cannot.
"""

import hmac
import logging
from typing import Optional

from cookie_codec import CookieCodec, CookieDecryptError, CookieSpec
from gateway_errors import SessionBindingMismatchError


class SessionBinder:
    """Issues and verifies state-to-browser binding cookies."""

    COOKIE_NAME = "__Host-CONSENTED_STATE"

    def __init__(self, codec: CookieCodec, ttl: int):
        """
        Args:
            codec: Cookie codec
            ttl: Binding lifetime, matching the state store TTL
        """
        self.codec = codec
        self.ttl = ttl

    def bind(self, state_token: str) -> CookieSpec:
        return CookieSpec(
            name=self.COOKIE_NAME,
            value=self.codec.encrypt(state_token, self.ttl),
            max_age=self.ttl,
            same_site="lax",
        )

    def verify(self, cookie_value: Optional[str], callback_state: Optional[str]) -> CookieSpec:
        """
        Check the callback `state` against the binding cookie.

        Returns:
            Clearing cookie so the binding cannot be reused

        Raises:
            SessionBindingMismatchError: Missing, undecryptable or non-matching binding
        """
        if not cookie_value or not callback_state:
            logging.warning("Session binding missing on callback")
            raise SessionBindingMismatchError()

        try:
            bound_token = self.codec.decrypt(cookie_value)
        except CookieDecryptError as e:
            logging.warning(f"Session binding cookie rejected: {e.reason}")
            raise SessionBindingMismatchError()

        if not hmac.compare_digest(bound_token.encode("utf-8"), callback_state.encode("utf-8")):
            logging.warning(f"Session binding mismatch for state {callback_state[:10]}...")
            raise SessionBindingMismatchError()

        return CookieSpec.clear(self.COOKIE_NAME)
