"""
CSRF Guard

Double-submit CSRF protection for the consent form. The same random token is
rendered into the form and set in a cookie; a submission is honoured only if
both channels carry it. The cookie copy is encrypted with the CookieCodec, so
its expiry is enforced without any server-side storage.
"""

import hmac
import logging
import os
import secrets
from dataclasses import dataclass
from typing import Optional

from cookie_codec import CookieCodec, CookieDecryptError, CookieSpec
from gateway_errors import CSRFMismatchError


@dataclass(frozen=True)
class CSRFChallenge:
    """CSRF token for the form plus the cookie that must accompany it."""
    token: str
    cookie: CookieSpec


class CSRFGuard:
    """Issues and validates one-time double-submit tokens."""

    COOKIE_NAME = "__Host-CSRF_TOKEN"
    FORM_FIELD = "csrf_token"
    DEFAULT_TTL = 600  # 10 minutes

    def __init__(self, codec: CookieCodec, ttl: Optional[int] = None):
        self.codec = codec
        self.ttl = ttl or int(os.getenv("CSRF_TTL", str(self.DEFAULT_TTL)))

    def issue(self) -> CSRFChallenge:
        token = secrets.token_urlsafe(32)
        cookie = CookieSpec(
            name=self.COOKIE_NAME,
            value=self.codec.encrypt(token, self.ttl),
            max_age=self.ttl,
            same_site="lax",
        )
        return CSRFChallenge(token=token, cookie=cookie)

    def validate(self, form_value: Optional[str], cookie_value: Optional[str]) -> CookieSpec:
        """
        Validate a consent form submission.

        Args:
            form_value: Token from the hidden form field
            cookie_value: Raw CSRF cookie value

        Returns:
            Clearing cookie; emitting it makes the token single-use

        Raises:
            CSRFMismatchError: On any absence, expiry, tampering or mismatch
        """
        if not form_value or not cookie_value:
            logging.warning("CSRF validation failed: token missing from form or cookie")
            raise CSRFMismatchError()

        try:
            expected = self.codec.decrypt(cookie_value)
        except CookieDecryptError as e:
            logging.warning(f"CSRF validation failed: cookie {e.reason}")
            raise CSRFMismatchError()

        if not hmac.compare_digest(expected.encode("utf-8"), form_value.encode("utf-8")):
            logging.warning("CSRF validation failed: form token does not match cookie")
            raise CSRFMismatchError()

        return CookieSpec.clear(self.COOKIE_NAME)
