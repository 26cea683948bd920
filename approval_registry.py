"""
Approval Registry

Remembers, per browser, which clients the user has already approved. The
browser is the system of record: the set lives in an encrypted cookie and is
trusted only as far as the authentication tag vouches for it. Any decryption
failure reads as "nothing approved".
"""

import json
import logging
import os
from typing import FrozenSet, Optional

from cookie_codec import CookieCodec, CookieSpec
from gateway_errors import InvalidRequestError


class ApprovalRegistry:
    """Encrypted, cookie-held set of approved client IDs."""

    COOKIE_NAME = "__Host-APPROVED_CLIENTS"
    DEFAULT_TTL = 2592000  # 30 days

    def __init__(self, codec: CookieCodec, ttl: Optional[int] = None):
        self.codec = codec
        self.ttl = ttl or int(os.getenv("APPROVAL_TTL", str(self.DEFAULT_TTL)))

    def approved_clients(self, cookie_value: Optional[str]) -> FrozenSet[str]:
        plaintext = self.codec.try_decrypt(cookie_value)
        if plaintext is None:
            return frozenset()

        try:
            client_ids = json.loads(plaintext)
        except ValueError:
            logging.warning("Approved clients cookie held invalid JSON")
            return frozenset()

        if not isinstance(client_ids, list):
            return frozenset()
        return frozenset(c for c in client_ids if isinstance(c, str) and c)

    def is_approved(self, cookie_value: Optional[str], client_id: str) -> bool:
        if not client_id:
            return False
        return client_id in self.approved_clients(cookie_value)

    def add(self, cookie_value: Optional[str], client_id: str) -> CookieSpec:
        """
        Record an approval.

        Returns:
            Replacement cookie holding the enlarged set with a refreshed expiry
        """
        if not client_id:
            raise InvalidRequestError("Missing client_id")

        approved = self.approved_clients(cookie_value) | {client_id}
        payload = json.dumps(sorted(approved))
        logging.info(f"Recorded approval for client {client_id} ({len(approved)} approved)")
        return CookieSpec(
            name=self.COOKIE_NAME,
            value=self.codec.encrypt(payload, self.ttl),
            max_age=self.ttl,
            same_site="lax",
        )
