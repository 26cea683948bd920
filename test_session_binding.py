"""
Tests for binding state tokens to the initiating browser.
"""

import pytest

from cookie_codec import CookieCodec
from gateway_errors import SessionBindingMismatchError
from session_binding import SessionBinder
from state_store import AuthorizationRequest, InMemoryStateBackend, StateStore


@pytest.fixture
def binder():
    return SessionBinder(CookieCodec("test-cookie-secret"), ttl=600)


class TestSessionBinder:
    """Test bind/verify of the consented-state cookie."""

    def test_bind_cookie_attributes(self, binder):
        cookie = binder.bind("state-token")

        assert cookie.name == "__Host-CONSENTED_STATE"
        assert cookie.max_age == 600
        assert cookie.secure and cookie.http_only
        assert cookie.path == "/"
        assert "state-token" not in cookie.value

    def test_matching_state_accepted(self, binder):
        cookie = binder.bind("state-token")
        clear = binder.verify(cookie.value, "state-token")

        assert clear.name == "__Host-CONSENTED_STATE"
        assert clear.is_clearing

    def test_other_valid_state_rejected(self, binder):
        """A live token from someone else's flow does not match this browser's binding."""
        store = StateStore(InMemoryStateBackend(), ttl=600)
        mine = store.create(AuthorizationRequest(client_id="client-a"))
        theirs = store.create(AuthorizationRequest(client_id="client-a"))

        with pytest.raises(SessionBindingMismatchError):
            binder.verify(binder.bind(mine).value, theirs)

    def test_missing_cookie_rejected(self, binder):
        with pytest.raises(SessionBindingMismatchError):
            binder.verify(None, "state-token")

    def test_missing_state_rejected(self, binder):
        with pytest.raises(SessionBindingMismatchError):
            binder.verify(binder.bind("state-token").value, None)

    def test_tampered_cookie_rejected(self, binder):
        value = binder.bind("state-token").value
        tampered = value[:-2] + ("AA" if not value.endswith("AA") else "BB")

        with pytest.raises(SessionBindingMismatchError):
            binder.verify(tampered, "state-token")

    def test_cookie_from_other_key_rejected(self, binder):
        other = SessionBinder(CookieCodec("other-secret"), ttl=600)

        with pytest.raises(SessionBindingMismatchError):
            binder.verify(other.bind("state-token").value, "state-token")

    def test_expired_binding_rejected(self):
        binder = SessionBinder(CookieCodec("test-cookie-secret"), ttl=-1)

        with pytest.raises(SessionBindingMismatchError):
            binder.verify(binder.bind("state-token").value, "state-token")
