"""
Auth state for the client: the bearer token handed out by the external
identity provider, plus the "unauthorized" flag that asks the UI to show a
sign-in prompt after the backend rejected the token.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace

from byomchat.client.observable import Observable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthState:
    access_token: str | None = None
    user: dict | None = None
    # True after a 401 until the UI consumes it
    unauthorized: bool = False

    @property
    def signed_in(self) -> bool:
        return self.access_token is not None


class AuthStore(Observable):
    def __init__(self, access_token: str | None = None, user: dict | None = None):
        super().__init__()
        self._state = AuthState(access_token=access_token, user=user)

    def snapshot(self) -> AuthState:
        return self._state

    @property
    def access_token(self) -> str | None:
        return self._state.access_token

    def set_session(self, access_token: str, user: dict | None = None):
        self._state = AuthState(access_token=access_token, user=user)
        self._emit()

    def sign_out(self):
        self._state = AuthState()
        self._emit()

    def auth_header(self) -> dict:
        token = self._state.access_token
        return {"Authorization": f"Bearer {token}"} if token else {}

    def handle_unauthorized(self):
        """Drop the credential and raise the sign-in flag."""
        logger.info("Credential rejected by backend, signing out")
        self._state = AuthState(unauthorized=True)
        self._emit()

    def consume_unauthorized_flag(self) -> bool:
        """Clear the flag; returns whether it was set."""
        if not self._state.unauthorized:
            return False
        self._state = replace(self._state, unauthorized=False)
        self._emit()
        return True
