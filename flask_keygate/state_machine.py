"""
Flask-KeyGate Login State Machine
=================================
Drives one login through its session states:

    UNAUTHENTICATED -> PASSWORD_CHECKED -> AUTHENTICATED_SINGLE_FACTOR -> COMPLETE
                                        -> AWAITING_SECOND_FACTOR      -> COMPLETE

The only way to obtain a main session is the COMPLETE transition, which
copies the username into a new record stored under a new token and
invalidates the provisional token in the same step.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Tuple

from .errors import AuthFailed, NotAuthenticated
from .registry import AuthPolicy
from .sessions import AuthSession, AuthStatus, SessionKind

logger = logging.getLogger(__name__)


class LoginState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    PASSWORD_CHECKED = "passwordChecked"
    AUTHENTICATED_SINGLE_FACTOR = "authenticatedSingleFactor"
    AWAITING_SECOND_FACTOR = "awaitingSecondFactor"
    COMPLETE = "complete"


class SessionStateMachine:
    """Login transitions on top of a SessionStore."""

    def __init__(self, store, session_duration: Optional[int] = None):
        self.store = store
        self.session_duration = session_duration

    # ==================== Reading ====================

    def _expired(self, session: AuthSession) -> bool:
        if not self.session_duration:
            return False
        started = session.logged_in_at or session.created_at
        return datetime.now(timezone.utc) - started > timedelta(seconds=self.session_duration)

    def load(self, token: Optional[str]) -> Optional[AuthSession]:
        """Fetch the record for token; expired records are destroyed."""
        session = self.store.get(token) if token else None
        if session is not None and self._expired(session):
            logger.info("Session expired (%s)", session.kind.value)
            self.store.destroy(token)
            return None
        return session

    def state_of(self, session: Optional[AuthSession]) -> LoginState:
        if session is None:
            return LoginState.UNAUTHENTICATED
        if session.is_main:
            return LoginState.COMPLETE
        if session.kind != SessionKind.AUTH:
            return LoginState.UNAUTHENTICATED
        if session.auth_status == AuthStatus.NEED_SECOND_FACTOR:
            return LoginState.AWAITING_SECOND_FACTOR
        if session.password_check_ran:
            return LoginState.PASSWORD_CHECKED
        return LoginState.UNAUTHENTICATED

    def require_state(self, token: Optional[str], expected: LoginState) -> AuthSession:
        session = self.load(token)
        if self.state_of(session) != expected:
            raise AuthFailed()
        return session

    def require_main(self, token: Optional[str]) -> AuthSession:
        session = self.load(token)
        if session is None or not session.is_main:
            raise NotAuthenticated()
        return session

    def save(self, token: str, session: AuthSession) -> None:
        self.store.set(token, session)

    # ==================== Transitions ====================

    def begin(self, token: Optional[str] = None) -> str:
        """Start a new login in a fresh auth session. Returns its token."""
        if token:
            # Whatever was stored under a previous token must not leak into this login
            self.store.destroy(token)
        return self.store.create(AuthSession(kind=SessionKind.AUTH))

    def record_password_check(self, token: str, username: str, passed: bool) -> AuthSession:
        """UNAUTHENTICATED -> PASSWORD_CHECKED, whatever the result."""
        session = self.require_state(token, LoginState.UNAUTHENTICATED)
        session.username = username
        session.password_check_ran = True
        session.password_check_passed = bool(passed)
        self.save(token, session)
        return session

    def apply_policy(self, token: str, policy: AuthPolicy) -> Tuple[LoginState, str]:
        """
        Leave PASSWORD_CHECKED according to the identity's policy.

        Returns the new state and the token that is active afterwards.
        A failed password check on the two-factor path still moves to
        AWAITING_SECOND_FACTOR, so it fails later with the same error an
        unverified assertion produces.
        """
        session = self.require_state(token, LoginState.PASSWORD_CHECKED)

        if policy == AuthPolicy.SINGLE_FACTOR:
            if not session.password_check_passed:
                raise AuthFailed()
            logger.debug("Single-factor login for %s", session.username)
            return LoginState.COMPLETE, self._complete(token, session)

        session.auth_status = AuthStatus.NEED_SECOND_FACTOR
        self.save(token, session)
        return LoginState.AWAITING_SECOND_FACTOR, token

    def second_factor_verified(self, token: str) -> str:
        """AWAITING_SECOND_FACTOR -> COMPLETE. Returns the main session token."""
        session = self.require_state(token, LoginState.AWAITING_SECOND_FACTOR)
        return self._complete(token, session)

    def _complete(self, token: str, session: AuthSession) -> str:
        if not session.username or not session.password_check_passed:
            raise AuthFailed()

        main = AuthSession(
            kind=SessionKind.MAIN,
            username=session.username,
            password_check_ran=True,
            password_check_passed=True,
            auth_status=AuthStatus.COMPLETE,
            logged_in_at=datetime.now(timezone.utc),
        )
        # Raises before the old token is dropped if the new record can't be stored
        new_token = self.store.regenerate(token, main)
        logger.info("Authentication complete for %s", session.username)
        return new_token

    def sign_out(self, token: Optional[str]) -> None:
        if token:
            self.store.destroy(token)
