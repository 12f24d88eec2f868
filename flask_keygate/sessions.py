"""
Flask-KeyGate Session Store
===========================
Server-held session records keyed by an opaque bearer token.

Two kinds of record exist for one login: a provisional "auth" session that
carries the password-check result, and the "main" session that replaces it
once authentication is complete.
"""

from __future__ import annotations

import secrets
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from .challenge import PendingChallenge


class SessionKind(str, Enum):
    AUTH = "auth"
    MAIN = "main"


class AuthStatus(str, Enum):
    NONE = "none"
    NEED_SECOND_FACTOR = "needSecondFactor"
    COMPLETE = "complete"


@dataclass
class AuthSession:
    kind: SessionKind = SessionKind.AUTH
    username: Optional[str] = None
    password_check_ran: bool = False
    password_check_passed: bool = False
    auth_status: AuthStatus = AuthStatus.NONE
    pending_challenge: Optional[PendingChallenge] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    logged_in_at: Optional[datetime] = None

    @property
    def is_main(self) -> bool:
        return self.kind == SessionKind.MAIN and self.auth_status == AuthStatus.COMPLETE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "username": self.username,
            "passwordCheckRan": self.password_check_ran,
            "passwordCheckPassed": self.password_check_passed,
            "authStatus": self.auth_status.value,
            "pendingChallenge": self.pending_challenge.to_dict() if self.pending_challenge else None,
            "createdAt": self.created_at.isoformat(),
            "loggedInAt": self.logged_in_at.isoformat() if self.logged_in_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuthSession":
        pending = data.get("pendingChallenge")
        logged_in_at = data.get("loggedInAt")
        return cls(
            kind=SessionKind(data["kind"]),
            username=data.get("username"),
            password_check_ran=data.get("passwordCheckRan", False),
            password_check_passed=data.get("passwordCheckPassed", False),
            auth_status=AuthStatus(data.get("authStatus", AuthStatus.NONE.value)),
            pending_challenge=PendingChallenge.from_dict(pending) if pending else None,
            created_at=datetime.fromisoformat(data["createdAt"]),
            logged_in_at=datetime.fromisoformat(logged_in_at) if logged_in_at else None,
        )


def generate_token() -> str:
    return secrets.token_urlsafe(32)


class SessionStore(ABC):
    """Base session store interface"""

    @abstractmethod
    def get(self, token):
        """Return the AuthSession stored under token, or None"""
        pass

    @abstractmethod
    def set(self, token, session):
        """Store session under token, replacing any previous record"""
        pass

    @abstractmethod
    def regenerate(self, old_token, session):
        """
        Store session under a fresh token and invalidate old_token.

        Must be atomic: if storing the new record fails, old_token keeps
        its record. Returns the new token.
        """
        pass

    @abstractmethod
    def destroy(self, token):
        """Remove the record stored under token"""
        pass

    def create(self, session):
        token = generate_token()
        self.set(token, session)
        return token


class InMemorySessionStore(SessionStore):
    """
    In-memory session storage for development only.
    DO NOT USE IN PRODUCTION - sessions lost on restart.
    """

    def __init__(self):
        self.sessions = {}
        self._lock = threading.RLock()

    def _write(self, token, session):
        self.sessions[token] = session.to_dict()

    def get(self, token):
        if not token:
            return None
        with self._lock:
            data = self.sessions.get(token)
        return AuthSession.from_dict(data) if data else None

    def set(self, token, session):
        with self._lock:
            self._write(token, session)

    def regenerate(self, old_token, session):
        new_token = generate_token()
        with self._lock:
            # Write first: a failure leaves the old record in place
            self._write(new_token, session)
            self.sessions.pop(old_token, None)
        return new_token

    def destroy(self, token):
        with self._lock:
            self.sessions.pop(token, None)
