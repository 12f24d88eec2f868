"""
Flask-KeyGate Challenge Broker
==============================
One-time WebAuthn challenges owned by the session record.

- Server-generated: random bytes, base64url without padding
- Single outstanding challenge per session: issuing replaces the previous one
- Single-use: consume() clears the challenge before anything is verified,
  so a challenge is checked at most once even when verification fails
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional

from webauthn.helpers import bytes_to_base64url

from .errors import NoPendingChallenge

logger = logging.getLogger(__name__)

MIN_CHALLENGE_BYTES = 16


class ChallengePurpose(str, Enum):
    REGISTRATION = "registration"
    ASSERTION = "assertion"


@dataclass(frozen=True)
class PendingChallenge:
    challenge: str
    bound_to: str
    purpose: ChallengePurpose
    issued_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "challenge": self.challenge,
            "boundTo": self.bound_to,
            "purpose": self.purpose.value,
            "issuedAt": self.issued_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingChallenge":
        return cls(
            challenge=data["challenge"],
            bound_to=data["boundTo"],
            purpose=ChallengePurpose(data["purpose"]),
            issued_at=datetime.fromisoformat(data["issuedAt"]),
        )


class ChallengeBroker:
    """Issues and consumes the pending challenge of a session record."""

    def __init__(self, challenge_bytes: int = 32, max_age: Optional[int] = None):
        if challenge_bytes < MIN_CHALLENGE_BYTES:
            raise ValueError(f"challenge_bytes must be at least {MIN_CHALLENGE_BYTES}")
        self.challenge_bytes = int(challenge_bytes)
        self.max_age = max_age

    def issue(self, session, purpose: ChallengePurpose, bound_to: str) -> str:
        """
        Generate a fresh challenge and make it the session's only pending one.

        Returns the base64url challenge to embed in the client options.
        """
        challenge = bytes_to_base64url(os.urandom(self.challenge_bytes))
        session.pending_challenge = PendingChallenge(
            challenge=challenge,
            bound_to=bound_to,
            purpose=ChallengePurpose(purpose),
            issued_at=datetime.now(timezone.utc),
        )
        return challenge

    def consume(self, session, purpose: ChallengePurpose) -> PendingChallenge:
        """
        Take the pending challenge out of the session.

        The session field is cleared first, whatever happens next.
        """
        pending = session.pending_challenge
        session.pending_challenge = None

        if pending is None:
            raise NoPendingChallenge()

        if pending.purpose != ChallengePurpose(purpose):
            logger.info("Discarded %s challenge presented for %s", pending.purpose.value, purpose)
            raise NoPendingChallenge()

        if self.max_age is not None:
            age = datetime.now(timezone.utc) - pending.issued_at
            if age > timedelta(seconds=self.max_age):
                logger.info("Discarded stale %s challenge", pending.purpose.value)
                raise NoPendingChallenge()

        return pending
