"""
Flask-KeyGate Credential Registry
=================================
Per-identity set of registered public-key credentials, and the
authentication policy derived from it.
"""

from __future__ import annotations

import logging
import os
import threading
import weakref
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from webauthn.helpers import bytes_to_base64url

from .errors import CredentialNotFound, DuplicateCredential

logger = logging.getLogger(__name__)


class AuthPolicy(str, Enum):
    SINGLE_FACTOR = "sfa"
    TWO_FACTOR = "2fa"


def _now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


@dataclass
class Credential:
    cred_id: str
    public_key: str
    name: str = ""
    transports: Set[str] = field(default_factory=set)
    is_resident_key: Optional[bool] = None
    creation_date: int = field(default_factory=_now_ms)
    sign_count: int = 0

    def descriptor(self) -> Dict[str, Any]:
        """Shape used in allow/exclude lists sent to the client."""
        return {
            "id": self.cred_id,
            "type": "public-key",
            "transports": sorted(self.transports),
        }

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "credId": self.cred_id,
            "publicKey": self.public_key,
            "name": self.name,
            "transports": sorted(self.transports),
            "creationDate": self.creation_date,
            "signCount": self.sign_count,
        }
        if self.is_resident_key is not None:
            data["isResidentKey"] = self.is_resident_key
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Credential":
        return cls(
            cred_id=data["credId"],
            public_key=data["publicKey"],
            name=data.get("name") or "",
            transports=set(data.get("transports") or []),
            is_resident_key=data.get("isResidentKey"),
            creation_date=data.get("creationDate") or _now_ms(),
            sign_count=data.get("signCount") or 0,
        )


@dataclass
class Identity:
    id: str
    username: str
    credentials: List[Credential] = field(default_factory=list)

    @classmethod
    def new(cls, username: str) -> "Identity":
        return cls(id=bytes_to_base64url(os.urandom(32)), username=username)

    def find(self, cred_id: str) -> Optional[Credential]:
        for cred in self.credentials:
            if cred.cred_id == cred_id:
                return cred
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "credentials": [c.to_dict() for c in self.credentials],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Identity":
        return cls(
            id=data["id"],
            username=data["username"],
            credentials=[Credential.from_dict(c) for c in data.get("credentials") or []],
        )


class CredentialRegistry:
    """
    Credential bookkeeping on top of an identity store.

    Every mutation re-reads the identity from the store, applies the change
    and writes it back while holding that identity's lock, so concurrent
    writers on one identity are serialized and different identities never
    contend.
    """

    def __init__(self, store):
        self.store = store
        # Entries vanish once no caller holds the lock, so provisioning on
        # first use does not grow this table without bound
        self._locks = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def _lock_for(self, username: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(username)
            if lock is None:
                lock = self._locks[username] = threading.Lock()
            return lock

    # ==================== Identities ====================

    def find_identity(self, username: str) -> Optional[Identity]:
        return self.store.get(username)

    def resolve_identity(self, username: str) -> Identity:
        """Case-sensitive lookup; provisions a new identity on first use."""
        with self._lock_for(username):
            identity = self.store.get(username)
            if identity is None:
                identity = Identity.new(username)
                self.store.put(identity)
                logger.info("Provisioned identity %s", identity.id)
            return identity

    def policy_for(self, identity: Identity) -> AuthPolicy:
        # A registered credential is by definition a configured second factor
        if identity.credentials:
            return AuthPolicy.TWO_FACTOR
        return AuthPolicy.SINGLE_FACTOR

    def reset(self) -> None:
        self.store.remove_all()

    # ==================== Credentials ====================

    def find_credential(self, identity: Identity, cred_id: str) -> Optional[Credential]:
        current = self.store.get(identity.username) or identity
        return current.find(cred_id)

    def add_credential(self, identity: Identity, credential: Credential) -> Identity:
        """Append a credential; raises DuplicateCredential if the id is taken."""
        with self._lock_for(identity.username):
            current = self.store.get(identity.username) or identity
            if current.find(credential.cred_id) is not None:
                raise DuplicateCredential()
            current.credentials.append(credential)
            self.store.put(current)
            return current

    def remove_credential(self, identity: Identity, cred_id: str) -> Identity:
        """Remove a credential by id. Unknown ids are ignored."""
        with self._lock_for(identity.username):
            current = self.store.get(identity.username) or identity
            remaining = [c for c in current.credentials if c.cred_id != cred_id]
            if len(remaining) != len(current.credentials):
                current.credentials = remaining
                self.store.put(current)
            return current

    def rename_credential(self, identity: Identity, cred_id: str, new_name: str) -> Identity:
        with self._lock_for(identity.username):
            current = self.store.get(identity.username) or identity
            cred = current.find(cred_id)
            if cred is None:
                raise CredentialNotFound()
            cred.name = new_name or ""
            self.store.put(current)
            return current

    def update_sign_count(self, identity: Identity, cred_id: str, sign_count: int) -> Identity:
        with self._lock_for(identity.username):
            current = self.store.get(identity.username) or identity
            cred = current.find(cred_id)
            if cred is None:
                raise CredentialNotFound()
            cred.sign_count = sign_count
            self.store.put(current)
            return current
