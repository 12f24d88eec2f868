"""
Flask-KeyGate Identity Stores
=============================
- InMemoryIdentityStore: development and tests
- SQLAlchemyIdentityStore: one row per identity, credentials as JSON
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone

from .registry import Identity


class IdentityStore(ABC):
    """Base identity store interface"""

    @abstractmethod
    def get(self, username):
        """Return the Identity for username, or None"""
        pass

    @abstractmethod
    def put(self, identity):
        """Insert or replace an Identity"""
        pass

    @abstractmethod
    def remove_all(self):
        """Delete every identity"""
        pass


class InMemoryIdentityStore(IdentityStore):
    """
    In-memory storage for development only.
    DO NOT USE IN PRODUCTION - data lost on restart.

    Identities are kept serialized so callers never share mutable state
    with the store.
    """

    def __init__(self):
        self.identities = {}
        self._lock = threading.Lock()

    def get(self, username):
        with self._lock:
            data = self.identities.get(username)
        return Identity.from_dict(data) if data else None

    def put(self, identity):
        data = identity.to_dict()
        with self._lock:
            self.identities[identity.username] = data

    def remove_all(self):
        with self._lock:
            self.identities.clear()


class SQLAlchemyIdentityStore(IdentityStore):
    """
    SQLAlchemy-based identity storage.

    Works with a plain SQLAlchemy session or Flask-SQLAlchemy's db.session.
    """

    def __init__(self, session):
        self.session = session
        self._ensure_identity_table()

    def _ensure_identity_table(self):
        """Create identities table"""
        from sqlalchemy import Table, Column, Integer, String, DateTime, JSON, MetaData

        metadata = MetaData()
        self.identities_table = Table(
            'keygate_identities',
            metadata,
            Column('pk', Integer, primary_key=True),
            Column('identity_id', String(64), unique=True, nullable=False),
            Column('username', String(255), unique=True, nullable=False, index=True),
            Column('credentials', JSON, nullable=False),
            Column('created_at', DateTime, nullable=False),
            Column('updated_at', DateTime, nullable=False),
            extend_existing=True
        )

        # Create table if doesn't exist
        metadata.create_all(self.session.get_bind(), checkfirst=True)

    def get(self, username):
        # Exact match: usernames are case-sensitive
        row = self.session.execute(
            self.identities_table.select().where(
                self.identities_table.c.username == username
            )
        ).fetchone()

        if not row:
            return None

        return Identity.from_dict({
            'id': row.identity_id,
            'username': row.username,
            'credentials': row.credentials or [],
        })

    def put(self, identity):
        data = identity.to_dict()
        now = datetime.now(timezone.utc)

        exists = self.session.execute(
            self.identities_table.select().where(
                self.identities_table.c.username == identity.username
            )
        ).fetchone()

        if exists:
            self.session.execute(
                self.identities_table.update().where(
                    self.identities_table.c.username == identity.username
                ).values(
                    credentials=data['credentials'],
                    updated_at=now
                )
            )
        else:
            self.session.execute(
                self.identities_table.insert().values(
                    identity_id=data['id'],
                    username=data['username'],
                    credentials=data['credentials'],
                    created_at=now,
                    updated_at=now
                )
            )
        self.session.commit()

    def remove_all(self):
        self.session.execute(self.identities_table.delete())
        self.session.commit()
