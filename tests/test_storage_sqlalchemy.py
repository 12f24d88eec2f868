"""
SQLAlchemy identity store tests for Flask-KeyGate.
"""

import pytest
from flask import Flask
from flask_sqlalchemy import SQLAlchemy

from flask_keygate import KeyGate
from flask_keygate.registry import AuthPolicy, CredentialRegistry, Identity
from flask_keygate.storage import SQLAlchemyIdentityStore

from conftest import CRED_ID, OTHER_CRED_ID, XHR, check_password, make_credential


@pytest.fixture
def db_app(base_config, verifier):
    """Flask app with SQLAlchemy database."""
    app = Flask(__name__)
    app.config.update(base_config)
    app.config['SQLALCHEMY_DATABASE_URI'] = 'sqlite:///:memory:'
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False

    db = SQLAlchemy(app)

    with app.app_context():
        # Initialize KeyGate with the SQLAlchemy identity store
        store = SQLAlchemyIdentityStore(db.session)
        KeyGate(app, identity_store=store, password_checker=check_password, verifier=verifier)

        app.db = db
        app.store = store

    yield app

    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def db_client(db_app):
    return db_app.test_client()


@pytest.mark.integration
class TestSQLAlchemyIdentityStore:
    def test_get_missing(self, db_app):
        with db_app.app_context():
            assert db_app.store.get("real@example.com") is None

    def test_put_and_get(self, db_app):
        with db_app.app_context():
            identity = Identity.new("real@example.com")
            identity.credentials.append(make_credential(name="Laptop", is_resident_key=True))
            db_app.store.put(identity)

            loaded = db_app.store.get("real@example.com")

        assert loaded.id == identity.id
        cred = loaded.find(CRED_ID)
        assert cred.name == "Laptop"
        assert cred.transports == {"usb"}
        assert cred.is_resident_key is True

    def test_put_updates_credentials(self, db_app):
        with db_app.app_context():
            identity = Identity.new("real@example.com")
            db_app.store.put(identity)

            identity.credentials.append(make_credential())
            identity.credentials.append(make_credential(OTHER_CRED_ID))
            db_app.store.put(identity)

            loaded = db_app.store.get("real@example.com")

        assert [c.cred_id for c in loaded.credentials] == [CRED_ID, OTHER_CRED_ID]
        assert loaded.id == identity.id

    def test_usernames_are_case_sensitive(self, db_app):
        with db_app.app_context():
            db_app.store.put(Identity.new("real@example.com"))

            assert db_app.store.get("Real@Example.com") is None

    def test_remove_all(self, db_app):
        with db_app.app_context():
            db_app.store.put(Identity.new("real@example.com"))
            db_app.store.remove_all()

            assert db_app.store.get("real@example.com") is None

    def test_registry_over_sql(self, db_app):
        with db_app.app_context():
            registry = CredentialRegistry(db_app.store)
            identity = registry.resolve_identity("real@example.com")
            assert registry.policy_for(identity) == AuthPolicy.SINGLE_FACTOR

            registry.add_credential(identity, make_credential())
            registry.update_sign_count(identity, CRED_ID, 7)

            reloaded = registry.find_identity("real@example.com")

        assert registry.policy_for(reloaded) == AuthPolicy.TWO_FACTOR
        assert reloaded.find(CRED_ID).sign_count == 7


@pytest.mark.integration
class TestKeyGateWithSQLAlchemy:
    def test_login_and_register(self, db_client):
        response = db_client.post(
            "/auth/initialize-authentication",
            json={"username": "fresh@example.com", "password": "fresh-password"},
        )
        assert response.get_json()["authStatus"] == "complete"

        db_client.post("/auth/credential-options", headers=XHR)
        response = db_client.post(
            "/auth/credential",
            json={
                "id": CRED_ID,
                "rawId": CRED_ID,
                "type": "public-key",
                "response": {"clientDataJSON": "e30", "attestationObject": "YXR0"},
            },
            headers=XHR,
        )
        assert response.status_code == 200

        db_client.get("/auth/signout")
        response = db_client.post(
            "/auth/initialize-authentication",
            json={"username": "fresh@example.com", "password": "fresh-password"},
        )
        assert response.get_json()["authStatus"] == "needSecondFactor"
