"""
Pytest fixtures for Flask-KeyGate tests.

Pytest automatically discovers this file (conftest.py) and uses it to provide
fixtures to tests under this directory tree.
"""

import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from flask import Flask

# Ensure project root is importable when running tests from /tests
PROJECT_ROOT = str(Path(__file__).resolve().parent.parent)
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from flask_keygate.auth import KeyGate
from flask_keygate.challenge import ChallengeBroker
from flask_keygate.origin import OriginResolver
from flask_keygate.passkey import PasskeyOptions, VerificationResult
from flask_keygate.password import PasswordChecker
from flask_keygate.registry import Credential, CredentialRegistry
from flask_keygate.service import AuthenticationService
from flask_keygate.sessions import InMemorySessionStore
from flask_keygate.state_machine import SessionStateMachine
from flask_keygate.storage import InMemoryIdentityStore
from flask_keygate.utils import TOKEN_SESSION_KEY


WEB_ORIGIN = "http://localhost:5000"
ANDROID_HASH = "01:02:03:04"

# base64url values, as the browser would send them
CRED_ID = "Y3JlZC0x"          # "cred-1"
OTHER_CRED_ID = "Y3JlZC0y"    # "cred-2"
PUBLIC_KEY = "cHVibGljLWtleQ"  # "public-key"

PASSWORDS = {
    "real@example.com": "correct-password",
    "fresh@example.com": "fresh-password",
}

XHR = {"X-Requested-With": "XMLHttpRequest"}


def check_password(username, password):
    return PASSWORDS.get(username) == password


def make_credential(cred_id=CRED_ID, **kwargs):
    kwargs.setdefault("public_key", PUBLIC_KEY)
    kwargs.setdefault("transports", {"usb"})
    return Credential(cred_id=cred_id, **kwargs)


@pytest.fixture
def base_config():
    # Keep config minimal and explicit for test determinism
    return {
        "SECRET_KEY": "test-secret-key",
        "TESTING": True,

        # KeyGate config
        "KEYGATE_RP_ID": "localhost",
        "KEYGATE_RP_NAME": "Test App",
        "KEYGATE_ORIGIN": WEB_ORIGIN,
        "KEYGATE_ANDROID_SHA256HASH": ANDROID_HASH,
        "KEYGATE_SESSION_DURATION": 3600,    # seconds
        "KEYGATE_SIGNOUT_REDIRECT": "/",
    }


@pytest.fixture
def verifier():
    """Stand-in for the WebAuthn verifier: everything verifies."""
    mock = MagicMock()
    mock.verify_assertion.return_value = VerificationResult(
        verified=True,
        info={"credentialId": CRED_ID, "newSignCount": 1},
    )
    mock.verify_attestation.return_value = VerificationResult(
        verified=True,
        info={"credentialId": CRED_ID, "publicKey": PUBLIC_KEY, "signCount": 0},
    )
    return mock


@pytest.fixture
def registry():
    return CredentialRegistry(InMemoryIdentityStore())


@pytest.fixture
def session_store():
    return InMemorySessionStore()


@pytest.fixture
def state_machine(session_store):
    return SessionStateMachine(session_store)


@pytest.fixture
def service(registry, state_machine, verifier):
    """AuthenticationService wired without Flask."""
    return AuthenticationService(
        registry=registry,
        broker=ChallengeBroker(),
        resolver=OriginResolver(WEB_ORIGIN, android_sha256_hash=ANDROID_HASH),
        state_machine=state_machine,
        password_checker=PasswordChecker(check_password),
        verifier=verifier,
        options=PasskeyOptions(rp_id="localhost", rp_name="Test App"),
        rp_id="localhost",
    )


@pytest.fixture
def real_user(registry):
    """Identity with one registered credential (two-factor policy)."""
    identity = registry.resolve_identity("real@example.com")
    return registry.add_credential(identity, make_credential())


@pytest.fixture
def app(base_config, verifier):
    """Flask app with KeyGate + in-memory stores and a couple of host routes."""
    app = Flask(__name__)
    app.config.update(base_config)

    keygate = KeyGate(app, password_checker=check_password, verifier=verifier)

    # ---- Minimal host-app routes used by tests / redirects ----
    @app.route("/")
    def home():
        return "Home"

    @app.route("/protected")
    @keygate.login_required
    def protected():
        return "Protected content"

    yield app


@pytest.fixture
def keygate(app):
    return app.extensions["keygate"]


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def app_user(keygate):
    """Two-factor identity inside the Flask app's registry."""
    identity = keygate.registry.resolve_identity("real@example.com")
    return keygate.registry.add_credential(identity, make_credential())


@pytest.fixture
def authenticated_client(client):
    """Client holding a main session for a single-factor identity."""
    resp = client.post(
        "/auth/initialize-authentication",
        json={"username": "fresh@example.com", "password": "fresh-password"},
    )
    assert resp.get_json()["authStatus"] == "complete"
    return client


def session_token(client):
    with client.session_transaction() as sess:
        return sess.get(TOKEN_SESSION_KEY)
