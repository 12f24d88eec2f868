"""
Flask-KeyGate Authentication Service
====================================
Orchestrates registry, challenge broker, origin resolver, state machine and
the external collaborators into the user-facing operations.

Every failure on the login path leaves this module as AuthFailed with the
same message; only credential management (which already requires a main
session) reports specific errors.
"""

import logging
from dataclasses import dataclass

from email_validator import EmailNotValidError, validate_email
from markupsafe import escape

from .challenge import ChallengePurpose
from .errors import (
    AuthFailed,
    CredentialNotFound,
    DuplicateCredential,
    KeyGateError,
    NoPendingChallenge,
    ValidationError,
    VerificationFailed,
)
from .origin import ClientContext
from .registry import Credential
from .sessions import AuthStatus
from .state_machine import LoginState

logger = logging.getLogger(__name__)

MESSAGES = {
    AuthStatus.COMPLETE: "Authentication complete",
    AuthStatus.NEED_SECOND_FACTOR: (
        "Need two factors because two-factor-authentication "
        "was configured for this account"
    ),
}


@dataclass(frozen=True)
class AuthResult:
    status: AuthStatus
    token: str

    def to_dict(self):
        return {'msg': MESSAGES[self.status], 'authStatus': self.status.value}


def validate_credentials_input(username, password):
    """Reject empty or malformed login input before touching any state."""
    if not isinstance(username, str) or not isinstance(password, str):
        raise ValidationError()
    if not username.strip() or not password:
        raise ValidationError()
    try:
        validate_email(username, check_deliverability=False)
    except EmailNotValidError:
        raise ValidationError() from None


class AuthenticationService:
    """The operations behind the /auth blueprint."""

    def __init__(self, registry, broker, resolver, state_machine, password_checker,
                 verifier, options, rp_id):
        self.registry = registry
        self.broker = broker
        self.resolver = resolver
        self.state_machine = state_machine
        self.password_checker = password_checker
        self.verifier = verifier
        self.options = options
        self.rp_id = rp_id

    # ==================== Login ====================

    def initiate_authentication(self, token, username, password):
        """
        First step of every login.

        Returns an AuthResult: COMPLETE with the main session token when the
        identity has no credential, NEED_SECOND_FACTOR with the auth session
        token otherwise.
        """
        validate_credentials_input(username, password)

        identity = self.registry.resolve_identity(username)
        passed = self.password_checker.check(username, password)

        token = self.state_machine.begin(token)
        self.state_machine.record_password_check(token, username, passed)

        policy = self.registry.policy_for(identity)
        try:
            state, token = self.state_machine.apply_policy(token, policy)
        except AuthFailed:
            self.state_machine.sign_out(token)
            raise

        if state == LoginState.COMPLETE:
            return AuthResult(AuthStatus.COMPLETE, token)
        return AuthResult(AuthStatus.NEED_SECOND_FACTOR, token)

    def two_factor_options(self, token):
        """Issue an assertion challenge plus the identity's allow-list."""
        session = self.state_machine.require_state(token, LoginState.AWAITING_SECOND_FACTOR)
        identity = self.registry.find_identity(session.username)
        if identity is None:
            raise AuthFailed()

        challenge = self.broker.issue(session, ChallengePurpose.ASSERTION, identity.id)
        self.state_machine.save(token, session)
        return self.options.assertion_options(identity, challenge)

    def complete_second_factor(self, token, assertion, client=None):
        session = self.state_machine.load(token)
        if session is None:
            raise AuthFailed()

        try:
            pending = self.broker.consume(session, ChallengePurpose.ASSERTION)
        except NoPendingChallenge:
            logger.info("Second factor rejected: no pending challenge")
            raise AuthFailed() from None
        finally:
            # The challenge is gone whatever the outcome
            self.state_machine.save(token, session)

        try:
            self._verify_second_factor(session, pending, assertion, client or ClientContext())
        except KeyGateError as e:
            logger.info("Second factor rejected: %s", e.message)
            raise AuthFailed() from None

        new_token = self.state_machine.second_factor_verified(token)
        return AuthResult(AuthStatus.COMPLETE, new_token)

    def _verify_second_factor(self, session, pending, assertion, client):
        if self.state_machine.state_of(session) != LoginState.AWAITING_SECOND_FACTOR:
            raise VerificationFailed("Session is not awaiting a second factor")
        # An assertion without a successful password step is never enough
        if not session.password_check_passed:
            raise VerificationFailed("Password check did not pass")
        if not isinstance(assertion, dict):
            raise VerificationFailed("Malformed assertion")

        identity = self.registry.find_identity(session.username)
        if identity is None or pending.bound_to != identity.id:
            raise VerificationFailed("Challenge not bound to this identity")

        stored = identity.find(assertion.get('id') or '')
        if stored is None:
            raise CredentialNotFound()

        origin = self.resolver.resolve(client)
        try:
            result = self.verifier.verify_assertion(
                assertion, pending.challenge, origin, self.rp_id, stored
            )
        except Exception as e:
            # A raising verifier counts as a failed verification
            raise VerificationFailed(str(e) or None) from e
        if not result.verified:
            raise VerificationFailed(result.error or None)

        new_count = result.info.get('newSignCount')
        if new_count is not None:
            self.registry.update_sign_count(identity, stored.cred_id, new_count)

    def sign_out(self, token):
        self.state_machine.sign_out(token)

    # ==================== Credential management ====================

    def _main_identity(self, token):
        session = self.state_machine.require_main(token)
        return session, self.registry.resolve_identity(session.username)

    def credential_options(self, token):
        """Issue a registration challenge plus the identity's exclude-list."""
        session, identity = self._main_identity(token)
        challenge = self.broker.issue(session, ChallengePurpose.REGISTRATION, identity.id)
        self.state_machine.save(token, session)
        return self.options.registration_options(identity, challenge)

    def register_credential(self, token, attestation, client=None):
        session, identity = self._main_identity(token)
        try:
            pending = self.broker.consume(session, ChallengePurpose.REGISTRATION)
        finally:
            self.state_machine.save(token, session)

        if pending.bound_to != identity.id:
            raise VerificationFailed()
        if not isinstance(attestation, dict):
            raise VerificationFailed()

        origin = self.resolver.resolve(client or ClientContext())
        try:
            result = self.verifier.verify_attestation(attestation, pending.challenge, origin, self.rp_id)
        except Exception as e:
            logger.info("Attestation rejected: %s", e)
            raise VerificationFailed() from None
        if not result.verified:
            raise VerificationFailed()

        transports = attestation.get('transports') or \
            (attestation.get('response') or {}).get('transports') or []
        credential = Credential(
            cred_id=result.info['credentialId'],
            public_key=result.info['publicKey'],
            name="",
            transports=set(transports),
            sign_count=result.info.get('signCount') or 0,
        )
        cred_props = attestation.get('credProps') or \
            (attestation.get('clientExtensionResults') or {}).get('credProps')
        if cred_props and 'rk' in cred_props:
            credential.is_resident_key = bool(cred_props['rk'])

        try:
            identity = self.registry.add_credential(identity, credential)
            logger.info("Registered credential for identity %s", identity.id)
        except DuplicateCredential:
            # Registering the same authenticator twice is not an error
            identity = self.registry.find_identity(identity.username) or identity
        return identity

    def list_credentials(self, token):
        _, identity = self._main_identity(token)
        return identity

    def rename_credential(self, token, cred_id, name):
        if not cred_id:
            raise ValidationError("credId is required")
        _, identity = self._main_identity(token)
        clean = str(escape((name or "").strip()))
        return self.registry.rename_credential(identity, cred_id, clean)

    def remove_credential(self, token, cred_id):
        if not cred_id:
            raise ValidationError("credId is required")
        _, identity = self._main_identity(token)
        return self.registry.remove_credential(identity, cred_id)
