"""
Flask-KeyGate Errors
====================
Every failure raised by the core derives from KeyGateError and carries the
HTTP status the blueprint answers with.
"""

# Generic message, so an attacker cannot tell from the error which step failed
GENERIC_AUTH_ERROR_MESSAGE = (
    "Username or password incorrect or credential not found "
    "or user verification failed"
)


class KeyGateError(Exception):
    """Base class for all Flask-KeyGate errors."""

    status_code = 400
    default_message = "Request failed"

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(KeyGateError):
    """Malformed input, rejected before any state change."""

    default_message = "Username or password is empty or contains invalid characters"


class DuplicateCredential(KeyGateError):
    """A credential with the same id is already registered (non-fatal)."""

    default_message = "Credential already registered"


class CredentialNotFound(KeyGateError):
    status_code = 404
    default_message = "Credential not found"


class NoPendingChallenge(KeyGateError):
    """No outstanding challenge: replayed or out-of-order request."""

    default_message = "No challenge in progress"


class VerificationFailed(KeyGateError):
    default_message = "User verification failed"


class AuthFailed(KeyGateError):
    """Umbrella failure for every step of the login flow."""

    status_code = 401
    default_message = GENERIC_AUTH_ERROR_MESSAGE

    def __init__(self):
        # Never accept a caller-supplied message: the text must not vary
        super().__init__(GENERIC_AUTH_ERROR_MESSAGE)


class NotAuthenticated(KeyGateError):
    status_code = 401
    default_message = "Not authenticated"
