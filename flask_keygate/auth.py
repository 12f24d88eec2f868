from flask import Blueprint, session, redirect, request, current_app, jsonify
from functools import wraps

from .challenge import ChallengeBroker
from .errors import AuthFailed, GENERIC_AUTH_ERROR_MESSAGE, KeyGateError, ValidationError
from .origin import ClientContext, OriginResolver
from .passkey import PasskeyOptions, WebAuthnVerifier
from .password import make_password_checker
from .registry import CredentialRegistry
from .service import AuthenticationService
from .sessions import InMemorySessionStore
from .state_machine import SessionStateMachine
from .storage import InMemoryIdentityStore
from .utils import csrf_check, get_token, main_session_required, set_token


class KeyGate:
    """Password plus WebAuthn second-factor authentication for Flask."""

    def __init__(self, app=None, identity_store=None, session_store=None,
                 password_checker=None, verifier=None):
        self.app = app
        self.blueprint = Blueprint('keygate', __name__)

        self.identity_store = identity_store or InMemoryIdentityStore()
        self.session_store = session_store or InMemorySessionStore()
        self.password_checker = password_checker
        self.verifier = verifier or WebAuthnVerifier()

        self.registry = CredentialRegistry(self.identity_store)
        self.state_machine = None
        self.service = None

        self._register_routes()

        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        """Initialize the extension with Flask app."""
        # WebAuthn relying party
        app.config.setdefault('KEYGATE_RP_ID', 'localhost')
        app.config.setdefault('KEYGATE_RP_NAME', 'Flask-KeyGate')
        app.config.setdefault('KEYGATE_ORIGIN', 'http://localhost:5000')
        app.config.setdefault('KEYGATE_FIDO_TIMEOUT', 30 * 60 * 1000)  # milliseconds

        # Native (Android) clients
        app.config.setdefault('KEYGATE_ANDROID_SHA256HASH', None)
        app.config.setdefault('KEYGATE_NATIVE_USER_AGENTS', ('okhttp',))

        # Authenticator selection; use "platform" for built-in authenticators
        app.config.setdefault('KEYGATE_AUTHENTICATOR_ATTACHMENT', 'cross-platform')
        app.config.setdefault('KEYGATE_RESIDENT_KEY', 'preferred')
        app.config.setdefault('KEYGATE_REQUIRE_RESIDENT_KEY', False)
        app.config.setdefault('KEYGATE_USER_VERIFICATION', 'preferred')

        # Challenges and sessions
        app.config.setdefault('KEYGATE_CHALLENGE_BYTES', 32)
        app.config.setdefault('KEYGATE_CHALLENGE_MAX_AGE', None)  # seconds
        app.config.setdefault('KEYGATE_SESSION_DURATION', 24 * 60 * 60)  # seconds

        app.config.setdefault('KEYGATE_LOGIN_URL', '/')
        app.config.setdefault('KEYGATE_SIGNOUT_REDIRECT', '/')
        app.config.setdefault('KEYGATE_DEV_MODE', False)

        self.app = app
        app.extensions['keygate'] = self

        checker = make_password_checker(self.password_checker, app.config['KEYGATE_DEV_MODE'])
        if self.password_checker is None:
            app.logger.warning(
                "No password checker configured: %s",
                "accepting every password (DEV MODE)" if app.config['KEYGATE_DEV_MODE']
                else "rejecting every password"
            )

        self.state_machine = SessionStateMachine(
            self.session_store,
            session_duration=app.config['KEYGATE_SESSION_DURATION'],
        )
        self.service = AuthenticationService(
            registry=self.registry,
            broker=ChallengeBroker(
                challenge_bytes=app.config['KEYGATE_CHALLENGE_BYTES'],
                max_age=app.config['KEYGATE_CHALLENGE_MAX_AGE'],
            ),
            resolver=OriginResolver(
                app.config['KEYGATE_ORIGIN'],
                android_sha256_hash=app.config['KEYGATE_ANDROID_SHA256HASH'],
                native_user_agents=app.config['KEYGATE_NATIVE_USER_AGENTS'],
            ),
            state_machine=self.state_machine,
            password_checker=checker,
            verifier=self.verifier,
            options=PasskeyOptions(
                rp_id=app.config['KEYGATE_RP_ID'],
                rp_name=app.config['KEYGATE_RP_NAME'],
                timeout_ms=app.config['KEYGATE_FIDO_TIMEOUT'],
                authenticator_attachment=app.config['KEYGATE_AUTHENTICATOR_ATTACHMENT'],
                resident_key=app.config['KEYGATE_RESIDENT_KEY'],
                require_resident_key=app.config['KEYGATE_REQUIRE_RESIDENT_KEY'],
                user_verification=app.config['KEYGATE_USER_VERIFICATION'],
            ),
            rp_id=app.config['KEYGATE_RP_ID'],
        )

        app.register_blueprint(self.blueprint, url_prefix='/auth')

    def login_required(self, f):
        """Decorator to require a main session for a view."""
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not self.is_authenticated():
                return redirect(current_app.config.get('KEYGATE_LOGIN_URL', '/'))
            return f(*args, **kwargs)
        return decorated_function

    def is_authenticated(self):
        """Check if the current request carries a valid main session."""
        token = get_token()
        if not token:
            return False

        record = self.state_machine.load(token)
        if record is None or not record.is_main:
            if record is None:
                # Stale or expired token: drop it from the cookie
                set_token(None)
            return False

        return True

    def get_current_user(self):
        """Get the current authenticated identity as a dict."""
        if not self.is_authenticated():
            return None

        record = self.state_machine.load(get_token())
        identity = self.registry.find_identity(record.username)
        return identity.to_dict() if identity else None

    def _error(self, e):
        current_app.logger.warning(f"KeyGate request failed: {e.message}")
        return jsonify({'error': e.message}), e.status_code

    def _register_routes(self):
        """Register authentication routes on the blueprint."""

        # ==================== Login Routes ====================

        @self.blueprint.route('/initialize-authentication', methods=['POST'])
        def initialize_authentication():
            """Password step; completes or asks for a second factor."""
            data = request.get_json(silent=True) or request.form
            if not isinstance(data, dict):
                return self._error(ValidationError())
            username = data.get('username')
            password = data.get('password')

            try:
                result = self.service.initiate_authentication(get_token(), username, password)
            except AuthFailed as e:
                set_token(None)
                return self._error(e)
            except KeyGateError as e:
                return self._error(e)

            set_token(result.token)
            return jsonify(result.to_dict())

        @self.blueprint.route('/two-factor-options', methods=['POST'])
        @csrf_check
        def two_factor_options():
            """Options for navigator.credentials.get()."""
            try:
                options = self.service.two_factor_options(get_token())
            except KeyGateError:
                current_app.logger.warning("Two-factor options refused")
                return jsonify({
                    'error': f"Getting two-factor authentication options failed: {GENERIC_AUTH_ERROR_MESSAGE}"
                }), 400

            return jsonify(options)

        @self.blueprint.route('/authenticate-two-factor', methods=['POST'])
        @csrf_check
        def authenticate_two_factor():
            """Verify the assertion and complete the login."""
            data = request.get_json(silent=True)
            # A malformed body fails like any other bad assertion
            credential = data.get('credential') if isinstance(data, dict) else None
            client = ClientContext.from_request(request)

            try:
                result = self.service.complete_second_factor(get_token(), credential, client)
            except KeyGateError:
                current_app.logger.warning(f"Second factor failed from {client.describe()}")
                return jsonify({'error': GENERIC_AUTH_ERROR_MESSAGE}), 401

            set_token(result.token)
            return jsonify(result.to_dict())

        @self.blueprint.route('/signout')
        def signout():
            """Destroy the session and go home."""
            self.service.sign_out(get_token())
            session.clear()
            return redirect(current_app.config.get('KEYGATE_SIGNOUT_REDIRECT', '/'), code=307)

        # ==================== Credential Routes ====================

        @self.blueprint.route('/credentials', methods=['GET'])
        @csrf_check
        @main_session_required
        def list_credentials():
            """Return the user and their credentials."""
            identity = self.service.list_credentials(get_token())
            return jsonify(identity.to_dict())

        @self.blueprint.route('/credential-options', methods=['POST'])
        @csrf_check
        @main_session_required
        def credential_options():
            """Options for navigator.credentials.create()."""
            try:
                options = self.service.credential_options(get_token())
            except KeyGateError as e:
                return self._error(e)
            return jsonify(options)

        @self.blueprint.route('/credential', methods=['POST'])
        @csrf_check
        @main_session_required
        def register_credential():
            """Verify an attestation and store the new credential."""
            attestation = request.get_json(silent=True) or {}
            client = ClientContext.from_request(request)

            try:
                identity = self.service.register_credential(get_token(), attestation, client)
            except KeyGateError as e:
                return self._error(e)

            return jsonify(identity.to_dict())

        @self.blueprint.route('/credential', methods=['PUT'])
        @csrf_check
        @main_session_required
        def rename_credential():
            """Update a credential's name."""
            cred_id = request.args.get('credId')
            name = request.args.get('name', '')

            try:
                identity = self.service.rename_credential(get_token(), cred_id, name)
            except KeyGateError as e:
                return self._error(e)

            return jsonify(identity.to_dict())

        @self.blueprint.route('/credential', methods=['DELETE'])
        @csrf_check
        @main_session_required
        def remove_credential():
            """Remove a credential; unknown ids are ignored."""
            cred_id = request.args.get('credId')

            try:
                identity = self.service.remove_credential(get_token(), cred_id)
            except KeyGateError as e:
                return self._error(e)

            return jsonify(identity.to_dict())
