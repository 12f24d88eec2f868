from functools import wraps
from flask import current_app, session, redirect, request, jsonify, g

TOKEN_SESSION_KEY = 'keygate_token'


def get_token():
    """Session token for the server-side record, from Flask's signed cookie."""
    return session.get(TOKEN_SESSION_KEY)


def set_token(token):
    if token:
        session[TOKEN_SESSION_KEY] = token
    else:
        session.pop(TOKEN_SESSION_KEY, None)


def csrf_check(f):
    """Reject JSON endpoints not called through XMLHttpRequest/fetch."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if request.headers.get('X-Requested-With') != 'XMLHttpRequest':
            return jsonify({'error': 'Invalid access'}), 400
        return f(*args, **kwargs)
    return decorated_function


def main_session_required(f):
    """Require a fully authenticated ("main") session for a JSON endpoint."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        keygate = current_app.extensions.get('keygate')

        if not keygate or not keygate.is_authenticated():
            return jsonify({'error': 'Not authenticated'}), 401

        return f(*args, **kwargs)
    return decorated_function


def login_required(f):
    """Decorator to require login for a view.

    Example:
        @app.route('/profile')
        @login_required
        def profile():
            return 'Protected page'
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        keygate = current_app.extensions.get('keygate')

        if not keygate or not keygate.is_authenticated():
            return redirect(current_app.config.get('KEYGATE_LOGIN_URL', '/'))

        # Add the current user to flask.g for easy access
        g.user = keygate.get_current_user()

        return f(*args, **kwargs)
    return decorated_function


def get_current_user():
    """Get the current authenticated user.

    Returns:
        dict or None: The current identity if authenticated, None otherwise
    """
    keygate = current_app.extensions.get('keygate')

    if not keygate:
        return None

    return keygate.get_current_user()


def is_authenticated():
    """Check if the current user is authenticated.

    Returns:
        bool: True if authenticated, False otherwise
    """
    keygate = current_app.extensions.get('keygate')

    if not keygate:
        return False

    return keygate.is_authenticated()


def logout():
    """Log the current user out.

    Returns:
        Response: Redirect to the configured sign-out target
    """
    keygate = current_app.extensions.get('keygate')

    if keygate:
        keygate.service.sign_out(get_token())
    session.clear()

    return redirect(current_app.config.get('KEYGATE_SIGNOUT_REDIRECT', '/'))
