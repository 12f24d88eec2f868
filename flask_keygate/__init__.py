from .auth import KeyGate
from .utils import login_required, get_current_user, is_authenticated, logout
from .storage import InMemoryIdentityStore, SQLAlchemyIdentityStore
from .sessions import InMemorySessionStore
from .errors import AuthFailed, GENERIC_AUTH_ERROR_MESSAGE

__version__ = '0.1.0'

__all__ = [
    'KeyGate',
    'login_required',
    'get_current_user',
    'is_authenticated',
    'logout',
    'InMemoryIdentityStore',
    'SQLAlchemyIdentityStore',
    'InMemorySessionStore',
    'AuthFailed',
    'GENERIC_AUTH_ERROR_MESSAGE',
]
