"""
Password-equivalence checkers.

The real check lives in the host application; anything with a
`check(username, password) -> bool` method (or a plain callable) will do.
"""

import logging

logger = logging.getLogger(__name__)


class PasswordChecker:
    """Adapts a `(username, password) -> bool` callable."""

    def __init__(self, func):
        self.func = func

    def check(self, username, password):
        return bool(self.func(username, password))


class AcceptAllPasswordChecker:
    """DEV MODE ONLY: every password is correct."""

    def check(self, username, password):
        logger.warning("DEV MODE: password for %s accepted without checking", username)
        return True


class RejectAllPasswordChecker:
    """Used until the application configures a real checker."""

    def check(self, username, password):
        logger.error("No password checker configured; rejecting login for %s", username)
        return False


def make_password_checker(checker=None, dev_mode=False):
    if checker is None:
        return AcceptAllPasswordChecker() if dev_mode else RejectAllPasswordChecker()
    if hasattr(checker, 'check'):
        return checker
    if callable(checker):
        return PasswordChecker(checker)
    raise TypeError("password_checker must be callable or provide check(username, password)")
