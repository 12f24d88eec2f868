"""
Flask-KeyGate Origin Resolution
===============================
WebAuthn signatures bind the origin reported in clientDataJSON. Browsers
report the web origin; the Android app reports a value derived from its
signing certificate hash.
"""

from dataclasses import dataclass
import logging

from user_agents import parse
from webauthn.helpers import bytes_to_base64url

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClientContext:
    user_agent: str = ''

    @classmethod
    def from_request(cls, request_obj):
        return cls(user_agent=request_obj.headers.get('User-Agent', '') or '')

    def describe(self):
        """Human-readable client description for log lines."""
        if not self.user_agent:
            return 'Unknown client'
        ua = parse(self.user_agent)
        return f"{ua.browser.family} on {ua.os.family}"


def android_origin(sha256_hash):
    """
    Build the origin an Android app reports from its signing certificate hash.

    `sha256_hash` is colon-separated hex, e.g. "AB:CD:...".
    """
    octets = bytes(int(part, 16) for part in sha256_hash.strip().split(':'))
    return f"android:apk-key-hash:{bytes_to_base64url(octets)}"


class OriginResolver:
    """Maps a client to the origin its signed client data must carry."""

    def __init__(self, web_origin, android_sha256_hash=None, native_user_agents=('okhttp',)):
        self.web_origin = web_origin
        self.native_user_agents = tuple(s.lower() for s in native_user_agents)
        self.native_origin = None
        if android_sha256_hash:
            try:
                self.native_origin = android_origin(android_sha256_hash)
            except ValueError:
                logger.error("Ignoring malformed Android signing hash")

    def is_native(self, client):
        ua = (client.user_agent or '').lower()
        return any(ua.startswith(sig) for sig in self.native_user_agents)

    def resolve(self, client):
        if self.is_native(client):
            if self.native_origin:
                return self.native_origin
            logger.warning("Native client (%s) but no Android signing hash configured", client.describe())
        return self.web_origin
