"""
passkey.py — WebAuthn boundary for flask-keygate

Design goals:
- Signature, attestation and counter checks are delegated to py_webauthn.
- One result type at the boundary: library exceptions become an unverified
  VerificationResult carrying the reason, never a distinct exception type.
- Challenges are generated by the ChallengeBroker and passed in; nothing
  here keeps state.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from webauthn import (
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import base64url_to_bytes, bytes_to_base64url
from webauthn.helpers.cose import COSEAlgorithmIdentifier
from webauthn.helpers.structs import (
    AttestationConveyancePreference,
    AuthenticatorAttachment,
    AuthenticatorSelectionCriteria,
    AuthenticatorTransport,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

logger = logging.getLogger(__name__)

# Keys of a serialized PublicKeyCredential that py_webauthn understands
_CREDENTIAL_KEYS = (
    "id",
    "rawId",
    "response",
    "type",
    "authenticatorAttachment",
    "clientExtensionResults",
)


@dataclass(frozen=True)
class VerificationResult:
    verified: bool
    info: Dict[str, Any] = field(default_factory=dict)
    error: str = ""

    @classmethod
    def failure(cls, error: str) -> "VerificationResult":
        return cls(verified=False, error=error)


def _credential_payload(credential: Dict[str, Any]) -> Dict[str, Any]:
    return {k: credential[k] for k in _CREDENTIAL_KEYS if k in credential}


def _descriptors(credentials: Iterable) -> List[PublicKeyCredentialDescriptor]:
    descriptors = []
    for cred in credentials:
        transports = []
        for value in sorted(cred.transports):
            try:
                transports.append(AuthenticatorTransport(value))
            except ValueError:
                # Unknown transport hints are dropped rather than sent back to the client
                logger.debug("Skipping unknown transport %r", value)
        descriptors.append(
            PublicKeyCredentialDescriptor(
                id=base64url_to_bytes(cred.cred_id),
                transports=transports or None,
            )
        )
    return descriptors


class WebAuthnVerifier:
    """py_webauthn-backed implementation of the verifier contract."""

    def __init__(self, require_user_verification: bool = False):
        self.require_user_verification = require_user_verification

    def verify_attestation(
        self,
        credential: Dict[str, Any],
        expected_challenge: str,
        expected_origin: str,
        expected_rp_id: str,
    ) -> VerificationResult:
        """
        Verify a registration response.

        On success `info` holds `credentialId`, `publicKey` (both base64url)
        and `signCount`.
        """
        if not credential:
            return VerificationResult.failure("Missing credential")
        try:
            verification = verify_registration_response(
                credential=_credential_payload(credential),
                expected_challenge=base64url_to_bytes(expected_challenge),
                expected_origin=expected_origin,
                expected_rp_id=expected_rp_id,
                require_user_verification=self.require_user_verification,
            )
        except Exception as e:
            logger.info("Attestation rejected: %s", e)
            return VerificationResult.failure(str(e))

        return VerificationResult(
            verified=True,
            info={
                "credentialId": bytes_to_base64url(verification.credential_id),
                "publicKey": bytes_to_base64url(verification.credential_public_key),
                "signCount": verification.sign_count,
            },
        )

    def verify_assertion(
        self,
        credential: Dict[str, Any],
        expected_challenge: str,
        expected_origin: str,
        expected_rp_id: str,
        stored_credential,
    ) -> VerificationResult:
        """
        Verify an authentication response against a stored Credential.

        On success `info` holds `credentialId` and `newSignCount`.
        """
        if not credential or stored_credential is None:
            return VerificationResult.failure("Missing credential")
        try:
            verification = verify_authentication_response(
                credential=_credential_payload(credential),
                expected_challenge=base64url_to_bytes(expected_challenge),
                expected_rp_id=expected_rp_id,
                expected_origin=expected_origin,
                credential_public_key=base64url_to_bytes(stored_credential.public_key),
                credential_current_sign_count=stored_credential.sign_count,
                require_user_verification=self.require_user_verification,
            )
        except Exception as e:
            logger.info("Assertion rejected: %s", e)
            return VerificationResult.failure(str(e))

        return VerificationResult(
            verified=True,
            info={
                "credentialId": bytes_to_base64url(verification.credential_id),
                "newSignCount": verification.new_sign_count,
            },
        )


class PasskeyOptions:
    """
    Builds the JSON option payloads for navigator.credentials.create()/get().

    Typical flow:
      1) broker issues a challenge into the session
      2) registration_options()/assertion_options() embed it
      3) browser signs it, the response goes to WebAuthnVerifier
    """

    def __init__(
        self,
        *,
        rp_id: str,
        rp_name: str,
        timeout_ms: int = 30 * 60 * 1000,
        authenticator_attachment: Optional[str] = "cross-platform",
        resident_key: str = "preferred",
        require_resident_key: bool = False,
        user_verification: str = "preferred",  # "required" | "preferred" | "discouraged"
    ):
        self.rp_id = rp_id
        self.rp_name = rp_name
        self.timeout_ms = int(timeout_ms)
        self.authenticator_attachment = authenticator_attachment
        self.resident_key = resident_key
        self.require_resident_key = require_resident_key
        self.user_verification = user_verification

    def registration_options(self, identity, challenge: str) -> Dict[str, Any]:
        """Creation options; existing credentials go in excludeCredentials."""
        selection = AuthenticatorSelectionCriteria(
            authenticator_attachment=(
                AuthenticatorAttachment(self.authenticator_attachment)
                if self.authenticator_attachment else None
            ),
            resident_key=ResidentKeyRequirement(self.resident_key),
            require_resident_key=self.require_resident_key,
            user_verification=UserVerificationRequirement(self.user_verification),
        )
        options = generate_registration_options(
            rp_id=self.rp_id,
            rp_name=self.rp_name,
            user_id=base64url_to_bytes(identity.id),
            user_name=identity.username,
            challenge=base64url_to_bytes(challenge),
            timeout=self.timeout_ms,
            attestation=AttestationConveyancePreference.NONE,
            authenticator_selection=selection,
            exclude_credentials=_descriptors(identity.credentials),
            supported_pub_key_algs=[
                COSEAlgorithmIdentifier.ECDSA_SHA_256,
                COSEAlgorithmIdentifier.RSASSA_PKCS1_v1_5_SHA_256,
            ],
        )
        return json.loads(options_to_json(options))

    def assertion_options(self, identity, challenge: str) -> Dict[str, Any]:
        """Request options; the identity's credentials go in allowCredentials."""
        options = generate_authentication_options(
            rp_id=self.rp_id,
            challenge=base64url_to_bytes(challenge),
            timeout=self.timeout_ms,
            allow_credentials=_descriptors(identity.credentials),
            user_verification=UserVerificationRequirement(self.user_verification),
        )
        return json.loads(options_to_json(options))
