"""
Credential registry tests for Flask-KeyGate.
"""

import gc
import threading

import pytest

from flask_keygate.errors import CredentialNotFound, DuplicateCredential
from flask_keygate.registry import AuthPolicy, Credential, Identity
from webauthn.helpers import base64url_to_bytes

from conftest import CRED_ID, OTHER_CRED_ID, make_credential


@pytest.mark.unit
class TestIdentities:

    def test_resolve_creates_identity_once(self, registry):
        first = registry.resolve_identity("someone@example.com")
        second = registry.resolve_identity("someone@example.com")

        assert first.id == second.id
        assert first.credentials == []

    def test_identity_id_is_32_random_bytes(self, registry):
        identity = registry.resolve_identity("someone@example.com")

        assert len(base64url_to_bytes(identity.id)) == 32
        assert "=" not in identity.id

    def test_usernames_are_case_sensitive(self, registry):
        lower = registry.resolve_identity("someone@example.com")
        upper = registry.resolve_identity("Someone@example.com")

        assert lower.id != upper.id

    def test_find_does_not_provision(self, registry):
        assert registry.find_identity("ghost@example.com") is None
        assert registry.find_identity("ghost@example.com") is None

    def test_reset_removes_everything(self, registry, real_user):
        registry.reset()

        assert registry.find_identity(real_user.username) is None


@pytest.mark.unit
class TestPolicy:

    def test_no_credentials_is_single_factor(self, registry):
        identity = registry.resolve_identity("someone@example.com")

        assert registry.policy_for(identity) == AuthPolicy.SINGLE_FACTOR

    def test_first_credential_upgrades_to_two_factor(self, registry):
        identity = registry.resolve_identity("someone@example.com")
        identity = registry.add_credential(identity, make_credential())

        assert registry.policy_for(identity) == AuthPolicy.TWO_FACTOR

    def test_removing_last_credential_downgrades(self, registry, real_user):
        identity = registry.remove_credential(real_user, CRED_ID)

        assert identity.credentials == []
        assert registry.policy_for(identity) == AuthPolicy.SINGLE_FACTOR


@pytest.mark.unit
class TestCredentialLifecycle:

    def test_duplicate_credential_is_rejected_without_change(self, registry, real_user):
        with pytest.raises(DuplicateCredential):
            registry.add_credential(real_user, make_credential(name="again"))

        stored = registry.find_identity(real_user.username)
        assert len(stored.credentials) == 1
        assert stored.credentials[0].name == ""

    def test_credentials_keep_insertion_order(self, registry, real_user):
        identity = registry.add_credential(real_user, make_credential(OTHER_CRED_ID))

        assert [c.cred_id for c in identity.credentials] == [CRED_ID, OTHER_CRED_ID]

    def test_remove_unknown_credential_is_noop(self, registry, real_user):
        identity = registry.remove_credential(real_user, "bm9wZQ")

        assert len(identity.credentials) == 1

    def test_rename_unknown_credential_fails(self, registry, real_user):
        with pytest.raises(CredentialNotFound):
            registry.rename_credential(real_user, "bm9wZQ", "Laptop key")

    def test_rename_to_empty_string(self, registry, real_user):
        registry.rename_credential(real_user, CRED_ID, "Laptop key")
        identity = registry.rename_credential(real_user, CRED_ID, "")

        assert identity.credentials[0].name == ""

    def test_mutation_uses_stored_state_not_caller_copy(self, registry, real_user):
        stale = Identity(id=real_user.id, username=real_user.username)
        identity = registry.add_credential(stale, make_credential(OTHER_CRED_ID))

        assert len(identity.credentials) == 2

    def test_update_sign_count(self, registry, real_user):
        identity = registry.update_sign_count(real_user, CRED_ID, 7)

        assert registry.find_credential(identity, CRED_ID).sign_count == 7


@pytest.mark.unit
class TestCredentialSerialization:

    def test_to_dict_uses_wire_names(self):
        cred = Credential(
            cred_id=CRED_ID,
            public_key="a2V5",
            transports={"usb", "nfc"},
            is_resident_key=True,
            creation_date=1700000000000,
        )

        assert cred.to_dict() == {
            "credId": CRED_ID,
            "publicKey": "a2V5",
            "name": "",
            "transports": ["nfc", "usb"],
            "creationDate": 1700000000000,
            "signCount": 0,
            "isResidentKey": True,
        }

    def test_resident_key_omitted_when_unknown(self):
        assert "isResidentKey" not in make_credential().to_dict()

    def test_descriptor(self):
        assert make_credential().descriptor() == {
            "id": CRED_ID,
            "type": "public-key",
            "transports": ["usb"],
        }


@pytest.mark.unit
class TestConcurrency:

    def test_concurrent_adds_on_one_identity_are_serialized(self, registry):
        identity = registry.resolve_identity("busy@example.com")
        ids = [f"Y3JlZC0{i}" for i in range(20)]

        threads = [
            threading.Thread(target=registry.add_credential, args=(identity, make_credential(cid)))
            for cid in ids
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        stored = registry.find_identity("busy@example.com")
        assert sorted(c.cred_id for c in stored.credentials) == sorted(ids)

    def test_identities_do_not_interfere(self, registry):
        a = registry.resolve_identity("a@example.com")
        b = registry.resolve_identity("b@example.com")

        registry.add_credential(a, make_credential())
        registry.remove_credential(b, CRED_ID)

        assert len(registry.find_identity("a@example.com").credentials) == 1
        assert registry.find_identity("b@example.com").credentials == []

    def test_idle_locks_are_released(self, registry):
        for i in range(50):
            registry.resolve_identity(f"user{i}@example.com")
        gc.collect()

        assert len(registry._locks) == 0

    def test_lock_is_shared_while_held(self, registry):
        lock = registry._lock_for("held@example.com")

        assert registry._lock_for("held@example.com") is lock
