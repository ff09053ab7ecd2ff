"""Tests for the secure key store implementations."""

import ssl

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from device.domain.models import KeyReference
from device.key_store import FileKeyStore, KeyStoreError, MemoryKeyStore


@pytest.fixture(params=["memory", "file"])
def key_store(request, tmp_path):
    if request.param == "memory":
        return MemoryKeyStore()
    return FileKeyStore(tmp_path / "keys", passphrase="s3cret")


class TestKeyOperations:
    """Behaviour shared by every SecureKeyStore."""

    def test_generate_keypair_returns_reference(self, key_store):
        ref = key_store.generate_keypair()

        assert ref.algorithm == "ECDSA-secp256r1"
        assert ref.key_id in key_store.key_ids()

    def test_sign_verifies(self, key_store):
        ref = key_store.generate_keypair()

        signature = key_store.sign(ref, b"challenge")

        key_store.public_key(ref).verify(signature, b"challenge", ec.ECDSA(hashes.SHA256()))

    def test_sign_csr_inside_store(self, key_store):
        ref = key_store.generate_keypair()
        builder = x509.CertificateSigningRequestBuilder().subject_name(
            x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "client-1")])
        )

        csr = key_store.sign_csr(ref, builder)

        assert csr.is_signature_valid
        assert csr.public_key() == key_store.public_key(ref)

    def test_unknown_key_raises(self, key_store):
        ref = KeyReference(key_id="0" * 32, algorithm="ECDSA-secp256r1")

        with pytest.raises(KeyStoreError):
            key_store.sign(ref, b"data")

    def test_unsupported_algorithm_raises(self, key_store):
        with pytest.raises(KeyStoreError):
            key_store.generate_keypair("DSA")

    def test_discard_key(self, key_store):
        ref = key_store.generate_keypair()

        key_store.discard_key(ref)
        key_store.discard_key(ref)  # idempotent

        assert ref.key_id not in key_store.key_ids()


class TestIdentityRecords:
    def test_store_and_retrieve(self, key_store, identity_factory):
        identity = identity_factory(key_store)

        key_store.store(identity.label, identity)
        loaded = key_store.retrieve(identity.label)

        assert loaded.certificate == identity.certificate
        assert loaded.key_ref == identity.key_ref
        assert loaded.source == identity.source
        assert key_store.list() == [loaded]

    def test_retrieve_missing_returns_none(self, key_store):
        assert key_store.retrieve("client-missing") is None

    def test_store_rejects_unknown_key(self, key_store, identity_factory):
        identity = identity_factory(key_store)
        key_store.discard_key(identity.key_ref)

        with pytest.raises(KeyStoreError, match="unknown key"):
            key_store.store(identity.label, identity)

    def test_store_rejects_bad_label(self, key_store, identity_factory):
        identity = identity_factory(key_store)

        with pytest.raises(KeyStoreError, match="label"):
            key_store.store("../escape", identity)

    def test_delete_removes_identity_and_key(self, key_store, identity_factory):
        identity = identity_factory(key_store)
        key_store.store(identity.label, identity)

        assert key_store.delete(identity.label) is True
        assert key_store.retrieve(identity.label) is None
        assert identity.key_ref.key_id not in key_store.key_ids()
        assert key_store.delete(identity.label) is False

    def test_purge_orphan_keys_keeps_referenced(self, key_store, identity_factory):
        identity = identity_factory(key_store)
        key_store.store(identity.label, identity)
        orphan = key_store.generate_keypair()

        assert key_store.purge_orphan_keys() == 1
        assert key_store.key_ids() == {identity.key_ref.key_id}
        assert orphan.key_id not in key_store.key_ids()


class TestFileKeyStore:
    """Persistence specifics of FileKeyStore."""

    def test_keys_encrypted_at_rest(self, tmp_path):
        store = FileKeyStore(tmp_path, passphrase="s3cret")
        ref = store.generate_keypair()

        pem = (tmp_path / "keys" / f"{ref.key_id}.pem").read_text()

        assert "ENCRYPTED PRIVATE KEY" in pem
        assert (tmp_path / "keys" / f"{ref.key_id}.pem").stat().st_mode & 0o777 == 0o600

    def test_wrong_passphrase_cannot_load(self, tmp_path):
        ref = FileKeyStore(tmp_path, passphrase="s3cret").generate_keypair()

        with pytest.raises(KeyStoreError):
            FileKeyStore(tmp_path, passphrase="wrong").public_key(ref)

    def test_identities_survive_reopen(self, tmp_path, identity_factory):
        store = FileKeyStore(tmp_path, passphrase="s3cret")
        identity = identity_factory(store)
        store.store(identity.label, identity)

        reopened = FileKeyStore(tmp_path, passphrase="s3cret")

        assert reopened.retrieve(identity.label).certificate == identity.certificate
        assert reopened.sign(identity.key_ref, b"x")

    def test_corrupt_record_raises(self, tmp_path, identity_factory):
        store = FileKeyStore(tmp_path)
        identity = identity_factory(store)
        store.store(identity.label, identity)
        (tmp_path / "identities" / f"{identity.label}.json").write_text("{not json")

        with pytest.raises(KeyStoreError, match="Corrupt"):
            store.retrieve(identity.label)

    def test_client_ssl_context(self, tmp_path, authority, identity_factory):
        store = FileKeyStore(tmp_path, passphrase="s3cret")
        identity = identity_factory(store)
        store.store(identity.label, identity)

        context = store.client_ssl_context(identity.label, authority.certificate.pem)

        assert isinstance(context, ssl.SSLContext)
        assert context.verify_mode == ssl.CERT_REQUIRED
        assert context.check_hostname

    def test_client_ssl_context_unknown_identity(self, tmp_path, authority):
        store = FileKeyStore(tmp_path)

        with pytest.raises(KeyStoreError, match="Unknown identity"):
            store.client_ssl_context("client-none", authority.certificate.pem)
