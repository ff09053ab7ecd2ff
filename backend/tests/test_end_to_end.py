"""Enrollment through to a mutually authenticated TLS handshake.

The handshake runs over in-memory BIOs, so no sockets are opened.
"""

import ssl

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.x509.oid import NameOID

from authority.ca.authority import CertificateRole
from device.domain.models import Identity
from device.domain.states import IdentitySource
from device.identity_store import IdentityStore
from device.key_store import FileKeyStore
from device.services.enrollment import EnrollmentOrchestrator
from device.transport import EnrollmentResult
from pki.claims import extract_claims
from pki.trust import TrustError, TrustValidator

SERVER_NAME = "localhost"


class IssuingTransport:
    def __init__(self, authority):
        self.authority = authority

    async def submit(self, submission):
        certificate = self.authority.issue_certificate(
            submission.csr_der, CertificateRole.CLIENT, 90
        )
        return EnrollmentResult(certificate.der, submission.device_id, certificate.common_name, 90)


def server_context(authority) -> ssl.SSLContext:
    credentials = authority.provision_server_certificate([SERVER_NAME])
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    context.load_cert_chain(certfile=credentials.cert_path, keyfile=credentials.key_path)
    context.verify_mode = ssl.CERT_REQUIRED
    context.load_verify_locations(cadata=authority.certificate.pem)
    return context


def handshake(client_context: ssl.SSLContext, server_context: ssl.SSLContext):
    """Drive both sides of a handshake to completion and return (client, server)."""
    client_in, client_out = ssl.MemoryBIO(), ssl.MemoryBIO()
    server_in, server_out = ssl.MemoryBIO(), ssl.MemoryBIO()
    client = client_context.wrap_bio(client_in, client_out, server_hostname=SERVER_NAME)
    server = server_context.wrap_bio(server_in, server_out, server_side=True)

    pending = [client, server]
    for _ in range(20):
        for conn in list(pending):
            try:
                conn.do_handshake()
                pending.remove(conn)
            except ssl.SSLWantReadError:
                pass
        server_in.write(client_out.read())
        client_in.write(server_out.read())
        if not pending:
            break
    assert not pending, "handshake did not complete"
    return client, server


async def enroll(tmp_path, authority) -> tuple[FileKeyStore, Identity]:
    key_store = FileKeyStore(tmp_path / "device", passphrase="device-pass")
    identity_store = IdentityStore(key_store)
    orchestrator = EnrollmentOrchestrator(identity_store, IssuingTransport(authority))
    identity = await orchestrator.start("device-1", common_name="client-1")
    return key_store, identity


class TestMutualTls:
    """A freshly enrolled identity authenticates to a server under the same CA."""

    @pytest.mark.asyncio
    async def test_handshake_and_claims(self, tmp_path, authority):
        key_store, identity = await enroll(tmp_path, authority)
        client_context = key_store.client_ssl_context(identity.label, authority.certificate.pem)

        client, server = handshake(client_context, server_context(authority))

        peer_der = server.getpeercert(binary_form=True)
        decision = TrustValidator(authority.certificate).validate([peer_der])
        assert decision.leaf.fingerprint == identity.certificate.fingerprint
        assert extract_claims(peer_der).common_name == "client-1"
        assert extract_claims(peer_der).organization == "mTLS Demo iOS"

        server_der = client.getpeercert(binary_form=True)
        TrustValidator(authority.certificate).validate([server_der], expected_name=SERVER_NAME)

    @pytest.mark.asyncio
    async def test_client_rejects_server_from_other_ca(self, tmp_path, authority, other_authority):
        key_store, identity = await enroll(tmp_path, authority)
        client_context = key_store.client_ssl_context(identity.label, authority.certificate.pem)

        with pytest.raises(ssl.SSLError):
            handshake(client_context, server_context(other_authority))

    def test_server_rejects_client_from_other_ca(self, tmp_path, authority, other_authority):
        key_store = FileKeyStore(tmp_path / "device")
        key_ref = key_store.generate_keypair()
        csr = key_store.sign_csr(
            key_ref,
            x509.CertificateSigningRequestBuilder().subject_name(
                x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "client-1")])
            ),
        )
        forged = other_authority.issue_certificate(
            csr.public_bytes(serialization.Encoding.DER), CertificateRole.CLIENT, 90
        )
        key_store.store(
            "client-forged",
            Identity("client-forged", forged, key_ref, IdentitySource.PROVISIONED),
        )
        client_context = key_store.client_ssl_context("client-forged", authority.certificate.pem)

        with pytest.raises(ssl.SSLError):
            handshake(client_context, server_context(authority))

        with pytest.raises(TrustError):
            TrustValidator(authority.certificate).validate([forged.der])
