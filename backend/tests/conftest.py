"""Shared fixtures: a throwaway CA and CSR builders."""

from collections.abc import Callable

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from authority.ca import AuthorityConfig, CertificateAuthority, CertificateRole
from device.domain.models import Identity
from device.domain.states import IdentitySource
from pki.certificate import Certificate

CsrFactory = Callable[..., tuple[ec.EllipticCurvePrivateKey, bytes]]


def build_csr(common_name: str | None = "client-1", key=None):
    """Return (private_key, DER CSR). ``common_name=None`` leaves the subject empty."""
    key = key or ec.generate_private_key(ec.SECP256R1())
    attributes = []
    if common_name is not None:
        attributes.append(x509.NameAttribute(NameOID.COMMON_NAME, common_name))
    attributes.append(x509.NameAttribute(NameOID.ORGANIZATION_NAME, "mTLS Demo iOS"))
    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name(attributes))
        .sign(key, hashes.SHA256())
    )
    return key, csr.public_bytes(serialization.Encoding.DER)


@pytest.fixture
def csr_factory() -> CsrFactory:
    return build_csr


@pytest.fixture(scope="session")
def authority(tmp_path_factory) -> CertificateAuthority:
    """ECDSA CA persisted to a session temp dir."""
    ca = CertificateAuthority(
        AuthorityConfig(pki_dir=tmp_path_factory.mktemp("pki"), algorithm="ECDSA")
    )
    ca.initialize_authority()
    return ca


@pytest.fixture(scope="session")
def other_authority(tmp_path_factory, authority) -> CertificateAuthority:
    """A second CA with the same subject as ``authority`` but its own key."""
    ca = CertificateAuthority(
        AuthorityConfig(
            pki_dir=tmp_path_factory.mktemp("other-pki"),
            subject=authority.config.subject,
            algorithm="ECDSA",
        )
    )
    ca.initialize_authority()
    return ca


@pytest.fixture
def client_certificate(authority) -> Certificate:
    _, csr = build_csr("client-1")
    return authority.issue_certificate(csr, CertificateRole.CLIENT, 90)


@pytest.fixture
def identity_factory(authority):
    """Build an Identity whose key lives in ``key_store``; nothing is stored."""

    def issue(key_store, label: str = "client-device01", validity_days: int = 90) -> Identity:
        key_ref = key_store.generate_keypair()
        builder = x509.CertificateSigningRequestBuilder().subject_name(
            x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, label)])
        )
        csr = key_store.sign_csr(key_ref, builder)
        certificate = authority.issue_certificate(
            csr.public_bytes(serialization.Encoding.DER), CertificateRole.CLIENT, validity_days
        )
        return Identity(
            label=label,
            certificate=certificate,
            key_ref=key_ref,
            source=IdentitySource.ENROLLED,
        )

    return issue
