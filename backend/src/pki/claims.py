"""Projection of a peer certificate into application identity claims."""

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any

from pki.certificate import Certificate


@dataclass(frozen=True)
class IssuerClaims:
    common_name: str
    organization: str
    organizational_unit: str


@dataclass(frozen=True)
class ClientClaims:
    common_name: str
    organization: str
    organizational_unit: str
    country: str
    state: str
    locality: str
    valid_from: datetime
    valid_to: datetime
    issuer: IssuerClaims
    fingerprint: str
    serial_number: str

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["valid_from"] = self.valid_from.isoformat()
        data["valid_to"] = self.valid_to.isoformat()
        return data


def extract_claims(peer_certificate: Certificate | bytes | None) -> ClientClaims | None:
    """Project the peer certificate into claims.

    Returns None when the TLS layer reported no client certificate. No
    cryptographic checks happen here; the certificate is assumed to have been
    validated by the session that delivered it.
    """
    if not peer_certificate:
        return None
    cert = (
        peer_certificate
        if isinstance(peer_certificate, Certificate)
        else Certificate.from_der(peer_certificate)
    )
    subject = cert.subject
    return ClientClaims(
        common_name=subject.common_name,
        organization=subject.organization,
        organizational_unit=subject.organizational_unit,
        country=subject.country,
        state=subject.state,
        locality=subject.locality,
        valid_from=cert.not_before,
        valid_to=cert.not_after,
        issuer=IssuerClaims(
            common_name=cert.issuer.common_name,
            organization=cert.issuer.organization,
            organizational_unit=cert.issuer.organizational_unit,
        ),
        fingerprint=cert.fingerprint,
        serial_number=cert.serial_hex,
    )
