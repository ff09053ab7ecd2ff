"""Immutable certificate model used across the authority and device sides."""

from dataclasses import dataclass
from datetime import datetime, timezone

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from pki.crypto import compute_thumbprint

SECONDS_PER_DAY = 86400

_EKU_NAMES = {
    ExtendedKeyUsageOID.SERVER_AUTH: "serverAuth",
    ExtendedKeyUsageOID.CLIENT_AUTH: "clientAuth",
    ExtendedKeyUsageOID.CODE_SIGNING: "codeSigning",
    ExtendedKeyUsageOID.EMAIL_PROTECTION: "emailProtection",
    ExtendedKeyUsageOID.TIME_STAMPING: "timeStamping",
    ExtendedKeyUsageOID.OCSP_SIGNING: "OCSPSigning",
}

_KEY_USAGE_FIELDS = (
    "digital_signature",
    "content_commitment",
    "key_encipherment",
    "data_encipherment",
    "key_agreement",
    "key_cert_sign",
    "crl_sign",
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class DistinguishedName:
    """The subset of an X.509 name this system reads and writes."""

    common_name: str = ""
    organization: str = ""
    organizational_unit: str = ""
    country: str = ""
    state: str = ""
    locality: str = ""

    _OIDS = (
        ("country", NameOID.COUNTRY_NAME),
        ("state", NameOID.STATE_OR_PROVINCE_NAME),
        ("locality", NameOID.LOCALITY_NAME),
        ("organization", NameOID.ORGANIZATION_NAME),
        ("organizational_unit", NameOID.ORGANIZATIONAL_UNIT_NAME),
        ("common_name", NameOID.COMMON_NAME),
    )

    @classmethod
    def from_x509(cls, name: x509.Name) -> "DistinguishedName":
        values = {}
        for field, oid in cls._OIDS:
            attrs = name.get_attributes_for_oid(oid)
            value = attrs[0].value if attrs else ""
            values[field] = value.decode("utf-8") if isinstance(value, bytes) else value
        return cls(**values)

    def to_x509(self) -> x509.Name:
        """Build an x509.Name, skipping empty attributes (C, ST, L, O, OU, CN order)."""
        return x509.Name(
            [
                x509.NameAttribute(oid, getattr(self, field))
                for field, oid in self._OIDS
                if getattr(self, field)
            ]
        )


@dataclass(frozen=True)
class Certificate:
    """An issued X.509 certificate, projected once at parse time.

    ``der`` is the authoritative encoding; everything else is derived from it.
    """

    subject: DistinguishedName
    issuer: DistinguishedName
    serial_number: int
    not_before: datetime
    not_after: datetime
    fingerprint: str
    key_usage: frozenset[str]
    extended_key_usage: frozenset[str]
    is_ca: bool
    subject_alt_names: tuple[str, ...]
    der: bytes

    @classmethod
    def from_x509(cls, cert: x509.Certificate) -> "Certificate":
        der = cert.public_bytes(serialization.Encoding.DER)
        return cls(
            subject=DistinguishedName.from_x509(cert.subject),
            issuer=DistinguishedName.from_x509(cert.issuer),
            serial_number=cert.serial_number,
            not_before=cert.not_valid_before_utc,
            not_after=cert.not_valid_after_utc,
            fingerprint=compute_thumbprint(der),
            key_usage=_key_usage(cert),
            extended_key_usage=_extended_key_usage(cert),
            is_ca=_is_ca(cert),
            subject_alt_names=_subject_alt_names(cert),
            der=der,
        )

    @classmethod
    def from_der(cls, data: bytes) -> "Certificate":
        """Parse DER bytes. Raises ValueError on malformed input."""
        return cls.from_x509(x509.load_der_x509_certificate(data))

    @classmethod
    def from_pem(cls, data: bytes | str) -> "Certificate":
        """Parse a single PEM certificate. Raises ValueError on malformed input."""
        if isinstance(data, str):
            data = data.encode("ascii")
        return cls.from_x509(x509.load_pem_x509_certificate(data))

    def to_x509(self) -> x509.Certificate:
        return x509.load_der_x509_certificate(self.der)

    @property
    def pem(self) -> str:
        return self.to_x509().public_bytes(serialization.Encoding.PEM).decode("ascii")

    @property
    def common_name(self) -> str:
        return self.subject.common_name

    @property
    def serial_hex(self) -> str:
        return format(self.serial_number, "x")

    @property
    def is_self_issued(self) -> bool:
        return self.subject == self.issuer

    def is_valid(self, now: datetime | None = None) -> bool:
        """True iff now lies within [not_before, not_after]."""
        now = now or utc_now()
        return self.not_before <= now <= self.not_after

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utc_now()) > self.not_after

    def days_until_expiry(self, now: datetime | None = None) -> int:
        """Whole days remaining, floored; 0 once expired."""
        remaining = (self.not_after - (now or utc_now())).total_seconds()
        return max(0, int(remaining // SECONDS_PER_DAY))


def _key_usage(cert: x509.Certificate) -> frozenset[str]:
    try:
        usage = cert.extensions.get_extension_for_class(x509.KeyUsage).value
    except x509.ExtensionNotFound:
        return frozenset()
    flags = {field for field in _KEY_USAGE_FIELDS if getattr(usage, field)}
    # encipher_only/decipher_only are only defined when key_agreement is set
    if usage.key_agreement:
        if usage.encipher_only:
            flags.add("encipher_only")
        if usage.decipher_only:
            flags.add("decipher_only")
    return frozenset(flags)


def _extended_key_usage(cert: x509.Certificate) -> frozenset[str]:
    try:
        usages = cert.extensions.get_extension_for_class(x509.ExtendedKeyUsage).value
    except x509.ExtensionNotFound:
        return frozenset()
    return frozenset(_EKU_NAMES.get(oid, oid.dotted_string) for oid in usages)


def _is_ca(cert: x509.Certificate) -> bool:
    try:
        return cert.extensions.get_extension_for_class(x509.BasicConstraints).value.ca
    except x509.ExtensionNotFound:
        return False


def _subject_alt_names(cert: x509.Certificate) -> tuple[str, ...]:
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    except x509.ExtensionNotFound:
        return ()
    names = [str(name) for name in san.get_values_for_type(x509.DNSName)]
    names.extend(str(ip) for ip in san.get_values_for_type(x509.IPAddress))
    return tuple(names)
