"""Certificate Authority Service: CA bootstrap and CSR signing.

CA material lives under ``pki_dir``::

    private/ca-key.pem       PKCS#8, unencrypted, mode 0600
    certs/ca-cert.pem        self-signed CA certificate
    ca-cert.srl              last serial issued (hex)
    private/server-key.pem   server TLS key (see provision_server_certificate)
    certs/server-cert.pem    server TLS certificate

Without a ``pki_dir`` everything stays in memory, which is what the tests use.
"""

import ipaddress
import logging
import os
import threading
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import timedelta
from enum import StrEnum
from pathlib import Path
from typing import Any

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID
from opentelemetry import trace

from authority.ca.serials import SerialCounter, SerialExhaustedError, SerialFileError
from pki.certificate import Certificate, DistinguishedName, utc_now
from pki.crypto import (
    SUPPORTED_ALGORITHMS,
    algorithm_name,
    generate_private_key,
    public_keys_match,
)
from pki.metrics import pki_metrics

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

CAPrivateKey = rsa.RSAPrivateKey | ec.EllipticCurvePrivateKey


class ConfigurationError(Exception):
    """Raised when CA material is missing, invalid or cannot be persisted."""

    pass


class IssuanceFailure(StrEnum):
    MALFORMED_CSR = "malformed_csr"
    EMPTY_SUBJECT = "empty_subject"
    SERIAL_EXHAUSTED = "serial_exhausted"
    VALIDITY_OUT_OF_RANGE = "validity_out_of_range"
    SUBJECT_MISMATCH = "subject_mismatch"


class IssuanceError(Exception):
    """Raised when a single CSR is rejected. The CA stays usable."""

    def __init__(self, reason: IssuanceFailure, detail: str = ""):
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason.value}: {detail}" if detail else reason.value)

    @property
    def is_client_error(self) -> bool:
        """True when the requester can fix the problem by sending a different CSR."""
        return self.reason is not IssuanceFailure.SERIAL_EXHAUSTED


class CertificateRole(StrEnum):
    SERVER = "server"
    CLIENT = "client"


DEFAULT_CA_SUBJECT = DistinguishedName(
    common_name="mTLS Demo Root CA",
    organization="mTLS Demo CA",
    organizational_unit="Security",
    country="US",
    state="CA",
    locality="San Francisco",
)


@dataclass(frozen=True)
class AuthorityConfig:
    pki_dir: Path | None = None
    subject: DistinguishedName = DEFAULT_CA_SUBJECT
    algorithm: str = "RSA"
    validity_years: int = 10
    max_validity_days: int = 365
    server_hostnames: tuple[str, ...] = ("localhost", "127.0.0.1")
    server_validity_days: int = 365

    @classmethod
    def from_settings(cls, settings: Any) -> "AuthorityConfig":
        return cls(
            pki_dir=Path(settings.PKI_DIR),
            subject=DistinguishedName(
                common_name=settings.CA_COMMON_NAME,
                organization=settings.CA_ORGANIZATION,
                organizational_unit=settings.CA_ORGANIZATIONAL_UNIT,
                country=settings.CA_COUNTRY,
                state=settings.CA_STATE,
                locality=settings.CA_LOCALITY,
            ),
            algorithm=settings.CA_ALGORITHM,
            validity_years=settings.CA_VALIDITY_YEARS,
            max_validity_days=settings.MAX_CERT_VALIDITY_DAYS,
            server_hostnames=settings.server_hostnames,
            server_validity_days=settings.SERVER_CERT_VALIDITY_DAYS,
        )


@dataclass
class CAKeyPair:
    """Holds CA private key and certificate."""

    private_key: CAPrivateKey
    certificate: Certificate
    storage_type: str  # "file", "generated" or "memory"

    @property
    def certificate_pem(self) -> str:
        return self.certificate.pem


@dataclass
class ServerCredentials:
    """Server TLS key and certificate issued by this CA."""

    private_key: CAPrivateKey
    certificate: Certificate
    key_path: Path | None = None
    cert_path: Path | None = None
    hostnames: tuple[str, ...] = field(default_factory=tuple)


class CertificateAuthority:
    """Owns the CA keypair and signs CSRs into leaf certificates.

    Leaf certificate profile:
    - Subject copied from the CSR, issuer = CA subject
    - BasicConstraints CA:false, KeyUsage digitalSignature (+keyEncipherment for RSA)
    - role=client: ExtendedKeyUsage clientAuth only
    - role=server: ExtendedKeyUsage serverAuth, SAN = server hostnames
    - Signed with SHA-256, serial from the shared SerialCounter
    """

    RSA_KEY_SIZE = 4096
    ECDSA_CURVE = ec.SECP384R1()
    MIN_RSA_KEY_SIZE = 2048
    SERVER_KEY_SIZE = 2048

    CA_KEY_FILE = Path("private/ca-key.pem")
    CA_CERT_FILE = Path("certs/ca-cert.pem")
    SERIAL_FILE = Path("ca-cert.srl")
    SERVER_KEY_FILE = Path("private/server-key.pem")
    SERVER_CERT_FILE = Path("certs/server-cert.pem")

    def __init__(self, config: AuthorityConfig, serial_counter: SerialCounter | None = None):
        self._config = config
        self._serials = serial_counter
        self._key_pair: CAKeyPair | None = None
        self._init_lock = threading.Lock()

    @property
    def config(self) -> AuthorityConfig:
        return self._config

    @property
    def key_pair(self) -> CAKeyPair:
        """Get loaded CA key pair. Raises if not initialized."""
        if self._key_pair is None:
            raise ConfigurationError("CA not initialized. Call initialize_authority() first.")
        return self._key_pair

    @property
    def certificate(self) -> Certificate:
        return self.key_pair.certificate

    # ------------------------------------------------------------------
    # CA bootstrap
    # ------------------------------------------------------------------

    def initialize_authority(self) -> CAKeyPair:
        """Load the CA from ``pki_dir`` or create it.

        A no-op when a valid CA is already loaded. Expired material on disk is
        replaced; partial or unreadable material is a configuration error.

        Raises:
            ConfigurationError: CA material is unusable or cannot be persisted.
        """
        with (
            tracer.start_as_current_span("CertificateAuthority.initialize_authority") as span,
            self._init_lock,
        ):
            now = utc_now()
            if self._key_pair is not None and self._key_pair.certificate.is_valid(now):
                span.set_attribute("storage_type", "cached")
                return self._key_pair

            if self._serials is None:
                self._serials = self._open_serial_counter()

            key_pair = self._load_from_files()
            if key_pair is not None and key_pair.certificate.is_expired(now):
                logger.warning(
                    "ca_certificate_expired",
                    extra={"not_after": key_pair.certificate.not_after.isoformat()},
                )
                key_pair = None
            elif key_pair is not None and not key_pair.certificate.is_valid(now):
                raise ConfigurationError(
                    "CA certificate is not yet valid "
                    f"(not_before={key_pair.certificate.not_before.isoformat()})"
                )

            if key_pair is None:
                key_pair = self._generate_new()
                self._save_to_files(key_pair)

            self._key_pair = key_pair

            span.set_attribute("storage_type", key_pair.storage_type)
            span.set_attribute("algorithm", algorithm_name(key_pair.private_key))
            span.set_attribute("ca_cert_expires", key_pair.certificate.not_after.isoformat())
            self._log_loaded(key_pair)
            return key_pair

    def _open_serial_counter(self) -> SerialCounter:
        if self._config.pki_dir is None:
            return SerialCounter()
        try:
            return SerialCounter(self._config.pki_dir / self.SERIAL_FILE)
        except (OSError, SerialFileError) as e:
            raise ConfigurationError(f"Cannot open serial file: {e}") from e

    def _load_from_files(self) -> CAKeyPair | None:
        if self._config.pki_dir is None:
            return None

        key_file = self._config.pki_dir / self.CA_KEY_FILE
        cert_file = self._config.pki_dir / self.CA_CERT_FILE
        present = (key_file.exists(), cert_file.exists())

        if not any(present):
            logger.debug("ca_files_not_found", extra={"pki_dir": str(self._config.pki_dir)})
            return None
        if not all(present):
            missing = cert_file if present[0] else key_file
            raise ConfigurationError(f"CA material incomplete, missing {missing}")

        try:
            private_key = serialization.load_pem_private_key(key_file.read_bytes(), password=None)
            certificate = Certificate.from_pem(cert_file.read_bytes())
        except (OSError, ValueError, TypeError, UnsupportedAlgorithm) as e:
            logger.error("ca_load_failed", extra={"storage_type": "file", "error": str(e)})
            raise ConfigurationError(f"Failed to load CA from {self._config.pki_dir}: {e}") from e

        if not isinstance(private_key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
            raise ConfigurationError(f"Unsupported CA key type: {type(private_key).__name__}")
        if not certificate.is_ca:
            raise ConfigurationError(f"{cert_file} is not a CA certificate")
        if not public_keys_match(private_key.public_key(), certificate.to_x509().public_key()):
            raise ConfigurationError("CA private key does not match CA certificate")

        return CAKeyPair(private_key=private_key, certificate=certificate, storage_type="file")

    def _generate_new(self) -> CAKeyPair:
        algorithm = self._config.algorithm.upper()
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise ConfigurationError(f"Unsupported CA algorithm: {self._config.algorithm}")

        logger.info("generating_ca_key_pair", extra={"algorithm": algorithm})

        private_key = generate_private_key(
            algorithm, rsa_key_size=self.RSA_KEY_SIZE, curve=self.ECDSA_CURVE
        )
        public_key = private_key.public_key()
        name = self._config.subject.to_x509()
        now = utc_now()

        try:
            serial = self._serials.next()
        except SerialExhaustedError as e:
            raise ConfigurationError(str(e)) from e

        certificate = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(public_key)
            .serial_number(serial)
            .not_valid_before(now)
            .not_valid_after(now + timedelta(days=365 * self._config.validity_years))
            .add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    key_cert_sign=True,
                    crl_sign=True,
                    key_encipherment=False,
                    content_commitment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(x509.SubjectKeyIdentifier.from_public_key(public_key), critical=False)
            .add_extension(
                x509.AuthorityKeyIdentifier.from_issuer_public_key(public_key), critical=False
            )
            .sign(private_key, hashes.SHA256())
        )

        storage_type = "generated" if self._config.pki_dir is not None else "memory"
        return CAKeyPair(
            private_key=private_key,
            certificate=Certificate.from_x509(certificate),
            storage_type=storage_type,
        )

    def _save_to_files(self, key_pair: CAKeyPair) -> None:
        if self._config.pki_dir is None:
            logger.warning("ca_not_persisted", extra={"reason": "no pki_dir configured"})
            return

        key_pem = key_pair.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        try:
            _write_file(self._config.pki_dir / self.CA_KEY_FILE, key_pem, mode=0o600)
            _write_file(
                self._config.pki_dir / self.CA_CERT_FILE,
                key_pair.certificate_pem.encode("ascii"),
                mode=0o644,
            )
        except OSError as e:
            raise ConfigurationError(f"Failed to persist CA material: {e}") from e

        logger.info("ca_key_pair_saved", extra={"pki_dir": str(self._config.pki_dir)})

    def _log_loaded(self, key_pair: CAKeyPair) -> None:
        logger.info(
            "ca_key_loaded",
            extra={
                "storage_type": key_pair.storage_type,
                "algorithm": algorithm_name(key_pair.private_key),
                "ca_cert_expires": key_pair.certificate.not_after.isoformat(),
                "fingerprint": key_pair.certificate.fingerprint,
            },
        )
        pki_metrics.record_ca_loaded(key_pair.storage_type)

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def issue_certificate(
        self,
        csr: x509.CertificateSigningRequest | bytes,
        role: CertificateRole,
        validity_days: int,
        server_hostnames: Sequence[str] | None = None,
    ) -> Certificate:
        """Validate a CSR and sign it into a leaf certificate.

        Args:
            csr: Parsed CSR or its DER encoding.
            role: Selects the role-specific extensions.
            validity_days: Lifetime in days, 1..max_validity_days.
            server_hostnames: SAN entries for role=server; defaults to config.

        Returns:
            The signed Certificate.

        Raises:
            IssuanceError: The CSR is rejected. No serial is consumed unless
                the request passed validation.
            ConfigurationError: The CA is not initialized.
        """
        with tracer.start_as_current_span("CertificateAuthority.issue_certificate") as span:
            span.set_attribute("role", role.value)
            span.set_attribute("validity_days", validity_days)
            start_time = time.perf_counter()
            key_pair = self.key_pair

            hostnames: tuple[str, ...] = ()
            if role is CertificateRole.SERVER:
                hostnames = tuple(server_hostnames or self._config.server_hostnames)
                if not hostnames:
                    raise ConfigurationError("Server certificates need at least one hostname")

            try:
                request = _parse_csr(csr)
                common_name = _requested_common_name(request)
                if not 1 <= validity_days <= self._config.max_validity_days:
                    raise IssuanceError(
                        IssuanceFailure.VALIDITY_OUT_OF_RANGE,
                        f"validity must be 1..{self._config.max_validity_days} days, "
                        f"got {validity_days}",
                    )
                try:
                    serial = self._serials.next()
                except SerialExhaustedError as e:
                    raise IssuanceError(IssuanceFailure.SERIAL_EXHAUSTED, str(e)) from e
            except IssuanceError as e:
                span.set_attribute("rejected", e.reason.value)
                pki_metrics.record_issuance_rejected(e.reason.value)
                logger.warning(
                    "issuance_rejected",
                    extra={"role": role.value, "reason": e.reason.value, "detail": e.detail},
                )
                raise

            span.set_attribute("common_name", common_name)
            span.set_attribute("serial", format(serial, "x"))

            certificate = self._sign(request, role, serial, validity_days, hostnames, key_pair)

            duration = time.perf_counter() - start_time
            pki_metrics.record_certificate_issued(role.value, duration)
            logger.info(
                "certificate_issued",
                extra={
                    "role": role.value,
                    "common_name": common_name,
                    "serial": certificate.serial_hex,
                    "not_after": certificate.not_after.isoformat(),
                    "duration_seconds": duration,
                },
            )
            return certificate

    def _sign(
        self,
        request: x509.CertificateSigningRequest,
        role: CertificateRole,
        serial: int,
        validity_days: int,
        hostnames: tuple[str, ...],
        key_pair: CAKeyPair,
    ) -> Certificate:
        public_key = request.public_key()
        ca_public_key = key_pair.private_key.public_key()
        now = utc_now()

        builder = (
            x509.CertificateBuilder()
            .subject_name(request.subject)
            .issuer_name(key_pair.certificate.to_x509().subject)
            .public_key(public_key)
            .serial_number(serial)
            .not_valid_before(now)
            .not_valid_after(now + timedelta(days=validity_days))
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    key_encipherment=isinstance(public_key, rsa.RSAPublicKey),
                    key_cert_sign=False,
                    crl_sign=False,
                    content_commitment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(x509.SubjectKeyIdentifier.from_public_key(public_key), critical=False)
            .add_extension(
                x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_public_key), critical=False
            )
        )

        if role is CertificateRole.SERVER:
            builder = builder.add_extension(
                x509.SubjectAlternativeName([_general_name(h) for h in hostnames]),
                critical=False,
            ).add_extension(
                x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False
            )
        else:
            builder = builder.add_extension(
                x509.ExtendedKeyUsage([ExtendedKeyUsageOID.CLIENT_AUTH]), critical=False
            )

        return Certificate.from_x509(builder.sign(key_pair.private_key, hashes.SHA256()))

    # ------------------------------------------------------------------
    # Server TLS identity
    # ------------------------------------------------------------------

    def provision_server_certificate(
        self, hostnames: Sequence[str] | None = None
    ) -> ServerCredentials:
        """Issue the server's own TLS certificate, reusing a still-valid one.

        An existing certificate is reused only if it was issued by the current
        CA, is inside its validity window and covers every requested hostname.
        """
        hostnames = tuple(hostnames or self._config.server_hostnames)
        key_path = cert_path = None
        if self._config.pki_dir is not None:
            key_path = self._config.pki_dir / self.SERVER_KEY_FILE
            cert_path = self._config.pki_dir / self.SERVER_CERT_FILE
            existing = self._load_server_credentials(key_path, cert_path, hostnames)
            if existing is not None:
                logger.info(
                    "server_certificate_reused",
                    extra={"serial": existing.certificate.serial_hex, "hostnames": hostnames},
                )
                return existing

        private_key = generate_private_key("RSA", rsa_key_size=self.SERVER_KEY_SIZE)
        subject = DistinguishedName(
            common_name=hostnames[0],
            organization=self._config.subject.organization,
            organizational_unit="Server",
            country=self._config.subject.country,
        )
        csr = (
            x509.CertificateSigningRequestBuilder()
            .subject_name(subject.to_x509())
            .sign(private_key, hashes.SHA256())
        )
        certificate = self.issue_certificate(
            csr,
            CertificateRole.SERVER,
            min(self._config.server_validity_days, self._config.max_validity_days),
            server_hostnames=hostnames,
        )

        if key_path is not None and cert_path is not None:
            key_pem = private_key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.NoEncryption(),
            )
            try:
                _write_file(key_path, key_pem, mode=0o600)
                _write_file(cert_path, certificate.pem.encode("ascii"), mode=0o644)
            except OSError as e:
                raise ConfigurationError(f"Failed to persist server certificate: {e}") from e

        return ServerCredentials(
            private_key=private_key,
            certificate=certificate,
            key_path=key_path,
            cert_path=cert_path,
            hostnames=hostnames,
        )

    def _load_server_credentials(
        self, key_path: Path, cert_path: Path, hostnames: tuple[str, ...]
    ) -> ServerCredentials | None:
        if not key_path.exists() or not cert_path.exists():
            return None
        try:
            private_key = serialization.load_pem_private_key(key_path.read_bytes(), password=None)
            certificate = Certificate.from_pem(cert_path.read_bytes())
        except (OSError, ValueError, TypeError, UnsupportedAlgorithm) as e:
            logger.warning("server_certificate_unreadable", extra={"error": str(e)})
            return None

        try:
            certificate.to_x509().verify_directly_issued_by(self.certificate.to_x509())
        except (ValueError, TypeError, InvalidSignature):
            return None
        if not certificate.is_valid() or not set(hostnames) <= set(certificate.subject_alt_names):
            return None
        if not isinstance(private_key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
            return None
        return ServerCredentials(
            private_key=private_key,
            certificate=certificate,
            key_path=key_path,
            cert_path=cert_path,
            hostnames=hostnames,
        )


def _parse_csr(csr: x509.CertificateSigningRequest | bytes) -> x509.CertificateSigningRequest:
    if isinstance(csr, x509.CertificateSigningRequest):
        request = csr
    else:
        try:
            request = x509.load_der_x509_csr(bytes(csr))
        except ValueError as e:
            raise IssuanceError(IssuanceFailure.MALFORMED_CSR, f"not a DER CSR: {e}") from None

    try:
        signature_ok = request.is_signature_valid
        public_key = request.public_key()
    except (ValueError, UnsupportedAlgorithm) as e:
        raise IssuanceError(IssuanceFailure.MALFORMED_CSR, str(e)) from None

    if not signature_ok:
        raise IssuanceError(IssuanceFailure.MALFORMED_CSR, "CSR signature does not verify")
    if isinstance(public_key, rsa.RSAPublicKey):
        if public_key.key_size < CertificateAuthority.MIN_RSA_KEY_SIZE:
            raise IssuanceError(
                IssuanceFailure.MALFORMED_CSR,
                f"RSA key of {public_key.key_size} bits is below "
                f"{CertificateAuthority.MIN_RSA_KEY_SIZE}",
            )
    elif not isinstance(public_key, ec.EllipticCurvePublicKey):
        raise IssuanceError(
            IssuanceFailure.MALFORMED_CSR, f"unsupported key type {type(public_key).__name__}"
        )
    return request


def _requested_common_name(request: x509.CertificateSigningRequest) -> str:
    attributes = request.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    value = attributes[0].value if attributes else ""
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    if not value.strip():
        raise IssuanceError(IssuanceFailure.EMPTY_SUBJECT, "CSR subject has no common name")
    return value


def requested_common_name(csr: x509.CertificateSigningRequest | bytes) -> str:
    """Common name requested by a CSR, with the same checks issuance applies."""
    return _requested_common_name(_parse_csr(csr))


def _general_name(hostname: str) -> x509.GeneralName:
    try:
        return x509.IPAddress(ipaddress.ip_address(hostname))
    except ValueError:
        return x509.DNSName(hostname)


def _write_file(path: Path, data: bytes, mode: int) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, "wb") as handle:
        handle.write(data)
    os.chmod(path, mode)
