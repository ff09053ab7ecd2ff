"""Device key storage.

Private keys stay inside a SecureKeyStore. Callers hold a ``KeyReference``
and ask the store to sign; nothing outside the store touches key material.
The same store persists the identity records that bind a certificate to a
key, so an identity and its key are always looked up together.
"""

import logging
import os
import re
import ssl
import tempfile
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.types import PrivateKeyTypes, PublicKeyTypes
from pydantic import BaseModel, ValidationError

from device.domain.models import Identity, KeyReference
from device.domain.states import IdentitySource
from pki.certificate import Certificate
from pki.crypto import algorithm_name, generate_private_key, sign_data

logger = logging.getLogger(__name__)

LABEL_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


class KeyStoreError(Exception):
    """Raised when the store cannot generate, load, persist or use a key."""

    pass


class SecureKeyStore(ABC):
    """Holds private keys and the identities bound to them."""

    # Keys

    @abstractmethod
    def generate_keypair(self, algorithm: str = "ECDSA") -> KeyReference: ...

    @abstractmethod
    def import_key(self, private_key: PrivateKeyTypes) -> KeyReference: ...

    @abstractmethod
    def public_key(self, ref: KeyReference) -> PublicKeyTypes: ...

    @abstractmethod
    def sign(self, ref: KeyReference, data: bytes) -> bytes: ...

    @abstractmethod
    def sign_csr(
        self, ref: KeyReference, builder: x509.CertificateSigningRequestBuilder
    ) -> x509.CertificateSigningRequest: ...

    @abstractmethod
    def discard_key(self, ref: KeyReference) -> None:
        """Remove a key. Unknown references are ignored."""

    @abstractmethod
    def key_ids(self) -> set[str]: ...

    # Identities

    @abstractmethod
    def store(self, label: str, identity: Identity) -> None: ...

    @abstractmethod
    def retrieve(self, label: str) -> Identity | None: ...

    @abstractmethod
    def list(self) -> list[Identity]: ...

    @abstractmethod
    def delete(self, label: str) -> bool:
        """Remove an identity and its key. Returns False if the label is unknown."""

    def purge_orphan_keys(self) -> int:
        """Discard keys that no stored identity references.

        Must not run while an enrollment holds a pending key.
        """
        referenced = {identity.key_ref.key_id for identity in self.list()}
        orphans = self.key_ids() - referenced
        for key_id in orphans:
            # Algorithm is irrelevant for discard
            self.discard_key(KeyReference(key_id=key_id, algorithm=""))
        if orphans:
            logger.info("orphan_keys_purged", extra={"count": len(orphans)})
        return len(orphans)


def _new_key_id() -> str:
    return uuid.uuid4().hex


def _check_label(label: str) -> None:
    if not LABEL_PATTERN.match(label):
        raise KeyStoreError(f"Invalid identity label: {label!r}")


class MemoryKeyStore(SecureKeyStore):
    """Process-local store. Nothing survives the process."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._keys: dict[str, PrivateKeyTypes] = {}
        self._identities: dict[str, Identity] = {}

    def generate_keypair(self, algorithm: str = "ECDSA") -> KeyReference:
        try:
            private_key = generate_private_key(algorithm)
        except ValueError as e:
            raise KeyStoreError(str(e)) from e
        return self.import_key(private_key)

    def import_key(self, private_key: PrivateKeyTypes) -> KeyReference:
        ref = KeyReference(key_id=_new_key_id(), algorithm=algorithm_name(private_key))
        with self._lock:
            self._keys[ref.key_id] = private_key
        return ref

    def _private_key(self, ref: KeyReference) -> PrivateKeyTypes:
        with self._lock:
            try:
                return self._keys[ref.key_id]
            except KeyError:
                raise KeyStoreError(f"Unknown key: {ref.key_id}") from None

    def public_key(self, ref: KeyReference) -> PublicKeyTypes:
        return self._private_key(ref).public_key()

    def sign(self, ref: KeyReference, data: bytes) -> bytes:
        return sign_data(self._private_key(ref), data)

    def sign_csr(
        self, ref: KeyReference, builder: x509.CertificateSigningRequestBuilder
    ) -> x509.CertificateSigningRequest:
        return builder.sign(self._private_key(ref), hashes.SHA256())

    def discard_key(self, ref: KeyReference) -> None:
        with self._lock:
            self._keys.pop(ref.key_id, None)

    def key_ids(self) -> set[str]:
        with self._lock:
            return set(self._keys)

    def store(self, label: str, identity: Identity) -> None:
        _check_label(label)
        with self._lock:
            if identity.key_ref.key_id not in self._keys:
                raise KeyStoreError(f"Identity {label} references unknown key")
            self._identities[label] = identity

    def retrieve(self, label: str) -> Identity | None:
        with self._lock:
            return self._identities.get(label)

    def list(self) -> list[Identity]:
        with self._lock:
            return list(self._identities.values())

    def delete(self, label: str) -> bool:
        with self._lock:
            identity = self._identities.pop(label, None)
            if identity is None:
                return False
            if not any(i.key_ref == identity.key_ref for i in self._identities.values()):
                self._keys.pop(identity.key_ref.key_id, None)
            return True


class IdentityRecord(BaseModel):
    """On-disk form of an Identity (``identities/<label>.json``)."""

    label: str
    certificate_pem: str
    key_id: str
    algorithm: str
    source: IdentitySource
    installed_at: datetime

    @classmethod
    def from_identity(cls, identity: Identity) -> "IdentityRecord":
        return cls(
            label=identity.label,
            certificate_pem=identity.certificate.pem,
            key_id=identity.key_ref.key_id,
            algorithm=identity.key_ref.algorithm,
            source=identity.source,
            installed_at=identity.installed_at,
        )

    def to_identity(self) -> Identity:
        return Identity(
            label=self.label,
            certificate=Certificate.from_pem(self.certificate_pem),
            key_ref=KeyReference(key_id=self.key_id, algorithm=self.algorithm),
            source=self.source,
            installed_at=self.installed_at,
        )


class FileKeyStore(SecureKeyStore):
    """Directory-backed store.

    Layout::

        <root>/keys/<key_id>.pem          PKCS#8, encrypted when a passphrase is set
        <root>/identities/<label>.json    IdentityRecord
        <root>/identities/<label>.crt     certificate PEM, for ssl.load_cert_chain

    Files are written atomically with mode 0600.
    """

    def __init__(self, root: Path, passphrase: str | None = None):
        self.root = Path(root)
        self._passphrase = passphrase.encode("utf-8") if passphrase else None
        self._lock = threading.RLock()
        self._keys_dir = self.root / "keys"
        self._identities_dir = self.root / "identities"

    # Paths

    def _key_path(self, key_id: str) -> Path:
        if not re.fullmatch(r"[0-9a-f]{32}", key_id):
            raise KeyStoreError(f"Invalid key id: {key_id!r}")
        return self._keys_dir / f"{key_id}.pem"

    def _record_path(self, label: str) -> Path:
        _check_label(label)
        return self._identities_dir / f"{label}.json"

    def _cert_path(self, label: str) -> Path:
        _check_label(label)
        return self._identities_dir / f"{label}.crt"

    def _encryption(self) -> serialization.KeySerializationEncryption:
        if self._passphrase:
            return serialization.BestAvailableEncryption(self._passphrase)
        return serialization.NoEncryption()

    # Keys

    def generate_keypair(self, algorithm: str = "ECDSA") -> KeyReference:
        try:
            private_key = generate_private_key(algorithm)
        except ValueError as e:
            raise KeyStoreError(str(e)) from e
        return self.import_key(private_key)

    def import_key(self, private_key: PrivateKeyTypes) -> KeyReference:
        ref = KeyReference(key_id=_new_key_id(), algorithm=algorithm_name(private_key))
        pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=self._encryption(),
        )
        with self._lock:
            try:
                _atomic_write(self._key_path(ref.key_id), pem)
            except OSError as e:
                raise KeyStoreError(f"Failed to persist key: {e}") from e
        logger.debug("key_stored", extra={"key_id": ref.key_id, "algorithm": ref.algorithm})
        return ref

    def _private_key(self, ref: KeyReference) -> PrivateKeyTypes:
        path = self._key_path(ref.key_id)
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            raise KeyStoreError(f"Unknown key: {ref.key_id}") from None
        except OSError as e:
            raise KeyStoreError(f"Failed to read key {ref.key_id}: {e}") from e
        try:
            return serialization.load_pem_private_key(data, password=self._passphrase)
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise KeyStoreError(f"Failed to load key {ref.key_id}: {e}") from e

    def public_key(self, ref: KeyReference) -> PublicKeyTypes:
        return self._private_key(ref).public_key()

    def sign(self, ref: KeyReference, data: bytes) -> bytes:
        return sign_data(self._private_key(ref), data)

    def sign_csr(
        self, ref: KeyReference, builder: x509.CertificateSigningRequestBuilder
    ) -> x509.CertificateSigningRequest:
        return builder.sign(self._private_key(ref), hashes.SHA256())

    def discard_key(self, ref: KeyReference) -> None:
        with self._lock:
            self._key_path(ref.key_id).unlink(missing_ok=True)

    def key_ids(self) -> set[str]:
        if not self._keys_dir.is_dir():
            return set()
        return {path.stem for path in self._keys_dir.glob("*.pem")}

    # Identities

    def store(self, label: str, identity: Identity) -> None:
        record = IdentityRecord.from_identity(identity)
        with self._lock:
            if not self._key_path(identity.key_ref.key_id).exists():
                raise KeyStoreError(f"Identity {label} references unknown key")
            try:
                _atomic_write(self._cert_path(label), identity.certificate.pem.encode("ascii"))
                _atomic_write(self._record_path(label), record.model_dump_json().encode("utf-8"))
            except OSError as e:
                raise KeyStoreError(f"Failed to persist identity {label}: {e}") from e
        logger.info("identity_stored", extra={"label": label, "key_id": identity.key_ref.key_id})

    def retrieve(self, label: str) -> Identity | None:
        path = self._record_path(label)
        try:
            data = path.read_text("utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise KeyStoreError(f"Failed to read identity {label}: {e}") from e
        try:
            return IdentityRecord.model_validate_json(data).to_identity()
        except (ValidationError, ValueError) as e:
            raise KeyStoreError(f"Corrupt identity record {label}: {e}") from e

    def list(self) -> list[Identity]:
        if not self._identities_dir.is_dir():
            return []
        identities = []
        for path in sorted(self._identities_dir.glob("*.json")):
            identity = self.retrieve(path.stem)
            if identity is not None:
                identities.append(identity)
        return identities

    def delete(self, label: str) -> bool:
        with self._lock:
            identity = self.retrieve(label)
            if identity is None:
                return False
            self._record_path(label).unlink(missing_ok=True)
            self._cert_path(label).unlink(missing_ok=True)
            if not any(i.key_ref == identity.key_ref for i in self.list()):
                self.discard_key(identity.key_ref)
        logger.info("identity_deleted", extra={"label": label})
        return True

    def client_ssl_context(self, label: str, ca_pem: str) -> ssl.SSLContext:
        """TLS client context presenting ``label`` and trusting only ``ca_pem``.

        Raises:
            KeyStoreError: If the identity is unknown or its files cannot be loaded
        """
        identity = self.retrieve(label)
        if identity is None:
            raise KeyStoreError(f"Unknown identity: {label}")
        context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH, cadata=ca_pem)
        context.minimum_version = ssl.TLSVersion.TLSv1_2
        try:
            context.load_cert_chain(
                certfile=self._cert_path(label),
                keyfile=self._key_path(identity.key_ref.key_id),
                password=self._passphrase,
            )
        except (OSError, ssl.SSLError) as e:
            raise KeyStoreError(f"Failed to load identity {label} for TLS: {e}") from e
        return context


def _atomic_write(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_name, 0o600)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
