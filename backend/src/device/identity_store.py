"""The device's installed identities and which one is current.

The current-identity cache is the only mutable state shared between the
enrollment orchestrator, the rotation engine and TLS clients, so every read
and write of it goes through one lock.
"""

import logging
import threading
from datetime import datetime

from cryptography.hazmat.primitives.serialization import pkcs12

from device.domain.models import Identity
from device.domain.states import IdentitySource
from device.key_store import KeyStoreError, SecureKeyStore
from pki.certificate import Certificate, utc_now
from pki.crypto import public_keys_match

logger = logging.getLogger(__name__)


class IdentityStore:
    """Install, select and retire identities held in a SecureKeyStore.

    ``current()`` prefers the most recently installed identity that is still
    valid. An expired identity is only returned when nothing valid exists,
    so the rotation engine can still report on it.
    """

    def __init__(self, key_store: SecureKeyStore):
        self.key_store = key_store
        self._lock = threading.RLock()
        self._current: Identity | None = None
        self._loaded = False

    def current(self, now: datetime | None = None) -> Identity | None:
        with self._lock:
            if not self._loaded:
                self._current = self._select(self.key_store.list(), now)
                self._loaded = True
            return self._current

    def install(self, identity: Identity) -> None:
        """Persist ``identity`` and make it current.

        An identity previously stored under the same label is replaced and
        its key discarded.

        Raises:
            KeyStoreError: If the certificate does not match the referenced key
                or the store cannot persist it
        """
        certificate_key = identity.certificate.to_x509().public_key()
        if not public_keys_match(self.key_store.public_key(identity.key_ref), certificate_key):
            raise KeyStoreError(f"Certificate for {identity.label} does not match its key")

        with self._lock:
            previous = self.key_store.retrieve(identity.label)
            self.key_store.store(identity.label, identity)
            if previous is not None and previous.key_ref != identity.key_ref:
                self.key_store.discard_key(previous.key_ref)
                logger.info(
                    "identity_replaced",
                    extra={
                        "label": identity.label,
                        "previous_serial": previous.certificate.serial_hex,
                    },
                )
            self._current = identity
            self._loaded = True

        logger.info(
            "identity_installed",
            extra={
                "label": identity.label,
                "source": identity.source.value,
                "serial_number": identity.certificate.serial_hex,
                "not_after": identity.certificate.not_after.isoformat(),
            },
        )

    def remove(self, label: str) -> bool:
        with self._lock:
            removed = self.key_store.delete(label)
            if removed and self._current is not None and self._current.label == label:
                self._current = None
                self._loaded = False
        if removed:
            logger.info("identity_removed", extra={"label": label})
        return removed

    def identities(self) -> list[Identity]:
        return self.key_store.list()

    def cleanup_expired(self, now: datetime | None = None) -> list[str]:
        """Delete every expired identity. Returns the removed labels."""
        now = now or utc_now()
        removed = []
        for identity in self.key_store.list():
            if identity.certificate.is_expired(now) and self.remove(identity.label):
                removed.append(identity.label)
        if removed:
            logger.info("expired_identities_removed", extra={"labels": removed})
        return removed

    def import_pkcs12(self, data: bytes, password: str | None, label: str) -> Identity:
        """Install a provisioned identity from a PKCS#12 bundle.

        Raises:
            KeyStoreError: If the bundle cannot be decrypted or lacks a key or certificate
        """
        try:
            private_key, certificate, _ = pkcs12.load_key_and_certificates(
                data, password.encode("utf-8") if password else None
            )
        except ValueError as e:
            raise KeyStoreError(f"Invalid PKCS#12 bundle: {e}") from e
        if private_key is None or certificate is None:
            raise KeyStoreError("PKCS#12 bundle must contain a private key and a certificate")

        # Held from import to install so purge_orphan_keys never sees the key unreferenced
        with self._lock:
            key_ref = self.key_store.import_key(private_key)
            identity = Identity(
                label=label,
                certificate=Certificate.from_x509(certificate),
                key_ref=key_ref,
                source=IdentitySource.PROVISIONED,
            )
            try:
                self.install(identity)
            except KeyStoreError:
                self.key_store.discard_key(key_ref)
                raise
        return identity

    def purge_orphan_keys(self) -> int:
        """Discard keys no stored identity references, excluding in-flight imports."""
        with self._lock:
            return self.key_store.purge_orphan_keys()

    @staticmethod
    def _select(candidates: list[Identity], now: datetime | None) -> Identity | None:
        if not candidates:
            return None
        now = now or utc_now()
        valid = [identity for identity in candidates if identity.certificate.is_valid(now)]
        pool = valid or candidates
        return max(pool, key=lambda identity: identity.installed_at)
