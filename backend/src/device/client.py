"""Composition of the device-side services from settings."""

import logging
import ssl
import uuid
from pathlib import Path

from device.domain.models import Identity
from device.domain.states import EnrollmentStatus
from device.identity_store import IdentityStore
from device.key_store import FileKeyStore
from device.services.enrollment import EnrollmentOrchestrator
from device.services.rotation import RotationPolicyEngine
from device.transport import HttpEnrollmentTransport, HttpStatusTransport, pinned_ssl_context
from pki.trust import TrustValidator
from shared.config import Settings

logger = logging.getLogger(__name__)

DEVICE_ID_FILE = "device-id"


def load_device_id(key_store_dir: Path) -> str:
    """Return the persisted device id, generating it on first use."""
    path = Path(key_store_dir) / DEVICE_ID_FILE
    if path.exists():
        device_id = path.read_text("utf-8").strip()
        if device_id:
            return device_id
    device_id = str(uuid.uuid4())
    path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    path.write_text(device_id + "\n", "utf-8")
    logger.info("device_id_generated", extra={"device_id": device_id})
    return device_id


class DeviceClient:
    """Enrollment and rotation monitoring for one device."""

    def __init__(
        self,
        device_id: str,
        identity_store: IdentityStore,
        orchestrator: EnrollmentOrchestrator,
        rotation_engine: RotationPolicyEngine,
    ):
        self.device_id = device_id
        self.identity_store = identity_store
        self.orchestrator = orchestrator
        self.rotation_engine = rotation_engine

    @classmethod
    def from_settings(cls, settings: Settings, ca_pem: str) -> "DeviceClient":
        key_store = FileKeyStore(settings.KEY_STORE_DIR, settings.KEY_STORE_PASSPHRASE)
        identity_store = IdentityStore(key_store)
        validator = TrustValidator.from_pem(ca_pem)

        def identity_context(identity: Identity) -> ssl.SSLContext:
            return key_store.client_ssl_context(identity.label, ca_pem)

        orchestrator = EnrollmentOrchestrator(
            identity_store,
            HttpEnrollmentTransport(
                settings.SERVER_URL,
                timeout=settings.ENROLLMENT_TIMEOUT_SECONDS,
                verify=pinned_ssl_context(ca_pem),
                trust_validator=validator,
                enrollment_token=settings.ENROLLMENT_TOKEN,
            ),
            organization=settings.ENROLLMENT_ORGANIZATION,
            organizational_unit=settings.ENROLLMENT_ORGANIZATIONAL_UNIT,
            timeout=settings.ENROLLMENT_TIMEOUT_SECONDS,
        )
        rotation_engine = RotationPolicyEngine(
            identity_store,
            HttpStatusTransport(
                settings.SERVER_URL,
                timeout=settings.STATUS_TIMEOUT_SECONDS,
                ssl_context_factory=identity_context,
                trust_validator=validator,
            ),
            threshold_days=settings.ROTATION_THRESHOLD_DAYS,
            recommended_days=settings.ROTATION_RECOMMENDED_DAYS,
            check_interval=settings.ROTATION_CHECK_INTERVAL_SECONDS,
            timeout=settings.STATUS_TIMEOUT_SECONDS,
        )
        device_id = settings.DEVICE_ID or load_device_id(settings.KEY_STORE_DIR)
        return cls(device_id, identity_store, orchestrator, rotation_engine)

    async def enroll(self) -> Identity:
        """Enroll and re-evaluate rotation status for the new identity.

        A finished attempt (Completed or Failed) is reset first.
        """
        if self.orchestrator.state.status in (EnrollmentStatus.COMPLETED, EnrollmentStatus.FAILED):
            self.orchestrator.reset()
        identity = await self.orchestrator.start(self.device_id)
        await self.rotation_engine.evaluate(identity)
        return identity

    def start(self) -> None:
        self.rotation_engine.start()

    async def stop(self) -> None:
        await self.rotation_engine.stop()
