"""Enrollment orchestration on the device.

Drives one enrollment from key generation to an installed Identity:

    Idle -> Starting -> GeneratingKeys -> GeneratingCSR -> SubmittingCSR
         -> ReceivingCertificate -> Completed

Any step can end in Failed(reason). Nothing is installed until the whole
flow succeeds; a key generated by a failed or cancelled run is discarded.
"""

import asyncio
import hashlib
import logging
from collections.abc import Callable
from typing import Protocol

from cryptography import x509
from cryptography.hazmat.primitives.serialization import Encoding
from cryptography.x509.oid import NameOID
from opentelemetry import trace

from device.domain.models import EnrollmentAttempt, EnrollmentState, Identity, KeyReference
from device.domain.state_machine import InvalidTransitionError
from device.domain.state_machines import EnrollmentStateMachine
from device.domain.states import (
    ACTIVE_ENROLLMENT_STATES,
    EnrollmentEvent,
    EnrollmentStatus,
    IdentitySource,
)
from device.identity_store import IdentityStore
from device.key_store import LABEL_PATTERN, KeyStoreError
from device.transport import (
    EnrollmentRejectedError,
    EnrollmentResult,
    EnrollmentSubmission,
    MalformedResponseError,
    TransportError,
)
from pki.certificate import Certificate
from pki.crypto import public_keys_match
from pki.metrics import pki_metrics
from pki.trust import TrustError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

DEFAULT_ORGANIZATION = "mTLS Demo iOS"
DEFAULT_ORGANIZATIONAL_UNIT = "Mobile Client"

# Failure reasons
KEY_GENERATION_FAILED = "key generation failed"
CSR_GENERATION_FAILED = "csr generation failed"
SUBMISSION_FAILED = "submission failed"
CERTIFICATE_PARSE_FAILED = "certificate parse failed"
CERTIFICATE_KEY_MISMATCH = "certificate key mismatch"
IDENTITY_STORAGE_FAILED = "identity storage failed"
ENROLLMENT_CANCELLED = "enrollment cancelled"
ENROLLMENT_FAILED = "enrollment failed"


class EnrollmentError(Exception):
    """An enrollment ended in Failed(reason).

    ``retryable`` is True for transient failures (network, server error) and
    False when the same input would fail again.
    """

    def __init__(self, reason: str, retryable: bool = False, details: object = None):
        self.reason = reason
        self.retryable = retryable
        self.details = details
        super().__init__(reason)


class EnrollmentInProgressError(Exception):
    """Raised by ``start`` when the orchestrator is not Idle."""

    def __init__(self, status: EnrollmentStatus):
        self.status = status
        super().__init__(f"Enrollment not idle: {status.value}")


class EnrollmentTransport(Protocol):
    async def submit(self, submission: EnrollmentSubmission) -> EnrollmentResult: ...


def identity_label(device_id: str) -> str:
    """Key store label for a device's enrolled identity.

    Ids whose first 8 characters are not label-safe use a SHA-256 prefix
    of the whole id instead.
    """
    label = f"client-{device_id[:8]}"
    if LABEL_PATTERN.match(label):
        return label
    return f"client-{hashlib.sha256(device_id.encode('utf-8')).hexdigest()[:8]}"


class EnrollmentOrchestrator:
    """Runs enrollments against a transport and installs the result.

    Args:
        identity_store: Where the finished identity is installed; its key
            store generates and holds the key.
        transport: Submits the CSR (see ``HttpEnrollmentTransport``).
        organization: CSR subject O.
        organizational_unit: CSR subject OU.
        key_algorithm: ``ECDSA`` (P-256) or ``RSA``.
        timeout: Upper bound in seconds for the submission step.
    """

    def __init__(
        self,
        identity_store: IdentityStore,
        transport: EnrollmentTransport,
        organization: str = DEFAULT_ORGANIZATION,
        organizational_unit: str = DEFAULT_ORGANIZATIONAL_UNIT,
        key_algorithm: str = "ECDSA",
        timeout: float = 30.0,
    ):
        self.identity_store = identity_store
        self.key_store = identity_store.key_store
        self.transport = transport
        self.organization = organization
        self.organizational_unit = organizational_unit
        self.key_algorithm = key_algorithm
        self.timeout = timeout
        self._attempt = EnrollmentAttempt()
        self._machine = EnrollmentStateMachine(self._attempt)
        self._listeners: list[Callable[[EnrollmentState], None]] = []

    @property
    def state(self) -> EnrollmentState:
        return EnrollmentState(self._attempt.status, self._attempt.failure_reason)

    def add_listener(self, listener: Callable[[EnrollmentState], None]) -> None:
        self._listeners.append(listener)

    def _notify(self) -> None:
        state = self.state
        for listener in self._listeners:
            try:
                listener(state)
            except Exception:
                logger.exception("enrollment_listener_failed")

    def _advance(self, event: EnrollmentEvent) -> None:
        self._machine.transition(event)
        self._notify()

    def reset(self) -> None:
        """Return to Idle from Completed or Failed.

        Raises:
            InvalidTransitionError: If an enrollment is still running or already idle
        """
        self._machine.reset()
        self._notify()

    async def start(self, device_id: str, common_name: str | None = None) -> Identity:
        """Run a full enrollment and return the installed identity.

        Raises:
            EnrollmentInProgressError: If the orchestrator is not Idle
            EnrollmentError: The run ended in Failed(reason)
            asyncio.CancelledError: The run was cancelled; state is
                Failed("enrollment cancelled")

        Any other exception is re-raised after moving to Failed("enrollment failed").
        """
        common_name = common_name or identity_label(device_id)
        try:
            self._machine.begin(device_id, common_name)
        except InvalidTransitionError:
            raise EnrollmentInProgressError(self._attempt.status) from None
        self._notify()

        with tracer.start_as_current_span("device.enroll") as span:
            span.set_attribute("device_id", device_id)
            span.set_attribute("common_name", common_name)
            try:
                identity = await self._run(device_id, common_name)
            except asyncio.CancelledError:
                self._fail(ENROLLMENT_CANCELLED)
                raise
            except EnrollmentError as e:
                span.set_attribute("failure_reason", e.reason)
                raise
            except Exception as e:
                if self._attempt.status in ACTIVE_ENROLLMENT_STATES:
                    self._fail(ENROLLMENT_FAILED, details=str(e))
                span.set_attribute("failure_reason", ENROLLMENT_FAILED)
                raise
            span.set_attribute("serial_number", identity.certificate.serial_hex)

        pki_metrics.record_device_enrollment("completed")
        logger.info(
            "device_enrollment_completed",
            extra={
                "device_id": device_id,
                "label": identity.label,
                "serial_number": identity.certificate.serial_hex,
            },
        )
        return identity

    async def _run(self, device_id: str, common_name: str) -> Identity:
        self._advance(EnrollmentEvent.KEY_GENERATION_STARTED)
        try:
            await asyncio.to_thread(self.identity_store.purge_orphan_keys)
            key_ref = await asyncio.to_thread(self.key_store.generate_keypair, self.key_algorithm)
        except KeyStoreError as e:
            raise self._fail(KEY_GENERATION_FAILED, details=str(e)) from e
        self._attempt.pending_key = key_ref
        self._advance(EnrollmentEvent.KEYPAIR_GENERATED)

        try:
            csr_der = self._build_csr(key_ref, common_name)
        except (KeyStoreError, ValueError) as e:
            raise self._fail(CSR_GENERATION_FAILED, details=str(e)) from e
        self._advance(EnrollmentEvent.CSR_BUILT)

        submission = EnrollmentSubmission(
            csr_der=csr_der, device_id=device_id, common_name=common_name
        )
        try:
            result = await asyncio.wait_for(self.transport.submit(submission), self.timeout)
        except (TransportError, TimeoutError) as e:
            raise self._fail(SUBMISSION_FAILED, retryable=True, details=str(e)) from e
        except TrustError as e:
            raise self._fail(SUBMISSION_FAILED, details=str(e)) from e
        except EnrollmentRejectedError as e:
            raise self._fail(e.reason, retryable=not e.is_client_error, details=e.details) from e
        except MalformedResponseError as e:
            raise self._fail(CERTIFICATE_PARSE_FAILED, details=str(e)) from e
        self._advance(EnrollmentEvent.CERTIFICATE_RECEIVED)

        try:
            certificate = Certificate.from_der(result.certificate_der)
        except ValueError as e:
            raise self._fail(CERTIFICATE_PARSE_FAILED, details=str(e)) from e
        try:
            matches = public_keys_match(
                self.key_store.public_key(key_ref), certificate.to_x509().public_key()
            )
        except KeyStoreError as e:
            raise self._fail(IDENTITY_STORAGE_FAILED, details=str(e)) from e
        if not matches:
            raise self._fail(CERTIFICATE_KEY_MISMATCH)

        identity = Identity(
            label=identity_label(device_id),
            certificate=certificate,
            key_ref=key_ref,
            source=IdentitySource.ENROLLED,
        )
        # No await between install and Completed, so cancellation cannot split them
        try:
            self.identity_store.install(identity)
        except KeyStoreError as e:
            raise self._fail(IDENTITY_STORAGE_FAILED, details=str(e)) from e

        self._attempt.pending_key = None
        self._advance(EnrollmentEvent.IDENTITY_INSTALLED)
        return identity

    def _build_csr(self, key_ref: KeyReference, common_name: str) -> bytes:
        subject = x509.Name(
            [
                x509.NameAttribute(NameOID.COMMON_NAME, common_name),
                x509.NameAttribute(NameOID.ORGANIZATION_NAME, self.organization),
                x509.NameAttribute(NameOID.ORGANIZATIONAL_UNIT_NAME, self.organizational_unit),
            ]
        )
        builder = x509.CertificateSigningRequestBuilder().subject_name(subject)
        csr = self.key_store.sign_csr(key_ref, builder)
        return csr.public_bytes(Encoding.DER)

    def _fail(
        self, reason: str, retryable: bool = False, details: object = None
    ) -> EnrollmentError:
        """Discard the pending key, move to Failed(reason) and build the error to raise."""
        pending_key = self._attempt.pending_key
        if pending_key is not None:
            try:
                self.key_store.discard_key(pending_key)
            except KeyStoreError:
                # Left as an orphan; purged by the next start()
                logger.warning("pending_key_discard_failed", extra={"key_id": pending_key.key_id})
            self._attempt.pending_key = None

        self._machine.fail(reason)
        self._notify()
        pki_metrics.record_device_enrollment("failed")
        logger.warning(
            "device_enrollment_failed",
            extra={
                "device_id": self._attempt.device_id,
                "reason": reason,
                "retryable": retryable,
            },
        )
        return EnrollmentError(reason, retryable=retryable, details=details)
