"""Tests for the device enrollment orchestrator."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from cryptography import x509
from cryptography.x509.oid import NameOID

from authority.ca.authority import CertificateRole
from device.domain.state_machine import InvalidTransitionError
from device.domain.states import EnrollmentStatus, IdentitySource
from device.identity_store import IdentityStore
from device.key_store import LABEL_PATTERN, KeyStoreError, MemoryKeyStore
from device.services.enrollment import (
    CERTIFICATE_KEY_MISMATCH,
    CERTIFICATE_PARSE_FAILED,
    ENROLLMENT_CANCELLED,
    ENROLLMENT_FAILED,
    IDENTITY_STORAGE_FAILED,
    KEY_GENERATION_FAILED,
    SUBMISSION_FAILED,
    EnrollmentError,
    EnrollmentInProgressError,
    EnrollmentOrchestrator,
    identity_label,
)
from device.transport import (
    EnrollmentRejectedError,
    EnrollmentResult,
    MalformedResponseError,
    TransportError,
)
from pki.trust import TrustError, TrustFailure

DEVICE_ID = "3f2a9c1e-0000-4000-8000-000000000001"


class AuthorityTransport:
    """Submits straight to an in-process CertificateAuthority."""

    def __init__(self, authority):
        self.authority = authority
        self.submissions = []

    async def submit(self, submission):
        self.submissions.append(submission)
        certificate = self.authority.issue_certificate(
            submission.csr_der, CertificateRole.CLIENT, 90
        )
        return EnrollmentResult(
            certificate_der=certificate.der,
            device_id=submission.device_id,
            common_name=certificate.common_name,
            valid_for_days=90,
        )


@pytest.fixture
def key_store() -> MemoryKeyStore:
    return MemoryKeyStore()


@pytest.fixture
def identity_store(key_store) -> IdentityStore:
    return IdentityStore(key_store)


def subject_value(csr, oid) -> str:
    return csr.subject.get_attributes_for_oid(oid)[0].value


def orchestrator_with(identity_store, submit) -> EnrollmentOrchestrator:
    transport = MagicMock()
    transport.submit = submit
    return EnrollmentOrchestrator(identity_store, transport, timeout=1.0)


class TestSuccessfulEnrollment:
    """Tests for a run that reaches Completed."""

    @pytest.mark.asyncio
    async def test_completes_and_installs_identity(self, authority, identity_store, key_store):
        transport = AuthorityTransport(authority)
        orchestrator = EnrollmentOrchestrator(identity_store, transport)

        identity = await orchestrator.start(DEVICE_ID)

        assert orchestrator.state.status == EnrollmentStatus.COMPLETED
        assert orchestrator.state.reason is None
        assert identity.label == "client-3f2a9c1e"
        assert identity.source == IdentitySource.ENROLLED
        assert identity.certificate.common_name == "client-3f2a9c1e"
        assert identity_store.current() == identity
        assert key_store.key_ids() == {identity.key_ref.key_id}

    @pytest.mark.asyncio
    async def test_csr_subject_and_submission(self, authority, identity_store):
        transport = AuthorityTransport(authority)
        orchestrator = EnrollmentOrchestrator(
            identity_store, transport, organization="Acme", organizational_unit="Phones"
        )

        await orchestrator.start(DEVICE_ID, common_name="client-1")

        (submission,) = transport.submissions
        csr = x509.load_der_x509_csr(submission.csr_der)
        assert csr.is_signature_valid
        assert submission.device_id == DEVICE_ID
        assert submission.common_name == "client-1"
        assert subject_value(csr, NameOID.COMMON_NAME) == "client-1"
        assert subject_value(csr, NameOID.ORGANIZATION_NAME) == "Acme"
        assert subject_value(csr, NameOID.ORGANIZATIONAL_UNIT_NAME) == "Phones"

    @pytest.mark.asyncio
    async def test_listeners_see_every_step(self, authority, identity_store):
        orchestrator = EnrollmentOrchestrator(identity_store, AuthorityTransport(authority))
        seen = []
        orchestrator.add_listener(lambda state: seen.append(state.status))

        await orchestrator.start(DEVICE_ID)

        assert seen == [
            EnrollmentStatus.STARTING,
            EnrollmentStatus.GENERATING_KEYS,
            EnrollmentStatus.GENERATING_CSR,
            EnrollmentStatus.SUBMITTING_CSR,
            EnrollmentStatus.RECEIVING_CERTIFICATE,
            EnrollmentStatus.COMPLETED,
        ]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_run(self, authority, identity_store):
        orchestrator = EnrollmentOrchestrator(identity_store, AuthorityTransport(authority))
        orchestrator.add_listener(MagicMock(side_effect=RuntimeError("boom")))

        await orchestrator.start(DEVICE_ID)

        assert orchestrator.state.status == EnrollmentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_re_enroll_after_reset_replaces_identity(self, authority, identity_store, key_store):
        orchestrator = EnrollmentOrchestrator(identity_store, AuthorityTransport(authority))
        first = await orchestrator.start(DEVICE_ID)

        orchestrator.reset()
        second = await orchestrator.start(DEVICE_ID)

        assert identity_store.current() == second
        assert second.certificate.serial_number != first.certificate.serial_number
        assert key_store.key_ids() == {second.key_ref.key_id}


class TestFailedEnrollment:
    """Tests for runs that end in Failed(reason)."""

    @pytest.mark.asyncio
    async def test_transport_failure(self, identity_store, key_store):
        orchestrator = orchestrator_with(
            identity_store, AsyncMock(side_effect=TransportError("connection refused"))
        )

        with pytest.raises(EnrollmentError) as exc_info:
            await orchestrator.start(DEVICE_ID)

        assert exc_info.value.reason == SUBMISSION_FAILED
        assert exc_info.value.retryable is True
        assert orchestrator.state.status == EnrollmentStatus.FAILED
        assert orchestrator.state.reason == SUBMISSION_FAILED
        assert identity_store.current() is None
        assert key_store.key_ids() == set()

    @pytest.mark.asyncio
    async def test_submission_timeout(self, identity_store, key_store):
        async def hang(submission):
            await asyncio.sleep(60)

        orchestrator = orchestrator_with(identity_store, hang)
        orchestrator.timeout = 0.01

        with pytest.raises(EnrollmentError) as exc_info:
            await orchestrator.start(DEVICE_ID)

        assert exc_info.value.reason == SUBMISSION_FAILED
        assert exc_info.value.retryable is True
        assert key_store.key_ids() == set()

    @pytest.mark.asyncio
    async def test_untrusted_server_not_retryable(self, identity_store):
        error = TrustError(TrustFailure.CA_MISMATCH, "lookalike CA")
        orchestrator = orchestrator_with(identity_store, AsyncMock(side_effect=error))

        with pytest.raises(EnrollmentError) as exc_info:
            await orchestrator.start(DEVICE_ID)

        assert exc_info.value.reason == SUBMISSION_FAILED
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_rejection_carries_server_reason(self, identity_store):
        rejection = EnrollmentRejectedError("subject_mismatch", {"commonName": "x"}, 400)
        orchestrator = orchestrator_with(identity_store, AsyncMock(side_effect=rejection))

        with pytest.raises(EnrollmentError) as exc_info:
            await orchestrator.start(DEVICE_ID)

        assert orchestrator.state.reason == "subject_mismatch"
        assert exc_info.value.retryable is False
        assert exc_info.value.details == {"commonName": "x"}

    @pytest.mark.asyncio
    async def test_server_error_is_retryable(self, identity_store):
        rejection = EnrollmentRejectedError("Internal server error", None, 500)
        orchestrator = orchestrator_with(identity_store, AsyncMock(side_effect=rejection))

        with pytest.raises(EnrollmentError) as exc_info:
            await orchestrator.start(DEVICE_ID)

        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_malformed_response(self, identity_store):
        orchestrator = orchestrator_with(
            identity_store, AsyncMock(side_effect=MalformedResponseError("no certificate"))
        )

        with pytest.raises(EnrollmentError):
            await orchestrator.start(DEVICE_ID)

        assert orchestrator.state.reason == CERTIFICATE_PARSE_FAILED

    @pytest.mark.asyncio
    async def test_unparseable_certificate(self, identity_store, key_store):
        result = EnrollmentResult(b"not der", DEVICE_ID, "client-3f2a9c1e", 90)
        orchestrator = orchestrator_with(identity_store, AsyncMock(return_value=result))

        with pytest.raises(EnrollmentError):
            await orchestrator.start(DEVICE_ID)

        assert orchestrator.state.reason == CERTIFICATE_PARSE_FAILED
        assert key_store.key_ids() == set()

    @pytest.mark.asyncio
    async def test_certificate_for_other_key(self, identity_store, key_store, client_certificate):
        result = EnrollmentResult(client_certificate.der, DEVICE_ID, "client-1", 90)
        orchestrator = orchestrator_with(identity_store, AsyncMock(return_value=result))

        with pytest.raises(EnrollmentError):
            await orchestrator.start(DEVICE_ID)

        assert orchestrator.state.reason == CERTIFICATE_KEY_MISMATCH
        assert identity_store.current() is None
        assert key_store.key_ids() == set()

    @pytest.mark.asyncio
    async def test_key_generation_failure(self, identity_store, key_store, monkeypatch):
        monkeypatch.setattr(
            key_store, "generate_keypair", MagicMock(side_effect=KeyStoreError("no entropy"))
        )
        submit = AsyncMock()
        orchestrator = orchestrator_with(identity_store, submit)

        with pytest.raises(EnrollmentError):
            await orchestrator.start(DEVICE_ID)

        assert orchestrator.state.reason == KEY_GENERATION_FAILED
        submit.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancellation(self, identity_store, key_store):
        entered = asyncio.Event()

        async def hang(submission):
            entered.set()
            await asyncio.sleep(60)

        orchestrator = orchestrator_with(identity_store, hang)
        orchestrator.timeout = 120
        task = asyncio.create_task(orchestrator.start(DEVICE_ID))
        await entered.wait()

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert orchestrator.state.status == EnrollmentStatus.FAILED
        assert orchestrator.state.reason == ENROLLMENT_CANCELLED
        assert key_store.key_ids() == set()
        assert identity_store.current() is None

    @pytest.mark.asyncio
    async def test_failure_leaves_existing_identity(self, authority, identity_store, key_store):
        orchestrator = EnrollmentOrchestrator(identity_store, AuthorityTransport(authority))
        installed = await orchestrator.start(DEVICE_ID)
        orchestrator.reset()
        orchestrator.transport = MagicMock(submit=AsyncMock(side_effect=TransportError("down")))

        with pytest.raises(EnrollmentError):
            await orchestrator.start(DEVICE_ID)

        assert identity_store.current() == installed
        assert key_store.key_ids() == {installed.key_ref.key_id}

    @pytest.mark.asyncio
    async def test_key_lookup_failure_after_issuance(
        self, authority, identity_store, key_store, monkeypatch
    ):
        monkeypatch.setattr(
            key_store, "public_key", MagicMock(side_effect=KeyStoreError("key unavailable"))
        )
        orchestrator = EnrollmentOrchestrator(identity_store, AuthorityTransport(authority))

        with pytest.raises(EnrollmentError) as exc_info:
            await orchestrator.start(DEVICE_ID)

        assert exc_info.value.reason == IDENTITY_STORAGE_FAILED
        assert orchestrator.state.status == EnrollmentStatus.FAILED
        assert key_store.key_ids() == set()
        orchestrator.reset()
        assert orchestrator.state.status == EnrollmentStatus.IDLE

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_and_propagates(self, identity_store, key_store):
        orchestrator = orchestrator_with(
            identity_store, AsyncMock(side_effect=RuntimeError("boom"))
        )

        with pytest.raises(RuntimeError, match="boom"):
            await orchestrator.start(DEVICE_ID)

        assert orchestrator.state.status == EnrollmentStatus.FAILED
        assert orchestrator.state.reason == ENROLLMENT_FAILED
        assert key_store.key_ids() == set()
        assert identity_store.current() is None

        orchestrator.reset()
        orchestrator.transport = MagicMock(submit=AsyncMock(side_effect=TransportError("down")))
        with pytest.raises(EnrollmentError):
            await orchestrator.start(DEVICE_ID)


class TestLifecycle:
    """Tests for single-flight and reset behaviour."""

    @pytest.mark.asyncio
    async def test_start_while_running_is_rejected(self, identity_store):
        entered = asyncio.Event()
        release = asyncio.Event()

        async def blocked(submission):
            entered.set()
            await release.wait()
            raise TransportError("released")

        orchestrator = orchestrator_with(identity_store, blocked)
        task = asyncio.create_task(orchestrator.start(DEVICE_ID))
        await entered.wait()

        with pytest.raises(EnrollmentInProgressError) as exc_info:
            await orchestrator.start(DEVICE_ID)
        assert exc_info.value.status == EnrollmentStatus.SUBMITTING_CSR

        release.set()
        with pytest.raises(EnrollmentError):
            await task

    @pytest.mark.asyncio
    async def test_start_after_failure_requires_reset(self, identity_store):
        orchestrator = orchestrator_with(
            identity_store, AsyncMock(side_effect=TransportError("down"))
        )
        with pytest.raises(EnrollmentError):
            await orchestrator.start(DEVICE_ID)

        with pytest.raises(EnrollmentInProgressError):
            await orchestrator.start(DEVICE_ID)

        orchestrator.reset()
        assert orchestrator.state.status == EnrollmentStatus.IDLE
        assert orchestrator.state.reason is None

    def test_reset_from_idle_is_invalid(self, identity_store):
        orchestrator = orchestrator_with(identity_store, AsyncMock())

        with pytest.raises(InvalidTransitionError):
            orchestrator.reset()

    def test_identity_label(self):
        assert identity_label(DEVICE_ID) == "client-3f2a9c1e"
        assert identity_label("abc") == "client-abc"

    def test_identity_label_for_unsafe_ids(self):
        label = identity_label("My iPhone 15")

        assert LABEL_PATTERN.match(label)
        assert label != identity_label("My/iPhone 15")
        assert LABEL_PATTERN.match(identity_label("日本語のデバイス"))

    @pytest.mark.asyncio
    async def test_enrolls_device_id_with_spaces(self, authority, identity_store):
        orchestrator = EnrollmentOrchestrator(identity_store, AuthorityTransport(authority))

        identity = await orchestrator.start("My iPhone 15", common_name="client-1")

        assert orchestrator.state.status == EnrollmentStatus.COMPLETED
        assert identity.label == identity_label("My iPhone 15")
        assert identity_store.current() == identity
