from dataclasses import dataclass, field
from datetime import datetime

from device.domain.states import EnrollmentStatus, IdentitySource
from pki.certificate import Certificate, utc_now


@dataclass(frozen=True)
class KeyReference:
    """Opaque handle to a private key held by a SecureKeyStore."""

    key_id: str
    algorithm: str


@dataclass(frozen=True)
class Identity:
    """A certificate bound to a key held in the key store.

    Only the reference travels with the identity; the key itself never
    leaves the store.
    """

    label: str
    certificate: Certificate
    key_ref: KeyReference
    source: IdentitySource
    installed_at: datetime = field(default_factory=utc_now)

    def is_valid(self, now: datetime | None = None) -> bool:
        return self.certificate.is_valid(now)


@dataclass(frozen=True)
class EnrollmentState:
    """Snapshot of the orchestrator: a status plus the failure reason, if any."""

    status: EnrollmentStatus
    reason: str | None = None


@dataclass
class EnrollmentAttempt:
    """Mutable record driven by EnrollmentStateMachine."""

    status: EnrollmentStatus = EnrollmentStatus.IDLE
    device_id: str | None = None
    common_name: str | None = None
    failure_reason: str | None = None
    pending_key: KeyReference | None = None
    started_at: datetime | None = None

    def clear(self) -> None:
        self.device_id = None
        self.common_name = None
        self.failure_reason = None
        self.pending_key = None
        self.started_at = None
