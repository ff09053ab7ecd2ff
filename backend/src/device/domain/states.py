from enum import StrEnum


class EnrollmentStatus(StrEnum):
    """All possible states of a device enrollment."""

    IDLE = "idle"
    STARTING = "starting"
    GENERATING_KEYS = "generating_keys"
    GENERATING_CSR = "generating_csr"
    SUBMITTING_CSR = "submitting_csr"
    RECEIVING_CERTIFICATE = "receiving_certificate"
    COMPLETED = "completed"  # Terminal until reset
    FAILED = "failed"  # Terminal until reset


class EnrollmentEvent(StrEnum):
    """Events that drive the enrollment state machine."""

    START = "start"
    KEY_GENERATION_STARTED = "key_generation_started"
    KEYPAIR_GENERATED = "keypair_generated"
    CSR_BUILT = "csr_built"
    CERTIFICATE_RECEIVED = "certificate_received"
    IDENTITY_INSTALLED = "identity_installed"
    FAILED = "failed"
    RESET = "reset"


class IdentitySource(StrEnum):
    PROVISIONED = "provisioned"
    ENROLLED = "enrolled"


ACTIVE_ENROLLMENT_STATES = frozenset(
    {
        EnrollmentStatus.STARTING,
        EnrollmentStatus.GENERATING_KEYS,
        EnrollmentStatus.GENERATING_CSR,
        EnrollmentStatus.SUBMITTING_CSR,
        EnrollmentStatus.RECEIVING_CERTIFICATE,
    }
)
