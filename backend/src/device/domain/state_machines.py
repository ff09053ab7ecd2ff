"""Enrollment state machine.

Invariants:
    Forward-only: each active state has exactly one successor plus FAILED
    COMPLETED and FAILED only leave via RESET, which returns to IDLE
    Any non-IDLE state blocks a new START, so one enrollment runs at a time
"""

from device.domain.models import EnrollmentAttempt
from device.domain.state_machine import StateMachine
from device.domain.states import ACTIVE_ENROLLMENT_STATES
from device.domain.states import EnrollmentEvent as EEvent
from device.domain.states import EnrollmentStatus as EStatus
from pki.certificate import utc_now

EnrollmentTransitions = dict[tuple[EStatus, EEvent], EStatus]


class EnrollmentStateMachine(StateMachine[EStatus, EEvent]):
    """State machine for a device's enrollment attempt.

    Transition Table:
        (IDLE, START) -> STARTING
        (STARTING, KEY_GENERATION_STARTED) -> GENERATING_KEYS
        (GENERATING_KEYS, KEYPAIR_GENERATED) -> GENERATING_CSR
        (GENERATING_CSR, CSR_BUILT) -> SUBMITTING_CSR
        (SUBMITTING_CSR, CERTIFICATE_RECEIVED) -> RECEIVING_CERTIFICATE
        (RECEIVING_CERTIFICATE, IDENTITY_INSTALLED) -> COMPLETED
        (<any active state>, FAILED) -> FAILED
        (COMPLETED | FAILED, RESET) -> IDLE
    """

    TRANSITIONS: EnrollmentTransitions = {
        (EStatus.IDLE, EEvent.START): EStatus.STARTING,
        (EStatus.STARTING, EEvent.KEY_GENERATION_STARTED): EStatus.GENERATING_KEYS,
        (EStatus.GENERATING_KEYS, EEvent.KEYPAIR_GENERATED): EStatus.GENERATING_CSR,
        (EStatus.GENERATING_CSR, EEvent.CSR_BUILT): EStatus.SUBMITTING_CSR,
        (EStatus.SUBMITTING_CSR, EEvent.CERTIFICATE_RECEIVED): EStatus.RECEIVING_CERTIFICATE,
        (EStatus.RECEIVING_CERTIFICATE, EEvent.IDENTITY_INSTALLED): EStatus.COMPLETED,
        **{(state, EEvent.FAILED): EStatus.FAILED for state in ACTIVE_ENROLLMENT_STATES},
        (EStatus.COMPLETED, EEvent.RESET): EStatus.IDLE,
        (EStatus.FAILED, EEvent.RESET): EStatus.IDLE,
    }

    def __init__(self, attempt: EnrollmentAttempt):
        self._attempt = attempt

    def _get_state(self) -> EStatus:
        return self._attempt.status

    def _set_state(self, state: EStatus) -> None:
        self._attempt.status = state

    def _get_entity_id(self) -> str:
        return self._attempt.device_id or "enrollment"

    def begin(self, device_id: str, common_name: str) -> EStatus:
        """Claim the machine for a new attempt.

        Raises:
            InvalidTransitionError: If not IDLE
        """
        new_state = self.transition(EEvent.START)
        self._attempt.device_id = device_id
        self._attempt.common_name = common_name
        self._attempt.started_at = utc_now()
        return new_state

    def fail(self, reason: str) -> EStatus:
        """Move to FAILED and record the reason.

        Raises:
            InvalidTransitionError: If not in an active state
        """
        new_state = self.transition(EEvent.FAILED)
        self._attempt.failure_reason = reason
        return new_state

    def reset(self) -> EStatus:
        """Return to IDLE from COMPLETED or FAILED, dropping all attempt data.

        Raises:
            InvalidTransitionError: If not in a terminal state
        """
        new_state = self.transition(EEvent.RESET)
        self._attempt.clear()
        return new_state
