"""Table-driven state machine base.

Subclasses declare every legal move in ``TRANSITIONS``; anything else raises
``InvalidTransitionError``. Each transition is logged and counted.
"""

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Generic, TypeVar

from opentelemetry import metrics

logger = logging.getLogger(__name__)

meter = metrics.get_meter("mtls_identity.state_machines")

state_transitions_total = meter.create_counter(
    name="mtls_state_transitions_total",
    description="Total state transitions",
    unit="1",
)


class InvalidTransitionError(Exception):
    """Raised when an event has no transition from the current state."""

    def __init__(self, entity_id: str, current_state: str, event: str):
        self.entity_id = entity_id
        self.current_state = current_state
        self.event = event
        super().__init__(f"{entity_id}: no transition from {current_state} on {event}")


S = TypeVar("S", bound=Enum)
E = TypeVar("E", bound=Enum)


class StateMachine(ABC, Generic[S, E]):
    """Base class for state machines with explicit transition tables.

    Subclasses must define:
    - TRANSITIONS: dict mapping (State, Event) -> NewState
    - _get_state() / _set_state(): access to the entity's state
    - _get_entity_id(): identity for logging/metrics
    """

    TRANSITIONS: dict[tuple[S, E], S]

    @abstractmethod
    def _get_state(self) -> S: ...

    @abstractmethod
    def _set_state(self, state: S) -> None: ...

    @abstractmethod
    def _get_entity_id(self) -> str: ...

    @property
    def state(self) -> S:
        return self._get_state()

    def transition(self, event: E) -> S:
        """Apply ``event`` and return the new state.

        Raises:
            InvalidTransitionError: If no transition defined for (state, event)
        """
        current_state = self._get_state()
        entity_id = self._get_entity_id()

        new_state = self.TRANSITIONS.get((current_state, event))
        if new_state is None:
            logger.warning(
                "invalid_transition_attempted",
                extra={
                    "entity_id": entity_id,
                    "current_state": current_state.value,
                    "event": event.value,
                },
            )
            raise InvalidTransitionError(entity_id, current_state.value, event.value)

        self._set_state(new_state)

        logger.info(
            "state_transition",
            extra={
                "entity_id": entity_id,
                "from_state": current_state.value,
                "to_state": new_state.value,
                "event": event.value,
            },
        )
        state_transitions_total.add(
            1,
            {
                "entity_type": self.__class__.__name__,
                "from_state": current_state.value,
                "to_state": new_state.value,
                "event": event.value,
            },
        )
        return new_state

    def can_transition(self, event: E) -> bool:
        return (self._get_state(), event) in self.TRANSITIONS

    def get_valid_events(self) -> list[E]:
        """Events valid from the current state."""
        current_state = self._get_state()
        return [event for state, event in self.TRANSITIONS if state == current_state]
