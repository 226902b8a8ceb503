# src/dahdi_lifecycle/core/state.py
"""
Lifecycle state machine for one orchestrator invocation.
Validates phase transitions and records them with their reason. A fresh
instance is created per invocation and never shared.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List

from ..utils.logger import DAHDILogger
from .interfaces import LifecyclePhase, StateTransitionError

logger = DAHDILogger().get_logger(__name__)

P = LifecyclePhase

VALID_TRANSITIONS = {
    P.UNLOADED: {P.STOPPING, P.DISCOVERING},
    P.RUNNING: {P.STOPPING, P.DISCOVERING},
    P.STOPPING: {P.STOPPED},
    P.STOPPED: {P.STOPPING, P.DISCOVERING},
    P.DISCOVERING: {P.ASSIGNING},
    P.ASSIGNING: {P.CONFIGURING},
    P.CONFIGURING: {P.STARTING},
    P.STARTING: {P.RUNNING},
    P.FAILED: set(),
}


@dataclass
class StateTransition:
    """Records a state transition with metadata"""
    from_phase: LifecyclePhase
    to_phase: LifecyclePhase
    timestamp: datetime
    reason: str
    metadata: Dict[str, Any] = field(default_factory=dict)


class LifecycleState:
    """
    Phase of the hardware stack as seen by one invocation.
    FAILED is reachable from every phase and terminal.
    """
    def __init__(self, initial: LifecyclePhase = LifecyclePhase.UNLOADED):
        if initial not in (LifecyclePhase.UNLOADED, LifecyclePhase.RUNNING):
            raise StateTransitionError(f"Invalid initial phase: {initial.value}")
        self._phase = initial
        self.history: List[StateTransition] = []
        self.log = logger.bind(component="LifecycleState")
        self.log.debug("lifecycle_state_init", phase=initial.value)

    @property
    def phase(self) -> LifecyclePhase:
        return self._phase

    @property
    def failed(self) -> bool:
        return self._phase == LifecyclePhase.FAILED

    def can_transition(self, to_phase: LifecyclePhase) -> bool:
        if to_phase == LifecyclePhase.FAILED:
            return self._phase != LifecyclePhase.FAILED
        return to_phase in VALID_TRANSITIONS[self._phase]

    def transition(self, to_phase: LifecyclePhase, reason: str = "", **metadata: Any) -> None:
        """
        Move to a new phase.

        Raises:
            StateTransitionError: If the transition is not allowed
        """
        if not self.can_transition(to_phase):
            self.log.error("invalid_transition",
                           from_phase=self._phase.value,
                           to_phase=to_phase.value)
            raise StateTransitionError(
                f"Invalid transition: {self._phase.value} -> {to_phase.value}"
            )
        transition = StateTransition(
            from_phase=self._phase,
            to_phase=to_phase,
            timestamp=datetime.now(timezone.utc),
            reason=reason,
            metadata=metadata,
        )
        self.history.append(transition)
        self._phase = to_phase
        self.log.info("phase_changed",
                      from_phase=transition.from_phase.value,
                      to_phase=to_phase.value,
                      reason=reason)

    def fail(self, reason: str, **metadata: Any) -> None:
        """Enter FAILED from any phase"""
        self.transition(LifecyclePhase.FAILED, reason, **metadata)
