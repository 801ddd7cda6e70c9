"""
SERVICE CHARGE LIFECYCLE STATE MACHINE

A registered-transition state machine with:
- Transition registration with descriptions
- Transition validation (unregistered transitions are rejected)
- History entries for the charge's status_history array

The machine itself never writes; callers validate here and then apply the
change through a compare-and-swap on the status field, so a stale reader
cannot apply a transition the stored document no longer allows.

Usage:
    machine = build_service_charge_machine()
    machine.validate_transition(charge.status, "paid")
    entry = machine.get_history_entry(charge.status, "paid", user_id=admin_id)
"""

from typing import Dict, Any, Optional, List, Tuple
from datetime import datetime
import logging

from settlement.errors import InvalidTransitionError

logger = logging.getLogger(__name__)


class Transition:
    """Definition of a state transition."""

    def __init__(self, from_state: str, to_state: str, description: str = ""):
        self.from_state = from_state
        self.to_state = to_state
        self.description = description

    def __repr__(self):
        return f"Transition({self.from_state} -> {self.to_state})"


class StateMachine:
    """
    Registered-transition state machine for one entity type.

    Example:
        machine = StateMachine("service_charge")
        machine.register("active", "paid", description="Settled")
        machine.validate_transition("active", "paid")
    """

    def __init__(self, entity_name: str):
        self.entity_name = entity_name

        # Transitions indexed by (from_state, to_state)
        self._transitions: Dict[Tuple[str, str], Transition] = {}

        logger.debug(f"[STATE_MACHINE] Initialized for entity: {entity_name}")

    # =========================================================================
    # REGISTRATION
    # =========================================================================

    def register(self, from_state: str, to_state: str, description: str = "") -> "StateMachine":
        """Register a state transition. Returns self for chaining."""
        key = (from_state, to_state)

        if key in self._transitions:
            logger.warning(
                f"[STATE_MACHINE] Overwriting transition {self.entity_name}: "
                f"'{from_state}' -> '{to_state}'"
            )

        self._transitions[key] = Transition(from_state, to_state, description)
        return self

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def get_allowed_transitions(self, from_state: str) -> List[str]:
        """Get list of valid target states from a given state."""
        return [dst for (src, dst) in self._transitions.keys() if src == from_state]

    def can_transition(self, from_state: str, to_state: str) -> bool:
        return (from_state, to_state) in self._transitions

    def validate_transition(self, from_state: str, to_state: str) -> None:
        """Raises InvalidTransitionError unless the transition is registered."""
        if not self.can_transition(from_state, to_state):
            raise InvalidTransitionError(
                entity=self.entity_name,
                from_state=from_state,
                to_state=to_state,
                allowed=self.get_allowed_transitions(from_state)
            )

    def get_history_entry(
        self,
        from_state: str,
        to_state: str,
        user_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """A history entry to append to the entity's status_history array."""
        return {
            "from_state": from_state,
            "to_state": to_state,
            "transitioned_at": datetime.utcnow(),
            "transitioned_by": user_id,
            "metadata": metadata or {}
        }

    def __repr__(self):
        return f"StateMachine({self.entity_name}, transitions={len(self._transitions)})"


def build_service_charge_machine() -> StateMachine:
    """
    Service charge lifecycle.

    cancelled is terminal. paid -> unpaid exists only as an admin override.
    """
    machine = StateMachine("service_charge")
    machine.register("active", "paid", description="Ledger settled or marked paid by admin")
    machine.register("active", "cancelled", description="Cancelled before settlement")
    machine.register("active", "unpaid", description="Marked unpaid by admin")
    machine.register("unpaid", "active", description="Reopened for payment")
    machine.register("unpaid", "paid", description="Ledger settled or marked paid by admin")
    machine.register("unpaid", "cancelled", description="Cancelled while unpaid")
    machine.register("paid", "unpaid", description="Admin override reverting a paid charge")
    return machine
