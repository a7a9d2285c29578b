"""
Escrow State Machine
Transition table and validation for escrow custody records
"""

import logging
from typing import Dict, Optional, Set

from models import EscrowStatus
from utils.exception_handler import StateTransitionError

logger = logging.getLogger(__name__)


class EscrowStateValidator:
    """Validates escrow state transitions and prevents invalid changes"""

    # Valid state transition map
    VALID_TRANSITIONS: Dict[Optional[str], Set[str]] = {
        # From None/Creation
        None: {EscrowStatus.PENDING.value},
        EscrowStatus.PENDING.value: {
            EscrowStatus.FUNDED.value,   # Balance observed at escrow address
            EscrowStatus.EXPIRED.value,  # Never funded before expiry
        },
        EscrowStatus.FUNDED.value: {
            EscrowStatus.COMPLETED.value,  # Released to agent with a valid code
            EscrowStatus.REFUNDED.value,   # Expired, returned to requester
            EscrowStatus.DISPUTED.value,   # Fund movement failed - manual review
        },
        # Terminal states (no transitions allowed)
        EscrowStatus.COMPLETED.value: set(),
        EscrowStatus.DISPUTED.value: set(),
        EscrowStatus.REFUNDED.value: set(),
        EscrowStatus.EXPIRED.value: set(),
    }

    @classmethod
    def is_valid_transition(cls, current_status: Optional[str], new_status: str) -> bool:
        """Check if state transition is valid"""
        return new_status in cls.VALID_TRANSITIONS.get(current_status, set())

    @classmethod
    def get_valid_transitions(cls, current_status: Optional[str]) -> Set[str]:
        """Get all valid next states for current status"""
        return cls.VALID_TRANSITIONS.get(current_status, set())

    @classmethod
    def is_terminal_state(cls, status: str) -> bool:
        """Check if status is terminal (no further transitions)"""
        return len(cls.VALID_TRANSITIONS.get(status, set())) == 0

    @classmethod
    def validate_transition(cls, escrow_id: str, current_status: Optional[str], new_status: str) -> None:
        """Raise StateTransitionError unless current -> new is allowed"""
        if not cls.is_valid_transition(current_status, new_status):
            logger.error(f"Invalid escrow transition: {current_status} -> {new_status} for {escrow_id}")
            raise StateTransitionError(
                f"Escrow {escrow_id} cannot move from {current_status} to {new_status}"
            )
