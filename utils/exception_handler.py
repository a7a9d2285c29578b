"""
Exception Handler Module
Error taxonomy shared by the fee engine, escrow coordinator and routing decider.

Every error carries a ``retryable`` flag: pre-movement failures may be retried by
the caller, anything raised after a fund-movement attempt must never be retried
blindly.
"""

import logging
from typing import Any, Optional

logger = logging.getLogger(__name__)


class EscrowError(Exception):
    """Base class for all engine errors"""

    retryable = False

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(EscrowError):
    """Malformed or out-of-range input, rejected before any state change"""
    pass


class EscrowNotFoundError(ValidationError):
    """No escrow record with the requested id"""
    pass


class RateUnavailableError(ValidationError):
    """A transfer could not be sized because no exchange rate was available"""

    retryable = True


class AllocationError(EscrowError):
    """Escrow address or exchange code allocation failed - escrow never created"""

    retryable = True


class InvalidCodeError(EscrowError):
    """Exchange code is malformed or matches no escrow"""
    pass


class UnauthorizedError(EscrowError):
    """Exchange code belongs to a different agent"""
    pass


class NotFundedError(EscrowError):
    """Escrow is not in the funded state"""
    pass


class ExpiredError(EscrowError):
    """Escrow passed its expiry time"""
    pass


class ConflictError(EscrowError):
    """Lost a compare-and-swap race; re-read state instead of retrying the stale mutation"""
    pass


class StateTransitionError(EscrowError):
    """Requested status change is not part of the escrow state machine"""
    pass


class LedgerError(EscrowError):
    """An external ledger or instant-channel call failed.

    When the failure happened during a fund release or refund, ``escrow`` holds
    the record after it was escalated to disputed.
    """

    def __init__(self, message: str, escrow: Optional[Any] = None):
        super().__init__(message)
        self.escrow = escrow


class LedgerTimeoutError(LedgerError):
    """External call exceeded its deadline - outcome unknown"""
    pass


class ReleaseNotRecordedError(ConflictError):
    """Funds reached the agent but the completed status could not be written.

    ``escrow`` holds the latest stored record for manual review.
    """

    def __init__(self, message: str, escrow: Optional[Any] = None):
        super().__init__(message)
        self.escrow = escrow
