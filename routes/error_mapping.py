"""Engine error -> HTTP response mapping shared by the API routes"""

import logging

from fastapi import HTTPException

from utils.exception_handler import (
    AllocationError,
    ConflictError,
    EscrowError,
    EscrowNotFoundError,
    ExpiredError,
    InvalidCodeError,
    LedgerError,
    NotFundedError,
    RateUnavailableError,
    StateTransitionError,
    UnauthorizedError,
    ValidationError,
)

logger = logging.getLogger(__name__)

# Most specific classes first
ERROR_STATUS_CODES = (
    (EscrowNotFoundError, 404),
    (RateUnavailableError, 503),
    (ValidationError, 400),
    (InvalidCodeError, 404),
    (UnauthorizedError, 403),
    (NotFundedError, 409),
    (ConflictError, 409),
    (StateTransitionError, 409),
    (ExpiredError, 410),
    (AllocationError, 503),
    (LedgerError, 502),
)


def to_http_exception(error: EscrowError) -> HTTPException:
    for error_class, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_class):
            break
    else:
        status_code = 500

    if status_code >= 500:
        logger.error(f"❌ API_ERROR: {type(error).__name__} - {error.message}")
    detail = {"error": type(error).__name__, "message": error.message, "retryable": error.retryable}
    return HTTPException(status_code=status_code, detail=detail)
