"""
Driver error classification.

Driver messages can expose schema details, so only a handful of well-known
constraint failures are passed on, with fixed wording. Everything else is
logged and replaced by a generic "see logs" message.
"""

import logging
import re
from typing import Optional

from ..exceptions import (
    ConstraintViolationError,
    ForeignKeyConstraintError,
    NotNullConstraintError,
    OperationFailedError,
    RelationalDBError,
    UniqueConstraintError,
)

logger = logging.getLogger(__name__)

UNIQUE_PATTERN = re.compile(r'(unique constraint|duplicate key|duplicate entry)', re.IGNORECASE)
FOREIGN_KEY_PATTERN = re.compile(r'(foreign key constraint|violates foreign key constraint)', re.IGNORECASE)
NOT_NULL_PATTERN = re.compile(r'(not[ -]null constraint|cannot be null)', re.IGNORECASE)

CASCADE_GUIDANCE = (
    "Dependent rows still reference this record. Add ON DELETE CASCADE to the "
    "referencing foreign key or delete the dependent rows first."
)


def _error_messages(error: BaseException):
    messages = [str(error)]
    original = getattr(error, 'orig', None)
    if original is not None:
        messages.append(str(original))
    cause = error.__cause__
    if cause is not None and cause is not original:
        messages.append(str(cause))
    return messages


def classify_driver_error(error: BaseException, operation: str,
                          cascade: bool = False) -> Optional[ConstraintViolationError]:
    """
    Map a driver error onto a friendly constraint violation.

    Both the SQLAlchemy wrapper text and the DBAPI ``orig`` error are checked.

    Args:
        error: Caught exception
        operation: 'insert', 'update', 'delete', ...
        cascade: Add ON DELETE CASCADE guidance to foreign key violations

    Returns:
        Classified error, or None when nothing matched
    """
    messages = _error_messages(error)
    prefix = f"{operation.capitalize()} failed"

    def matches(pattern: re.Pattern) -> bool:
        return any(pattern.search(message) for message in messages)

    if matches(UNIQUE_PATTERN):
        return UniqueConstraintError(f"{prefix}: unique constraint violation.")

    if matches(FOREIGN_KEY_PATTERN):
        message = f"{prefix}: foreign key constraint violation."
        if cascade:
            message += f" {CASCADE_GUIDANCE}"
        return ForeignKeyConstraintError(message)

    if matches(NOT_NULL_PATTERN):
        return NotNullConstraintError(f"{prefix}: NOT NULL constraint violation.")

    return None


def wrap_execution_error(error: BaseException, operation: str, cascade: bool = False,
                         log: Optional[logging.LoggerAdapter] = None) -> RelationalDBError:
    """
    Turn any execution failure into a caller-safe exception.

    Errors raised by this package already carry safe messages and pass through
    unchanged. Driver errors are classified, or wrapped generically with the
    original kept as ``__cause__`` and written to the log.

    Returns:
        Exception to raise (``raise wrapped from error``)
    """
    if isinstance(error, RelationalDBError):
        return error

    log = log or logger
    classified = classify_driver_error(error, operation, cascade)
    if classified is not None:
        log.info(f"{operation.upper()} rejected by constraint: {type(classified).__name__}")
        return classified

    log.error(f"{operation.upper()} query failed: {error}", exc_info=error)
    return OperationFailedError(f"{operation.upper()} query failed. See logs for details.")
