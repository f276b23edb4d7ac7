"""
Error taxonomy and the result shape returned by every mutation.

Services raise the StoreError subclasses below internally. Public mutation
methods are wrapped with ``returns_result`` so callers always get an
ActionResult back instead of an exception.
"""

import functools
import logging
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field
from pydantic import ValidationError as SchemaError
from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)


class StoreError(Exception):
    code = "store_error"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(StoreError):
    code = "validation_error"
    status_code = 400


class AmountMismatchError(StoreError):
    code = "amount_mismatch"
    status_code = 400


class UniquenessViolation(StoreError):
    code = "uniqueness_violation"
    status_code = 409


class NotAuthenticated(StoreError):
    code = "not_authenticated"
    status_code = 401


class NotAuthorized(StoreError):
    code = "not_authorized"
    status_code = 403


class NotFound(StoreError):
    code = "not_found"
    status_code = 404


class ActionInProgress(StoreError):
    code = "in_progress"
    status_code = 409


class PaymentExpired(StoreError):
    code = "payment_expired"
    status_code = 410


class RemoteStoreError(StoreError):
    code = "remote_store_error"
    status_code = 503


class ActionResult(BaseModel):
    success: bool
    error: Optional[str] = None
    code: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def ok(cls, **data) -> "ActionResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, exc: StoreError) -> "ActionResult":
        return cls(success=False, error=exc.message, code=exc.code)

    @property
    def status_code(self) -> int:
        if self.success:
            return 200
        for klass in _ALL_ERRORS:
            if klass.code == self.code:
                return klass.status_code
        return 400


_ALL_ERRORS = (
    ValidationError, AmountMismatchError, UniquenessViolation, NotAuthenticated,
    NotAuthorized, NotFound, ActionInProgress, PaymentExpired, RemoteStoreError,
)


def returns_result(func):
    """Run a mutation and fold any failure into a failed ActionResult."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs) -> ActionResult:
        try:
            result = func(*args, **kwargs)
        except StoreError as e:
            logger.info("%s rejected: %s", func.__qualname__, e.message)
            return ActionResult.fail(e)
        except SchemaError as e:
            detail = "; ".join(err["msg"] for err in e.errors())
            return ActionResult.fail(ValidationError(detail or "Invalid input"))
        except PyMongoError as e:
            logger.exception("%s failed against the store", func.__qualname__)
            return ActionResult.fail(RemoteStoreError(f"Store unavailable, please retry ({str(e)[:50]})"))
        if isinstance(result, ActionResult):
            return result
        return ActionResult.ok(**(result or {}))

    return wrapper
