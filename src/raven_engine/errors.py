"""Rejection reasons and the engine exception taxonomy."""

from __future__ import annotations

from enum import Enum
from typing import Optional


class Rejection(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    WRONG_STATE = "WRONG_STATE"
    UNAUTHORIZED = "UNAUTHORIZED"
    VERSION_CONFLICT = "VERSION_CONFLICT"
    ALREADY_TERMINAL = "ALREADY_TERMINAL"


class EngineError(RuntimeError):
    """Base class for errors surfaced by the engine services."""

    code = "ENGINE_ERROR"
    default_user_message = "The request could not be completed."

    def __init__(self, detail: str, user_message: Optional[str] = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.user_message = user_message or self.default_user_message


class NotFoundError(EngineError):
    code = Rejection.NOT_FOUND.value
    default_user_message = "The requested record does not exist."


class WrongStateError(EngineError):
    code = Rejection.WRONG_STATE.value
    default_user_message = "This action is not possible right now."


class UnauthorizedError(EngineError):
    code = Rejection.UNAUTHORIZED.value
    default_user_message = "You are not allowed to perform this action."


class VersionConflictError(EngineError):
    code = Rejection.VERSION_CONFLICT.value
    default_user_message = "This record was just changed by someone else, please refresh."


class AlreadyTerminalError(EngineError):
    code = Rejection.ALREADY_TERMINAL.value
    default_user_message = "This has already been completed."


class PaymentError(EngineError):
    """Payment processor failure; the typed reason is kept for support and audit."""

    code = "PAYMENT_FAILED"
    default_user_message = "Payment could not be processed, please try again."

    def __init__(self, detail: str, *, retryable: bool = False, reason: Optional[str] = None) -> None:
        super().__init__(detail)
        self.retryable = retryable
        self.reason = reason or detail


class PaymentHoldFailed(PaymentError):
    code = "PAYMENT_HOLD_FAILED"


class PaymentCaptureFailed(PaymentError):
    code = "PAYMENT_CAPTURE_FAILED"


class PaymentVoidFailed(PaymentError):
    code = "PAYMENT_VOID_FAILED"


_REJECTION_ERRORS = {
    Rejection.NOT_FOUND: NotFoundError,
    Rejection.WRONG_STATE: WrongStateError,
    Rejection.UNAUTHORIZED: UnauthorizedError,
    Rejection.VERSION_CONFLICT: VersionConflictError,
    Rejection.ALREADY_TERMINAL: AlreadyTerminalError,
}


def error_for(reason: Rejection, detail: str, user_message: Optional[str] = None) -> EngineError:
    """Build the exception matching a core rejection reason."""
    return _REJECTION_ERRORS[reason](detail, user_message)

