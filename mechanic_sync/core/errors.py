"""
Иерархия ошибок портала механиков.

Каждая ошибка несет вид (ErrorKind) и человекочитаемое сообщение без разметки.
Отображение сообщений - ответственность вызывающего кода (UI).
"""

from enum import Enum


class ErrorKind(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    FORBIDDEN = "forbidden"
    PENDING_APPROVAL = "pending_approval"
    NOT_FOUND = "not_found"
    ALREADY_ASSIGNED = "already_assigned"
    INVALID_TRANSITION = "invalid_transition"
    SCHEMA_MISMATCH = "schema_mismatch"
    TIMEOUT = "timeout"
    PERMISSION_DENIED = "permission_denied"
    UNKNOWN = "unknown"


class PortalError(Exception):
    """Базовая ошибка портала."""

    kind: ErrorKind = ErrorKind.UNKNOWN
    default_message = "Something went wrong. Please try again."
    retryable = False

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class Unauthenticated(PortalError):
    kind = ErrorKind.UNAUTHENTICATED
    default_message = "You must be signed in to perform this action."


class Forbidden(PortalError):
    kind = ErrorKind.FORBIDDEN
    default_message = "Your account is not allowed to perform this action."


class PendingApproval(PortalError):
    kind = ErrorKind.PENDING_APPROVAL
    default_message = "Your mechanic account is awaiting admin approval."


class NotFound(PortalError):
    kind = ErrorKind.NOT_FOUND
    default_message = "Request not found."


class AlreadyAssigned(PortalError):
    kind = ErrorKind.ALREADY_ASSIGNED
    default_message = "This request was already claimed by another mechanic."


class InvalidTransition(PortalError):
    """
    Нарушение условия перехода (start/complete/cancel).

    Атрибуты:
        reason (str): not_claimed | not_assignee | wrong_state.
    """

    kind = ErrorKind.INVALID_TRANSITION
    default_message = "Complete the previous step before doing this."

    NOT_CLAIMED = "not_claimed"
    NOT_ASSIGNEE = "not_assignee"
    WRONG_STATE = "wrong_state"

    _messages = {
        NOT_CLAIMED: "This request is not claimed yet. Claim it first.",
        NOT_ASSIGNEE: "This request is not your assignment.",
        WRONG_STATE: "Complete the previous step before doing this.",
    }

    def __init__(self, reason: str = WRONG_STATE, message: str | None = None) -> None:
        self.reason = reason
        super().__init__(message or self._messages.get(reason))


class SchemaMismatch(PortalError):
    kind = ErrorKind.SCHEMA_MISMATCH
    default_message = "The backend schema does not match the expected shape."


class BackendTimeout(PortalError):
    kind = ErrorKind.TIMEOUT
    default_message = "The server took too long to respond. Please try again."
    retryable = True


class PermissionDenied(PortalError):
    kind = ErrorKind.PERMISSION_DENIED
    default_message = "Permission denied. Please contact an admin."


class UnknownFailure(PortalError):
    kind = ErrorKind.UNKNOWN


ERRORS_BY_KIND: dict[ErrorKind, type[PortalError]] = {
    cls.kind: cls
    for cls in (
        Unauthenticated,
        Forbidden,
        PendingApproval,
        NotFound,
        AlreadyAssigned,
        InvalidTransition,
        SchemaMismatch,
        BackendTimeout,
        PermissionDenied,
        UnknownFailure,
    )
}
