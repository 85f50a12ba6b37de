"""Error taxonomy for conversation membership and read-state operations.

Every failure the core can report is a ConversationError subclass with a
stable ``kind`` string. The HTTP layer turns these into JSON error bodies
and the client turns those bodies back into the same classes, so callers
can branch on the exception type regardless of transport.

Only Unavailable is retryable. Every other kind is a precondition the
caller has to fix first.
"""

from __future__ import annotations


class ConversationError(Exception):
    """Base class for all conversation membership errors."""

    kind: str = "ConversationError"
    status_code: int = 400
    retryable: bool = False

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.kind
        super().__init__(self.detail)

    def to_dict(self) -> dict:
        return {"kind": self.kind, "detail": self.detail}


class PermissionDenied(ConversationError):
    """Caller is not an active admin of the conversation."""

    kind = "PermissionDenied"
    status_code = 403


class InvalidOperation(ConversationError):
    """Operation is not valid for this kind of conversation."""

    kind = "InvalidOperation"
    status_code = 400


class AlreadyMember(ConversationError):
    kind = "AlreadyMember"
    status_code = 409


class NotMember(ConversationError):
    kind = "NotMember"
    status_code = 404


class LastAdminViolation(ConversationError):
    """Removing the target would leave a group without an active admin."""

    kind = "LastAdminViolation"
    status_code = 409


class NotFound(ConversationError):
    kind = "NotFound"
    status_code = 404


class Unavailable(ConversationError):
    """The store timed out or failed transiently. Safe to retry."""

    kind = "Unavailable"
    status_code = 503
    retryable = True


ERROR_KINDS: dict[str, type[ConversationError]] = {
    cls.kind: cls
    for cls in (
        PermissionDenied,
        InvalidOperation,
        AlreadyMember,
        NotMember,
        LastAdminViolation,
        NotFound,
        Unavailable,
    )
}


def error_from_dict(data: dict) -> ConversationError:
    """Rebuild an error from its ``{"kind", "detail"}`` payload.

    Unknown kinds come back as the base ConversationError.
    """
    cls = ERROR_KINDS.get(data.get("kind", ""), ConversationError)
    return cls(data.get("detail"))
