"""
Session-core exception hierarchy.

Every service raises one of the types below when an action is refused.
The application factory registers one handler per type, so blueprints never
translate errors themselves and the HTTP status is the same everywhere.

Each exception carries a ``kind`` (stable, machine-readable) and a
human-readable reason as its message.  The reason is shown to the caller
verbatim, so it must say *why* the action failed
("Submission deadline has passed", not "Bad request").

Usage:
    from crowdbeat.core.exceptions import NotFoundError, BadRequestError

    raise NotFoundError("Session", session_id)
    raise BadRequestError("Maximum submissions reached")
"""


class DomainError(Exception):
    """Base class for refusals raised by the service layer."""

    kind = "error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class NotFoundError(DomainError):
    """Raised when a session, option, competition or submission does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Session", "Submission").
        resource_id: The id that was looked up. Logged, not shown to callers.
        message: Optional override of the default "<resource> not found" reason.
    """

    kind = "not_found"

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        message: str | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(message or f"{resource} not found")


class ForbiddenError(DomainError):
    """Raised when a role, ownership or ban check fails. Maps to HTTP 403."""

    kind = "forbidden"


class ConflictError(DomainError):
    """Raised on duplicate votes, duplicate joins and re-closing a closed contest.

    Maps to HTTP 409.
    """

    kind = "conflict"


class BadRequestError(DomainError):
    """Raised when the input is well-formed but the action is not allowed now.

    Covers passed deadlines, wrong stage for the action and exceeded caps.
    Maps to HTTP 400.

    Args:
        message: Human-readable reason.
        details: Optional field-level breakdown for structured responses.
    """

    kind = "bad_request"

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class InvalidTransitionError(DomainError):
    """Raised when a status change is attempted from a terminal or unmapped state.

    Args:
        current_status: The status the entity was in.
        target_status: The requested status, when the caller asked for one.
    """

    kind = "invalid_transition"

    def __init__(self, current_status: str, target_status: str | None = None) -> None:
        self.current_status = current_status
        self.target_status = target_status
        if target_status:
            msg = f"Cannot move from '{current_status}' to '{target_status}'"
        else:
            msg = f"No stage follows '{current_status}'"
        super().__init__(msg)
