"""Domain error taxonomy.

Every error derives from ``QuestlineError`` which itself is a ``ValueError``,
so routers and workers that already catch ``ValueError`` keep working.
``status_code`` and ``code`` drive the HTTP rendering in
``questline.middleware.error_handler``.
"""

from __future__ import annotations


class QuestlineError(ValueError):
    """Base class for engine errors."""

    status_code: int = 400
    code: str = "questline_error"
    # Rendered to end users instead of the raw message when set.
    public_message: str | None = None


class NotFound(QuestlineError):
    status_code = 404
    code = "not_found"


class InvalidTransition(QuestlineError):
    """State machine violation. Rejected with no side effect."""

    status_code = 409
    code = "invalid_transition"

    def __init__(
        self,
        entity: str,
        current: str,
        target: str,
        allowed: list[str] | None = None,
        reason: str | None = None,
    ) -> None:
        self.entity = entity
        self.current = getattr(current, "value", current)
        self.target = getattr(target, "value", target)
        self.allowed = [getattr(a, "value", a) for a in allowed or []]
        self.reason = reason
        message = f"Invalid transition: {entity} {self.current} -> {self.target}."
        if reason:
            message += f" {reason}"
        else:
            message += f" Valid transitions: {self.allowed}"
        super().__init__(message)


class InvalidSchedule(QuestlineError):
    code = "invalid_schedule"


class InstanceNotOpen(QuestlineError):
    status_code = 409
    code = "instance_not_open"
    public_message = "Signups for this quest are not available right now."


class AlreadySignedUp(QuestlineError):
    status_code = 409
    code = "already_signed_up"


class DuplicateRequest(QuestlineError):
    status_code = 409
    code = "duplicate_request"


class CheckInWindowClosed(QuestlineError):
    status_code = 409
    code = "check_in_window_closed"
    public_message = "Check-in is not available right now."


class ProofNotAllowed(QuestlineError):
    status_code = 409
    code = "proof_not_allowed"
    public_message = "Proof submission is not available right now."


class SquadLocked(QuestlineError):
    status_code = 409
    code = "squad_locked"
    public_message = "This squad is locked and cannot be changed right now."


class NotSquadMember(QuestlineError):
    status_code = 403
    code = "not_squad_member"


class InsufficientParticipants(QuestlineError):
    status_code = 409
    code = "insufficient_participants"


class InvalidCriteria(QuestlineError):
    code = "invalid_criteria"


class InconsistentLedger(QuestlineError):
    """A denormalized counter disagrees with its source rows.

    Operator-only: never rendered to end users.
    """

    status_code = 500
    code = "inconsistent_ledger"
    public_message = "Internal server error"
