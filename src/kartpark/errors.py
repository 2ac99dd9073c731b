"""Domain error hierarchy.

Every error carries the HTTP status it maps to and a stable machine code.
Services raise these; ``middleware.error_handler`` renders them as JSON.
"""

from __future__ import annotations

from typing import Any


class KartParkError(Exception):
    """Base class for all domain errors."""

    status_code: int = 400
    code: str = "error"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        return {"detail": self.message, "code": self.code, **self.context}


# --- NotFound ---


class NotFoundError(KartParkError):
    status_code = 404
    code = "not_found"


# --- Conflict ---


class ConflictError(KartParkError):
    status_code = 409
    code = "conflict"


class DuplicatePendingRequestError(ConflictError):
    code = "duplicate_pending_request"


class ConflictingLinkError(ConflictError):
    """Another account already holds the driver name as linked."""

    code = "conflicting_link"

    def __init__(self, driver_name: str, conflicting_account_ids: list[int]) -> None:
        super().__init__(
            f"Driver name '{driver_name}' is already linked to another account",
            driver_name=driver_name,
            conflicting_account_ids=conflicting_account_ids,
        )


class AccountAlreadyLinkedError(ConflictError):
    code = "account_already_linked"


class RequestAlreadyResolvedError(ConflictError):
    code = "request_already_resolved"


class AlreadyInSquadronError(ConflictError):
    code = "already_in_squadron"


class DuplicateInvitationError(ConflictError):
    code = "duplicate_invitation"


class SquadronNameTakenError(ConflictError):
    code = "squadron_name_taken"


class EntryAlreadyRevertedError(ConflictError):
    code = "entry_already_reverted"


class IdempotencyKeyReusedError(ConflictError):
    code = "idempotency_key_reused"


# --- InvariantViolation ---


class InvariantViolationError(KartParkError):
    status_code = 400
    code = "invariant_violation"


class SquadronFullError(InvariantViolationError):
    code = "squadron_full"


class SquadronInactiveError(InvariantViolationError):
    code = "squadron_inactive"


class CaptainMustTransferFirstError(InvariantViolationError):
    code = "captain_must_transfer_first"


class RecruitmentClosedError(InvariantViolationError):
    code = "recruitment_closed"


class NegativePointsTotalError(InvariantViolationError):
    code = "negative_points_total"


# --- Permissions ---


class PermissionDeniedError(KartParkError):
    status_code = 403
    code = "permission_denied"


# --- StaleState ---


class StaleStateError(KartParkError):
    status_code = 409
    code = "stale_state"


# --- Validation ---


class ValidationError(KartParkError):
    status_code = 422
    code = "validation_error"
