"""
questline.exceptions — Error Taxonomy
======================================

Every failure the coordinator can report is a :class:`QuestlineError`
subclass carrying a stable ``error_code``, an :class:`ErrorCategory`, the
HTTP status the API maps it to, and whether a caller may safely retry.

Categories:

* ``VALIDATION``  — malformed or ineligible input (400); fix, don't retry.
* ``AUTHENTICATION`` — untrusted caller (401/403).
* ``NOT_FOUND``   — quest / code / account absent (404).
* ``CONFLICT``    — already completed / redeemed / paid.  Signals that no new
  reward was or will be granted; never swallowed as success.
* ``TRANSIENT``   — storage unavailable or the award step failed after the
  gate committed (500).  Safe to retry: the retry meets the gate.
"""

from __future__ import annotations

import enum
from typing import Any


class ErrorCategory(enum.StrEnum):
    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    TRANSIENT = "transient"


class QuestlineError(Exception):
    """Base class for all coordinator / ledger errors.

    Subclasses override the class attributes; instances may override
    ``message`` and attach structured ``details`` for logging.
    """

    category: ErrorCategory = ErrorCategory.TRANSIENT
    status_code: int = 500
    default_message: str = "Internal server error"
    is_retryable: bool = False

    def __init__(self, message: str | None = None, **details: Any) -> None:
        self.message: str = message or self.default_message
        self.details: dict[str, Any] = details
        self.error_code: str = self.__class__.__name__
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialise for the ``{success: false, ...}`` response envelope."""
        return {
            "success": False,
            "error": self.message,
            "code": self.error_code,
            "category": self.category.value,
            "retryable": self.is_retryable,
        }

    def __str__(self) -> str:
        details_str = f" | Details: {self.details}" if self.details else ""
        return f"[{self.error_code}] {self.message}{details_str}"


# ---------------------------------------------------------------------------
# Validation (400)
# ---------------------------------------------------------------------------
class ValidationFailed(QuestlineError):
    category = ErrorCategory.VALIDATION
    status_code = 400
    default_message = "Invalid request"


class QuestInactive(ValidationFailed):
    default_message = "Quest is no longer active"


class NotReady(ValidationFailed):
    default_message = "Quest not finished yet"


class CodeNotRequired(ValidationFailed):
    default_message = "This quest does not require a code"


class CodeRequired(ValidationFailed):
    default_message = "This quest must be completed with a verification code"


class InvalidCode(ValidationFailed):
    default_message = "Invalid verification code"


class InvalidAmount(ValidationFailed):
    default_message = "XP amount must not be negative"


class UngatedAward(ValidationFailed):
    default_message = "No completion, redemption or achievement record backs this award"


# ---------------------------------------------------------------------------
# Authentication (401 / 403)
# ---------------------------------------------------------------------------
class IdentityMismatch(QuestlineError):
    category = ErrorCategory.AUTHENTICATION
    status_code = 403
    default_message = "userId does not match the authenticated account"


# ---------------------------------------------------------------------------
# Not found (404)
# ---------------------------------------------------------------------------
class NotFound(QuestlineError):
    category = ErrorCategory.NOT_FOUND
    status_code = 404
    default_message = "Not found"


class QuestNotFound(NotFound):
    default_message = "Quest not found"


class CodeNotConfigured(NotFound):
    default_message = "Verification code not found for this quest"


class AccountNotFound(NotFound):
    default_message = "Account not found"


# ---------------------------------------------------------------------------
# Conflict (409 on the completion path, 400 on the redemption path)
# ---------------------------------------------------------------------------
class Conflict(QuestlineError):
    category = ErrorCategory.CONFLICT
    status_code = 409
    default_message = "Conflict"


class AlreadyCompleted(Conflict):
    default_message = "Quest already completed"


class DuplicateRedemption(Conflict):
    status_code = 400
    default_message = "You have already completed this quest"


class AlreadyPaid(Conflict):
    default_message = "Reward already paid"


# ---------------------------------------------------------------------------
# Transient (500)
# ---------------------------------------------------------------------------
class TransientFailure(QuestlineError):
    category = ErrorCategory.TRANSIENT
    status_code = 500
    is_retryable = True


class RewardPending(TransientFailure):
    default_message = (
        "Quest completion was recorded but the XP award failed; "
        "it will be paid by reconciliation"
    )
