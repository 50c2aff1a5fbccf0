"""
Error taxonomy for the token engine.

Every failure a caller can observe is a ScholarTokensError carrying a stable
code and the HTTP status the service boundary maps it to. Validation and
ownership errors are caller errors and are never retried by the engine;
PersistenceConflict is retried locally and only escapes once the retry
budget is exhausted; AssessmentUnavailable is absorbed by the verification
pipeline and downgraded to a reviewable state.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID


class ScholarTokensError(Exception):
    """Base exception for all engine errors."""

    code = "ENGINE_ERROR"
    http_status = 500

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_response(self) -> dict[str, Any]:
        """Standard JSON error envelope."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": {k: str(v) for k, v in self.details.items()},
            }
        }


# ── Verification ───────────────────────────────────────────────


class InvalidAchievement(ScholarTokensError):
    """Structural or business-rule validation failed at submission."""

    code = "INVALID_ACHIEVEMENT"
    http_status = 400


class AlreadyDecided(ScholarTokensError):
    """A decision was attempted on an achievement in a terminal status."""

    code = "ALREADY_DECIDED"
    http_status = 409

    def __init__(self, achievement_id: UUID, status: str) -> None:
        super().__init__(
            f"Achievement {achievement_id} is already {status}",
            achievement_id=achievement_id,
            status=status,
        )
        self.achievement_id = achievement_id
        self.status = status


class AssessmentUnavailable(ScholarTokensError):
    """The trust-assessment collaborator failed or timed out."""

    code = "ASSESSMENT_UNAVAILABLE"
    http_status = 503


class AchievementNotFound(ScholarTokensError):
    code = "ACHIEVEMENT_NOT_FOUND"
    http_status = 404

    def __init__(self, achievement_id: UUID) -> None:
        super().__init__(f"Achievement {achievement_id} not found", achievement_id=achievement_id)


# ── Tokens ─────────────────────────────────────────────────────


class TokenNotFound(ScholarTokensError):
    code = "TOKEN_NOT_FOUND"
    http_status = 404

    def __init__(self, token_id: UUID) -> None:
        super().__init__(f"Token {token_id} not found", token_id=token_id)
        self.token_id = token_id


class TokenConsumed(ScholarTokensError):
    """Points were added to a token already used as a stacking input."""

    code = "TOKEN_CONSUMED"
    http_status = 409

    def __init__(self, token_id: UUID) -> None:
        super().__init__(f"Token {token_id} has been consumed", token_id=token_id)
        self.token_id = token_id


class InvalidPointsDelta(ScholarTokensError):
    code = "INVALID_POINTS_DELTA"
    http_status = 400


class AlreadyMinted(ScholarTokensError):
    code = "ALREADY_MINTED"
    http_status = 409

    def __init__(self, token_id: UUID) -> None:
        super().__init__(f"Token {token_id} is already minted", token_id=token_id)


# ── Stacking ───────────────────────────────────────────────────


class UnknownStackingRule(ScholarTokensError):
    code = "UNKNOWN_STACKING_RULE"
    http_status = 404

    def __init__(self, rule_id: str) -> None:
        super().__init__(f"Stacking rule '{rule_id}' is not configured", rule_id=rule_id)


class RuleNotSatisfied(ScholarTokensError):
    """The chosen tokens do not satisfy the rule."""

    code = "RULE_NOT_SATISFIED"
    http_status = 400


class TokenAlreadyConsumed(ScholarTokensError):
    """A chosen token was consumed by another stacking operation."""

    code = "TOKEN_ALREADY_CONSUMED"
    http_status = 409

    def __init__(self, token_ids: list[UUID]) -> None:
        super().__init__(
            f"Token(s) already consumed: {', '.join(str(t) for t in token_ids)}",
            token_ids=",".join(str(t) for t in token_ids),
        )
        self.token_ids = token_ids


class OwnershipMismatch(ScholarTokensError):
    """A token does not belong to the calling user."""

    code = "OWNERSHIP_MISMATCH"
    http_status = 403


# ── Persistence ────────────────────────────────────────────────


class PersistenceConflict(ScholarTokensError):
    """Optimistic-lock mismatch or lock contention on a concurrent write."""

    code = "PERSISTENCE_CONFLICT"
    http_status = 409
