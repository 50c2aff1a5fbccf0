"""
Verification Pipeline — from submitted achievement to verification decision.

A submission is first checked for structural validity (closed category set,
grade present and qualifying for grade-based achievements). Only a valid
submission may reach the trust assessor. The assessor's recommended action
then maps onto a verification status through a fixed decision table:

    auto_approve       → auto_approved     (seed token created now)
    manual_review      → manual_review     (human decision required)
    reject             → rejected          (terminal, no token)
    assessor error     → assessment_failed (same as manual_review)
    no assessor        → pending           (human decision required)

A human decision moves an undecided achievement to verified or rejected
exactly once; repeating it raises AlreadyDecided and never creates a second
token.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Mapping
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import ValidationError

from scholar_tokens.domain.errors import AlreadyDecided, AssessmentUnavailable, InvalidAchievement
from scholar_tokens.domain.schema import (
    DOCUMENT_TYPE_FOR_ACHIEVEMENT,
    TOKEN_CATEGORY_FOR_ACHIEVEMENT,
    Achievement,
    AchievementCategory,
    AchievementSubmission,
    RecommendedAction,
    TrustVerdict,
    VerificationOutcome,
    VerificationStatus,
)
from scholar_tokens.engine.scoring import EvolutionScoringEngine
from scholar_tokens.integrations.trust_client import TrustAssessor
from scholar_tokens.registry.service import NewToken, TokenRegistry, run_with_retries

logger = logging.getLogger(__name__)

AUTOMATED_DECIDER = "trust_assessor"

DECISION_TABLE: dict[RecommendedAction, VerificationStatus] = {
    RecommendedAction.AUTO_APPROVE: VerificationStatus.AUTO_APPROVED,
    RecommendedAction.MANUAL_REVIEW: VerificationStatus.MANUAL_REVIEW,
    RecommendedAction.REJECT: VerificationStatus.REJECTED,
}


class VerificationPipeline:
    """
    Turns submissions plus trust verdicts into verification decisions.

    Seed scoring is delegated to the EvolutionScoringEngine; persistence to
    the TokenRegistry.
    """

    def __init__(
        self,
        registry: TokenRegistry,
        scoring: EvolutionScoringEngine,
        assessment_timeout: float = 20.0,
        max_write_attempts: int = 5,
    ) -> None:
        """
        Args:
            registry: Durable store for achievements and tokens.
            scoring: Computes seed scores for approved achievements.
            assessment_timeout: Upper bound in seconds on a trust assessment.
            max_write_attempts: Retry budget for contended writes.
        """
        self.registry = registry
        self.scoring = scoring
        self.assessment_timeout = assessment_timeout
        self.max_write_attempts = max_write_attempts

    # ── Validation ──────────────────────────────────────────────

    def validate(self, submission: AchievementSubmission | Mapping[str, Any]) -> AchievementSubmission:
        """
        Check category-specific structural validity.

        Raises:
            InvalidAchievement: Unknown category tag, malformed fields, or a
                grade-based achievement without a qualifying grade.
        """
        if not isinstance(submission, AchievementSubmission):
            try:
                submission = AchievementSubmission.model_validate(submission)
            except ValidationError as exc:
                fields = ", ".join(".".join(str(p) for p in e["loc"]) for e in exc.errors())
                raise InvalidAchievement(f"Invalid achievement fields: {fields}") from exc

        if submission.category != AchievementCategory.GPA:
            # Grades only mean something for grade-based achievements
            if submission.grade_value is not None:
                submission = submission.model_copy(update={"grade_value": None})
            return submission

        policy = self.scoring.policy
        grade = submission.grade_value
        if grade is None:
            raise InvalidAchievement("Grade value is required for grade-based achievements")
        if not math.isfinite(grade):
            raise InvalidAchievement("Grade value must be a finite number", grade_value=grade)

        grade_dec = Decimal(str(grade))
        if grade_dec < 0 or grade_dec > policy.max_grade:
            raise InvalidAchievement(
                f"Grade value must be between 0 and {policy.max_grade}", grade_value=grade
            )
        if grade_dec < policy.qualifying_grade:
            raise InvalidAchievement(
                f"Grade must be {policy.qualifying_grade} or higher to qualify",
                grade_value=grade,
            )
        return submission

    # ── Submission ──────────────────────────────────────────────

    def submit(
        self,
        submission: AchievementSubmission | Mapping[str, Any],
        verdict: TrustVerdict | None = None,
        *,
        assessment_failed: bool = False,
    ) -> VerificationOutcome:
        """
        Record a submission and apply the decision table to its verdict.

        Args:
            submission: The claimed achievement.
            verdict: Trust verdict, or None when no assessment was made.
            assessment_failed: The assessor errored or timed out.

        Returns:
            VerificationOutcome with the new achievement and, for
            auto_approved, its seed token.

        Raises:
            InvalidAchievement: The submission failed structural validation.
        """
        submission = self.validate(submission)

        if assessment_failed:
            status = VerificationStatus.ASSESSMENT_FAILED
            verdict = None
        elif verdict is None:
            status = VerificationStatus.PENDING
        else:
            status = DECISION_TABLE[verdict.recommended_action]

        automated = status.is_terminal
        achievement = Achievement(
            owner_id=submission.owner_id,
            category=submission.category,
            grade_value=submission.grade_value,
            proof_ref=submission.proof_ref,
            title=submission.title,
            description=submission.description,
            status=status,
            trust_confidence=verdict.confidence if verdict else None,
            recommended_action=verdict.recommended_action if verdict else None,
            fraud_indicators=list(verdict.fraud_indicators) if verdict else [],
            decided_by=AUTOMATED_DECIDER if automated else None,
            decided_at=datetime.now(timezone.utc) if automated else None,
        )

        seed = None
        if status == VerificationStatus.AUTO_APPROVED:
            seed = self._seed_for(achievement, achievement.trust_confidence, reason="auto_approved")

        saved, token = run_with_retries(
            lambda: self.registry.create_achievement(achievement, seed),
            self.max_write_attempts,
            f"submit[{achievement.id}]",
        )
        logger.info(
            "Achievement submitted: id=%s owner=%s category=%s status=%s",
            saved.id, saved.owner_id, saved.category.value, saved.status.value,
        )
        return VerificationOutcome(achievement=saved, status=saved.status, token=token, verdict=verdict)

    async def submit_with_assessment(
        self,
        submission: AchievementSubmission | Mapping[str, Any],
        assessor: TrustAssessor | None,
    ) -> VerificationOutcome:
        """
        Validate, ask the trust assessor for a verdict, then submit.

        The assessor is only called for a structurally valid submission that
        carries a proof reference. The call is bounded by
        ``assessment_timeout``; a timeout or any assessor error yields
        assessment_failed, never an approval.
        """
        submission = self.validate(submission)
        if assessor is None or not submission.proof_ref:
            return self.submit(submission)

        document_type = DOCUMENT_TYPE_FOR_ACHIEVEMENT[submission.category]
        try:
            verdict = await asyncio.wait_for(
                assessor.assess(submission.proof_ref, document_type),
                timeout=self.assessment_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Trust assessment timed out after %.1fs for %s; routing to review",
                self.assessment_timeout, submission.proof_ref,
            )
            return self.submit(submission, assessment_failed=True)
        except AssessmentUnavailable as exc:
            logger.warning("Trust assessment unavailable (%s); routing to review", exc.message)
            return self.submit(submission, assessment_failed=True)
        except Exception:
            logger.exception("Trust assessor failed for %s; routing to review", submission.proof_ref)
            return self.submit(submission, assessment_failed=True)

        return self.submit(submission, verdict)

    # ── Manual decisions ────────────────────────────────────────

    def manual_decide(self, achievement_id: UUID, approve: bool, decider_id: UUID | str) -> VerificationOutcome:
        """
        Apply a human reviewer's decision to an undecided achievement.

        Raises:
            AchievementNotFound: Unknown achievement.
            AlreadyDecided: The achievement is already terminal.
        """
        achievement = self.registry.get_achievement(achievement_id)
        if achievement.status.is_terminal:
            raise AlreadyDecided(achievement_id, achievement.status.value)

        status = VerificationStatus.VERIFIED if approve else VerificationStatus.REJECTED
        seed = None
        if approve:
            confidence = achievement.trust_confidence
            if confidence is None:
                confidence = float(self.scoring.policy.manual_verification_confidence)
            seed = self._seed_for(achievement, confidence, reason="manual_verification")

        saved, token = run_with_retries(
            lambda: self.registry.decide_achievement(achievement_id, status, str(decider_id), seed),
            self.max_write_attempts,
            f"manual_decide[{achievement_id}]",
        )
        logger.info(
            "Manual decision: id=%s status=%s by=%s", achievement_id, status.value, decider_id,
        )
        return VerificationOutcome(achievement=saved, status=saved.status, token=token)

    def pending_review(self, limit: int = 100) -> list[Achievement]:
        """Achievements awaiting a human decision, oldest first."""
        return self.registry.list_undecided(limit)

    # ── Internal ────────────────────────────────────────────────

    def _seed_for(self, achievement: Achievement, confidence: float | None, reason: str) -> NewToken:
        points = self.scoring.seed_score(
            achievement.category,
            grade_value=achievement.grade_value,
            trust_confidence=confidence,
        )
        return self.scoring.new_token(
            owner_id=achievement.owner_id,
            category=TOKEN_CATEGORY_FOR_ACHIEVEMENT[achievement.category],
            points=points,
            reason=reason,
            source_achievement_id=achievement.id,
        )
