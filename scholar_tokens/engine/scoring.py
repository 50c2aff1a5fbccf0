"""
Evolution Scoring Engine — seed scores, point growth, level and rarity.

Level and rarity are pure functions of a token's accumulated points under
the configured ScoringPolicy. Points only ever grow, so a token's level and
rarity never go down. ``add_points`` is the single mutation path for point
growth (endorsements, challenge wins, manual awards); it reports whether a
level or rarity boundary was crossed so callers can react, without knowing
who those callers are.
"""

from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

from scholar_tokens.domain.errors import InvalidPointsDelta
from scholar_tokens.domain.schema import (
    DEFAULT_SCORING_POLICY,
    TOKEN_CATEGORY_FOR_ACHIEVEMENT,
    AchievementCategory,
    EvolutionResult,
    EvolutionSummary,
    LevelProgress,
    Rarity,
    ScoringContext,
    ScoringPolicy,
    TokenCategory,
    TokenEvent,
)
from scholar_tokens.registry.service import NewToken, TokenRegistry, run_with_retries

logger = logging.getLogger(__name__)

_ACHIEVEMENT_FOR_TOKEN: dict[TokenCategory, AchievementCategory] = {
    token: achievement for achievement, token in TOKEN_CATEGORY_FOR_ACHIEVEMENT.items()
}

# Share of the current level span within which a token counts as close to leveling
LEVEL_UP_WINDOW = 0.9


class EvolutionScoringEngine:
    """
    Computes seed scores and applies point deltas to tokens.

    The scoring functions are pure; only ``add_points`` touches the registry.
    """

    def __init__(
        self,
        registry: TokenRegistry | None = None,
        policy: ScoringPolicy = DEFAULT_SCORING_POLICY,
        max_write_attempts: int = 5,
    ) -> None:
        self.registry = registry
        self.policy = policy
        self.max_write_attempts = max_write_attempts

    # ── Pure scoring ────────────────────────────────────────────

    def seed_score(
        self,
        category: AchievementCategory | TokenCategory,
        grade_value: float | None = None,
        trust_confidence: float | None = None,
        context: ScoringContext | None = None,
    ) -> int:
        """
        Initial points for a new token.

        Base tokens: category weight + grade bonus (grade-based only) + trust
        bonus (0 below the confidence floor). Composites: the rule's seed
        score + a carryover share of the consumed tokens' points.
        """
        context = context or ScoringContext()
        policy = self.policy

        if isinstance(category, TokenCategory) and category.is_composite:
            total = Decimal(context.composite_base) + (
                Decimal(context.aggregate_points) * policy.composite_carryover_rate
            )
        else:
            if isinstance(category, TokenCategory):
                category = _ACHIEVEMENT_FOR_TOKEN[category]
            total = Decimal(policy.base_weights[category])

            if category == AchievementCategory.GPA and grade_value is not None:
                grade = min(Decimal(str(grade_value)), policy.max_grade)
                excess = max(Decimal("0"), grade - policy.qualifying_grade)
                total += excess * policy.grade_bonus_per_point

        if trust_confidence is not None:
            confidence = Decimal(str(trust_confidence))
            if confidence >= policy.confidence_floor:
                total += confidence * policy.confidence_bonus_rate

        return int(total.quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    def derive_level(self, points: int) -> int:
        if points < 0:
            raise ValueError("points cannot be negative")
        return self.policy.level_for(points)

    def derive_rarity(self, points: int) -> Rarity:
        if points < 0:
            raise ValueError("points cannot be negative")
        return self.policy.rarity_for(points)

    def derive(self, points: int) -> tuple[int, Rarity]:
        return self.derive_level(points), self.derive_rarity(points)

    def level_progress(self, points: int) -> LevelProgress:
        """Where a point total sits between its level and the next."""
        level = self.derive_level(points)
        current = self.policy.threshold_for_level(level) or 0
        upcoming = self.policy.threshold_for_level(level + 1)
        if upcoming is None:
            return LevelProgress(
                level=level, points=points, next_level_threshold=None,
                points_to_next_level=0, fraction=1.0,
            )
        return LevelProgress(
            level=level,
            points=points,
            next_level_threshold=upcoming,
            points_to_next_level=upcoming - points,
            fraction=(points - current) / (upcoming - current),
        )

    def new_token(
        self,
        owner_id: UUID,
        category: TokenCategory,
        points: int,
        reason: str,
        source_achievement_id: UUID | None = None,
        source_token_ids: list[UUID] | None = None,
    ) -> NewToken:
        """Token fields for insertion, with level and rarity derived from points."""
        level, rarity = self.derive(points)
        return NewToken(
            owner_id=owner_id,
            category=category,
            points=points,
            level=level,
            rarity=rarity,
            reason=reason,
            source_achievement_id=source_achievement_id,
            source_token_ids=list(source_token_ids or []),
        )

    # ── Mutation ────────────────────────────────────────────────

    def add_points(self, token_id: UUID, delta: int, reason: str) -> EvolutionResult:
        """
        Add evolution points to a token.

        Args:
            token_id: Target token.
            delta: Non-negative integer increment.
            reason: Why the points were awarded (e.g. "challenge_win").

        Raises:
            InvalidPointsDelta: Negative or non-integer delta.
            TokenNotFound: Unknown token.
            TokenConsumed: The token was used as a stacking input.
            PersistenceConflict: Concurrent writers exhausted the retry budget.
        """
        if isinstance(delta, bool) or not isinstance(delta, int):
            raise InvalidPointsDelta(f"Points delta must be an integer, got {delta!r}")
        if delta < 0:
            raise InvalidPointsDelta(f"Points delta cannot be negative: {delta}", delta=delta)

        before, after = run_with_retries(
            lambda: self._registry().update_points(token_id, delta, reason, self.derive),
            self.max_write_attempts,
            f"add_points[{token_id}]",
        )

        result = EvolutionResult(
            token_id=token_id,
            previous_points=before.points,
            new_points=after.points,
            new_level=after.level,
            new_rarity=after.rarity,
            leveled_up=after.level > before.level,
            rarity_changed=after.rarity != before.rarity,
        )
        if result.leveled_up or result.rarity_changed:
            logger.info(
                "Token evolved: id=%s level %d→%d rarity %s→%s (%s)",
                token_id, before.level, after.level,
                before.rarity.value, after.rarity.value, reason,
            )
        else:
            logger.debug("Points added: id=%s +%d → %d (%s)", token_id, delta, after.points, reason)
        return result

    # ── Read views ──────────────────────────────────────────────

    def history(self, token_id: UUID) -> list[TokenEvent]:
        return self._registry().get_events(token_id)

    def evolution_summary(self, owner_id: UUID) -> EvolutionSummary:
        """Aggregate evolution state of all of a user's tokens."""
        tokens = self._registry().list_tokens(owner_id)
        active = [t for t in tokens if not t.consumed]

        distribution = {rarity: 0 for rarity in Rarity}
        for token in active:
            distribution[token.rarity] += 1

        close: list[UUID] = []
        for token in active:
            progress = self.level_progress(token.points)
            if progress.next_level_threshold is not None and progress.fraction >= LEVEL_UP_WINDOW:
                close.append(token.id)

        return EvolutionSummary(
            owner_id=owner_id,
            total_tokens=len(tokens),
            active_tokens=len(active),
            composite_tokens=sum(1 for t in tokens if t.is_composite),
            total_points=sum(t.points for t in active),
            highest_level=max((t.level for t in active), default=0),
            rarity_distribution=distribution,
            close_to_level_up=close,
        )

    def _registry(self) -> TokenRegistry:
        if self.registry is None:
            raise RuntimeError("EvolutionScoringEngine has no registry attached")
        return self.registry
