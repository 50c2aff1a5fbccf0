"""
Domain Schema — Pydantic models for achievements, tokens and stacking rules.

These models are the canonical data structures passed between the
verification pipeline, the evolution scoring engine, the stacking engine and
the token registry. Every closed set of tags (achievement category, token
category, verification status, rarity) is an enumeration validated at the
engine boundary; free-form strings never travel past it.

The scoring policy lives here as well: level and rarity are pure functions
of accumulated points, so the policy object that derives them is plain data
shared by every component.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator


# ════════════════════════════════════════════════════════════════
# Enumerations
# ════════════════════════════════════════════════════════════════


class AchievementCategory(str, enum.Enum):
    """Categories of academic achievement accepted for verification."""

    GPA = "gpa"  # grade-based
    RESEARCH = "research"
    LEADERSHIP = "leadership"


class TokenCategory(str, enum.Enum):
    """Token types — one per achievement category plus the composite types."""

    GPA_GUARDIAN = "gpa_guardian"
    RESEARCH_ROCKSTAR = "research_rockstar"
    LEADERSHIP_LEGEND = "leadership_legend"

    # Composites (minted only by stacking)
    SCHOLAR_LEADER = "scholar_leader"
    INNOVATION_PIONEER = "innovation_pioneer"
    ACADEMIC_TITAN = "academic_titan"
    ACADEMIC_LEGEND = "academic_legend"

    @property
    def is_composite(self) -> bool:
        return self not in BASE_TOKEN_CATEGORIES


class VerificationStatus(str, enum.Enum):
    """Verification state of an achievement."""

    PENDING = "pending"
    AUTO_APPROVED = "auto_approved"
    MANUAL_REVIEW = "manual_review"
    ASSESSMENT_FAILED = "assessment_failed"
    VERIFIED = "verified"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_approved(self) -> bool:
        return self in (VerificationStatus.AUTO_APPROVED, VerificationStatus.VERIFIED)


class RecommendedAction(str, enum.Enum):
    """Recommended action reported by the trust assessor."""

    AUTO_APPROVE = "auto_approve"
    MANUAL_REVIEW = "manual_review"
    REJECT = "reject"


class Rarity(str, enum.Enum):
    """Ordered rarity tiers, lowest first."""

    COMMON = "common"
    RARE = "rare"
    EPIC = "epic"
    LEGENDARY = "legendary"
    MYTHIC = "mythic"

    @property
    def rank(self) -> int:
        return _RARITY_ORDER.index(self)


_RARITY_ORDER: list[Rarity] = list(Rarity)


class TokenEventKind(str, enum.Enum):
    """Kinds of entries in a token's evolution history."""

    SEEDED = "seeded"
    POINTS_ADDED = "points_added"
    CONSUMED = "consumed"
    MINTED = "minted"


BASE_TOKEN_CATEGORIES: frozenset[TokenCategory] = frozenset({
    TokenCategory.GPA_GUARDIAN,
    TokenCategory.RESEARCH_ROCKSTAR,
    TokenCategory.LEADERSHIP_LEGEND,
})

TERMINAL_STATUSES: frozenset[VerificationStatus] = frozenset({
    VerificationStatus.AUTO_APPROVED,
    VerificationStatus.VERIFIED,
    VerificationStatus.REJECTED,
})

# Statuses from which a human reviewer may still decide
UNDECIDED_STATUSES: frozenset[VerificationStatus] = frozenset({
    VerificationStatus.PENDING,
    VerificationStatus.MANUAL_REVIEW,
    VerificationStatus.ASSESSMENT_FAILED,
})

TOKEN_CATEGORY_FOR_ACHIEVEMENT: dict[AchievementCategory, TokenCategory] = {
    AchievementCategory.GPA: TokenCategory.GPA_GUARDIAN,
    AchievementCategory.RESEARCH: TokenCategory.RESEARCH_ROCKSTAR,
    AchievementCategory.LEADERSHIP: TokenCategory.LEADERSHIP_LEGEND,
}

# Document type hint sent to the trust assessor
DOCUMENT_TYPE_FOR_ACHIEVEMENT: dict[AchievementCategory, str] = {
    AchievementCategory.GPA: "transcript",
    AchievementCategory.RESEARCH: "research",
    AchievementCategory.LEADERSHIP: "leadership",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ════════════════════════════════════════════════════════════════
# Scoring Policy
# ════════════════════════════════════════════════════════════════


class ScoringPolicy(BaseModel):
    """
    Weights and thresholds for seed scoring and level/rarity derivation.

    The policy is configuration, not behavior: every field can be overridden
    from settings. Thresholds must be strictly ascending and start at 0 so
    that every non-negative point total maps to exactly one level and one
    rarity, and both are non-decreasing in points.
    """

    model_config = ConfigDict(frozen=True)

    qualifying_grade: Decimal = Field(default=Decimal("3.5"), description="Minimum grade for a grade-based token")
    max_grade: Decimal = Field(default=Decimal("4.0"), description="Top of the grading scale")
    base_weights: dict[AchievementCategory, int] = Field(
        default_factory=lambda: {
            AchievementCategory.GPA: 100,
            AchievementCategory.RESEARCH: 150,
            AchievementCategory.LEADERSHIP: 120,
        },
        description="Category base weight of the seed score",
    )
    grade_bonus_per_point: Decimal = Field(
        default=Decimal("200"), description="Bonus per grade point above the qualifying grade"
    )
    confidence_floor: Decimal = Field(
        default=Decimal("70"), description="Assessor confidence below which no trust bonus is given"
    )
    confidence_bonus_rate: Decimal = Field(
        default=Decimal("0.5"), description="Trust bonus per point of assessor confidence"
    )
    manual_verification_confidence: Decimal = Field(
        default=Decimal("85"), description="Confidence assumed for manually verified achievements"
    )
    composite_carryover_rate: Decimal = Field(
        default=Decimal("0.25"), description="Share of consumed tokens' points carried into a composite"
    )
    level_thresholds: tuple[int, ...] = Field(
        default=(0, 250, 500, 1000, 1750, 2750, 4000, 5500, 7500, 10000),
        description="Points required for level N at index N-1",
    )
    rarity_thresholds: dict[Rarity, int] = Field(
        default_factory=lambda: {
            Rarity.COMMON: 0,
            Rarity.RARE: 250,
            Rarity.EPIC: 500,
            Rarity.LEGENDARY: 1000,
            Rarity.MYTHIC: 2500,
        },
        description="Points required to reach each rarity tier",
    )

    @field_validator("level_thresholds")
    @classmethod
    def _levels_ascending(cls, value: tuple[int, ...]) -> tuple[int, ...]:
        if not value or value[0] != 0:
            raise ValueError("level thresholds must start at 0")
        if any(b <= a for a, b in zip(value, value[1:])):
            raise ValueError("level thresholds must be strictly ascending")
        return value

    @field_validator("rarity_thresholds")
    @classmethod
    def _rarities_ascending(cls, value: dict[Rarity, int]) -> dict[Rarity, int]:
        missing = [r.value for r in Rarity if r not in value]
        if missing:
            raise ValueError(f"rarity thresholds missing tiers: {', '.join(missing)}")
        ordered = [value[r] for r in Rarity]
        if ordered[0] != 0:
            raise ValueError("common rarity threshold must be 0")
        if any(b <= a for a, b in zip(ordered, ordered[1:])):
            raise ValueError("rarity thresholds must be strictly ascending in tier order")
        return value

    @model_validator(mode="after")
    def _grades_consistent(self) -> ScoringPolicy:
        if not (0 < self.qualifying_grade <= self.max_grade):
            raise ValueError("qualifying grade must be positive and not above the max grade")
        return self

    @classmethod
    def from_settings(cls, settings: Any) -> ScoringPolicy:
        """Build the policy from a TokenSettings instance."""
        return cls(
            qualifying_grade=Decimal(str(settings.qualifying_grade)),
            max_grade=Decimal(str(settings.max_grade)),
            base_weights={
                AchievementCategory.GPA: settings.base_weight_gpa,
                AchievementCategory.RESEARCH: settings.base_weight_research,
                AchievementCategory.LEADERSHIP: settings.base_weight_leadership,
            },
            grade_bonus_per_point=Decimal(str(settings.grade_bonus_per_point)),
            confidence_floor=Decimal(str(settings.confidence_floor)),
            confidence_bonus_rate=Decimal(str(settings.confidence_bonus_rate)),
            manual_verification_confidence=Decimal(str(settings.manual_verification_confidence)),
            composite_carryover_rate=Decimal(str(settings.composite_carryover_rate)),
            level_thresholds=tuple(settings.level_thresholds),
            rarity_thresholds=dict(settings.rarity_thresholds),
        )

    @property
    def max_level(self) -> int:
        return len(self.level_thresholds)

    def level_for(self, points: int) -> int:
        """Largest level whose threshold is met."""
        level = 1
        for index, threshold in enumerate(self.level_thresholds):
            if points >= threshold:
                level = index + 1
        return level

    def rarity_for(self, points: int) -> Rarity:
        """Highest rarity tier whose threshold is met."""
        rarity = Rarity.COMMON
        for tier in Rarity:
            if points >= self.rarity_thresholds[tier]:
                rarity = tier
        return rarity

    def threshold_for_level(self, level: int) -> int | None:
        if level < 1 or level > self.max_level:
            return None
        return self.level_thresholds[level - 1]


DEFAULT_SCORING_POLICY = ScoringPolicy()


class ScoringContext(BaseModel):
    """Extra scoring inputs beyond category, grade and confidence."""

    aggregate_points: int = Field(default=0, ge=0, description="Total points of tokens consumed into a composite")
    composite_base: int = Field(default=0, ge=0, description="Rule-declared seed score of a composite")


# ════════════════════════════════════════════════════════════════
# Trust Assessment
# ════════════════════════════════════════════════════════════════


class TrustVerdict(BaseModel):
    """Structured verdict returned by the external document-analysis collaborator."""

    confidence: float = Field(ge=0, le=100, description="Assessor confidence, 0–100")
    recommended_action: RecommendedAction
    extracted_fields: dict[str, Any] = Field(default_factory=dict)
    fraud_indicators: list[str] = Field(default_factory=list)


# ════════════════════════════════════════════════════════════════
# Achievements
# ════════════════════════════════════════════════════════════════


class AchievementSubmission(BaseModel):
    """A claim of academic merit as submitted by its owner."""

    owner_id: UUID
    category: AchievementCategory
    grade_value: float | None = Field(default=None, description="Required for grade-based achievements")
    proof_ref: str | None = Field(default=None, max_length=500, description="Opaque pointer to stored evidence")
    title: str = Field(default="", max_length=200)
    description: str = ""


class Achievement(BaseModel):
    """A persisted achievement and its verification state."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(default_factory=uuid4)
    owner_id: UUID
    category: AchievementCategory
    grade_value: float | None = None
    proof_ref: str | None = None
    title: str = ""
    description: str = ""
    status: VerificationStatus = VerificationStatus.PENDING
    trust_confidence: float | None = None
    recommended_action: RecommendedAction | None = None
    fraud_indicators: list[str] = Field(default_factory=list)
    decided_by: str | None = None
    decided_at: datetime | None = None
    created_at: datetime = Field(default_factory=_utcnow)


# ════════════════════════════════════════════════════════════════
# Tokens
# ════════════════════════════════════════════════════════════════


class Token(BaseModel):
    """
    A scored, leveled, typed token bound to exactly one owner.

    Level and rarity are stored for querying but are always derived from
    points by the scoring policy; they are never set independently.
    """

    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(default_factory=uuid4)
    owner_id: UUID
    category: TokenCategory
    points: int = Field(ge=0)
    level: int = Field(ge=1)
    rarity: Rarity
    version: int = 1
    sequence_number: int = 0
    minted: bool = False
    consumed: bool = False
    consumed_by: UUID | None = None
    source_achievement_id: UUID | None = None
    source_token_ids: list[UUID] = Field(default_factory=list)
    mint_tx_ref: str | None = None
    mint_chain: str | None = None
    minted_at: datetime | None = None
    created_at: datetime = Field(default_factory=_utcnow)

    @computed_field
    @property
    def is_composite(self) -> bool:
        return self.category.is_composite


class TokenEvent(BaseModel):
    """One entry of a token's evolution history."""

    model_config = ConfigDict(from_attributes=True)

    token_id: UUID
    kind: TokenEventKind
    delta: int = 0
    reason: str = ""
    points_after: int
    level_after: int
    rarity_after: Rarity
    created_at: datetime = Field(default_factory=_utcnow)


# ════════════════════════════════════════════════════════════════
# Stacking Rules
# ════════════════════════════════════════════════════════════════


class StackingSlot(BaseModel):
    """One required input of a stacking rule."""

    model_config = ConfigDict(frozen=True)

    category: TokenCategory
    min_level: int = Field(default=1, ge=1)
    min_rarity: Rarity = Rarity.COMMON

    def accepts(self, token: Token) -> bool:
        return (
            token.category == self.category
            and token.level >= self.min_level
            and token.rarity.rank >= self.min_rarity.rank
        )

    @property
    def strictness(self) -> tuple[int, int]:
        return (self.min_rarity.rank, self.min_level)


class StackingRule(BaseModel):
    """
    Declarative eligibility requirements for a composite token.

    Rules are read-only configuration; evaluating one never mutates state.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    required_slots: tuple[StackingSlot, ...] = Field(min_length=1)
    result_category: TokenCategory
    result_seed_score: int = Field(ge=0)

    @field_validator("result_category")
    @classmethod
    def _result_is_composite(cls, value: TokenCategory) -> TokenCategory:
        if not value.is_composite:
            raise ValueError(f"result category {value.value} is not a composite category")
        return value


# ════════════════════════════════════════════════════════════════
# Operation Results
# ════════════════════════════════════════════════════════════════


class VerificationOutcome(BaseModel):
    """Result of a submission or a manual decision."""

    achievement: Achievement
    status: VerificationStatus
    token: Token | None = None
    verdict: TrustVerdict | None = None

    @property
    def token_created(self) -> bool:
        return self.token is not None


class AchievementRecord(BaseModel):
    """An achievement with the token seeded from it, if any."""

    achievement: Achievement
    tokens: list[Token] = Field(default_factory=list)


class EvolutionResult(BaseModel):
    """Result of adding evolution points to a token."""

    token_id: UUID
    previous_points: int
    new_points: int
    new_level: int
    new_rarity: Rarity
    leveled_up: bool
    rarity_changed: bool


class EligibleRule(BaseModel):
    """A rule the user can satisfy now, with the tokens that would be consumed."""

    rule: StackingRule
    token_ids: list[UUID]


class SlotRequirement(BaseModel):
    """A rule slot and the token (if any) that currently fills it."""

    slot: StackingSlot
    token_id: UUID | None = None

    @property
    def filled(self) -> bool:
        return self.token_id is not None


class StackingOpportunity(BaseModel):
    """Per-rule view of how close a user is to a composite."""

    rule: StackingRule
    can_create: bool
    slots: list[SlotRequirement]

    @property
    def missing(self) -> list[StackingSlot]:
        return [s.slot for s in self.slots if not s.filled]


class CompositeResult(BaseModel):
    """Result of a successful stacking operation."""

    composite: Token
    consumed_token_ids: list[UUID]
    rule_id: str


class LevelProgress(BaseModel):
    """Progress of a point total towards the next level."""

    level: int
    points: int
    next_level_threshold: int | None
    points_to_next_level: int
    fraction: float = Field(ge=0, le=1)


class EvolutionSummary(BaseModel):
    """Aggregate evolution view of a user's tokens."""

    owner_id: UUID
    total_tokens: int
    active_tokens: int
    composite_tokens: int
    total_points: int
    highest_level: int
    rarity_distribution: dict[Rarity, int]
    close_to_level_up: list[UUID] = Field(
        default_factory=list, description="Active tokens within 10% of their next level"
    )


# ════════════════════════════════════════════════════════════════
# Default Stacking Rules
# ════════════════════════════════════════════════════════════════

DEFAULT_STACKING_RULES: tuple[StackingRule, ...] = (
    StackingRule(
        id="scholar_leader",
        name="Scholar Leader",
        required_slots=(
            StackingSlot(category=TokenCategory.GPA_GUARDIAN),
            StackingSlot(category=TokenCategory.LEADERSHIP_LEGEND),
        ),
        result_category=TokenCategory.SCHOLAR_LEADER,
        result_seed_score=300,
    ),
    StackingRule(
        id="innovation_pioneer",
        name="Innovation Pioneer",
        required_slots=(
            StackingSlot(category=TokenCategory.RESEARCH_ROCKSTAR, min_level=2, min_rarity=Rarity.RARE),
            StackingSlot(category=TokenCategory.RESEARCH_ROCKSTAR),
        ),
        result_category=TokenCategory.INNOVATION_PIONEER,
        result_seed_score=400,
    ),
    StackingRule(
        id="academic_titan",
        name="Academic Titan",
        required_slots=(
            StackingSlot(category=TokenCategory.GPA_GUARDIAN, min_level=2, min_rarity=Rarity.RARE),
            StackingSlot(category=TokenCategory.RESEARCH_ROCKSTAR, min_level=2, min_rarity=Rarity.RARE),
            StackingSlot(category=TokenCategory.LEADERSHIP_LEGEND, min_level=2, min_rarity=Rarity.RARE),
        ),
        result_category=TokenCategory.ACADEMIC_TITAN,
        result_seed_score=600,
    ),
    StackingRule(
        id="academic_legend",
        name="Academic Legend",
        required_slots=(
            StackingSlot(category=TokenCategory.ACADEMIC_TITAN, min_level=3, min_rarity=Rarity.EPIC),
            StackingSlot(category=TokenCategory.SCHOLAR_LEADER, min_level=2, min_rarity=Rarity.RARE),
        ),
        result_category=TokenCategory.ACADEMIC_LEGEND,
        result_seed_score=1200,
    ),
)
