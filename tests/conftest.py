"""Shared fixtures: a fresh SQLite-backed registry and engine per test."""

from __future__ import annotations

from uuid import UUID

import pytest

from scholar_tokens.domain.schema import (
    DEFAULT_SCORING_POLICY,
    DEFAULT_STACKING_RULES,
    TOKEN_CATEGORY_FOR_ACHIEVEMENT,
    Achievement,
    AchievementCategory,
    Token,
    VerificationStatus,
)
from scholar_tokens.orchestrator import TokenEngine
from scholar_tokens.registry.service import TokenRegistry


@pytest.fixture
def registry(tmp_path):
    registry = TokenRegistry(f"sqlite:///{tmp_path / 'tokens.db'}")
    registry.initialize()
    yield registry
    registry.dispose()


@pytest.fixture
def engine(registry):
    # Generous retry budget: threaded tests contend on one SQLite file
    return TokenEngine(
        registry,
        DEFAULT_SCORING_POLICY,
        DEFAULT_STACKING_RULES,
        max_write_attempts=50,
    )


def seed_token(engine: TokenEngine, owner_id: UUID, category: AchievementCategory, points: int) -> Token:
    """Persist a verified achievement whose seed token has exactly ``points``."""
    achievement = Achievement(
        owner_id=owner_id,
        category=category,
        grade_value=3.8 if category == AchievementCategory.GPA else None,
        status=VerificationStatus.VERIFIED,
        decided_by="reviewer-1",
    )
    seed = engine.scoring.new_token(
        owner_id=owner_id,
        category=TOKEN_CATEGORY_FOR_ACHIEVEMENT[category],
        points=points,
        reason="manual_verification",
        source_achievement_id=achievement.id,
    )
    _, token = engine.registry.create_achievement(achievement, seed)
    return token
