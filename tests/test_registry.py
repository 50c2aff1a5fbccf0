"""
Tests for the Token Registry.

Validates:
- Minting records and their guards
- Evolution history
- Consistency audit and tamper detection
"""

from __future__ import annotations

from uuid import uuid4

import pytest
from sqlalchemy import update

from conftest import seed_token
from scholar_tokens.domain.errors import (
    AlreadyMinted,
    InvalidAchievement,
    OwnershipMismatch,
    TokenNotFound,
)
from scholar_tokens.domain.schema import AchievementCategory, TokenEventKind
from scholar_tokens.registry.audit import run_audit
from scholar_tokens.registry.models import TokenDB


class TestMinting:

    def test_mark_minted(self, engine):
        owner = uuid4()
        token = seed_token(engine, owner, AchievementCategory.GPA, 226)

        minted = engine.mark_minted(token.id, owner, "0xabc123", "polygon")

        assert minted.minted
        assert minted.mint_tx_ref == "0xabc123"
        assert minted.mint_chain == "polygon"
        assert minted.minted_at is not None
        assert engine.token_history(token.id)[-1].kind == TokenEventKind.MINTED

    def test_mint_twice_rejected(self, engine):
        owner = uuid4()
        token = seed_token(engine, owner, AchievementCategory.GPA, 226)
        engine.mark_minted(token.id, owner, "0xabc123", "polygon")
        with pytest.raises(AlreadyMinted):
            engine.mark_minted(token.id, owner, "0xdef456", "polygon")

    def test_mint_foreign_token_rejected(self, engine):
        token = seed_token(engine, uuid4(), AchievementCategory.GPA, 226)
        with pytest.raises(OwnershipMismatch):
            engine.mark_minted(token.id, uuid4(), "0xabc123", "polygon")

    def test_minted_token_can_still_stack(self, engine):
        owner = uuid4()
        gpa = seed_token(engine, owner, AchievementCategory.GPA, 100)
        lead = seed_token(engine, owner, AchievementCategory.LEADERSHIP, 120)
        engine.mark_minted(gpa.id, owner, "0xabc123", "polygon")

        result = engine.create_composite_token(owner, "scholar_leader", [gpa.id, lead.id])
        assert not result.composite.minted


class TestAchievements:

    def test_list_newest_first_with_tokens(self, engine):
        owner = uuid4()
        older = seed_token(engine, owner, AchievementCategory.GPA, 226)
        newer = engine.verification.submit({"owner_id": str(owner), "category": "leadership"})
        seed_token(engine, uuid4(), AchievementCategory.RESEARCH, 150)

        records = engine.list_achievements(owner)

        assert [r.achievement.id for r in records] == [
            newer.achievement.id, older.source_achievement_id,
        ]
        assert records[0].tokens == []
        assert [t.id for t in records[1].tokens] == [older.id]

    def test_list_for_unknown_owner_is_empty(self, engine):
        assert engine.list_achievements(uuid4()) == []

    def test_list_respects_limit(self, engine):
        owner = uuid4()
        for _ in range(3):
            engine.verification.submit({"owner_id": str(owner), "category": "research"})
        assert len(engine.registry.list_achievements(owner, limit=2)) == 2

    def test_oversized_submission_fields_invalid(self, engine):
        with pytest.raises(InvalidAchievement):
            engine.verification.submit(
                {"owner_id": str(uuid4()), "category": "research", "title": "t" * 201}
            )
        with pytest.raises(InvalidAchievement):
            engine.verification.submit(
                {"owner_id": str(uuid4()), "category": "research", "proof_ref": "p" * 501}
            )


class TestTokens:

    def test_sequence_numbers_increase(self, engine):
        owner = uuid4()
        first = seed_token(engine, owner, AchievementCategory.GPA, 100)
        second = seed_token(engine, owner, AchievementCategory.RESEARCH, 150)
        assert second.sequence_number > first.sequence_number
        assert [t.id for t in engine.list_tokens(owner)] == [first.id, second.id]

    def test_get_tokens_omits_missing(self, engine):
        token = seed_token(engine, uuid4(), AchievementCategory.GPA, 100)
        found = engine.registry.get_tokens([token.id, uuid4()])
        assert list(found) == [token.id]

    def test_history_of_unknown_token(self, engine):
        with pytest.raises(TokenNotFound):
            engine.token_history(uuid4())

    def test_list_excluding_consumed(self, engine):
        owner = uuid4()
        gpa = seed_token(engine, owner, AchievementCategory.GPA, 100)
        lead = seed_token(engine, owner, AchievementCategory.LEADERSHIP, 120)
        composite = engine.create_composite_token(owner, "scholar_leader", [gpa.id, lead.id]).composite

        active = engine.list_tokens(owner, include_consumed=False)
        assert [t.id for t in active] == [composite.id]
        assert len(engine.list_tokens(owner)) == 3


class TestConsistencyAudit:

    def test_clean_registry_is_consistent(self, engine):
        owner = uuid4()
        seed_token(engine, owner, AchievementCategory.GPA, 300)
        is_valid, checked, problems = engine.registry.verify_consistency(engine.scoring.policy)
        assert is_valid
        assert checked == 1
        assert problems == []

    def test_tampered_level_detected(self, engine):
        token = seed_token(engine, uuid4(), AchievementCategory.GPA, 300)
        with engine.registry.SessionLocal() as session:
            session.execute(
                update(TokenDB)
                .where(TokenDB.id == token.id)
                .values(level=7)
                .execution_options(synchronize_session=False)
            )
            session.commit()

        is_valid, _, problems = engine.registry.verify_consistency(engine.scoring.policy)
        assert not is_valid
        assert any("level 7" in p for p in problems)

    def test_orphaned_consumption_detected(self, engine):
        token = seed_token(engine, uuid4(), AchievementCategory.GPA, 300)
        with engine.registry.SessionLocal() as session:
            session.execute(
                update(TokenDB)
                .where(TokenDB.id == token.id)
                .values(consumed=True)
                .execution_options(synchronize_session=False)
            )
            session.commit()

        is_valid, _, _ = engine.registry.verify_consistency(engine.scoring.policy)
        assert not is_valid

    def test_audit_tool(self, engine, tmp_path):
        seed_token(engine, uuid4(), AchievementCategory.RESEARCH, 150)
        url = f"sqlite:///{tmp_path / 'tokens.db'}"
        assert run_audit(url, policy=engine.scoring.policy) is True

    def test_audit_tool_empty_registry(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'empty.db'}"
        from scholar_tokens.registry.service import TokenRegistry

        registry = TokenRegistry(url)
        registry.initialize()
        registry.dispose()
        assert run_audit(url) is True
