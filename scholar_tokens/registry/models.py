"""
Token Registry — SQLAlchemy models for achievements, tokens and their history.

The registry is the durable store every engine component reads and writes.
Column types are portable (generic UUID, JSON with a JSONB variant) so the
same schema runs on PostgreSQL in production and SQLite in tests.

Concurrency contract:
- ``tokens.version`` is the optimistic-lock column; every UPDATE of a token
  row must match the version it read and bump it.
- ``tokens.source_achievement_id`` is unique: one seed token per achievement.
- ``token_events`` is append-only.
"""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase

JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all registry models."""
    pass


class AchievementDB(Base):
    """
    A submitted achievement and its verification decision.

    ``status`` changes exactly once per decision; the decision fields are
    written in the same conditional UPDATE that moves the status.
    """

    __tablename__ = "achievements"

    id = Column(Uuid, primary_key=True, default=uuid4)
    owner_id = Column(Uuid, nullable=False, index=True)
    category = Column(
        String(20), nullable=False,
        comment="gpa, research or leadership",
    )
    grade_value = Column(Float, nullable=True)
    proof_ref = Column(String(500), nullable=True, comment="Opaque pointer to stored evidence")
    title = Column(String(200), nullable=False, default="")
    description = Column(Text, nullable=False, default="")

    status = Column(
        String(30), nullable=False, default="pending", index=True,
        comment="Verification status",
    )
    trust_confidence = Column(Float, nullable=True)
    recommended_action = Column(String(30), nullable=True)
    fraud_indicators = Column(JSONType, nullable=False, default=list)

    decided_by = Column(String(100), nullable=True)
    decided_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())

    __table_args__ = (
        Index("ix_achievement_owner_status", "owner_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<Achievement id={self.id} category={self.category} status={self.status}>"


class TokenDB(Base):
    """
    A scored token, either seeded from an achievement or minted by stacking.

    Level and rarity are denormalized from points for querying; they are
    always written together with points.
    """

    __tablename__ = "tokens"

    id = Column(Uuid, primary_key=True, default=uuid4)
    sequence_number = Column(
        Integer, nullable=False, unique=True, index=True,
        comment="Creation order; tie-breaker for stacking selection",
    )
    owner_id = Column(Uuid, nullable=False, index=True)
    category = Column(String(40), nullable=False)

    points = Column(Integer, nullable=False, default=0)
    level = Column(Integer, nullable=False, default=1)
    rarity = Column(String(20), nullable=False, default="common")
    version = Column(Integer, nullable=False, comment="Optimistic-lock counter")

    consumed = Column(Boolean, nullable=False, default=False)
    consumed_by = Column(
        Uuid, ForeignKey("tokens.id"), nullable=True,
        comment="Composite that consumed this token",
    )
    source_achievement_id = Column(
        Uuid, ForeignKey("achievements.id"), nullable=True, unique=True,
    )
    source_token_ids = Column(JSONType, nullable=False, default=list)

    # Minting collaborator fields
    minted = Column(Boolean, nullable=False, default=False)
    mint_tx_ref = Column(String(200), nullable=True)
    mint_chain = Column(String(50), nullable=True)
    minted_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_token_owner_consumed", "owner_id", "consumed"),
    )

    def __repr__(self) -> str:
        return (
            f"<Token seq={self.sequence_number} category={self.category} "
            f"points={self.points} v{self.version}>"
        )


class TokenEventDB(Base):
    """Append-only evolution history of a token."""

    __tablename__ = "token_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    token_id = Column(Uuid, ForeignKey("tokens.id"), nullable=False, index=True)
    kind = Column(String(20), nullable=False)
    delta = Column(Integer, nullable=False, default=0)
    reason = Column(String(200), nullable=False, default="")
    points_after = Column(Integer, nullable=False)
    level_after = Column(Integer, nullable=False)
    rarity_after = Column(String(20), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
