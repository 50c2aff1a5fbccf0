"""
Token Registry Service — durable store for achievements and tokens.

This service is the only component that touches the database. It provides:
- Achievement creation and exactly-once verification decisions
- Token creation, points updates under optimistic versioning, minting
- All-or-nothing consumption of stacking inputs with composite creation
- Evolution history and a consistency audit

Every write either commits completely or raises. Contention (stale version,
lock timeout, sequence clash) surfaces as PersistenceConflict so callers can
retry the whole read-modify-write with ``run_with_retries``.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TypeVar
from uuid import UUID, uuid4

from sqlalchemy import create_engine, func, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from scholar_tokens.domain.errors import (
    AchievementNotFound,
    AlreadyDecided,
    AlreadyMinted,
    OwnershipMismatch,
    PersistenceConflict,
    TokenAlreadyConsumed,
    TokenConsumed,
    TokenNotFound,
)
from scholar_tokens.domain.schema import (
    UNDECIDED_STATUSES,
    Achievement,
    AchievementRecord,
    Rarity,
    ScoringPolicy,
    Token,
    TokenCategory,
    TokenEvent,
    TokenEventKind,
    VerificationStatus,
)
from scholar_tokens.registry.models import AchievementDB, Base, TokenDB, TokenEventDB

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class NewToken:
    """Fields of a token about to be created; identity and order are assigned on insert."""

    owner_id: UUID
    category: TokenCategory
    points: int
    level: int
    rarity: Rarity
    reason: str
    source_achievement_id: UUID | None = None
    source_token_ids: list[UUID] = field(default_factory=list)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _is_contention(exc: DBAPIError) -> bool:
    """Lock timeouts and serialization failures are retryable conflicts."""
    message = str(exc.orig).lower()
    return any(
        marker in message
        for marker in ("database is locked", "deadlock", "could not serialize", "lock timeout")
    )


def _backoff(attempt: int) -> float:
    """Jittered exponential backoff in seconds."""
    return min(0.005 * (2 ** attempt), 0.2) * random.uniform(0.5, 1.5)


def run_with_retries(operation: Callable[[], T], attempts: int, label: str) -> T:
    """
    Run a read-modify-write operation, retrying on PersistenceConflict.

    The operation must re-read everything it depends on each time it runs.
    Any other error propagates immediately.
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except PersistenceConflict:
            if attempt == attempts:
                logger.warning("%s: write conflict persisted after %d attempts", label, attempts)
                raise
            delay = _backoff(attempt)
            logger.info(
                "%s: write conflict (attempt %d/%d), retrying in %.3fs",
                label, attempt, attempts, delay,
            )
            time.sleep(delay)
    raise AssertionError("unreachable")


class TokenRegistry:
    """
    Token Registry — durable store of achievements and tokens.

    Usage:
        registry = TokenRegistry(database_url)
        registry.initialize()  # Create tables; safe to call again

        achievement, token = registry.create_achievement(achievement, seed=None)
    """

    def __init__(self, database_url: str, echo: bool = False) -> None:
        """
        Initialize the registry.

        Args:
            database_url: SQLAlchemy connection string (sync driver).
            echo: Log every SQL statement.
        """
        connect_args: dict = {}
        if database_url.startswith("sqlite"):
            # Worker threads share the pool; wait on locks instead of failing fast
            connect_args = {"check_same_thread": False, "timeout": 30}
        self.engine = create_engine(database_url, echo=echo, connect_args=connect_args)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

    def initialize(self) -> None:
        """Create the schema. Idempotent."""
        Base.metadata.create_all(self.engine)
        logger.info("Token registry schema ready: %s", self.engine.url.render_as_string(hide_password=True))

    def dispose(self) -> None:
        self.engine.dispose()

    # ── Achievements ────────────────────────────────────────────

    def create_achievement(
        self,
        achievement: Achievement,
        seed: NewToken | None = None,
    ) -> tuple[Achievement, Token | None]:
        """
        Persist a new achievement and, when it was auto-approved, its seed token.

        Both rows are written in one transaction.
        """
        try:
            with self.SessionLocal() as session:
                row = AchievementDB(
                    id=achievement.id,
                    owner_id=achievement.owner_id,
                    category=achievement.category.value,
                    grade_value=achievement.grade_value,
                    proof_ref=achievement.proof_ref,
                    title=achievement.title,
                    description=achievement.description,
                    status=achievement.status.value,
                    trust_confidence=achievement.trust_confidence,
                    recommended_action=(
                        achievement.recommended_action.value
                        if achievement.recommended_action else None
                    ),
                    fraud_indicators=list(achievement.fraud_indicators),
                    decided_by=achievement.decided_by,
                    decided_at=achievement.decided_at,
                    created_at=achievement.created_at,
                )
                session.add(row)
                session.flush()

                token_row = self._insert_token(session, seed) if seed else None
                session.commit()

                logger.info(
                    "Achievement recorded: id=%s category=%s status=%s token=%s",
                    row.id, row.category, row.status,
                    token_row.id if token_row else None,
                )
                return (
                    Achievement.model_validate(row),
                    Token.model_validate(token_row) if token_row else None,
                )
        except IntegrityError as exc:
            raise PersistenceConflict(f"Achievement insert conflicted: {exc.orig}") from exc
        except OperationalError as exc:
            if _is_contention(exc):
                raise PersistenceConflict(f"Achievement insert contended: {exc.orig}") from exc
            raise

    def get_achievement(self, achievement_id: UUID) -> Achievement:
        with self.SessionLocal() as session:
            row = session.get(AchievementDB, achievement_id)
            if row is None:
                raise AchievementNotFound(achievement_id)
            return Achievement.model_validate(row)

    def list_undecided(self, limit: int = 100) -> list[Achievement]:
        """Achievements still awaiting a human decision, oldest first."""
        with self.SessionLocal() as session:
            rows = session.execute(
                select(AchievementDB)
                .where(AchievementDB.status.in_([s.value for s in UNDECIDED_STATUSES]))
                .order_by(AchievementDB.created_at.asc())
                .limit(limit)
            ).scalars().all()
            return [Achievement.model_validate(r) for r in rows]

    def list_achievements(self, owner_id: UUID, limit: int = 100) -> list[AchievementRecord]:
        """A user's achievements, newest first, each with its seed token."""
        with self.SessionLocal() as session:
            rows = session.execute(
                select(AchievementDB)
                .where(AchievementDB.owner_id == owner_id)
                .order_by(AchievementDB.created_at.desc())
                .limit(limit)
            ).scalars().all()
            if not rows:
                return []

            seeded: dict[UUID, list[Token]] = {}
            token_rows = session.execute(
                select(TokenDB)
                .where(TokenDB.source_achievement_id.in_([r.id for r in rows]))
                .order_by(TokenDB.sequence_number.asc())
            ).scalars().all()
            for t in token_rows:
                seeded.setdefault(t.source_achievement_id, []).append(Token.model_validate(t))

            return [
                AchievementRecord(
                    achievement=Achievement.model_validate(r),
                    tokens=seeded.get(r.id, []),
                )
                for r in rows
            ]

    def decide_achievement(
        self,
        achievement_id: UUID,
        status: VerificationStatus,
        decided_by: str,
        seed: NewToken | None = None,
    ) -> tuple[Achievement, Token | None]:
        """
        Apply a manual decision exactly once.

        The status moves only if it is still undecided; the seed token (on
        approval) is inserted in the same transaction, so a repeated call can
        never produce a second token.

        Raises:
            AchievementNotFound: Unknown achievement.
            AlreadyDecided: The achievement is in a terminal status.
        """
        try:
            with self.SessionLocal() as session:
                result = session.execute(
                    update(AchievementDB)
                    .where(
                        AchievementDB.id == achievement_id,
                        AchievementDB.status.in_([s.value for s in UNDECIDED_STATUSES]),
                    )
                    .values(status=status.value, decided_by=decided_by, decided_at=_utcnow())
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    session.rollback()
                    current = session.get(AchievementDB, achievement_id)
                    if current is None:
                        raise AchievementNotFound(achievement_id)
                    raise AlreadyDecided(achievement_id, current.status)

                token_row = self._insert_token(session, seed) if seed else None
                session.commit()

                row = session.get(AchievementDB, achievement_id, populate_existing=True)
                logger.info(
                    "Achievement decided: id=%s status=%s by=%s token=%s",
                    achievement_id, status.value, decided_by,
                    token_row.id if token_row else None,
                )
                return (
                    Achievement.model_validate(row),
                    Token.model_validate(token_row) if token_row else None,
                )
        except IntegrityError as exc:
            raise PersistenceConflict(f"Decision conflicted: {exc.orig}") from exc
        except OperationalError as exc:
            if _is_contention(exc):
                raise PersistenceConflict(f"Decision contended: {exc.orig}") from exc
            raise

    # ── Tokens ──────────────────────────────────────────────────

    def get_token(self, token_id: UUID) -> Token:
        with self.SessionLocal() as session:
            row = session.get(TokenDB, token_id)
            if row is None:
                raise TokenNotFound(token_id)
            return Token.model_validate(row)

    def get_tokens(self, token_ids: Iterable[UUID]) -> dict[UUID, Token]:
        """Fetch several tokens by id; missing ids are absent from the result."""
        ids = list(token_ids)
        if not ids:
            return {}
        with self.SessionLocal() as session:
            rows = session.execute(select(TokenDB).where(TokenDB.id.in_(ids))).scalars().all()
            return {r.id: Token.model_validate(r) for r in rows}

    def list_tokens(self, owner_id: UUID, include_consumed: bool = True) -> list[Token]:
        """A user's tokens in creation order."""
        with self.SessionLocal() as session:
            stmt = select(TokenDB).where(TokenDB.owner_id == owner_id)
            if not include_consumed:
                stmt = stmt.where(TokenDB.consumed.is_(False))
            rows = session.execute(stmt.order_by(TokenDB.sequence_number.asc())).scalars().all()
            return [Token.model_validate(r) for r in rows]

    def get_token_count(self) -> int:
        with self.SessionLocal() as session:
            return session.execute(select(func.count()).select_from(TokenDB)).scalar() or 0

    def update_points(
        self,
        token_id: UUID,
        delta: int,
        reason: str,
        derive: Callable[[int], tuple[int, Rarity]],
    ) -> tuple[Token, Token]:
        """
        Add points to a token as one optimistic read-modify-write.

        Args:
            token_id: Token to update.
            delta: Non-negative point increment.
            reason: Recorded in the evolution history.
            derive: Maps a point total to (level, rarity).

        Returns:
            (token before, token after).

        Raises:
            TokenNotFound, TokenConsumed, PersistenceConflict.
        """
        try:
            with self.SessionLocal() as session:
                row = session.get(TokenDB, token_id)
                if row is None:
                    raise TokenNotFound(token_id)
                if row.consumed:
                    raise TokenConsumed(token_id)

                before = Token.model_validate(row)
                new_points = row.points + delta
                new_level, new_rarity = derive(new_points)
                row.points = new_points
                row.level = max(row.level, new_level)
                row.rarity = new_rarity.value
                session.add(self._event(row, TokenEventKind.POINTS_ADDED, delta, reason))
                session.commit()

                return before, Token.model_validate(row)
        except StaleDataError as exc:
            raise PersistenceConflict(f"Token {token_id} changed concurrently") from exc
        except OperationalError as exc:
            if _is_contention(exc):
                raise PersistenceConflict(f"Token {token_id} is locked: {exc.orig}") from exc
            raise

    def consume_and_mint(
        self,
        owner_id: UUID,
        inputs: list[Token],
        composite: NewToken,
    ) -> Token:
        """
        Consume every input token and create the composite, all or nothing.

        Each input is consumed by a conditional UPDATE that only matches if
        the token is still unconsumed, still owned by ``owner_id`` and still
        at the version the caller validated. A single miss rolls back the
        whole transaction.

        Raises:
            TokenAlreadyConsumed: An input was consumed by someone else.
            OwnershipMismatch: An input belongs to another user.
            PersistenceConflict: An input changed (e.g. gained points) since
                it was read; re-validate and retry.
        """
        try:
            with self.SessionLocal() as session:
                composite_row = self._insert_token(session, composite)

                misses: list[UUID] = []
                for token in inputs:
                    result = session.execute(
                        update(TokenDB)
                        .where(
                            TokenDB.id == token.id,
                            TokenDB.owner_id == owner_id,
                            TokenDB.consumed.is_(False),
                            TokenDB.version == token.version,
                        )
                        .values(
                            consumed=True,
                            consumed_by=composite_row.id,
                            version=TokenDB.version + 1,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        misses.append(token.id)
                        break
                    session.add(TokenEventDB(
                        token_id=token.id,
                        kind=TokenEventKind.CONSUMED.value,
                        delta=0,
                        reason=f"stacked into {composite.category.value}",
                        points_after=token.points,
                        level_after=token.level,
                        rarity_after=token.rarity.value,
                        created_at=_utcnow(),
                    ))

                if misses:
                    session.rollback()
                    self._raise_for_miss(session, owner_id, misses)

                session.commit()
                logger.info(
                    "Composite minted: id=%s category=%s owner=%s consumed=%d",
                    composite_row.id, composite_row.category, owner_id, len(inputs),
                )
                return Token.model_validate(composite_row)
        except IntegrityError as exc:
            raise PersistenceConflict(f"Composite insert conflicted: {exc.orig}") from exc
        except OperationalError as exc:
            if _is_contention(exc):
                raise PersistenceConflict(f"Stacking contended: {exc.orig}") from exc
            raise

    def mark_minted(self, token_id: UUID, owner_id: UUID, tx_ref: str, chain: str) -> Token:
        """Record the external minting collaborator's transaction for a token."""
        try:
            with self.SessionLocal() as session:
                row = session.get(TokenDB, token_id)
                if row is None:
                    raise TokenNotFound(token_id)
                if row.owner_id != owner_id:
                    raise OwnershipMismatch(
                        f"Token {token_id} does not belong to {owner_id}", token_id=token_id
                    )
                if row.minted:
                    raise AlreadyMinted(token_id)
                row.minted = True
                row.mint_tx_ref = tx_ref
                row.mint_chain = chain
                row.minted_at = _utcnow()
                session.add(self._event(row, TokenEventKind.MINTED, 0, f"{chain}:{tx_ref}"))
                session.commit()
                logger.info("Token minted: id=%s chain=%s tx=%s", token_id, chain, tx_ref)
                return Token.model_validate(row)
        except StaleDataError as exc:
            raise PersistenceConflict(f"Token {token_id} changed concurrently") from exc
        except OperationalError as exc:
            if _is_contention(exc):
                raise PersistenceConflict(f"Token {token_id} is locked: {exc.orig}") from exc
            raise

    def get_events(self, token_id: UUID) -> list[TokenEvent]:
        """A token's evolution history, oldest first."""
        with self.SessionLocal() as session:
            if session.get(TokenDB, token_id) is None:
                raise TokenNotFound(token_id)
            rows = session.execute(
                select(TokenEventDB)
                .where(TokenEventDB.token_id == token_id)
                .order_by(TokenEventDB.id.asc())
            ).scalars().all()
            return [TokenEvent.model_validate(r) for r in rows]

    # ── Audit ───────────────────────────────────────────────────

    def verify_consistency(self, policy: ScoringPolicy) -> tuple[bool, int, list[str]]:
        """
        Check the stored tokens against the engine's invariants.

        - level and rarity equal the policy's derivation from points
        - every consumed token names the composite that consumed it, and
          that composite lists it as a source
        - every composite source is consumed, and by that composite only

        Returns:
            Tuple of (is_valid, tokens_checked, problems).
        """
        problems: list[str] = []
        with self.SessionLocal() as session:
            rows = session.execute(
                select(TokenDB).order_by(TokenDB.sequence_number.asc())
            ).scalars().all()

        by_id = {r.id: r for r in rows}
        claimed: dict[UUID, UUID] = {}

        for row in rows:
            if row.points < 0:
                problems.append(f"token {row.id}: negative points {row.points}")
            expected_level = policy.level_for(row.points)
            if row.level != expected_level:
                problems.append(
                    f"token {row.id}: level {row.level} != derived {expected_level}"
                )
            expected_rarity = policy.rarity_for(row.points).value
            if row.rarity != expected_rarity:
                problems.append(
                    f"token {row.id}: rarity {row.rarity} != derived {expected_rarity}"
                )

            for raw_source in row.source_token_ids or []:
                source_id = UUID(str(raw_source))
                if source_id in claimed:
                    problems.append(
                        f"token {source_id}: source of both {claimed[source_id]} and {row.id}"
                    )
                claimed[source_id] = row.id
                source = by_id.get(source_id)
                if source is None:
                    problems.append(f"composite {row.id}: missing source {source_id}")
                elif not source.consumed or source.consumed_by != row.id:
                    problems.append(
                        f"composite {row.id}: source {source_id} not consumed by it"
                    )

        for row in rows:
            if not row.consumed:
                continue
            if row.consumed_by is None:
                problems.append(f"token {row.id}: consumed without a consuming composite")
            elif claimed.get(row.id) != row.consumed_by:
                problems.append(
                    f"token {row.id}: consumed_by {row.consumed_by} does not list it as a source"
                )

        return not problems, len(rows), problems

    # ── Internal ────────────────────────────────────────────────

    def _insert_token(self, session: Session, new: NewToken) -> TokenDB:
        """Insert a token at the next sequence number, with its seeded event."""
        last_seq = session.execute(select(func.max(TokenDB.sequence_number))).scalar()
        row = TokenDB(
            id=uuid4(),
            sequence_number=(last_seq or 0) + 1,
            owner_id=new.owner_id,
            category=new.category.value,
            points=new.points,
            level=new.level,
            rarity=new.rarity.value,
            consumed=False,
            source_achievement_id=new.source_achievement_id,
            source_token_ids=[str(t) for t in new.source_token_ids],
            minted=False,
            created_at=_utcnow(),
        )
        session.add(row)
        session.flush()
        session.add(self._event(row, TokenEventKind.SEEDED, new.points, new.reason))
        return row

    @staticmethod
    def _event(row: TokenDB, kind: TokenEventKind, delta: int, reason: str) -> TokenEventDB:
        return TokenEventDB(
            token_id=row.id,
            kind=kind.value,
            delta=delta,
            reason=reason,
            points_after=row.points,
            level_after=row.level,
            rarity_after=row.rarity,
            created_at=_utcnow(),
        )

    def _raise_for_miss(self, session: Session, owner_id: UUID, misses: list[UUID]) -> None:
        """Classify why a conditional consume matched no row."""
        current = {
            r.id: r
            for r in session.execute(select(TokenDB).where(TokenDB.id.in_(misses))).scalars().all()
        }
        consumed = [t for t in misses if t in current and current[t].consumed]
        if consumed:
            raise TokenAlreadyConsumed(consumed)
        for token_id in misses:
            row = current.get(token_id)
            if row is None:
                raise TokenNotFound(token_id)
            if row.owner_id != owner_id:
                raise OwnershipMismatch(
                    f"Token {token_id} does not belong to {owner_id}", token_id=token_id
                )
        raise PersistenceConflict(
            f"Token(s) changed since validation: {', '.join(str(t) for t in misses)}"
        )
