"""
Scholar Tokens — Orchestrator.

Central coordination entrypoint that:
1. Configures structured logging
2. Builds the token registry, scoring policy and stacking rules from settings
3. Wires the verification, scoring and stacking engines behind one facade
4. Runs a periodic registry consistency check when started as a process

Nothing is initialized at import time; ``bootstrap`` does it explicitly.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Iterable, Mapping
from typing import Any
from uuid import UUID

import structlog

from scholar_tokens.config import TokenSettings, settings
from scholar_tokens.domain.schema import (
    Achievement,
    AchievementRecord,
    AchievementSubmission,
    CompositeResult,
    EligibleRule,
    EvolutionResult,
    EvolutionSummary,
    ScoringPolicy,
    StackingOpportunity,
    StackingRule,
    Token,
    TokenEvent,
    VerificationOutcome,
)
from scholar_tokens.engine.rules import configured_rules
from scholar_tokens.engine.scoring import EvolutionScoringEngine
from scholar_tokens.engine.stacking import StackingEngine
from scholar_tokens.engine.verification import VerificationPipeline
from scholar_tokens.integrations.trust_client import TrustAssessmentClient, TrustAssessor
from scholar_tokens.registry.service import TokenRegistry

logger = logging.getLogger(__name__)

AUDIT_INTERVAL_SECONDS = 300


def configure_logging(config: TokenSettings = settings) -> None:
    """Configure structured logging."""
    logging.basicConfig(level=config.log_level.upper(), format="%(levelname)s %(name)s: %(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            (
                structlog.dev.ConsoleRenderer()
                if config.log_format != "json"
                else structlog.processors.JSONRenderer()
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(config.log_level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


class TokenEngine:
    """
    Caller-facing operations of the token engine.

    Every operation is safe to call from many threads at once; all shared
    state lives in the registry.
    """

    def __init__(
        self,
        registry: TokenRegistry,
        policy: ScoringPolicy,
        rules: Iterable[StackingRule],
        assessor: TrustAssessor | None = None,
        assessment_timeout: float = 20.0,
        max_write_attempts: int = 5,
    ) -> None:
        self.registry = registry
        self.assessor = assessor
        self.scoring = EvolutionScoringEngine(registry, policy, max_write_attempts)
        self.verification = VerificationPipeline(
            registry, self.scoring,
            assessment_timeout=assessment_timeout,
            max_write_attempts=max_write_attempts,
        )
        self.stacking = StackingEngine(registry, self.scoring, rules, max_write_attempts)

    # ── Verification ────────────────────────────────────────────

    async def submit_achievement(
        self, submission: AchievementSubmission | Mapping[str, Any]
    ) -> VerificationOutcome:
        """Validate, assess (when an assessor is configured) and record a submission."""
        return await self.verification.submit_with_assessment(submission, self.assessor)

    def manual_decide_achievement(
        self, achievement_id: UUID, approve: bool, decider_id: UUID | str
    ) -> VerificationOutcome:
        return self.verification.manual_decide(achievement_id, approve, decider_id)

    def get_achievement(self, achievement_id: UUID) -> Achievement:
        return self.registry.get_achievement(achievement_id)

    def list_achievements(self, owner_id: UUID, limit: int = 100) -> list[AchievementRecord]:
        return self.registry.list_achievements(owner_id, limit)

    def pending_review(self, limit: int = 100) -> list[Achievement]:
        return self.verification.pending_review(limit)

    # ── Evolution ───────────────────────────────────────────────

    def add_evolution_points(self, token_id: UUID, delta: int, reason: str) -> EvolutionResult:
        return self.scoring.add_points(token_id, delta, reason)

    def list_tokens(self, owner_id: UUID, include_consumed: bool = True) -> list[Token]:
        return self.registry.list_tokens(owner_id, include_consumed=include_consumed)

    def token_history(self, token_id: UUID) -> list[TokenEvent]:
        return self.scoring.history(token_id)

    def evolution_summary(self, owner_id: UUID) -> EvolutionSummary:
        return self.scoring.evolution_summary(owner_id)

    def mark_minted(self, token_id: UUID, owner_id: UUID, tx_ref: str, chain: str) -> Token:
        return self.registry.mark_minted(token_id, owner_id, tx_ref, chain)

    # ── Stacking ────────────────────────────────────────────────

    def find_stacking_eligibility(self, owner_id: UUID) -> list[EligibleRule]:
        return self.stacking.find_eligible_rules(owner_id)

    def stacking_opportunities(self, owner_id: UUID) -> list[StackingOpportunity]:
        return self.stacking.stacking_opportunities(owner_id)

    def create_composite_token(
        self, owner_id: UUID, rule_id: str, chosen_token_ids: Iterable[UUID]
    ) -> CompositeResult:
        return self.stacking.create_composite(owner_id, rule_id, chosen_token_ids)

    # ── Lifecycle ───────────────────────────────────────────────

    async def close(self) -> None:
        if isinstance(self.assessor, TrustAssessmentClient):
            await self.assessor.close()
        self.registry.dispose()


def bootstrap(config: TokenSettings = settings, assessor: TrustAssessor | None = None) -> TokenEngine:
    """
    Build a ready-to-use engine from settings.

    Creates the registry schema if missing (safe to repeat), loads the
    scoring policy and stacking rules, and connects the trust assessor when
    enabled. An explicitly passed ``assessor`` takes precedence.
    """
    registry = TokenRegistry(config.database_url_sync)
    registry.initialize()

    policy = ScoringPolicy.from_settings(config)
    rules = configured_rules(config.stacking_rules_path)

    if assessor is None and config.trust_assessor_enabled:
        assessor = TrustAssessmentClient(
            base_url=config.trust_assessor_url,
            api_key=config.trust_assessor_api_key,
            timeout=config.trust_assessor_timeout_seconds,
        )

    logger.info(
        "Token engine ready: rules=%d assessor=%s",
        len(rules), "enabled" if assessor is not None else "disabled",
    )
    return TokenEngine(
        registry,
        policy,
        rules,
        assessor=assessor,
        assessment_timeout=config.trust_assessor_timeout_seconds,
        max_write_attempts=config.max_write_attempts,
    )


async def main() -> None:
    """Main orchestrator loop."""
    configure_logging()
    log = structlog.get_logger()

    log.info(
        "scholar_tokens.orchestrator.starting",
        trust_assessor=settings.trust_assessor_enabled,
        rules_path=settings.stacking_rules_path or "<defaults>",
    )

    engine = bootstrap(settings)
    log.info(
        "scholar_tokens.orchestrator.running",
        rules=[r.id for r in engine.stacking.list_rules()],
        tokens=engine.registry.get_token_count(),
    )

    try:
        while True:
            is_valid, checked, problems = engine.registry.verify_consistency(engine.scoring.policy)
            if not is_valid:
                log.critical(
                    "scholar_tokens.orchestrator.consistency_failure",
                    tokens_checked=checked,
                    problems=problems[:20],
                )
            log.debug(
                "scholar_tokens.orchestrator.heartbeat",
                tokens_checked=checked,
                consistent=is_valid,
            )
            await asyncio.sleep(AUDIT_INTERVAL_SECONDS)
    except (KeyboardInterrupt, asyncio.CancelledError):
        log.info("scholar_tokens.orchestrator.shutdown")
    except Exception as e:
        log.exception("scholar_tokens.orchestrator.fatal_error", error=str(e))
        sys.exit(1)
    finally:
        await engine.close()


if __name__ == "__main__":
    asyncio.run(main())
