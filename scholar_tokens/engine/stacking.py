"""
Stacking & Composite Engine — combine tokens into higher-tier composites.

Eligibility is evaluated against declarative StackingRules. For each rule,
required slots are filled strictest first (higher minimum rarity, then
higher minimum level); each slot takes the least-overqualified unconsumed
token that satisfies it (fewest points, then earliest created). Because a
token's level and rarity only grow with its points, the set of tokens a slot
accepts is closed upwards, and this greedy fill finds a complete assignment
whenever one exists.

Creating a composite re-validates the chosen tokens at call time, then
consumes them and mints the composite in one registry transaction. Two
concurrent calls over overlapping tokens cannot both succeed: the loser
observes TokenAlreadyConsumed.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from uuid import UUID

from scholar_tokens.domain.errors import (
    OwnershipMismatch,
    RuleNotSatisfied,
    TokenAlreadyConsumed,
    TokenNotFound,
    UnknownStackingRule,
)
from scholar_tokens.domain.schema import (
    DEFAULT_STACKING_RULES,
    CompositeResult,
    EligibleRule,
    ScoringContext,
    SlotRequirement,
    StackingOpportunity,
    StackingRule,
    Token,
)
from scholar_tokens.engine.scoring import EvolutionScoringEngine
from scholar_tokens.registry.service import TokenRegistry, run_with_retries

logger = logging.getLogger(__name__)


def match_slots(rule: StackingRule, tokens: Iterable[Token]) -> list[SlotRequirement]:
    """
    Fill a rule's slots from a token pool without mutating anything.

    Consumed tokens are never used. Returns one SlotRequirement per slot, in
    the rule's declared slot order; unfillable slots have no token.
    """
    pool = sorted(
        (t for t in tokens if not t.consumed),
        key=lambda t: (t.points, t.sequence_number),
    )
    slot_order = sorted(
        range(len(rule.required_slots)),
        key=lambda i: (
            -rule.required_slots[i].strictness[0],
            -rule.required_slots[i].strictness[1],
            i,
        ),
    )

    taken: set[UUID] = set()
    filled: dict[int, UUID] = {}
    for index in slot_order:
        slot = rule.required_slots[index]
        for token in pool:
            if token.id not in taken and slot.accepts(token):
                taken.add(token.id)
                filled[index] = token.id
                break

    return [
        SlotRequirement(slot=slot, token_id=filled.get(i))
        for i, slot in enumerate(rule.required_slots)
    ]


class StackingEngine:
    """
    Evaluates stacking rules and mints composite tokens.

    Rules are process-wide read-only configuration, fixed at construction.
    """

    def __init__(
        self,
        registry: TokenRegistry,
        scoring: EvolutionScoringEngine,
        rules: Iterable[StackingRule] = DEFAULT_STACKING_RULES,
        max_write_attempts: int = 5,
    ) -> None:
        self.registry = registry
        self.scoring = scoring
        self.rules: dict[str, StackingRule] = {}
        for rule in rules:
            if rule.id in self.rules:
                raise ValueError(f"duplicate stacking rule id: {rule.id}")
            self.rules[rule.id] = rule
        self.max_write_attempts = max_write_attempts

    def get_rule(self, rule_id: str) -> StackingRule:
        rule = self.rules.get(rule_id)
        if rule is None:
            raise UnknownStackingRule(rule_id)
        return rule

    def list_rules(self) -> list[StackingRule]:
        return list(self.rules.values())

    # ── Eligibility (read-only) ─────────────────────────────────

    def stacking_opportunities(self, owner_id: UUID) -> list[StackingOpportunity]:
        """Every rule with the slots the user can and cannot fill right now."""
        tokens = self.registry.list_tokens(owner_id, include_consumed=False)
        opportunities = []
        for rule in self.rules.values():
            slots = match_slots(rule, tokens)
            opportunities.append(
                StackingOpportunity(
                    rule=rule,
                    can_create=all(s.filled for s in slots),
                    slots=slots,
                )
            )
        return opportunities

    def find_eligible_rules(self, owner_id: UUID) -> list[EligibleRule]:
        """
        Rules the user can satisfy now, each with the tokens it would consume.

        Pure read: nothing is reserved or mutated.
        """
        return [
            EligibleRule(rule=o.rule, token_ids=[s.token_id for s in o.slots])
            for o in self.stacking_opportunities(owner_id)
            if o.can_create
        ]

    # ── Composite creation ──────────────────────────────────────

    def create_composite(
        self,
        owner_id: UUID,
        rule: StackingRule | str,
        chosen_token_ids: Iterable[UUID],
    ) -> CompositeResult:
        """
        Consume the chosen tokens and mint the rule's composite token.

        Args:
            owner_id: The calling user; must own every chosen token.
            rule: A configured rule or its id.
            chosen_token_ids: Exactly one token per required slot.

        Raises:
            UnknownStackingRule: The rule is not configured.
            TokenNotFound: A chosen token does not exist.
            OwnershipMismatch: A chosen token belongs to another user.
            TokenAlreadyConsumed: A chosen token was already stacked.
            RuleNotSatisfied: The chosen tokens do not fill the rule.
            PersistenceConflict: Concurrent writers exhausted the retry budget.
        """
        rule = self.get_rule(rule.id if isinstance(rule, StackingRule) else rule)
        chosen = list(chosen_token_ids)

        if len(set(chosen)) != len(chosen):
            raise RuleNotSatisfied("The same token was chosen more than once", rule_id=rule.id)
        if len(chosen) != len(rule.required_slots):
            raise RuleNotSatisfied(
                f"Rule '{rule.id}' needs {len(rule.required_slots)} tokens, got {len(chosen)}",
                rule_id=rule.id,
            )

        def attempt() -> Token:
            inputs = self._validated_inputs(owner_id, rule, chosen)
            aggregate = sum(t.points for t in inputs)
            points = self.scoring.seed_score(
                rule.result_category,
                context=ScoringContext(
                    aggregate_points=aggregate,
                    composite_base=rule.result_seed_score,
                ),
            )
            composite = self.scoring.new_token(
                owner_id=owner_id,
                category=rule.result_category,
                points=points,
                reason=f"stacked:{rule.id}",
                source_token_ids=chosen,
            )
            return self.registry.consume_and_mint(owner_id, inputs, composite)

        composite = run_with_retries(attempt, self.max_write_attempts, f"create_composite[{rule.id}]")
        logger.info(
            "Stacking rule applied: rule=%s owner=%s composite=%s points=%d",
            rule.id, owner_id, composite.id, composite.points,
        )
        return CompositeResult(composite=composite, consumed_token_ids=chosen, rule_id=rule.id)

    def _validated_inputs(self, owner_id: UUID, rule: StackingRule, chosen: list[UUID]) -> list[Token]:
        """Fresh read of the chosen tokens, checked against ownership, consumption and the rule."""
        found = self.registry.get_tokens(chosen)
        for token_id in chosen:
            if token_id not in found:
                raise TokenNotFound(token_id)

        inputs = [found[t] for t in chosen]
        foreign = [t.id for t in inputs if t.owner_id != owner_id]
        if foreign:
            raise OwnershipMismatch(
                f"Token(s) not owned by {owner_id}: {', '.join(str(t) for t in foreign)}",
                owner_id=owner_id,
            )

        consumed = [t.id for t in inputs if t.consumed]
        if consumed:
            raise TokenAlreadyConsumed(consumed)

        slots = match_slots(rule, inputs)
        unfilled = [s.slot for s in slots if not s.filled]
        if unfilled:
            needs = ", ".join(
                f"{s.category.value}(level>={s.min_level}, rarity>={s.min_rarity.value})"
                for s in unfilled
            )
            raise RuleNotSatisfied(
                f"Chosen tokens do not satisfy rule '{rule.id}': missing {needs}",
                rule_id=rule.id,
            )
        return inputs
