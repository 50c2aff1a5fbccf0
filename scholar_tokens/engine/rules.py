"""
Stacking rule configuration.

Rules are data, evaluation is code. A rule file is TOML:

    [[rules]]
    id = "scholar_leader"
    name = "Scholar Leader"
    result_category = "scholar_leader"
    result_seed_score = 300

    [[rules.slots]]
    category = "gpa_guardian"
    min_level = 1
    min_rarity = "common"

Rules are loaded once at startup and never change while the process runs.
"""

from __future__ import annotations

import logging
import tomllib
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from scholar_tokens.domain.schema import DEFAULT_STACKING_RULES, StackingRule, StackingSlot

logger = logging.getLogger(__name__)


def _coerce_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def parse_stacking_rules(data: dict[str, Any]) -> tuple[StackingRule, ...]:
    """
    Build validated rules from parsed TOML data.

    Raises:
        ValueError: Unknown category or rarity, missing slots, or a
            duplicate rule id.
    """
    rules: list[StackingRule] = []
    seen: set[str] = set()

    for index, raw in enumerate(_coerce_list(data.get("rules"))):
        if not isinstance(raw, dict):
            raise ValueError(f"rules[{index}] must be a table")

        rule_id = str(raw.get("id", "")).strip()
        if not rule_id:
            raise ValueError(f"rules[{index}] is missing an id")
        if rule_id in seen:
            raise ValueError(f"duplicate stacking rule id: {rule_id}")
        seen.add(rule_id)

        try:
            slots = tuple(
                StackingSlot.model_validate(slot)
                for slot in _coerce_list(raw.get("slots"))
            )
            rules.append(
                StackingRule(
                    id=rule_id,
                    name=str(raw.get("name", rule_id)),
                    required_slots=slots,
                    result_category=raw.get("result_category"),
                    result_seed_score=raw.get("result_seed_score", 0),
                )
            )
        except ValidationError as exc:
            raise ValueError(f"invalid stacking rule '{rule_id}': {exc}") from exc

    if not rules:
        raise ValueError("rule file defines no stacking rules")
    return tuple(rules)


def load_stacking_rules(path: Path) -> tuple[StackingRule, ...]:
    """Load and validate stacking rules from a TOML file."""
    data = tomllib.loads(path.read_text(encoding="utf-8"))
    rules = parse_stacking_rules(data)
    logger.info("Loaded %d stacking rules from %s", len(rules), path)
    return rules


def configured_rules(path: str = "") -> tuple[StackingRule, ...]:
    """Rules from ``path`` when given, otherwise the built-in defaults."""
    if not path:
        return DEFAULT_STACKING_RULES
    return load_stacking_rules(Path(path))
