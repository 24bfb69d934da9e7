"""
Approval trigger evaluation.

Each ApprovalCondition maps to exactly one evaluator. Adding a condition
without an evaluator fails at import time.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Callable

import jsonschema
import orjson
from jsonschema.exceptions import ValidationError as JsonSchemaValidationError

from ..errors import ConfigError
from .types import (
    ApprovalCheck,
    ApprovalCondition,
    ApprovalContext,
    ApprovalTrigger,
    RiskLevel,
)

Evaluator = Callable[[Any, ApprovalContext], bool]


# =============================================================================
# Evaluators
# =============================================================================


def _cost_exceeds_usd(threshold: Any, ctx: ApprovalContext) -> bool:
    return ctx.estimated_cost > float(threshold)


def _cost_exceeds_percent_of_budget(threshold: Any, ctx: ApprovalContext) -> bool:
    if ctx.budget_remaining <= 0:
        # Nothing left: any positive cost is over every percentage
        return ctx.estimated_cost > 0
    percent = (ctx.estimated_cost / ctx.budget_remaining) * 100
    return percent > float(threshold)


def _scope_includes(threshold: Any, ctx: ApprovalContext) -> bool:
    needle = str(threshold)
    return any(needle in scope for scope in ctx.tool.scopes)


def _scope_matches_pattern(threshold: Any, ctx: ApprovalContext) -> bool:
    pattern = re.compile(str(threshold))
    return any(pattern.search(scope) for scope in ctx.tool.scopes)


def _domain_not_in_allowlist(threshold: Any, ctx: ApprovalContext) -> bool:
    return not ctx.tool.allowlisted_domains and ctx.tool.side_effectful


def _operation_irreversible(threshold: Any, ctx: ApprovalContext) -> bool:
    return ctx.tool.side_effectful and not ctx.tool.has_rollback


def _never(threshold: Any, ctx: ApprovalContext) -> bool:
    return False


def _environment_is_production(threshold: Any, ctx: ApprovalContext) -> bool:
    return ctx.environment == "production"


EVALUATORS: dict[ApprovalCondition, Evaluator] = {
    ApprovalCondition.COST_EXCEEDS_USD: _cost_exceeds_usd,
    ApprovalCondition.COST_EXCEEDS_PERCENT_OF_BUDGET: _cost_exceeds_percent_of_budget,
    ApprovalCondition.SCOPE_INCLUDES: _scope_includes,
    ApprovalCondition.SCOPE_MATCHES_PATTERN: _scope_matches_pattern,
    ApprovalCondition.DOMAIN_NOT_IN_ALLOWLIST: _domain_not_in_allowlist,
    ApprovalCondition.OPERATION_IRREVERSIBLE: _operation_irreversible,
    ApprovalCondition.AFFECTS_USERS_EXCEEDS: _never,
    ApprovalCondition.DATA_SENSITIVITY_LEVEL: _never,
    ApprovalCondition.ENVIRONMENT_IS_PRODUCTION: _environment_is_production,
}

_missing = set(ApprovalCondition) - set(EVALUATORS)
if _missing:
    raise RuntimeError(f"No evaluator for conditions: {sorted(c.value for c in _missing)}")


def evaluate_trigger(trigger: ApprovalTrigger, context: ApprovalContext) -> bool:
    return EVALUATORS[trigger.condition](trigger.threshold, context)


def check_triggers(triggers: list[ApprovalTrigger], context: ApprovalContext) -> ApprovalCheck:
    """Evaluate triggers with OR semantics.

    The risk level is the highest among matched triggers, LOW when none match.
    """
    matched = [t for t in triggers if evaluate_trigger(t, context)]
    if not matched:
        return ApprovalCheck(required=False, triggers=[], risk_level=RiskLevel.LOW)
    return ApprovalCheck(
        required=True,
        triggers=matched,
        risk_level=RiskLevel.highest([t.risk_level for t in matched]),
    )


# =============================================================================
# Defaults
# =============================================================================

DEFAULT_TRIGGERS: list[ApprovalTrigger] = [
    ApprovalTrigger(
        id="cost_50_percent",
        condition=ApprovalCondition.COST_EXCEEDS_PERCENT_OF_BUDGET,
        threshold=50,
        risk_level=RiskLevel.MEDIUM,
        description="Operation exceeds 50% of remaining budget",
    ),
    ApprovalTrigger(
        id="cost_5_usd",
        condition=ApprovalCondition.COST_EXCEEDS_USD,
        threshold=5.00,
        risk_level=RiskLevel.HIGH,
        description="Operation costs more than $5",
    ),
    ApprovalTrigger(
        id="write_production",
        condition=ApprovalCondition.SCOPE_INCLUDES,
        threshold="write:production",
        risk_level=RiskLevel.CRITICAL,
        description="Write operation in production environment",
    ),
    ApprovalTrigger(
        id="delete_any",
        condition=ApprovalCondition.SCOPE_INCLUDES,
        threshold="delete:",
        risk_level=RiskLevel.CRITICAL,
        description="Delete operation",
    ),
    ApprovalTrigger(
        id="billing_operations",
        condition=ApprovalCondition.SCOPE_INCLUDES,
        threshold="billing:",
        risk_level=RiskLevel.CRITICAL,
        description="Billing-related operation",
    ),
    ApprovalTrigger(
        id="external_domain",
        condition=ApprovalCondition.DOMAIN_NOT_IN_ALLOWLIST,
        threshold=True,
        risk_level=RiskLevel.HIGH,
        description="Accessing non-allowlisted domain",
    ),
    ApprovalTrigger(
        id="irreversible",
        condition=ApprovalCondition.OPERATION_IRREVERSIBLE,
        threshold=True,
        risk_level=RiskLevel.HIGH,
        description="Irreversible operation",
    ),
    ApprovalTrigger(
        id="production_env",
        condition=ApprovalCondition.ENVIRONMENT_IS_PRODUCTION,
        threshold=True,
        risk_level=RiskLevel.MEDIUM,
        description="Operation in production environment",
    ),
]


# =============================================================================
# Loading from file
# =============================================================================

TRIGGERS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "triggers": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "id": {"type": "string", "minLength": 1},
                    "condition": {"enum": [c.value for c in ApprovalCondition]},
                    "threshold": {},
                    "risk_level": {"enum": [r.value for r in RiskLevel]},
                    "description": {"type": "string"},
                },
                "required": ["id", "condition", "risk_level"],
                "additionalProperties": False,
            },
        },
    },
    "required": ["triggers"],
}


def parse_triggers(data: Any) -> list[ApprovalTrigger]:
    """Validate a trigger document and build the trigger list."""
    try:
        jsonschema.validate(instance=data, schema=TRIGGERS_SCHEMA)
    except JsonSchemaValidationError as e:
        path = ".".join(str(p) for p in e.path)
        where = f" at '{path}'" if path else ""
        raise ConfigError(f"Invalid trigger definitions{where}: {e.message}") from e

    triggers = [ApprovalTrigger.from_dict(item) for item in data["triggers"]]

    ids = [t.id for t in triggers]
    duplicates = sorted({i for i in ids if ids.count(i) > 1})
    if duplicates:
        raise ConfigError(f"Duplicate trigger ids: {', '.join(duplicates)}")

    for trigger in triggers:
        if trigger.condition == ApprovalCondition.SCOPE_MATCHES_PATTERN:
            try:
                re.compile(str(trigger.threshold))
            except re.error as e:
                raise ConfigError(f"Trigger {trigger.id} has an invalid pattern: {e}") from e
    return triggers


def load_triggers(path: str | Path) -> list[ApprovalTrigger]:
    """Load triggers from a JSON file of the form ``{"triggers": [...]}``."""
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Trigger file not found: {path}")
    try:
        data = orjson.loads(path.read_bytes())
    except orjson.JSONDecodeError as e:
        raise ConfigError(f"Trigger file {path} is not valid JSON: {e}") from e
    return parse_triggers(data)


__all__ = [
    "EVALUATORS",
    "DEFAULT_TRIGGERS",
    "TRIGGERS_SCHEMA",
    "evaluate_trigger",
    "check_triggers",
    "parse_triggers",
    "load_triggers",
]
