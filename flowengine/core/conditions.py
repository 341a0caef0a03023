"""Condition evaluators.

A condition node answers true/false from the CRM store, the execution context
or the clock. Evaluation never raises on missing data: a missing field is
compared with the operator's empty-handling rule, a missing entity id makes
entity-bound checks false.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from datetime import datetime, tzinfo
from typing import Any

from pydantic import ValidationError

from flowengine.core.capabilities import CrmStore
from flowengine.core.crm import EntityType
from flowengine.core.graph_schema import (
    ConditionKind,
    EmailStatusCondition,
    FieldComparison,
    LeadScoreCondition,
    MultiFieldCondition,
    Node,
    Operator,
    TagCheckCondition,
    TimeBasedCondition,
)
from flowengine.core.models import ExecutionContext, utc_now

logger = logging.getLogger(__name__)


def _to_number(value: Any) -> float:
    """Numeric coercion; NaN when the value has no numeric reading."""
    if value is None:
        return math.nan
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, int | float):
        return float(value)
    text = str(value).strip()
    if not text:
        return 0.0
    try:
        return float(text)
    except ValueError:
        return math.nan


def _to_string(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _loose_equals(left: Any, right: Any) -> bool:
    """Equality that tolerates '5' vs 5 and 'true' vs True."""
    if left is None or right is None:
        return left is None and right is None
    if isinstance(left, str) and isinstance(right, str):
        return left == right
    if isinstance(left, bool | int | float) or isinstance(right, bool | int | float):
        lnum, rnum = _to_number(left), _to_number(right)
        if not (math.isnan(lnum) or math.isnan(rnum)):
            return lnum == rnum
        return _to_string(left) == _to_string(right)
    return left == right


def compare(field_value: Any, operator: str | Operator, value: Any) -> bool:
    """Apply a comparison operator. Unknown operators are false.

    A missing field (``None``) satisfies only ``is_empty``.
    """
    try:
        op = Operator(operator)
    except ValueError:
        logger.warning(f"Unknown comparison operator '{operator}'")
        return False

    if op == Operator.IS_EMPTY:
        return not field_value
    if op == Operator.IS_NOT_EMPTY:
        return bool(field_value)
    if field_value is None:
        return False

    match op:
        case Operator.EQUALS:
            return _loose_equals(field_value, value)
        case Operator.NOT_EQUALS:
            return not _loose_equals(field_value, value)
        case Operator.CONTAINS:
            return _to_string(value) in _to_string(field_value)
        case Operator.NOT_CONTAINS:
            return _to_string(value) not in _to_string(field_value)
        case Operator.STARTS_WITH:
            return _to_string(field_value).startswith(_to_string(value))
        case Operator.ENDS_WITH:
            return _to_string(field_value).endswith(_to_string(value))
        case Operator.GREATER_THAN:
            return _to_number(field_value) > _to_number(value)
        case Operator.LESS_THAN:
            return _to_number(field_value) < _to_number(value)
        case Operator.GREATER_THAN_OR_EQUAL:
            return _to_number(field_value) >= _to_number(value)
        case Operator.LESS_THAN_OR_EQUAL:
            return _to_number(field_value) <= _to_number(value)
    return False


class ConditionEvaluator:
    """Evaluates condition nodes against the CRM store and the clock."""

    def __init__(
        self,
        crm: CrmStore,
        clock: Callable[[], datetime] = utc_now,
        timezone: tzinfo | None = None,
    ):
        self.crm = crm
        self.clock = clock
        self.timezone = timezone

    def evaluate(self, node: Node, context: ExecutionContext) -> bool:
        """Evaluate a condition node. Unknown or malformed conditions are false."""
        raw_kind = node.data.get("conditionType")
        kind = ConditionKind.parse(raw_kind)
        if kind is None:
            logger.warning(f"Unknown condition type '{raw_kind}' on node '{node.id}'")
            return False

        try:
            match kind:
                case ConditionKind.FIELD_COMPARE:
                    return self._compare_field(node.payload(FieldComparison), context)
                case ConditionKind.MULTI_FIELD:
                    return self._multi_field(node.payload(MultiFieldCondition), context)
                case ConditionKind.TAG_CHECK:
                    return self._check_tag(node.payload(TagCheckCondition), context)
                case ConditionKind.EMAIL_STATUS:
                    return self._check_email_status(node.payload(EmailStatusCondition), context)
                case ConditionKind.LEAD_SCORE:
                    return self._check_lead_score(node.payload(LeadScoreCondition), context)
                case ConditionKind.TIME_BASED:
                    return self._time_based(node.payload(TimeBasedCondition))
                case ConditionKind.CUSTOM_LOGIC:
                    # Placeholder policy: custom rules always pass until a rule engine exists
                    return True
        except ValidationError as e:
            logger.warning(
                f"Invalid {kind.value} condition on node '{node.id}', evaluating false: "
                f"{e.error_count()} error(s)"
            )
        return False

    def _entity(self, entity_type: str, context: ExecutionContext) -> dict[str, Any] | None:
        if entity_type == "contact" and context.contact_id:
            return self.crm.get(EntityType.CONTACT, context.contact_id)
        if entity_type == "lead" and context.lead_id:
            return self.crm.get(EntityType.LEAD, context.lead_id)
        return None

    def _compare_field(self, cond: FieldComparison, context: ExecutionContext) -> bool:
        if cond.entity_type == "trigger":
            field_value = context.trigger_payload.get(cond.field)
        elif cond.entity_type not in ("lead", "contact"):
            logger.warning(f"Unknown entity type '{cond.entity_type}' in field condition")
            return False
        else:
            record = self._entity(cond.entity_type, context) or {}
            field_value = record.get(cond.field)
        return compare(field_value, cond.operator, cond.value)

    def _multi_field(self, cond: MultiFieldCondition, context: ExecutionContext) -> bool:
        results = [self._compare_field(c, context) for c in cond.conditions]
        logic = cond.logic.upper()
        if logic == "AND":
            return all(results)
        if logic == "OR":
            return any(results)
        logger.warning(f"Unknown multi-field logic '{cond.logic}'")
        return False

    def _check_tag(self, cond: TagCheckCondition, context: ExecutionContext) -> bool:
        record = self._entity(cond.entity_type, context)
        if not record:
            return False
        return cond.tag_name in (record.get("tags") or [])

    def _check_email_status(self, cond: EmailStatusCondition, context: ExecutionContext) -> bool:
        if not context.email_address:
            return False
        return self.crm.has_email_event(context.email_address, cond.email_status)

    def _check_lead_score(self, cond: LeadScoreCondition, context: ExecutionContext) -> bool:
        if not context.lead_id:
            return False
        lead = self.crm.get(EntityType.LEAD, context.lead_id) or {}
        current = lead.get("lead_score") or 0
        return compare(current, cond.score_operator, cond.score_value)

    def _time_based(self, cond: TimeBasedCondition) -> bool:
        now = self.clock()
        if self.timezone is not None:
            now = now.astimezone(self.timezone)
        if cond.time_condition == "day_of_week":
            # 0 = Sunday
            return (now.weekday() + 1) % 7 == cond.day_of_week
        if cond.time_condition == "time_of_day":
            return now.hour == cond.hour and now.minute >= cond.minute
        return False
