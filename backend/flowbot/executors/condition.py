# /flowbot/executors/condition.py

import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from flowbot.models.execution import NodeExecutionContext, NodeExecutionResult
from flowbot.services.ports import ConditionClassifier
from flowbot.utils.templating import to_text

logger = logging.getLogger(__name__)

_MISSING = object()


def _to_number(value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    text = to_text(value).strip()
    if text == "":
        return 0.0
    try:
        return float(text)
    except ValueError:
        return None


def evaluate_rule(field_value: Any, rule: Dict[str, Any]) -> bool:
    """Applies one rule's operator. Bad input evaluates to False, it never raises."""
    operator = rule.get("operator")
    expected = rule.get("value")

    if operator == "equals":
        return to_text(field_value) == to_text(expected)
    if operator == "contains":
        return to_text(expected).lower() in to_text(field_value).lower()
    if operator in ("greater_than", "less_than"):
        left, right = _to_number(field_value), _to_number(expected)
        if left is None or right is None:
            return False
        return left > right if operator == "greater_than" else left < right
    if operator == "is_empty":
        return not field_value
    if operator == "regex_match":
        try:
            return re.search(to_text(expected), to_text(field_value)) is not None
        except re.error:
            return False

    logger.warning(f"Unknown condition operator: {operator}")
    return False


def combine(results: List[bool], logic: str) -> bool:
    if not results:
        return False
    return any(results) if logic == "OR" else all(results)


class ConditionExecutor:
    """
    Branches to trueNodeId or falseNodeId.

    Modes:
    - simple: rules folded left to right, each combining with the running result
      through its own logicalOperator (AND unless "OR")
    - advanced: enabled rule groups, each with groupLogic, joined by groupsLogic
    - ai: asks the classifier; any classifier problem falls back to simple mode
    """

    branching = True

    def __init__(self, classifier: Optional[ConditionClassifier] = None):
        self.classifier = classifier

    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        data = context.config
        mode = data.get("mode", "simple")

        if mode == "ai":
            result, details = await self.evaluate_ai(context, data)
        elif mode == "advanced":
            result, details = self.evaluate_groups(context, data)
        else:
            result, details = self.evaluate_simple(context, data)

        next_node_id = self.next_node(result, data)
        context.log({"conditionResult": result, "mode": details.get("mode"), "nextNodeId": next_node_id})
        return NodeExecutionResult(
            success=True,
            output={
                "conditionResult": result,
                "evaluationDetails": details,
                "nextPath": "true" if result else "false",
            },
            next_node_id=next_node_id,
        )

    def next_node(self, result: bool, data: Dict[str, Any]) -> Optional[str]:
        return data.get("trueNodeId") if result else data.get("falseNodeId")

    # ==================== Simple mode ====================

    def evaluate_simple(self, context: NodeExecutionContext, data: Dict[str, Any]) -> Tuple[bool, Dict[str, Any]]:
        evaluated = []
        outcome = True
        for rule in data.get("rules") or []:
            if not rule.get("field"):
                continue
            field_value = self.field_value(rule["field"], context)
            rule_result = evaluate_rule(field_value, rule)
            evaluated.append({
                "field": rule["field"],
                "operator": rule.get("operator"),
                "value": rule.get("value"),
                "fieldValue": field_value,
                "result": rule_result,
                "logicalOperator": rule.get("logicalOperator"),
            })

            if len(evaluated) == 1:
                outcome = rule_result
            elif rule.get("logicalOperator") == "OR":
                outcome = outcome or rule_result
            else:
                outcome = outcome and rule_result

        return outcome, {"mode": "simple", "rulesEvaluated": evaluated, "finalLogic": outcome}

    # ==================== Advanced mode ====================

    def evaluate_groups(self, context: NodeExecutionContext, data: Dict[str, Any]) -> Tuple[bool, Dict[str, Any]]:
        group_results = []
        for group in data.get("ruleGroups") or []:
            if not group.get("enabled", True):
                continue
            rule_results = [
                evaluate_rule(self.field_value(rule.get("field", ""), context), rule)
                for rule in group.get("rules") or []
                if rule.get("enabled", True)
            ]
            group_results.append({
                "groupId": group.get("id"),
                "groupName": group.get("name"),
                "result": combine(rule_results, group.get("groupLogic", "AND")),
                "rulesEvaluated": len(rule_results),
            })

        outcome = combine([g["result"] for g in group_results], data.get("groupsLogic", "AND"))
        return outcome, {"mode": "advanced", "groupResults": group_results, "finalLogic": outcome}

    # ==================== AI mode ====================

    async def evaluate_ai(self, context: NodeExecutionContext, data: Dict[str, Any]) -> Tuple[bool, Dict[str, Any]]:
        prompt = data.get("aiPrompt")
        try:
            if not prompt:
                raise ValueError("No AI prompt configured")
            if self.classifier is None:
                raise RuntimeError("No condition classifier available")
            classification = await self.classifier.classify(
                context.user_message or "", context.store.snapshot(), prompt
            )
        except Exception as e:
            logger.warning(f"AI condition failed for node {context.node_id}, using simple rules: {e}")
            result, details = self.evaluate_simple(context, data)
            return result, {**details, "mode": "ai_fallback", "aiError": str(e)}

        return classification.result, {
            "mode": "ai",
            "prompt": prompt,
            "userMessage": context.user_message,
            "confidence": classification.confidence,
            "reasoning": classification.reasoning,
        }

    # ==================== Field resolution ====================

    def field_value(self, field: str, context: NodeExecutionContext) -> Any:
        value = context.variables.get(field, _MISSING)
        if value is not _MISSING:
            return value

        if field in ("userMessage", "message"):
            return context.user_message or ""
        if field in ("userInput", "input"):
            return context.user_input
        if field in ("userId", "phoneNumber"):
            return context.get_variable(field)
        if field == "threadId":
            return context.thread_id

        now = datetime.now()
        if field == "currentTime":
            return now.isoformat()
        if field == "currentHour":
            return now.hour
        if field == "currentDay":
            # 0 = Sunday
            return (now.weekday() + 1) % 7
        return None


class AdvancedConditionExecutor(ConditionExecutor):
    """Rule-group evaluation with builder output handles taking precedence over node ids."""

    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        data = context.config
        result, details = self.evaluate_groups(context, data)
        next_node_id = self.next_node(result, data)
        return NodeExecutionResult(
            success=True,
            output={
                "conditionResult": result,
                "evaluationDetails": details,
                "groupResults": details["groupResults"],
                "nextPath": "true" if result else "false",
            },
            next_node_id=next_node_id,
        )

    def next_node(self, result: bool, data: Dict[str, Any]) -> Optional[str]:
        outputs = data.get("outputs") or {}
        if result:
            return outputs.get("trueHandle") or data.get("trueNodeId")
        return outputs.get("falseHandle") or data.get("falseNodeId")
