"""Typed stage configuration parsed from the stored JSON map.

Stages keep their configuration as an open JSON object so the editor can
store extra keys. The engine only reads it through the dataclasses below,
one variant per stage type.
"""

from __future__ import annotations

import operator
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .expression import to_number

_AUTO_APPROVE_OPERATORS: dict[str, Callable[[float, float], bool]] = {
    "lte": operator.le,
    "gte": operator.ge,
    "lt": operator.lt,
    "gt": operator.gt,
    "eq": operator.eq,
}


@dataclass(frozen=True)
class StageConfig:
    """Settings shared by every stage type."""

    required_role: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ActionConfig(StageConfig):
    pass


@dataclass(frozen=True)
class ApprovalConfig(StageConfig):
    auto_approve_conditions: dict[str, dict[str, Any]] = field(default_factory=dict)
    escalation_timeout_minutes: float | None = None

    def auto_approves(self, context: Mapping[str, Any]) -> bool:
        """Return whether every auto-approve condition holds for ``context``.

        A missing or non-numeric context value fails closed. Thresholds that
        are not numeric and unknown operators are ignored.
        """

        if not self.auto_approve_conditions:
            return False

        for field_name, rule in self.auto_approve_conditions.items():
            if not isinstance(rule, Mapping):
                continue
            if field_name not in context:
                return False
            value = to_number(context[field_name])
            if value is None:
                return False
            for op_name, threshold in rule.items():
                limit = to_number(threshold)
                check = _AUTO_APPROVE_OPERATORS.get(op_name)
                if limit is None or check is None:
                    continue
                if not check(value, limit):
                    return False
        return True


@dataclass(frozen=True)
class ConditionConfig(StageConfig):
    expression: str = ""


@dataclass(frozen=True)
class NotificationConfig(StageConfig):
    pass


@dataclass(frozen=True)
class TimerConfig(StageConfig):
    duration_minutes: float | None = None
    # Stored for clients; the sweep expires timers by duration_minutes only.
    escalation_timeout_minutes: float | None = None


@dataclass(frozen=True)
class TerminalConfig(StageConfig):
    pass


def _positive_minutes(raw: Mapping[str, Any], key: str, errors: list[str]) -> float | None:
    if raw.get(key) is None:
        return None
    minutes = to_number(raw[key])
    if minutes is None or minutes <= 0:
        errors.append(f"{key} must be a positive number")
        return None
    return minutes


def _auto_approve_conditions(raw: Any, errors: list[str]) -> dict[str, dict[str, Any]]:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        errors.append("auto_approve_conditions must be an object")
        return {}

    conditions: dict[str, dict[str, Any]] = {}
    for field_name, rule in raw.items():
        if not isinstance(rule, Mapping):
            errors.append(f"auto_approve_conditions.{field_name} must be an object")
            continue
        for op_name, threshold in rule.items():
            if op_name not in _AUTO_APPROVE_OPERATORS:
                errors.append(
                    f"auto_approve_conditions.{field_name} uses unsupported operator {op_name!r}"
                )
            elif to_number(threshold) is None:
                errors.append(f"auto_approve_conditions.{field_name}.{op_name} must be numeric")
        conditions[str(field_name)] = dict(rule)
    return conditions


_KNOWN_KEYS = {
    "required_role",
    "auto_approve_conditions",
    "escalation_timeout_minutes",
    "expression",
    "duration_minutes",
}


def parse_stage_config(stage_type: str, raw: Any) -> tuple[StageConfig, list[str]]:
    """Parse a stored configuration map into the variant for ``stage_type``.

    Returns the parsed configuration together with the validation errors
    found. Invalid values fall back to their defaults so stored legacy
    configurations still load.
    """

    errors: list[str] = []
    if raw is None:
        raw = {}
    if not isinstance(raw, Mapping):
        return _VARIANTS.get(stage_type, StageConfig)(), ["config must be an object"]

    required_role = raw.get("required_role")
    if required_role is not None and not isinstance(required_role, str):
        errors.append("required_role must be a string")
        required_role = None
    common = {
        "required_role": required_role or None,
        "extra": {key: value for key, value in raw.items() if key not in _KNOWN_KEYS},
    }

    if stage_type == "approval":
        config: StageConfig = ApprovalConfig(
            auto_approve_conditions=_auto_approve_conditions(
                raw.get("auto_approve_conditions"), errors
            ),
            escalation_timeout_minutes=_positive_minutes(
                raw, "escalation_timeout_minutes", errors
            ),
            **common,
        )
    elif stage_type == "condition":
        expression = raw.get("expression")
        if expression is not None and not isinstance(expression, str):
            errors.append("expression must be a string")
            expression = None
        config = ConditionConfig(expression=expression or "", **common)
    elif stage_type == "timer":
        config = TimerConfig(
            duration_minutes=_positive_minutes(raw, "duration_minutes", errors),
            escalation_timeout_minutes=_positive_minutes(
                raw, "escalation_timeout_minutes", errors
            ),
            **common,
        )
    else:
        config = _VARIANTS.get(stage_type, StageConfig)(**common)
    return config, errors


def config_for(stage: Any) -> StageConfig:
    """Return the parsed configuration of a stage model, ignoring validation errors."""

    config, _ = parse_stage_config(stage.stage_type, stage.config)
    return config


_VARIANTS: dict[str, type[StageConfig]] = {
    "action": ActionConfig,
    "approval": ApprovalConfig,
    "condition": ConditionConfig,
    "notification": NotificationConfig,
    "timer": TimerConfig,
    "terminal": TerminalConfig,
}
