"""Alert rule definition and validation."""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from models.enums import RuleStatus, Severity, StatePolicy

OPERATOR_MAP = {
    "<": lambda v, t: v < t,
    ">": lambda v, t: v > t,
    "<=": lambda v, t: v <= t,
    ">=": lambda v, t: v >= t,
    "==": lambda v, t: v == t,
    "!=": lambda v, t: v != t,
}

# Operators where "more severe" has a direction, so a recovery threshold makes sense.
UPWARD_OPERATORS = {">", ">="}
DOWNWARD_OPERATORS = {"<", "<="}


class InvalidRuleConfig(ValueError):
    """Rule definition that cannot be evaluated until corrected."""
    def __init__(self, rule_id, message):
        super().__init__(f"Rule {rule_id}: {message}")
        self.rule_id = rule_id


@dataclass
class Rule:
    id: str = ""
    name: str = ""
    description: str = ""
    expression: str = ""
    data_source: str = "default"
    operator: str = ">"
    threshold: float = 0.0
    recovery_threshold: Optional[float] = None
    interval_seconds: float = 60
    for_seconds: float = 0
    keep_firing_for_seconds: float = 0
    no_data_state: StatePolicy = StatePolicy.ALERT
    exec_err_state: StatePolicy = StatePolicy.ALERT
    enabled: bool = True
    status: RuleStatus = RuleStatus.ACTIVE
    severity: Severity = Severity.MEDIUM
    labels: dict = field(default_factory=dict)
    annotations: dict = field(default_factory=dict)
    last_eval_at: Optional[datetime] = None
    last_eval_result: Optional[str] = None
    eval_count: int = 0
    alert_count: int = 0
    config_error: Optional[str] = None
    deleted_at: Optional[datetime] = None

    @property
    def interval(self):
        return timedelta(seconds=self.interval_seconds)

    @property
    def for_duration(self):
        return timedelta(seconds=self.for_seconds)

    @property
    def keep_firing_for(self):
        return timedelta(seconds=self.keep_firing_for_seconds)

    def is_due(self, now):
        if self.last_eval_at is None:
            return True
        return self.last_eval_at + self.interval <= now

    def validate(self):
        """Raise InvalidRuleConfig if the rule cannot be scheduled."""
        if not self.id:
            raise InvalidRuleConfig(self.id, "missing id")
        if self.interval_seconds is None or self.interval_seconds <= 0:
            raise InvalidRuleConfig(self.id, f"evaluation interval must be > 0, got {self.interval_seconds}")
        if self.for_seconds < 0:
            raise InvalidRuleConfig(self.id, "for duration cannot be negative")
        if self.keep_firing_for_seconds < 0:
            raise InvalidRuleConfig(self.id, "keep-firing-for cannot be negative")
        if self.operator not in OPERATOR_MAP:
            raise InvalidRuleConfig(self.id, f"unknown operator {self.operator!r}")
        for name in ("no_data_state", "exec_err_state"):
            value = getattr(self, name)
            if value not in [p.value for p in StatePolicy]:
                raise InvalidRuleConfig(self.id, f"unknown {name} {value!r}")

        if self.recovery_threshold is None:
            return
        if self.operator in UPWARD_OPERATORS:
            if not self.recovery_threshold < self.threshold:
                raise InvalidRuleConfig(
                    self.id, f"recovery threshold {self.recovery_threshold} must be below threshold {self.threshold}")
        elif self.operator in DOWNWARD_OPERATORS:
            if not self.recovery_threshold > self.threshold:
                raise InvalidRuleConfig(
                    self.id, f"recovery threshold {self.recovery_threshold} must be above threshold {self.threshold}")
        else:
            raise InvalidRuleConfig(self.id, f"recovery threshold is not supported for operator {self.operator!r}")

    def condition(self):
        return f"{self.operator} {self.threshold:g}"
