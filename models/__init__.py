"""Data models."""
from models.enums import Severity, RuleStatus, StatePolicy, AlertStatus, VerdictKind, HistoryAction
from models.rules import Rule, InvalidRuleConfig
from models.alerts import Alert, AlertHistory, Verdict, TransitionResult
