"""Dataclasses for alerts, their history and evaluation verdicts."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from models.enums import AlertStatus, HistoryAction, Severity, VerdictKind, SYSTEM_ACTOR


def utcnow():
    return datetime.now(timezone.utc)


@dataclass
class Alert:
    id: str = ""
    rule_id: Optional[str] = None
    fingerprint: str = ""
    name: str = ""
    severity: Severity = Severity.MEDIUM
    status: AlertStatus = AlertStatus.FIRING
    labels: dict = field(default_factory=dict)
    annotations: dict = field(default_factory=dict)
    value: Optional[float] = None
    threshold: Optional[float] = None
    starts_at: datetime = field(default_factory=utcnow)
    ends_at: Optional[datetime] = None
    last_eval_at: Optional[datetime] = None
    eval_count: int = 0
    last_breach_at: Optional[datetime] = None
    last_verdict: Optional[VerdictKind] = None
    silence_id: Optional[str] = None
    silence_expiry: Optional[datetime] = None
    silenced_from: Optional[AlertStatus] = None
    acked_by: Optional[str] = None
    acked_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    version: int = 1
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_open(self):
        return self.status != AlertStatus.RESOLVED

    def duration(self, now=None):
        end = self.ends_at or now or utcnow()
        return end - self.starts_at


@dataclass
class AlertHistory:
    """One state change (or evaluation update) of an alert. Append-only."""
    alert_id: str = ""
    action: HistoryAction = HistoryAction.EVALUATION
    actor: str = SYSTEM_ACTOR
    old_status: Optional[AlertStatus] = None
    new_status: Optional[AlertStatus] = None
    old_value: dict = field(default_factory=dict)
    new_value: dict = field(default_factory=dict)
    comment: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None


@dataclass
class Verdict:
    """Classification of one sample. Transient, consumed once by the lifecycle manager.

    ``kind`` is what the evaluator observed; ``breaching`` is the outcome after
    the rule's no-data/error policy has been applied.
    """
    kind: VerdictKind
    breaching: bool
    evaluated_at: datetime
    value: Optional[float] = None
    annotations: dict = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def outcome(self):
        return VerdictKind.BREACH if self.breaching else VerdictKind.OK


@dataclass
class TransitionResult:
    """Synchronous result of a lifecycle call; rejected actions carry a reason."""
    applied: bool
    alert: Optional[Alert] = None
    action: Optional[HistoryAction] = None
    old_status: Optional[AlertStatus] = None
    new_status: Optional[AlertStatus] = None
    reason: str = ""

    @classmethod
    def rejected(cls, alert, reason):
        status = alert.status if alert else None
        return cls(applied=False, alert=alert, old_status=status, new_status=status, reason=reason)
