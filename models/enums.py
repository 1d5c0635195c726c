"""Enums for rule, alert, verdict and history state."""
from enum import Enum


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"

    @property
    def level(self):
        return {"critical": 5, "high": 4, "medium": 3, "low": 2, "info": 1}[self.value]


class RuleStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    TESTING = "testing"


class StatePolicy(str, Enum):
    """What a no-data or evaluation-error outcome should count as."""
    OK = "ok"
    BREACH = "breach"
    ALERT = "alert"


class AlertStatus(str, Enum):
    PENDING = "pending"
    FIRING = "firing"
    ACKNOWLEDGED = "acknowledged"
    SILENCED = "silenced"
    RESOLVED = "resolved"

    @property
    def is_open(self):
        return self is not AlertStatus.RESOLVED


OPEN_STATUSES = (AlertStatus.PENDING, AlertStatus.FIRING, AlertStatus.ACKNOWLEDGED, AlertStatus.SILENCED)

# Confirmed states where a recovery threshold holds the alert open.
HELD_STATUSES = (AlertStatus.FIRING, AlertStatus.ACKNOWLEDGED, AlertStatus.SILENCED)


class VerdictKind(str, Enum):
    OK = "ok"
    BREACH = "breach"
    NO_DATA = "no_data"
    ERROR = "error"


class HistoryAction(str, Enum):
    CREATED = "created"
    FIRING = "firing"
    EVALUATION = "evaluation"
    ACKNOWLEDGED = "acknowledged"
    SILENCED = "silenced"
    UNSILENCED = "unsilenced"
    SILENCE_EXPIRED = "silence_expired"
    RESOLVED = "resolved"


SYSTEM_ACTOR = "system"
