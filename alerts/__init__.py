"""Alert system module."""
from alerts.evaluation import EvaluationEngine
from alerts.fingerprint import FingerprintIndex, compute_fingerprint
from alerts.lifecycle import AlertLifecycleManager
from alerts.rules_manager import RulesManager
