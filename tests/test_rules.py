"""Tests for rule validation and the rules file loader."""
import pytest
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from datetime import datetime, timedelta, timezone
from pathlib import Path
from alerts.rules_manager import RulesManager
from models.enums import RuleStatus, Severity, StatePolicy
from models.rules import Rule, InvalidRuleConfig

ROOT = Path(__file__).parent.parent
NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


def _rule(**kwargs):
    defaults = dict(id="r1", name="r1", expression="x", operator=">", threshold=80)
    defaults.update(kwargs)
    return Rule(**defaults)


# ── Validation ──────────────────────────────────────────

def test_valid_rule_passes():
    _rule(recovery_threshold=60, for_seconds=60, keep_firing_for_seconds=30).validate()
    _rule(operator="<=", threshold=10, recovery_threshold=15).validate()


@pytest.mark.parametrize("kwargs,message", [
    ({"interval_seconds": 0}, "interval"),
    ({"interval_seconds": -5}, "interval"),
    ({"for_seconds": -1}, "for duration"),
    ({"keep_firing_for_seconds": -1}, "keep-firing-for"),
    ({"operator": "=>"}, "operator"),
    ({"no_data_state": "ignore"}, "no_data_state"),
    ({"exec_err_state": "panic"}, "exec_err_state"),
    ({"recovery_threshold": 90}, "below threshold"),
    ({"recovery_threshold": 80}, "below threshold"),
    ({"operator": "<", "recovery_threshold": 70}, "above threshold"),
    ({"operator": "==", "recovery_threshold": 70}, "not supported"),
])
def test_invalid_rules(kwargs, message):
    with pytest.raises(InvalidRuleConfig, match=message):
        _rule(**kwargs).validate()


def test_invalid_rule_is_value_error():
    with pytest.raises(ValueError):
        _rule(interval_seconds=0).validate()


def test_is_due():
    rule = _rule(interval_seconds=60)
    assert rule.is_due(NOW)
    rule.last_eval_at = NOW
    assert not rule.is_due(NOW + timedelta(seconds=59))
    assert rule.is_due(NOW + timedelta(seconds=60))


def test_condition():
    assert _rule(operator=">=", threshold=90.0).condition() == ">= 90"


def test_severity_levels():
    assert Severity.CRITICAL.level > Severity.HIGH.level > Severity.INFO.level


# ── Rules file ──────────────────────────────────────────

def test_load_default_rules():
    rm = RulesManager(ROOT / "config" / "rules.yaml")
    rules = rm.get_all_rules()
    assert len(rules) >= 5
    cpu = rm.get_rule("node_cpu_high")
    assert cpu.operator == ">"
    assert cpu.recovery_threshold == 60
    assert cpu.for_seconds == 300
    assert cpu.severity == Severity.HIGH
    assert cpu.labels["team"] == "infra"
    assert rm.get_rule("queue_backlog").status == RuleStatus.TESTING
    assert rm.get_rule("disk_free_low").no_data_state == StatePolicy.OK


def test_missing_file(tmp_path):
    rm = RulesManager(tmp_path / "nope.yaml")
    assert rm.get_all_rules() == []


def test_invalid_entries_are_skipped(tmp_path):
    path = tmp_path / "rules.yaml"
    path.write_text("""
rules:
  - id: good
    expression: up
    operator: "<"
    threshold: 1
    severity: CRITICAL
  - id: bad_operator
    expression: up
    operator: "=>"
    threshold: 1
  - id: bad_recovery
    expression: up
    operator: ">"
    threshold: 1
    recovery_threshold: 2
  - id: no_expression
    operator: ">"
    threshold: 1
  - id: bad_policy
    expression: up
    operator: ">"
    threshold: 1
    no_data_state: maybe
  - id: good
    expression: duplicate
    operator: ">"
    threshold: 1
""")
    rm = RulesManager(path)
    assert [r.id for r in rm.get_all_rules()] == ["good"]
    assert rm.get_rule("good").severity == Severity.CRITICAL
    assert rm.get_rule("good").expression == "up"


def test_enabled_filter(tmp_path):
    path = tmp_path / "rules.yaml"
    path.write_text("""
rules:
  - {id: a, expression: x, operator: ">", threshold: 1}
  - {id: b, expression: x, operator: ">", threshold: 1, enabled: false}
""")
    rm = RulesManager(path)
    assert [r.id for r in rm.get_enabled_rules()] == ["a"]


def test_sync_to_store(temp_db):
    rm = RulesManager(ROOT / "config" / "rules.yaml")
    count = rm.sync(temp_db)
    assert count == len(rm.get_all_rules())
    stored = {r.id: r for r in temp_db.list_rules()}
    assert stored["node_cpu_high"].keep_firing_for_seconds == 120
    assert stored["api_up"].severity == Severity.CRITICAL
