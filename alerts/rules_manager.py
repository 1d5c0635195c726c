"""Alert rules loading and management."""
import logging
import yaml
from pathlib import Path

from models.enums import RuleStatus, Severity, StatePolicy
from models.rules import Rule, InvalidRuleConfig

logger = logging.getLogger("pulse.alerts.rules")


class RulesManager:
    def __init__(self, rules_path="config/rules.yaml"):
        self.rules_path = Path(rules_path)
        self.rules = []
        self.load()

    def load(self):
        if not self.rules_path.exists():
            logger.warning(f"Alert rules file not found: {self.rules_path}")
            return
        with open(self.rules_path) as f:
            data = yaml.safe_load(f) or {}
        self.rules = self._parse_rules(data.get("rules", []))
        logger.info(f"Loaded {len(self.rules)} rules")

    def _parse_rules(self, raw_rules):
        rules = []
        seen = set()
        for r in raw_rules:
            try:
                rule = self._parse_rule(r)
                rule.validate()
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Invalid rule {r.get('id') if isinstance(r, dict) else r!r}: {e}")
                continue
            if rule.id in seen:
                logger.warning(f"Duplicate rule id {rule.id}, keeping the first definition")
                continue
            seen.add(rule.id)
            rules.append(rule)
        return rules

    @staticmethod
    def _parse_rule(r):
        recovery = r.get("recovery_threshold")
        return Rule(
            id=str(r["id"]),
            name=r.get("name", r["id"]),
            description=r.get("description", ""),
            expression=r["expression"],
            data_source=r.get("data_source", "default"),
            operator=r["operator"],
            threshold=float(r["threshold"]),
            recovery_threshold=float(recovery) if recovery is not None else None,
            interval_seconds=float(r.get("interval_seconds", 60)),
            for_seconds=float(r.get("for_seconds", 0)),
            keep_firing_for_seconds=float(r.get("keep_firing_for_seconds", 0)),
            no_data_state=StatePolicy(r.get("no_data_state", "alert")),
            exec_err_state=StatePolicy(r.get("exec_err_state", "alert")),
            enabled=r.get("enabled", True),
            status=RuleStatus(r.get("status", "active")),
            severity=Severity(str(r.get("severity", "medium")).lower()),
            labels={str(k): str(v) for k, v in (r.get("labels") or {}).items()},
            annotations={str(k): str(v) for k, v in (r.get("annotations") or {}).items()},
        )

    def sync(self, db):
        """Save every loaded rule into the store. Returns the number saved."""
        for rule in self.rules:
            db.save_rule(rule)
        logger.info(f"Synced {len(self.rules)} rules to the store")
        return len(self.rules)

    def get_enabled_rules(self):
        return [r for r in self.rules if r.enabled]

    def get_rule(self, rule_id):
        for r in self.rules:
            if r.id == rule_id:
                return r
        return None

    def get_all_rules(self):
        return self.rules
