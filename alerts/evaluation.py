"""Evaluation engine: turns one sample (or evaluator error) into a verdict."""
import logging
from datetime import datetime, timezone

from models.alerts import Verdict
from models.enums import HELD_STATUSES, StatePolicy, VerdictKind
from models.rules import OPERATOR_MAP

logger = logging.getLogger("pulse.alerts.evaluation")


class EvaluationEngine:
    """Applies threshold, hysteresis and missing-data policy. No side effects."""

    def _evaluate_condition(self, value, operator, threshold):
        func = OPERATOR_MAP.get(operator)
        if func is None:
            return False
        return func(value, threshold)

    def _apply_policy(self, kind, policy, annotation, detail, evaluated_at):
        if policy == StatePolicy.OK:
            return Verdict(kind=kind, breaching=False, evaluated_at=evaluated_at, error=detail)
        annotations = {}
        if policy != StatePolicy.BREACH:
            annotations[annotation] = detail or kind.value
        return Verdict(kind=kind, breaching=True, evaluated_at=evaluated_at,
                       annotations=annotations, error=detail)

    def evaluate(self, rule, sample, current_status=None, now=None, error=None, last_verdict=None):
        """Classify `sample` for `rule` given the current alert status.

        `error` is the evaluator failure, if any; `sample` is None (or has no
        value) when the evaluator returned no data. `last_verdict` is the
        outcome of the alert's previous evaluation: once that was ok the value
        has crossed the recovery bound, and only the plain threshold counts.
        """
        now = now or datetime.now(timezone.utc)

        if error is not None:
            return self._apply_policy(VerdictKind.ERROR, rule.exec_err_state,
                                      "evaluation_error", str(error) or type(error).__name__, now)

        value = getattr(sample, "value", None)
        if value is None:
            return self._apply_policy(VerdictKind.NO_DATA, rule.no_data_state, "no_data", None, now)

        breaching = self._evaluate_condition(value, rule.operator, rule.threshold)
        held = current_status in HELD_STATUSES and last_verdict != VerdictKind.OK
        if not breaching and rule.recovery_threshold is not None and held:
            # Hysteresis: stay breaching until the value crosses the recovery bound.
            breaching = self._evaluate_condition(value, rule.operator, rule.recovery_threshold)
            if breaching:
                logger.debug(f"Rule {rule.id}: {value} held open by recovery threshold {rule.recovery_threshold}")

        kind = VerdictKind.BREACH if breaching else VerdictKind.OK
        return Verdict(kind=kind, breaching=breaching, evaluated_at=now, value=value)
