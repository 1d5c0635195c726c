"""Alert lifecycle state machine.

States: pending -> firing -> {acknowledged, silenced} -> resolved. Verdicts from
the evaluation engine drive the automatic transitions; operator actions
(acknowledge, silence, unsilence, resolve) arrive already authorized.

Every applied change is one versioned write of the alert plus one history row,
committed together.
"""
import logging
import uuid
from dataclasses import replace
from datetime import timedelta

from alerts.fingerprint import FingerprintIndex, compute_fingerprint
from models.alerts import Alert, AlertHistory, TransitionResult, utcnow
from models.database import PersistenceConflict
from models.enums import AlertStatus, HistoryAction, Severity, VerdictKind, SYSTEM_ACTOR
from utils.locks import KeyedLocks

logger = logging.getLogger("pulse.alerts.lifecycle")

ACKNOWLEDGEABLE = (AlertStatus.PENDING, AlertStatus.FIRING)


class AlertLifecycleManager:
    def __init__(self, db, index=None):
        self.db = db
        self.index = index or FingerprintIndex(db)
        self._locks = KeyedLocks()

    def open_alert(self, rule):
        """The rule's open alert, or None."""
        return self.index.lookup(compute_fingerprint(rule.id, rule.labels))

    # --- Verdicts ---

    def apply_verdict(self, rule, verdict):
        """Drive the rule's alert with one verdict. Returns a TransitionResult."""
        return self._retrying(
            f"rule {rule.id}", lambda: self._apply_verdict_once(rule, verdict)
        )

    def _apply_verdict_once(self, rule, verdict):
        fingerprint = compute_fingerprint(rule.id, rule.labels)
        alert = self.index.lookup(fingerprint)

        if alert is None:
            if not verdict.breaching:
                return TransitionResult.rejected(None, "no open alert")
            alert, created = self.index.upsert(
                fingerprint, lambda: self._build_rule_alert(rule, fingerprint, verdict)
            )
            if created:
                logger.info(f"Alert {alert.id} opened for rule {rule.id} as {alert.status.value}")
                return TransitionResult(applied=True, alert=alert, action=HistoryAction.CREATED,
                                        new_status=alert.status)

        with self._locks.hold(alert.id):
            fresh = self.db.get_alert(alert.id)
            if fresh is None or not fresh.is_open:
                # Resolved underneath us; retry against whatever is open now.
                self.index.release(fingerprint, alert.id)
                raise PersistenceConflict(alert.id, alert.version)
            return self._step(rule, fresh, verdict)

    def _build_rule_alert(self, rule, fingerprint, verdict):
        at = verdict.evaluated_at
        status = AlertStatus.PENDING if rule.for_seconds > 0 else AlertStatus.FIRING
        alert = Alert(
            id=uuid.uuid4().hex,
            rule_id=rule.id,
            fingerprint=fingerprint,
            name=rule.name,
            severity=rule.severity,
            status=status,
            labels=dict(rule.labels),
            annotations={**rule.annotations, **verdict.annotations},
            value=verdict.value,
            threshold=rule.threshold,
            starts_at=at,
            last_eval_at=at,
            eval_count=1,
            last_breach_at=at,
            last_verdict=VerdictKind.BREACH,
            created_at=utcnow(),
            updated_at=utcnow(),
        )
        history = AlertHistory(
            alert_id=alert.id,
            action=HistoryAction.CREATED,
            actor=SYSTEM_ACTOR,
            new_status=status,
            new_value={"status": status, "value": verdict.value, "threshold": rule.threshold},
            created_at=at,
        )
        return alert, history

    def _step(self, rule, alert, verdict):
        at = verdict.evaluated_at
        if alert.last_eval_at is not None and at <= alert.last_eval_at:
            return TransitionResult.rejected(alert, "stale verdict")

        changes = {
            "last_eval_at": at,
            "eval_count": alert.eval_count + 1,
            "last_verdict": verdict.outcome,
        }
        if verdict.value is not None:
            changes["value"] = verdict.value
        if verdict.breaching:
            changes["last_breach_at"] = at
        if verdict.annotations:
            changes["annotations"] = {**alert.annotations, **verdict.annotations}

        status = alert.status
        if status == AlertStatus.SILENCED:
            return self._write(alert, status, changes, HistoryAction.EVALUATION, now=at)

        if status == AlertStatus.PENDING:
            if not verdict.breaching:
                return self._write(alert, AlertStatus.RESOLVED, changes, HistoryAction.RESOLVED, now=at)
            if at - alert.starts_at >= rule.for_duration:
                return self._write(alert, AlertStatus.FIRING, changes, HistoryAction.FIRING, now=at)
            return self._write(alert, status, changes, HistoryAction.EVALUATION, now=at)

        # firing / acknowledged
        if verdict.breaching:
            if status == AlertStatus.ACKNOWLEDGED and alert.last_verdict == VerdictKind.OK:
                changes.update({"acked_by": None, "acked_at": None})
                return self._write(alert, AlertStatus.FIRING, changes, HistoryAction.FIRING, now=at)
            return self._write(alert, status, changes, HistoryAction.EVALUATION, now=at)

        last_breach = alert.last_breach_at or alert.starts_at
        if at - last_breach >= rule.keep_firing_for:
            return self._write(alert, AlertStatus.RESOLVED, changes, HistoryAction.RESOLVED, now=at)
        return self._write(alert, status, changes, HistoryAction.EVALUATION, now=at)

    # --- Operator actions ---

    def acknowledge(self, alert_id, actor, comment=None, now=None):
        def op():
            with self._locks.hold(alert_id):
                alert = self.db.get_alert(alert_id)
                if alert is None:
                    return TransitionResult.rejected(None, f"alert {alert_id} not found")
                if alert.status not in ACKNOWLEDGEABLE:
                    return TransitionResult.rejected(alert, f"cannot acknowledge a {alert.status.value} alert")
                at = now or utcnow()
                return self._write(alert, AlertStatus.ACKNOWLEDGED, {"acked_by": actor, "acked_at": at},
                                   HistoryAction.ACKNOWLEDGED, actor, comment, at)
        return self._retrying(f"alert {alert_id}", op)

    def silence(self, alert_id, silence_id, duration, actor, comment=None, now=None):
        """Silence an open alert until now + duration. Re-silencing extends the expiry."""
        if not isinstance(duration, timedelta):
            duration = timedelta(seconds=duration)

        def op():
            with self._locks.hold(alert_id):
                alert = self.db.get_alert(alert_id)
                if alert is None:
                    return TransitionResult.rejected(None, f"alert {alert_id} not found")
                if duration <= timedelta(0):
                    return TransitionResult.rejected(alert, "silence duration must be positive")
                if not alert.is_open:
                    return TransitionResult.rejected(alert, "cannot silence a resolved alert")
                at = now or utcnow()
                expiry = at + duration
                changes = {"silence_id": silence_id, "silence_expiry": expiry}
                if alert.status == AlertStatus.SILENCED:
                    if alert.silence_expiry and alert.silence_expiry > expiry:
                        changes["silence_expiry"] = alert.silence_expiry
                else:
                    changes["silenced_from"] = alert.status
                return self._write(alert, AlertStatus.SILENCED, changes,
                                   HistoryAction.SILENCED, actor, comment, at)
        return self._retrying(f"alert {alert_id}", op)

    def unsilence(self, alert_id, actor, comment=None, now=None):
        def op():
            with self._locks.hold(alert_id):
                alert = self.db.get_alert(alert_id)
                if alert is None:
                    return TransitionResult.rejected(None, f"alert {alert_id} not found")
                if alert.status != AlertStatus.SILENCED:
                    return TransitionResult.rejected(alert, f"cannot unsilence a {alert.status.value} alert")
                return self._end_silence(alert, HistoryAction.UNSILENCED, actor, comment, now or utcnow())
        return self._retrying(f"alert {alert_id}", op)

    def resolve(self, alert_id, actor, comment=None, now=None):
        def op():
            with self._locks.hold(alert_id):
                alert = self.db.get_alert(alert_id)
                if alert is None:
                    return TransitionResult.rejected(None, f"alert {alert_id} not found")
                if not alert.is_open:
                    return TransitionResult.rejected(alert, "alert is already resolved")
                return self._write(alert, AlertStatus.RESOLVED, {}, HistoryAction.RESOLVED,
                                   actor, comment, now or utcnow())
        return self._retrying(f"alert {alert_id}", op)

    def expire_silences(self, now=None):
        """End every silence whose expiry has passed. Returns the applied results."""
        now = now or utcnow()
        results = []
        for expired in self.db.get_expired_silences(now):
            def op(alert_id=expired.id):
                with self._locks.hold(alert_id):
                    alert = self.db.get_alert(alert_id)
                    if (alert is None or alert.status != AlertStatus.SILENCED
                            or alert.silence_expiry is None or alert.silence_expiry > now):
                        return TransitionResult.rejected(alert, "silence no longer expired")
                    return self._end_silence(alert, HistoryAction.SILENCE_EXPIRED, SYSTEM_ACTOR, None, now)
            result = self._retrying(f"alert {expired.id}", op)
            if result.applied:
                results.append(result)
        if results:
            logger.info(f"Expired {len(results)} silences")
        return results

    def _end_silence(self, alert, action, actor, comment, now):
        # Silenced time already counted toward keep-firing-for.
        if alert.last_verdict != VerdictKind.BREACH:
            new_status = AlertStatus.RESOLVED
        elif alert.silenced_from == AlertStatus.PENDING and not self._for_elapsed(alert):
            new_status = AlertStatus.PENDING
        else:
            new_status = AlertStatus.FIRING
        return self._write(alert, new_status,
                           {"silence_id": None, "silence_expiry": None, "silenced_from": None},
                           action, actor, comment, now)

    def _for_elapsed(self, alert):
        """Whether a pending alert has breached for its rule's full for-duration."""
        rule = self.db.get_rule(alert.rule_id) if alert.rule_id else None
        for_duration = rule.for_duration if rule else timedelta(0)
        last_breach = alert.last_breach_at or alert.starts_at
        return last_breach - alert.starts_at >= for_duration

    def raise_alert(self, name, labels, severity, actor, value=None, comment=None, now=None):
        """Open a manually raised alert (no rule). Deduplicated on name and labels."""
        labels = dict(labels or {})
        severity = Severity(severity)
        fingerprint = compute_fingerprint(None, {"alertname": name, **labels})
        at = now or utcnow()

        def build():
            alert = Alert(
                id=uuid.uuid4().hex,
                fingerprint=fingerprint,
                name=name,
                severity=severity,
                status=AlertStatus.FIRING,
                labels=labels,
                value=value,
                starts_at=at,
                last_breach_at=at,
                last_verdict=VerdictKind.BREACH,
                created_at=at,
                updated_at=at,
            )
            history = AlertHistory(
                alert_id=alert.id, action=HistoryAction.CREATED, actor=actor,
                new_status=AlertStatus.FIRING, new_value={"status": AlertStatus.FIRING, "value": value},
                comment=comment, created_at=at,
            )
            return alert, history

        alert, created = self.index.upsert(fingerprint, build)
        if not created:
            return TransitionResult.rejected(alert, "an open alert already exists for these labels")
        logger.info(f"Alert {alert.id} raised manually by {actor}")
        return TransitionResult(applied=True, alert=alert, action=HistoryAction.CREATED,
                                new_status=AlertStatus.FIRING)

    # --- Writes ---

    def _retrying(self, what, op):
        """Run `op`, retrying once on a version conflict."""
        try:
            return op()
        except PersistenceConflict:
            logger.debug(f"Version conflict on {what}, retrying")
        try:
            return op()
        except PersistenceConflict as e:
            logger.warning(f"Skipping update of {what}: {e}")
            return TransitionResult(applied=False, reason="concurrent modification")

    def _write(self, alert, new_status, changes, action, actor=SYSTEM_ACTOR, comment=None, now=None):
        now = now or utcnow()
        fields = dict(changes)
        if new_status != alert.status:
            fields["status"] = new_status
        if new_status == AlertStatus.RESOLVED:
            fields.update({"ends_at": now, "resolved_at": now, "resolved_by": actor})

        history = AlertHistory(
            alert_id=alert.id,
            action=action,
            actor=actor,
            old_status=alert.status,
            new_status=new_status,
            old_value={k: getattr(alert, k) for k in fields},
            new_value=dict(fields),
            comment=comment,
            created_at=now,
        )
        fields["updated_at"] = utcnow()

        version = self.db.transition_alert(alert.id, alert.version, fields, history)
        updated = replace(alert, version=version, **fields)

        if new_status == AlertStatus.RESOLVED:
            self.index.release(alert.fingerprint, alert.id)
        if new_status != alert.status:
            logger.info(f"Alert {alert.id} {alert.status.value} -> {new_status.value} ({action.value} by {actor})")
        return TransitionResult(applied=True, alert=updated, action=action,
                                old_status=alert.status, new_status=new_status)
