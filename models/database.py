"""SQLite database for rules, alerts, alert history and rule evaluations."""
import json
import sqlite3
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from models.alerts import Alert, AlertHistory
from models.enums import AlertStatus, HistoryAction, RuleStatus, Severity, StatePolicy, VerdictKind
from models.rules import Rule

logger = logging.getLogger("pulse.db")

RULE_COLUMNS = (
    "id", "name", "description", "expression", "data_source", "operator", "threshold",
    "recovery_threshold", "interval_seconds", "for_seconds", "keep_firing_for_seconds",
    "no_data_state", "exec_err_state", "enabled", "status", "severity", "labels", "annotations",
)

ALERT_COLUMNS = (
    "id", "rule_id", "fingerprint", "name", "severity", "status", "labels", "annotations",
    "value", "threshold", "starts_at", "ends_at", "last_eval_at", "eval_count",
    "last_breach_at", "last_verdict", "silence_id", "silence_expiry", "silenced_from",
    "acked_by", "acked_at", "resolved_by", "resolved_at", "version", "created_at", "updated_at",
)

# Columns a transition may touch; id, fingerprint and version are managed here.
MUTABLE_ALERT_COLUMNS = set(ALERT_COLUMNS) - {"id", "rule_id", "fingerprint", "version", "created_at"}


class PersistenceConflict(Exception):
    """Versioned write lost: the alert changed since it was read."""
    def __init__(self, alert_id, expected_version):
        super().__init__(f"Alert {alert_id} is no longer at version {expected_version}")
        self.alert_id = alert_id
        self.expected_version = expected_version


class DuplicateFingerprintRace(Exception):
    """Another writer opened an alert for the same fingerprint first."""
    def __init__(self, fingerprint):
        super().__init__(f"Open alert already exists for fingerprint {fingerprint}")
        self.fingerprint = fingerprint


def to_db(value):
    """Encode a Python value for a SQLite column or a JSON history payload."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return json.dumps(value, sort_keys=True)
    if isinstance(value, bool):
        return int(value)
    return value


def _json_safe(value):
    if isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    if isinstance(value, bool):
        return value
    return to_db(value)


def _parse_ts(value):
    if value is None:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _enum(cls, value):
    """Decode an enum column, keeping unknown values so validation can flag them."""
    if value is None:
        return None
    try:
        return cls(value)
    except ValueError:
        return value


class Database:
    def __init__(self, db_path="data/pulse.db"):
        self.db_path = db_path
        self.conn = None
        self._lock = threading.RLock()

    def connect(self):
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=10)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self._create_tables()
        return self

    def close(self):
        if self.conn:
            self.conn.close()
            self.conn = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, *args):
        self.close()

    @contextmanager
    def _transaction(self):
        """Serialize writers on the shared connection; commit or roll back as one unit."""
        with self._lock:
            try:
                yield self.conn
                self.conn.commit()
            except BaseException:
                self.conn.rollback()
                raise

    def _query(self, sql, params=()):
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    def _query_one(self, sql, params=()):
        with self._lock:
            return self.conn.execute(sql, params).fetchone()

    def _create_tables(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS rules (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                description TEXT DEFAULT '',
                expression TEXT NOT NULL,
                data_source TEXT NOT NULL DEFAULT 'default',
                operator TEXT NOT NULL,
                threshold REAL NOT NULL,
                recovery_threshold REAL,
                interval_seconds REAL NOT NULL,
                for_seconds REAL NOT NULL DEFAULT 0,
                keep_firing_for_seconds REAL NOT NULL DEFAULT 0,
                no_data_state TEXT NOT NULL DEFAULT 'alert',
                exec_err_state TEXT NOT NULL DEFAULT 'alert',
                enabled INTEGER NOT NULL DEFAULT 1,
                status TEXT NOT NULL DEFAULT 'active',
                severity TEXT NOT NULL DEFAULT 'medium',
                labels TEXT NOT NULL DEFAULT '{}',
                annotations TEXT NOT NULL DEFAULT '{}',
                last_eval_at TEXT,
                last_eval_result TEXT,
                eval_count INTEGER NOT NULL DEFAULT 0,
                alert_count INTEGER NOT NULL DEFAULT 0,
                config_error TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                deleted_at TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_rules_due
                ON rules(enabled, status, last_eval_at);

            CREATE TABLE IF NOT EXISTS rule_evaluations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                rule_id TEXT NOT NULL,
                evaluated_at TEXT NOT NULL,
                result TEXT NOT NULL,
                verdict TEXT,
                value REAL,
                error TEXT,
                duration_ms INTEGER
            );

            CREATE INDEX IF NOT EXISTS idx_rule_evaluations_rule_time
                ON rule_evaluations(rule_id, evaluated_at);

            CREATE TABLE IF NOT EXISTS alerts (
                id TEXT PRIMARY KEY,
                rule_id TEXT,
                fingerprint TEXT NOT NULL,
                name TEXT NOT NULL,
                severity TEXT NOT NULL,
                status TEXT NOT NULL,
                labels TEXT NOT NULL DEFAULT '{}',
                annotations TEXT NOT NULL DEFAULT '{}',
                value REAL,
                threshold REAL,
                starts_at TEXT NOT NULL,
                ends_at TEXT,
                last_eval_at TEXT,
                eval_count INTEGER NOT NULL DEFAULT 0,
                last_breach_at TEXT,
                last_verdict TEXT,
                silence_id TEXT,
                silence_expiry TEXT,
                silenced_from TEXT,
                acked_by TEXT,
                acked_at TEXT,
                resolved_by TEXT,
                resolved_at TEXT,
                version INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE UNIQUE INDEX IF NOT EXISTS idx_alerts_open_fingerprint
                ON alerts(fingerprint) WHERE status != 'resolved';

            CREATE INDEX IF NOT EXISTS idx_alerts_status
                ON alerts(status, silence_expiry);

            CREATE INDEX IF NOT EXISTS idx_alerts_rule
                ON alerts(rule_id, starts_at);

            CREATE TABLE IF NOT EXISTS alert_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                alert_id TEXT NOT NULL,
                action TEXT NOT NULL,
                actor TEXT NOT NULL,
                old_status TEXT,
                new_status TEXT,
                old_value TEXT,
                new_value TEXT,
                comment TEXT,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_alert_history_alert
                ON alert_history(alert_id, id);

            CREATE INDEX IF NOT EXISTS idx_alert_history_created
                ON alert_history(created_at);
        """)
        self.conn.commit()

    # --- Rules ---

    def save_rule(self, rule, now=None):
        """Insert or update a rule definition; evaluation bookkeeping is preserved.

        Saving clears any config_error flag so a corrected rule is scheduled again.
        """
        now = to_db(now or datetime.now(timezone.utc))
        values = [to_db(getattr(rule, c)) for c in RULE_COLUMNS]
        updates = ", ".join(f"{c} = excluded.{c}" for c in RULE_COLUMNS if c != "id")
        with self._transaction() as conn:
            conn.execute(f"""
                INSERT INTO rules ({", ".join(RULE_COLUMNS)}, created_at, updated_at)
                VALUES ({", ".join("?" for _ in RULE_COLUMNS)}, ?, ?)
                ON CONFLICT(id) DO UPDATE SET {updates},
                    config_error = NULL, deleted_at = NULL, updated_at = excluded.updated_at
            """, values + [now, now])
        logger.debug(f"Saved rule {rule.id}")

    def get_rule(self, rule_id):
        row = self._query_one("SELECT * FROM rules WHERE id = ?", (rule_id,))
        return self._row_to_rule(row) if row else None

    def list_rules(self, include_deleted=False):
        query = "SELECT * FROM rules"
        if not include_deleted:
            query += " WHERE deleted_at IS NULL"
        query += " ORDER BY id ASC"
        return [self._row_to_rule(r) for r in self._query(query)]

    def fetch_due_rules(self, now):
        """Enabled, active, valid rules due at `now`, least recently evaluated first."""
        rows = self._query("""
            SELECT * FROM rules
            WHERE enabled = 1 AND status = ? AND deleted_at IS NULL AND config_error IS NULL
            ORDER BY last_eval_at IS NOT NULL, last_eval_at ASC, id ASC
        """, (RuleStatus.ACTIVE.value,))
        rules = [self._row_to_rule(r) for r in rows]
        return [r for r in rules if self._safe_is_due(r, now)]

    @staticmethod
    def _safe_is_due(rule, now):
        # An unusable interval still needs to reach validation so it gets flagged.
        try:
            return rule.is_due(now)
        except (TypeError, OverflowError, ValueError):
            return True

    def record_evaluation(self, rule_id, at, result, verdict=None, value=None, error=None, duration_ms=None):
        """Advance last_eval_at and log the evaluation in one transaction.

        last_eval_at never moves backwards, so a late-finishing evaluation cannot
        rewind a newer one.
        """
        at_s = to_db(at)
        with self._transaction() as conn:
            cur = conn.execute("""
                UPDATE rules
                SET last_eval_at = ?, last_eval_result = ?, eval_count = eval_count + 1, updated_at = ?
                WHERE id = ? AND deleted_at IS NULL AND (last_eval_at IS NULL OR last_eval_at <= ?)
            """, (at_s, result, to_db(datetime.now(timezone.utc)), rule_id, at_s))
            conn.execute("""
                INSERT INTO rule_evaluations (rule_id, evaluated_at, result, verdict, value, error, duration_ms)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (rule_id, at_s, result, to_db(verdict), value, error, duration_ms))
        if cur.rowcount == 0:
            logger.warning(f"Evaluation of rule {rule_id} at {at_s} did not advance its schedule")
            return False
        return True

    def get_rule_evaluations(self, rule_id, limit=50):
        rows = self._query("""
            SELECT * FROM rule_evaluations WHERE rule_id = ?
            ORDER BY evaluated_at DESC, id DESC LIMIT ?
        """, (rule_id, limit))
        return [dict(r) for r in rows]

    def flag_rule_invalid(self, rule_id, message, now=None):
        now = to_db(now or datetime.now(timezone.utc))
        with self._transaction() as conn:
            conn.execute("""
                UPDATE rules SET config_error = ?, last_eval_result = ?, updated_at = ? WHERE id = ?
            """, (message, f"invalid: {message}", now, rule_id))

    def set_rule_enabled(self, rule_id, enabled):
        with self._transaction() as conn:
            cur = conn.execute("""
                UPDATE rules SET enabled = ?, updated_at = ? WHERE id = ? AND deleted_at IS NULL
            """, (int(enabled), to_db(datetime.now(timezone.utc)), rule_id))
        return cur.rowcount > 0

    def soft_delete_rule(self, rule_id, now=None):
        """Rules are never physically deleted; open alerts keep their rule_id."""
        with self._transaction() as conn:
            cur = conn.execute("""
                UPDATE rules SET deleted_at = ?, enabled = 0 WHERE id = ? AND deleted_at IS NULL
            """, (to_db(now or datetime.now(timezone.utc)), rule_id))
        return cur.rowcount > 0

    # --- Alerts ---

    def insert_alert(self, alert, history):
        """Conditionally create an alert with its first history row.

        Raises DuplicateFingerprintRace if an open alert already holds the
        fingerprint (enforced by the partial unique index).
        """
        values = [to_db(getattr(alert, c)) for c in ALERT_COLUMNS]
        try:
            with self._transaction() as conn:
                conn.execute(f"""
                    INSERT INTO alerts ({", ".join(ALERT_COLUMNS)})
                    VALUES ({", ".join("?" for _ in ALERT_COLUMNS)})
                """, values)
                self._insert_history(conn, history)
                if alert.rule_id:
                    conn.execute(
                        "UPDATE rules SET alert_count = alert_count + 1 WHERE id = ?", (alert.rule_id,)
                    )
        except sqlite3.IntegrityError as e:
            if "fingerprint" not in str(e):
                raise
            raise DuplicateFingerprintRace(alert.fingerprint) from e

    def transition_alert(self, alert_id, expected_version, fields, history):
        """Versioned write of `fields` plus one history row, atomically.

        Raises PersistenceConflict when the stored version differs from
        `expected_version`; nothing is written in that case.
        """
        unknown = set(fields) - MUTABLE_ALERT_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update alert columns: {sorted(unknown)}")
        assignments = ", ".join(f"{c} = ?" for c in fields)
        params = [to_db(v) for v in fields.values()] + [alert_id, expected_version]
        with self._transaction() as conn:
            cur = conn.execute(f"""
                UPDATE alerts SET {assignments}, version = version + 1
                WHERE id = ? AND version = ?
            """, params)
            if cur.rowcount == 0:
                raise PersistenceConflict(alert_id, expected_version)
            self._insert_history(conn, history)
        return expected_version + 1

    def append_history(self, history):
        with self._transaction() as conn:
            return self._insert_history(conn, history)

    def _insert_history(self, conn, history):
        cur = conn.execute("""
            INSERT INTO alert_history
            (alert_id, action, actor, old_status, new_status, old_value, new_value, comment, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            history.alert_id, to_db(history.action), history.actor,
            to_db(history.old_status), to_db(history.new_status),
            json.dumps(_json_safe(history.old_value), sort_keys=True),
            json.dumps(_json_safe(history.new_value), sort_keys=True),
            history.comment, to_db(history.created_at),
        ))
        history.id = cur.lastrowid
        return history.id

    def get_alert(self, alert_id):
        row = self._query_one("SELECT * FROM alerts WHERE id = ?", (alert_id,))
        return self._row_to_alert(row) if row else None

    def find_open_by_fingerprint(self, fingerprint):
        row = self._query_one(
            "SELECT * FROM alerts WHERE fingerprint = ? AND status != ?",
            (fingerprint, AlertStatus.RESOLVED.value),
        )
        return self._row_to_alert(row) if row else None

    def get_open_alerts(self):
        rows = self._query(
            "SELECT * FROM alerts WHERE status != ? ORDER BY starts_at ASC",
            (AlertStatus.RESOLVED.value,),
        )
        return [self._row_to_alert(r) for r in rows]

    def list_alerts(self, status=None, rule_id=None, limit=100):
        query = "SELECT * FROM alerts WHERE 1=1"
        params = []
        if status:
            query += " AND status = ?"
            params.append(to_db(status))
        if rule_id:
            query += " AND rule_id = ?"
            params.append(rule_id)
        query += " ORDER BY starts_at DESC LIMIT ?"
        params.append(limit)
        return [self._row_to_alert(r) for r in self._query(query, params)]

    def get_expired_silences(self, now):
        rows = self._query("""
            SELECT * FROM alerts
            WHERE status = ? AND silence_expiry IS NOT NULL AND silence_expiry <= ?
            ORDER BY silence_expiry ASC
        """, (AlertStatus.SILENCED.value, to_db(now)))
        return [self._row_to_alert(r) for r in rows]

    def get_history(self, alert_id):
        rows = self._query(
            "SELECT * FROM alert_history WHERE alert_id = ? ORDER BY id ASC", (alert_id,)
        )
        return [self._row_to_history(r) for r in rows]

    def get_alert_stats(self, since=None):
        """Alert counts by status and severity, optionally for alerts started after `since`."""
        where, params = "", ()
        if since:
            where, params = "WHERE starts_at >= ?", (to_db(since),)
        total = self._query_one(f"SELECT COUNT(*) AS cnt FROM alerts {where}", params)["cnt"]
        by_status = self._query(f"SELECT status, COUNT(*) AS cnt FROM alerts {where} GROUP BY status", params)
        by_severity = self._query(f"SELECT severity, COUNT(*) AS cnt FROM alerts {where} GROUP BY severity", params)
        return {
            "total": total,
            "by_status": {r["status"]: r["cnt"] for r in by_status},
            "by_severity": {r["severity"]: r["cnt"] for r in by_severity},
        }

    def get_history_counts(self, since):
        """Transition counts by action since `since`, from the audit trail."""
        rows = self._query("""
            SELECT action, COUNT(*) AS cnt FROM alert_history
            WHERE created_at >= ? GROUP BY action
        """, (to_db(since),))
        return {r["action"]: r["cnt"] for r in rows}

    def cleanup_resolved(self, before):
        """Retention sweep: delete resolved alerts (and their history) that ended before `before`."""
        before_s = to_db(before)
        with self._transaction() as conn:
            ids = [r["id"] for r in conn.execute(
                "SELECT id FROM alerts WHERE status = ? AND ends_at IS NOT NULL AND ends_at < ?",
                (AlertStatus.RESOLVED.value, before_s),
            ).fetchall()]
            for alert_id in ids:
                conn.execute("DELETE FROM alert_history WHERE alert_id = ?", (alert_id,))
                conn.execute("DELETE FROM alerts WHERE id = ?", (alert_id,))
        if ids:
            logger.info(f"Removed {len(ids)} resolved alerts older than {before_s}")
        return len(ids)

    # --- Row mapping ---

    @staticmethod
    def _row_to_rule(row):
        return Rule(
            id=row["id"],
            name=row["name"],
            description=row["description"] or "",
            expression=row["expression"],
            data_source=row["data_source"],
            operator=row["operator"],
            threshold=row["threshold"],
            recovery_threshold=row["recovery_threshold"],
            interval_seconds=row["interval_seconds"],
            for_seconds=row["for_seconds"],
            keep_firing_for_seconds=row["keep_firing_for_seconds"],
            no_data_state=_enum(StatePolicy, row["no_data_state"]),
            exec_err_state=_enum(StatePolicy, row["exec_err_state"]),
            enabled=bool(row["enabled"]),
            status=_enum(RuleStatus, row["status"]),
            severity=_enum(Severity, row["severity"]),
            labels=json.loads(row["labels"] or "{}"),
            annotations=json.loads(row["annotations"] or "{}"),
            last_eval_at=_parse_ts(row["last_eval_at"]),
            last_eval_result=row["last_eval_result"],
            eval_count=row["eval_count"],
            alert_count=row["alert_count"],
            config_error=row["config_error"],
            deleted_at=_parse_ts(row["deleted_at"]),
        )

    @staticmethod
    def _row_to_alert(row):
        return Alert(
            id=row["id"],
            rule_id=row["rule_id"],
            fingerprint=row["fingerprint"],
            name=row["name"],
            severity=_enum(Severity, row["severity"]),
            status=AlertStatus(row["status"]),
            labels=json.loads(row["labels"] or "{}"),
            annotations=json.loads(row["annotations"] or "{}"),
            value=row["value"],
            threshold=row["threshold"],
            starts_at=_parse_ts(row["starts_at"]),
            ends_at=_parse_ts(row["ends_at"]),
            last_eval_at=_parse_ts(row["last_eval_at"]),
            eval_count=row["eval_count"],
            last_breach_at=_parse_ts(row["last_breach_at"]),
            last_verdict=_enum(VerdictKind, row["last_verdict"]),
            silence_id=row["silence_id"],
            silence_expiry=_parse_ts(row["silence_expiry"]),
            silenced_from=_enum(AlertStatus, row["silenced_from"]),
            acked_by=row["acked_by"],
            acked_at=_parse_ts(row["acked_at"]),
            resolved_by=row["resolved_by"],
            resolved_at=_parse_ts(row["resolved_at"]),
            version=row["version"],
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

    @staticmethod
    def _row_to_history(row):
        return AlertHistory(
            id=row["id"],
            alert_id=row["alert_id"],
            action=HistoryAction(row["action"]),
            actor=row["actor"],
            old_status=_enum(AlertStatus, row["old_status"]),
            new_status=_enum(AlertStatus, row["new_status"]),
            old_value=json.loads(row["old_value"] or "{}"),
            new_value=json.loads(row["new_value"] or "{}"),
            comment=row["comment"],
            created_at=_parse_ts(row["created_at"]),
        )
