"""Alert fingerprints and the open-alert index used for deduplication."""
import hashlib
import json
import logging
import threading

from models.database import DuplicateFingerprintRace
from utils.locks import KeyedLocks

logger = logging.getLogger("pulse.alerts.fingerprint")


def compute_fingerprint(rule_id, labels):
    """Stable identity of the condition an alert tracks.

    Equal for equal (rule_id, labels) regardless of label ordering.
    """
    payload = json.dumps(
        {"rule_id": rule_id, "labels": sorted((str(k), str(v)) for k, v in (labels or {}).items())},
        sort_keys=True, separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:32]


class FingerprintIndex:
    """Map of fingerprint -> open alert id, backed by the alert store.

    The store's partial unique index is the source of truth; this map only
    saves a lookup. Creation for one fingerprint is serialized with a
    per-fingerprint lock, and a lost insert race is collapsed into the
    alert that won it.
    """

    def __init__(self, db):
        self.db = db
        self._open = {}
        self._guard = threading.Lock()
        self._locks = KeyedLocks()

    def load(self):
        """Warm the map from the store's open alerts."""
        alerts = self.db.get_open_alerts()
        with self._guard:
            self._open = {a.fingerprint: a.id for a in alerts}
        logger.info(f"Fingerprint index loaded with {len(alerts)} open alerts")
        return len(alerts)

    def lookup(self, fingerprint):
        """Return the open alert for `fingerprint`, or None."""
        with self._guard:
            alert_id = self._open.get(fingerprint)
        if alert_id:
            alert = self.db.get_alert(alert_id)
            if alert and alert.is_open and alert.fingerprint == fingerprint:
                return alert
            self.release(fingerprint, alert_id)
        alert = self.db.find_open_by_fingerprint(fingerprint)
        if alert:
            with self._guard:
                self._open[fingerprint] = alert.id
        return alert

    def upsert(self, fingerprint, build):
        """Return (alert, created) for `fingerprint`.

        `build()` returns an (Alert, AlertHistory) pair and is only called when
        no open alert exists; at most one caller creates an alert.
        """
        with self._locks.hold(fingerprint):
            existing = self.lookup(fingerprint)
            if existing:
                return existing, False

            alert, history = build()
            try:
                self.db.insert_alert(alert, history)
            except DuplicateFingerprintRace:
                # Another process opened it between our lookup and insert.
                winner = self.db.find_open_by_fingerprint(fingerprint)
                if winner is None:
                    raise
                logger.info(f"Lost creation race for {fingerprint}, using alert {winner.id}")
                with self._guard:
                    self._open[fingerprint] = winner.id
                return winner, False

            with self._guard:
                self._open[fingerprint] = alert.id
            return alert, True

    def release(self, fingerprint, alert_id):
        """Forget the mapping, but only if it still points at `alert_id`."""
        with self._guard:
            if self._open.get(fingerprint) == alert_id:
                del self._open[fingerprint]

    def __len__(self):
        with self._guard:
            return len(self._open)
