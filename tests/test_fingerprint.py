"""Tests for fingerprints and the open-alert index."""
import pytest
import sys
import os
import threading
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import uuid
from alerts.fingerprint import FingerprintIndex, compute_fingerprint
from models.alerts import Alert, AlertHistory
from models.database import DuplicateFingerprintRace
from models.enums import AlertStatus, HistoryAction


def _builder(fp, created):
    def build():
        alert = Alert(id=uuid.uuid4().hex, rule_id=None, fingerprint=fp, name="manual")
        created.append(alert.id)
        return alert, AlertHistory(alert_id=alert.id, action=HistoryAction.CREATED,
                                   new_status=AlertStatus.FIRING)
    return build


# ── Fingerprints ────────────────────────────────────────

def test_fingerprint_ignores_label_order():
    a = compute_fingerprint("r1", {"host": "a", "env": "prod"})
    b = compute_fingerprint("r1", {"env": "prod", "host": "a"})
    assert a == b
    assert len(a) == 32


def test_fingerprint_differs_by_rule_and_labels():
    base = compute_fingerprint("r1", {"host": "a"})
    assert compute_fingerprint("r2", {"host": "a"}) != base
    assert compute_fingerprint("r1", {"host": "b"}) != base
    assert compute_fingerprint("r1", {}) != base


def test_fingerprint_no_ambiguous_concatenation():
    assert compute_fingerprint("r1", {"a": "b=c"}) != compute_fingerprint("r1", {"a=b": "c"})


def test_fingerprint_without_labels():
    assert compute_fingerprint("r1", None) == compute_fingerprint("r1", {})


# ── Index ───────────────────────────────────────────────

def test_upsert_creates_once(temp_db):
    index = FingerprintIndex(temp_db)
    fp = compute_fingerprint("r1", {})
    created = []
    first, is_new = index.upsert(fp, _builder(fp, created))
    assert is_new
    second, is_new = index.upsert(fp, _builder(fp, created))
    assert not is_new
    assert second.id == first.id
    assert created == [first.id]
    assert index.lookup(fp).id == first.id


def test_release_only_matching_alert(temp_db):
    index = FingerprintIndex(temp_db)
    fp = compute_fingerprint("r1", {})
    alert, _ = index.upsert(fp, _builder(fp, []))
    index.release(fp, "someone-else")
    assert len(index) == 1
    index.release(fp, alert.id)
    assert len(index) == 0


def test_load_warms_from_store(temp_db):
    index = FingerprintIndex(temp_db)
    fp = compute_fingerprint("r1", {"x": "1"})
    alert, _ = index.upsert(fp, _builder(fp, []))

    fresh = FingerprintIndex(temp_db)
    assert fresh.load() == 1
    assert fresh.lookup(fp).id == alert.id


def test_lookup_drops_resolved_mapping(temp_db):
    index = FingerprintIndex(temp_db)
    fp = compute_fingerprint("r1", {})
    alert, _ = index.upsert(fp, _builder(fp, []))
    temp_db.transition_alert(alert.id, alert.version, {"status": AlertStatus.RESOLVED},
                             AlertHistory(alert_id=alert.id, action=HistoryAction.RESOLVED))
    assert index.lookup(fp) is None
    assert len(index) == 0


def test_lost_race_collapses_into_winner(temp_db):
    """Another writer inserted after our lookup: the store rejects ours and we adopt theirs."""
    fp = compute_fingerprint("r1", {})
    other = FingerprintIndex(temp_db)
    winner, _ = other.upsert(fp, _builder(fp, []))

    index = FingerprintIndex(temp_db)
    index.lookup = lambda fingerprint: None  # stale view
    alert, is_new = index.upsert(fp, _builder(fp, []))
    assert not is_new
    assert alert.id == winner.id
    assert len(temp_db.get_open_alerts()) == 1


def test_store_rejects_duplicate_open_fingerprint(temp_db):
    fp = compute_fingerprint("r1", {})
    FingerprintIndex(temp_db).upsert(fp, _builder(fp, []))
    dup = Alert(id=uuid.uuid4().hex, fingerprint=fp, name="dup")
    with pytest.raises(DuplicateFingerprintRace):
        temp_db.insert_alert(dup, AlertHistory(alert_id=dup.id, action=HistoryAction.CREATED))
    assert temp_db.get_history(dup.id) == []


def test_concurrent_upserts_create_one(temp_db):
    index = FingerprintIndex(temp_db)
    fp = compute_fingerprint("r1", {"host": "a"})
    created = []
    barrier = threading.Barrier(10)
    seen = []

    def worker():
        barrier.wait()
        alert, _ = index.upsert(fp, _builder(fp, created))
        seen.append(alert.id)

    threads = [threading.Thread(target=worker) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(created) == 1
    assert set(seen) == {created[0]}
