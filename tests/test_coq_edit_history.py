"""Tests for the append-only edit ledger."""

from coq_edit_history import EditHistoryLedger, EditRecord


def test_append_dedups_and_keeps_first_timestamp():
    ledger = EditHistoryLedger()
    assert ledger.append("x + 0", "x", 1000)
    assert not ledger.append("x + 0", "x", 2000)
    assert ledger.append("x", "x + 0", 3000)
    assert ledger.all() == (EditRecord("x + 0", "x", 1000), EditRecord("x", "x + 0", 3000))


def test_idempotent_under_repeats():
    ledger = EditHistoryLedger()
    for _ in range(5):
        ledger.append("a", "b")
    assert len(ledger) == 1


def test_default_timestamp_is_epoch_millis(monkeypatch):
    monkeypatch.setattr("coq_edit_history.time.time", lambda: 1700000000.5)
    ledger = EditHistoryLedger()
    ledger.append("a", "b")
    assert ledger.all()[0].timestamp == 1700000000500


def test_all_is_a_snapshot():
    ledger = EditHistoryLedger()
    ledger.append("a", "b", 1)
    snapshot = ledger.all()
    ledger.append("c", "d", 2)
    assert len(snapshot) == 1
    assert [r.lhs for r in ledger] == ["a", "c"]


def test_list_roundtrip_dedups():
    data = [
        {"lhs": "a", "rhs": "b", "timestamp": 1},
        {"lhs": "a", "rhs": "b", "timestamp": 2},
        {"lhs": "c", "rhs": "d", "timestamp": 3},
    ]
    ledger = EditHistoryLedger.from_list(data)
    assert ledger.to_list() == [data[0], data[2]]
