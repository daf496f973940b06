from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from handwerkos.db import ensure_schema, run_write_txn
from handwerkos.eventlog import (
    GENESIS_HASH,
    event_append,
    event_get_history,
    event_verify_chain,
)


def _init_db(tmp_path: Path) -> Path:
    db = tmp_path / "core.sqlite3"
    ensure_schema(db)
    return db


def _append(db: Path, event_type: str, entity_id: str, payload: dict) -> int:
    return run_write_txn(
        db, lambda con: event_append(con, event_type, "quote", entity_id, payload)
    )


def test_event_append_verify_and_history(tmp_path: Path) -> None:
    db = _init_db(tmp_path)
    e1 = _append(db, "quote_status_changed", "q1", {"from": "draft", "to": "sent"})
    e2 = _append(db, "quote_status_changed", "q1", {"from": "sent", "to": "accepted"})
    assert e1 > 0 and e2 > e1

    ok, bad_id, reason = event_verify_chain(db)
    assert ok is True
    assert bad_id is None
    assert reason is None

    hist = event_get_history(db, "quote", "q1", limit=10)
    assert len(hist) == 2
    assert hist[0]["id"] == e2
    assert hist[0]["payload"] == {"from": "sent", "to": "accepted"}

    con = sqlite3.connect(str(db))
    try:
        first = con.execute("SELECT prev_hash, hash FROM events WHERE id=?", (e1,)).fetchone()
    finally:
        con.close()
    assert first[0] == GENESIS_HASH
    assert len(first[1]) == 64


def test_event_verify_detects_chain_break(tmp_path: Path) -> None:
    db = _init_db(tmp_path)
    _append(db, "x1", "q1", {"a": 1})
    second = _append(db, "x2", "q1", {"a": 2})

    con = sqlite3.connect(str(db))
    try:
        con.execute("UPDATE events SET prev_hash='broken' WHERE id=?", (second,))
        con.commit()
    finally:
        con.close()

    ok, bad_id, reason = event_verify_chain(db)
    assert ok is False
    assert bad_id == second
    assert reason == "prev_hash_mismatch"


def test_event_verify_detects_payload_tampering(tmp_path: Path) -> None:
    db = _init_db(tmp_path)
    first = _append(db, "x1", "q1", {"amount": 100})
    _append(db, "x2", "q1", {"amount": 200})

    con = sqlite3.connect(str(db))
    try:
        con.execute("UPDATE events SET payload_json='{\"amount\":1}' WHERE id=?", (first,))
        con.commit()
    finally:
        con.close()

    ok, bad_id, reason = event_verify_chain(db)
    assert ok is False
    assert bad_id == first
    assert reason == "hash_mismatch"


def test_event_append_requires_identifiers(tmp_path: Path) -> None:
    db = _init_db(tmp_path)
    with pytest.raises(ValueError, match="invalid_event"):
        _append(db, "", "q1", {})
    assert event_get_history(db, "quote", "q1") == []


def test_event_history_limit_is_clamped(tmp_path: Path) -> None:
    db = _init_db(tmp_path)
    for i in range(3):
        _append(db, "x", "q1", {"i": i})
    assert len(event_get_history(db, "quote", "q1", limit=0)) == 1
    assert len(event_get_history(db, "quote", "q1", limit=10_000)) == 3
