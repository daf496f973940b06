from __future__ import annotations

import hashlib
import json
import sqlite3
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from ..db import connect, ensure_schema, now_iso

GENESIS_HASH = "0" * 64


def _stable_payload_json(payload: Dict[str, Any]) -> str:
    return json.dumps(
        payload or {}, ensure_ascii=False, sort_keys=True, separators=(",", ":")
    )


def event_hash(
    prev_hash: str,
    ts: str,
    event_type: str,
    entity_type: str,
    entity_id: str,
    payload_json: str,
) -> str:
    raw = "|".join(
        [
            str(prev_hash or ""),
            str(ts or ""),
            str(event_type or ""),
            str(entity_type or ""),
            str(entity_id or ""),
            str(payload_json or ""),
        ]
    )
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def event_append(
    con: sqlite3.Connection,
    event_type: str,
    entity_type: str,
    entity_id: str,
    payload: Dict[str, Any],
) -> int:
    """Append an event inside the caller's open write transaction."""
    ev_type = (event_type or "").strip()
    ent_type = (entity_type or "").strip()
    ent_id = str(entity_id or "").strip()
    if not ev_type or not ent_type or not ent_id:
        raise ValueError("invalid_event")

    ts = now_iso()
    payload_json = _stable_payload_json(payload)
    row = con.execute("SELECT hash FROM events ORDER BY id DESC LIMIT 1").fetchone()
    prev = str(row["hash"]) if row else GENESIS_HASH
    hsh = event_hash(prev, ts, ev_type, ent_type, ent_id, payload_json)
    cur = con.execute(
        """
        INSERT INTO events(ts, event_type, entity_type, entity_id, payload_json, prev_hash, hash)
        VALUES (?,?,?,?,?,?,?)
        """,
        (ts, ev_type, ent_type, ent_id, payload_json, prev, hsh),
    )
    return int(cur.lastrowid or 0)


def event_verify_chain(db_path: Path) -> Tuple[bool, Optional[int], Optional[str]]:
    ensure_schema(db_path)
    con = connect(db_path)
    try:
        rows = con.execute("SELECT * FROM events ORDER BY id ASC").fetchall()
    finally:
        con.close()

    prev = GENESIS_HASH
    for row in rows:
        rid = int(row["id"])
        prev_hash = str(row["prev_hash"] or "")
        if prev_hash != prev:
            return False, rid, "prev_hash_mismatch"
        calc = event_hash(
            prev_hash,
            str(row["ts"] or ""),
            str(row["event_type"] or ""),
            str(row["entity_type"] or ""),
            str(row["entity_id"] or ""),
            str(row["payload_json"] or ""),
        )
        stored = str(row["hash"] or "")
        if calc != stored:
            return False, rid, "hash_mismatch"
        prev = stored
    return True, None, None


def event_get_history(
    db_path: Path, entity_type: str, entity_id: str, limit: int = 50
) -> list[dict]:
    con = connect(db_path)
    try:
        rows = con.execute(
            """
            SELECT * FROM events
            WHERE entity_type=? AND entity_id=?
            ORDER BY id DESC
            LIMIT ?
            """,
            (
                (entity_type or "").strip(),
                str(entity_id or ""),
                max(1, min(int(limit), 500)),
            ),
        ).fetchall()
        out: list[dict] = []
        for row in rows:
            item = dict(row)
            try:
                item["payload"] = json.loads(item.get("payload_json") or "{}")
            except ValueError:
                item["payload"] = {}
            out.append(item)
        return out
    finally:
        con.close()
