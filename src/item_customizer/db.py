from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import Any

SCHEMA = """
CREATE TABLE IF NOT EXISTS catalog_items (
    item_type TEXT NOT NULL,
    item_id TEXT NOT NULL,
    name TEXT NOT NULL,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (item_type, item_id)
);

CREATE TABLE IF NOT EXISTS item_constraints (
    id TEXT PRIMARY KEY,
    target_item_id TEXT NOT NULL,
    target_item_type TEXT NOT NULL,
    constraint_type TEXT NOT NULL,
    related_item_id TEXT NOT NULL,
    related_item_type TEXT NOT NULL,
    message TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS customization_drafts (
    draft_key TEXT PRIMARY KEY,
    item_type TEXT NOT NULL,
    item_id TEXT NOT NULL,
    state TEXT NOT NULL,
    saved_at REAL NOT NULL,
    expires_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS carts (
    cart_id TEXT PRIMARY KEY,
    state TEXT NOT NULL,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);
"""


def connect(db_path: str | Path) -> sqlite3.Connection:
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: str | Path) -> None:
    conn = connect(db_path)
    with conn:
        conn.executescript(SCHEMA)
        migrate_constraint_schema(conn)
        migrate_draft_schema(conn)
    conn.close()


def migrate_constraint_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_item_constraints_triple
        ON item_constraints(target_item_type, target_item_id, constraint_type, related_item_type, related_item_id)
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_item_constraints_related
        ON item_constraints(related_item_type, related_item_id)
        """
    )


def migrate_draft_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_customization_drafts_saved
        ON customization_drafts(saved_at)
        """
    )


def json_dumps(payload: Any) -> str:
    return json.dumps(payload, separators=(",", ":"), sort_keys=True)
