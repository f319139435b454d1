from __future__ import annotations

import os
import sqlite3
import time
from typing import Iterable

import psycopg
from psycopg.rows import dict_row

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS menu_items (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    price_thb NUMERIC(12, 2) NOT NULL,
    image_url TEXT
);

CREATE TABLE IF NOT EXISTS orders (
    id TEXT PRIMARY KEY,
    items_json TEXT NOT NULL,
    total NUMERIC(12, 2) NOT NULL,
    status TEXT NOT NULL DEFAULT 'PENDING',
    table_code TEXT,
    created_by INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS idempotency_keys (
    key TEXT PRIMARY KEY,
    request_hash TEXT NOT NULL,
    response_status INTEGER NOT NULL,
    response_body TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS audit_logs (
    id TEXT PRIMARY KEY,
    action TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    entity_id TEXT,
    actor_id INTEGER,
    metadata TEXT,
    ip_address TEXT,
    created_at TEXT NOT NULL
);
"""

DEFAULT_MENU = [
    (1, "Pad Thai", 199.0, "https://picsum.photos/seed/padthai/400/300"),
    (2, "Tom Yum Goong", 249.0, "https://picsum.photos/seed/tomyum/400/300"),
    (3, "Green Curry", 189.0, "https://picsum.photos/seed/greencurry/400/300"),
    (4, "Grilled Chicken", 159.0, "https://picsum.photos/seed/chicken/400/300"),
    (5, "Fried Rice", 89.0, "https://picsum.photos/seed/friedrice/400/300"),
    (6, "Stir-fried Vegetables", 79.0, "https://picsum.photos/seed/veggies/400/300"),
    (7, "Thai Iced Tea", 45.0, "https://picsum.photos/seed/thaitea/400/300"),
    (8, "Young Coconut", 55.0, "https://picsum.photos/seed/coconut/400/300"),
    (9, "Mango Smoothie", 65.0, "https://picsum.photos/seed/mango/400/300"),
]


def _build_database_url() -> str:
    if url := os.environ.get("DATABASE_URL"):
        return url
    user = os.environ.get("DB_USER", "pos")
    password = os.environ.get("DB_PASSWORD", "pos")
    host = os.environ.get("DB_HOST", "pos-db")
    port = os.environ.get("DB_PORT", "5432")
    name = os.environ.get("DB_NAME", "pos_orders")
    return f"postgresql://{user}:{password}@{host}:{port}/{name}"


DATABASE_URL = _build_database_url()


def get_connection():
    """Return a connection against Postgres (default) or SQLite when configured."""
    retries = int(os.environ.get("DB_CONNECT_MAX_RETRIES", "30"))
    delay = float(os.environ.get("DB_CONNECT_RETRY_DELAY", "2"))
    last_exc: Exception | None = None
    for attempt in range(retries):
        try:
            return _connect_once()
        except Exception as exc:  # pragma: no cover - only hits when DB down
            last_exc = exc
            if attempt == retries - 1:
                raise
            time.sleep(delay)
    raise last_exc  # pragma: no cover


def _connect_once():
    if DATABASE_URL.startswith("sqlite://"):
        path = DATABASE_URL.replace("sqlite:///", "")
        conn = sqlite3.connect(path)
        conn.row_factory = sqlite3.Row
        return conn

    return psycopg.connect(DATABASE_URL, autocommit=True, row_factory=dict_row)


def init_db(connection_factory=get_connection) -> None:
    conn = connection_factory()
    try:
        apply_schema(conn)
        seed_menu_if_empty(conn)
    finally:
        conn.close()


def apply_schema(conn) -> None:
    if hasattr(conn, "executescript"):
        conn.executescript(SCHEMA_SQL)
        conn.commit()
        return

    with conn.cursor() as cur:
        for statement in _split_statements(SCHEMA_SQL):
            cur.execute(statement)
    conn.commit()


def _split_statements(sql_blob: str) -> Iterable[str]:
    for statement in sql_blob.split(";"):
        stmt = statement.strip()
        if stmt:
            yield stmt


def seed_menu_if_empty(conn) -> None:
    row = conn.execute("SELECT COUNT(1) AS cnt FROM menu_items;").fetchone()
    count = 0
    if row is not None:
        if isinstance(row, dict):
            count = row.get("cnt", 0) or 0
        else:
            count = row[0] or 0
    if count > 0:
        return

    p = placeholder(conn)
    cur = conn.cursor()
    cur.executemany(
        f"INSERT INTO menu_items (id, name, price_thb, image_url) VALUES ({p}, {p}, {p}, {p})",
        DEFAULT_MENU,
    )
    conn.commit()


def placeholder(conn) -> str:
    module = conn.__class__.__module__
    return "%s" if "psycopg" in module else "?"
