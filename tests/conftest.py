from __future__ import annotations

import sqlite3

import pytest

from pos_order_service.database import apply_schema, seed_menu_if_empty


@pytest.fixture()
def connection_factory(tmp_path):
    db_path = tmp_path / "orders.db"

    def factory() -> sqlite3.Connection:
        conn = sqlite3.connect(db_path)
        conn.row_factory = sqlite3.Row
        return conn

    conn = factory()
    try:
        apply_schema(conn)
        seed_menu_if_empty(conn)
    finally:
        conn.close()

    return factory
