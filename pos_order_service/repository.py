from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Optional

from .database import get_connection, placeholder


class OrderNotFoundError(Exception):
    """Raised when an order identifier is unknown."""


@dataclass(frozen=True)
class OrderRecord:
    id: str
    items: list
    total: float
    status: str
    table_code: Optional[str]
    created_by: int
    created_at: str
    updated_at: str

    def as_response_body(self) -> dict:
        return {
            "id": self.id,
            "items": self.items,
            "subtotal": self.total,
            "total": self.total,
            "status": self.status,
            "createdAt": self.created_at,
            "createdBy": self.created_by,
            "tableCode": self.table_code,
        }


@dataclass(frozen=True)
class MenuItemRecord:
    id: int
    name: str
    price_thb: Decimal
    image_url: Optional[str]


class BaseRepository:
    def __init__(self, connection_factory=get_connection):
        self._connection_factory = connection_factory

    @contextmanager
    def _connection(self):
        conn = self._connection_factory()
        try:
            yield conn
        finally:
            conn.close()


class MenuRepository(BaseRepository):
    """Read-only access to the authoritative menu prices."""

    def get_prices_by_ids(self, ids: Iterable[int]) -> Dict[int, Decimal]:
        wanted = list(ids)
        if not wanted:
            return {}
        with self._connection() as conn:
            p = placeholder(conn)
            placeholders = ",".join(p for _ in wanted)
            rows = conn.execute(
                f"SELECT id, price_thb FROM menu_items WHERE id IN ({placeholders});",
                wanted,
            ).fetchall()
        return {int(row["id"]): Decimal(str(row["price_thb"])) for row in rows}

    def list_items(self) -> List[MenuItemRecord]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT id, name, price_thb, image_url FROM menu_items ORDER BY id ASC;"
            ).fetchall()
        return [
            MenuItemRecord(
                id=int(row["id"]),
                name=row["name"],
                price_thb=Decimal(str(row["price_thb"])),
                image_url=row["image_url"],
            )
            for row in rows
        ]


class OrderRepository(BaseRepository):
    """Data-access layer for persisted orders."""

    _COLUMNS = "id, items_json, total, status, table_code, created_by, created_at, updated_at"

    def insert_order(
        self,
        items: list,
        total: float,
        created_by: int,
        table_code: str | None = None,
    ) -> OrderRecord:
        order_id = str(uuid.uuid4())
        total = float(_money(total))
        now = datetime.now(timezone.utc).isoformat()
        with self._connection() as conn:
            p = placeholder(conn)
            conn.execute(
                f"""
                INSERT INTO orders (
                    id, items_json, total, status, table_code, created_by, created_at, updated_at
                ) VALUES ({p}, {p}, {p}, 'PENDING', {p}, {p}, {p}, {p});
                """,
                (order_id, json.dumps(items), total, table_code, created_by, now, now),
            )
            conn.commit()
        return OrderRecord(
            id=order_id,
            items=items,
            total=total,
            status="PENDING",
            table_code=table_code,
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )

    def get_order(self, order_id: str) -> OrderRecord | None:
        with self._connection() as conn:
            p = placeholder(conn)
            row = conn.execute(
                f"SELECT {self._COLUMNS} FROM orders WHERE id = {p};",
                (order_id,),
            ).fetchone()
            if row is None:
                return None
            return _to_record(row)

    def list_orders(self, limit: int = 100) -> list[OrderRecord]:
        with self._connection() as conn:
            p = placeholder(conn)
            rows = conn.execute(
                f"SELECT {self._COLUMNS} FROM orders ORDER BY created_at DESC LIMIT {p};",
                (limit,),
            ).fetchall()
        return [_to_record(row) for row in rows]

    def update_status(self, order_id: str, status: str) -> OrderRecord:
        now = datetime.now(timezone.utc).isoformat()
        with self._connection() as conn:
            p = placeholder(conn)
            cur = conn.execute(
                f"UPDATE orders SET status = {p}, updated_at = {p} WHERE id = {p};",
                (status, now, order_id),
            )
            conn.commit()
            if cur.rowcount == 0:
                raise OrderNotFoundError(f"Order {order_id} not found")
        updated = self.get_order(order_id)
        if updated is None:
            # Deleted between the UPDATE and the read back.
            raise OrderNotFoundError(f"Order {order_id} not found")
        return updated


def _money(value) -> Decimal:
    # psycopg hands NUMERIC back as Decimal, sqlite3 as int or float.
    return Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def _to_record(row) -> OrderRecord:
    return OrderRecord(
        id=row["id"],
        items=json.loads(row["items_json"]),
        total=float(_money(row["total"])),
        status=row["status"],
        table_code=row["table_code"],
        created_by=int(row["created_by"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )
