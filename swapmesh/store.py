"""로컬 저장소 모듈 - 주문/거래/설정 캐시 (aiosqlite), 인덱스 및 만료 GC"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import aiosqlite

from swapmesh.models import Order, Trade
from swapmesh.orders import now_ms

logger = logging.getLogger(__name__)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS orders (
        id     TEXT PRIMARY KEY,
        type   TEXT NOT NULL,
        owner  TEXT NOT NULL,
        expiry INTEGER NOT NULL,
        data   TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_orders_type ON orders(type)",
    "CREATE INDEX IF NOT EXISTS idx_orders_owner ON orders(owner)",
    "CREATE INDEX IF NOT EXISTS idx_orders_expiry ON orders(expiry)",
    """
    CREATE TABLE IF NOT EXISTS trades (
        trade_id   TEXT PRIMARY KEY,
        seller     TEXT NOT NULL,
        buyer      TEXT NOT NULL,
        created_at INTEGER NOT NULL,
        data       TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_trades_seller ON trades(seller)",
    "CREATE INDEX IF NOT EXISTS idx_trades_buyer ON trades(buyer)",
    "CREATE INDEX IF NOT EXISTS idx_trades_created_at ON trades(created_at)",
    """
    CREATE TABLE IF NOT EXISTS settings (
        key   TEXT PRIMARY KEY,
        value TEXT NOT NULL
    )
    """,
]


class LocalStore:
    """주문/거래/설정 로컬 캐시. 단일 프로세스 전용, 교차 프로세스 잠금 없음."""

    def __init__(self, db_path: str | Path = ":memory:"):
        self.db_path = str(db_path)
        self._db: aiosqlite.Connection | None = None

    async def open(self) -> "LocalStore":
        if self._db is not None:
            return self
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self.db_path)
        for sql in _SCHEMA:
            await self._db.execute(sql)
        await self._db.commit()
        logger.info(f"[저장소] 열림: {self.db_path}")
        return self

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> "LocalStore":
        return await self.open()

    async def __aexit__(self, *exc) -> None:
        await self.close()

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("LocalStore is not open")
        return self._db

    # ── 주문 ──

    async def put_order(self, order: Order) -> None:
        """주문 저장 (있으면 덮어쓰기). 계좌 정보 포함 원본 그대로 저장."""
        doc = order.to_dict()
        doc["local"] = order.local
        await self.db.execute(
            "INSERT OR REPLACE INTO orders(id, type, owner, expiry, data) VALUES (?, ?, ?, ?, ?)",
            (order.id, order.type, order.owner.lower(), int(order.expiry), json.dumps(doc)),
        )
        await self.db.commit()

    async def get_order(self, order_id: str) -> Order | None:
        async with self.db.execute("SELECT data FROM orders WHERE id = ?", (order_id,)) as cur:
            row = await cur.fetchone()
        return self._load_order(row[0]) if row else None

    async def get_all_orders(self) -> list[Order]:
        async with self.db.execute("SELECT data FROM orders ORDER BY expiry") as cur:
            rows = await cur.fetchall()
        return [self._load_order(r[0]) for r in rows]

    async def get_orders_by_type(self, order_type: str) -> list[Order]:
        async with self.db.execute(
            "SELECT data FROM orders WHERE type = ? ORDER BY expiry", (order_type,)
        ) as cur:
            rows = await cur.fetchall()
        return [self._load_order(r[0]) for r in rows]

    async def get_orders_by_owner(self, owner: str) -> list[Order]:
        async with self.db.execute(
            "SELECT data FROM orders WHERE owner = ? ORDER BY expiry", (owner.lower(),)
        ) as cur:
            rows = await cur.fetchall()
        return [self._load_order(r[0]) for r in rows]

    async def delete_order(self, order_id: str) -> bool:
        cur = await self.db.execute("DELETE FROM orders WHERE id = ?", (order_id,))
        await self.db.commit()
        return cur.rowcount > 0

    async def delete_expired_orders(self, now: int | None = None) -> int:
        """expiry <= now 인 주문 삭제, 삭제 건수 반환. 연속 호출 시 두 번째는 0."""
        current = now if now is not None else now_ms()
        cur = await self.db.execute("DELETE FROM orders WHERE expiry <= ?", (current,))
        await self.db.commit()
        deleted = cur.rowcount
        if deleted:
            logger.info(f"[저장소] 만료 주문 {deleted}건 삭제")
        return deleted

    @staticmethod
    def _load_order(raw: str) -> Order:
        doc = json.loads(raw)
        order = Order.from_dict(doc)
        order.local = bool(doc.get("local", False))
        return order

    # ── 거래 ──

    async def put_trade(self, trade: Trade) -> None:
        await self.db.execute(
            "INSERT OR REPLACE INTO trades(trade_id, seller, buyer, created_at, data) "
            "VALUES (?, ?, ?, ?, ?)",
            (trade.trade_id, trade.seller.lower(), trade.buyer.lower(),
             int(trade.created_at), json.dumps(trade.to_dict())),
        )
        await self.db.commit()

    async def get_trade(self, trade_id: str) -> Trade | None:
        async with self.db.execute("SELECT data FROM trades WHERE trade_id = ?", (trade_id,)) as cur:
            row = await cur.fetchone()
        return Trade.from_dict(json.loads(row[0])) if row else None

    async def get_all_trades(self) -> list[Trade]:
        async with self.db.execute("SELECT data FROM trades ORDER BY created_at DESC") as cur:
            rows = await cur.fetchall()
        return [Trade.from_dict(json.loads(r[0])) for r in rows]

    async def get_trades_by_address(self, address: str) -> list[Trade]:
        """seller 또는 buyer가 address와 일치(대소문자 무시)하는 거래, createdAt 내림차순"""
        addr = address.lower()
        async with self.db.execute(
            "SELECT data FROM trades WHERE seller = ? OR buyer = ? ORDER BY created_at DESC",
            (addr, addr),
        ) as cur:
            rows = await cur.fetchall()
        return [Trade.from_dict(json.loads(r[0])) for r in rows]

    # ── 설정 ──

    async def set_setting(self, key: str, value: Any) -> None:
        await self.db.execute(
            "INSERT OR REPLACE INTO settings(key, value) VALUES (?, ?)", (key, json.dumps(value))
        )
        await self.db.commit()

    async def get_setting(self, key: str, default: Any = None) -> Any:
        async with self.db.execute("SELECT value FROM settings WHERE key = ?", (key,)) as cur:
            row = await cur.fetchone()
        return json.loads(row[0]) if row else default
