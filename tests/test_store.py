"""LocalStore 테스트
Feature: swapmesh
Property: delete_expired_orders 멱등성
Property: get_trades_by_address 필터 + createdAt 내림차순
"""

import asyncio
from dataclasses import replace

import pytest
from hypothesis import given, strategies as st, settings

from swapmesh.models import Order, Trade, TradeStatus
from swapmesh.orders import create_buy_order, create_sell_order
from swapmesh.store import LocalStore

SELLER = "0x19E7E376E7C213B7E7e7e46cc70A5dD086DAff2A"
BUYER = "0x1563915e194D8CfBA1943570603F7606A3115508"
OTHER = "0x5050a4F4b3f9338C3472dcC01A87C76A144b3c9c"

NOW = 1_700_000_000_000


def run(coro):
    return asyncio.run(coro)


def make_trade(idx: int, seller: str, buyer: str, created_at: int) -> Trade:
    return Trade(
        trade_id="0x" + f"{idx:064x}",
        seller=seller, buyer=buyer, status=TradeStatus.LOCKED,
        created_at=created_at, expires_at=created_at + 86400,
        amount=100_000_000, fee_amount=200_000,
    )


class TestOrders:

    def test_put_get_delete(self):
        async def scenario():
            async with LocalStore() as store:
                order = replace(create_sell_order(SELLER, 100, 1420, "국민 123"), signature="0xab")
                await store.put_order(order)
                loaded = await store.get_order(order.id)
                deleted = await store.delete_order(order.id)
                missing = await store.get_order(order.id)
                again = await store.delete_order(order.id)
                return order, loaded, deleted, missing, again

        order, loaded, deleted, missing, again = run(scenario())
        assert loaded == order
        assert loaded.bank_account == "국민 123"
        assert loaded.local
        assert deleted and not again
        assert missing is None

    def test_query_by_type_and_owner(self):
        async def scenario():
            async with LocalStore() as store:
                await store.put_order(create_sell_order(SELLER, 1, 1420, "x"))
                await store.put_order(create_sell_order(SELLER, 2, 1430, "x"))
                await store.put_order(create_buy_order(BUYER, 3, 1400))
                sells = await store.get_orders_by_type("SELL")
                buys = await store.get_orders_by_type("BUY")
                mine = await store.get_orders_by_owner(SELLER.lower())
                return sells, buys, mine

        sells, buys, mine = run(scenario())
        assert len(sells) == 2 and all(o.is_sell for o in sells)
        assert len(buys) == 1 and buys[0].owner == BUYER
        assert len(mine) == 2

    @given(expiries=st.lists(st.integers(min_value=NOW - 10**7, max_value=NOW + 10**7),
                             min_size=0, max_size=20))
    @settings(max_examples=30, deadline=None)
    def test_delete_expired_idempotent(self, expiries):
        """첫 호출은 만료 건수만큼 삭제, 두 번째 호출은 0"""
        async def scenario():
            async with LocalStore() as store:
                for i, expiry in enumerate(expiries):
                    order = replace(create_buy_order(BUYER, 1, 1), id=f"ord-{i}", expiry=expiry)
                    await store.put_order(order)
                first = await store.delete_expired_orders(now=NOW)
                second = await store.delete_expired_orders(now=NOW)
                remaining = await store.get_all_orders()
                return first, second, remaining

        first, second, remaining = run(scenario())
        assert first == sum(1 for e in expiries if e <= NOW)
        assert second == 0
        assert all(o.expiry > NOW for o in remaining)

    def test_file_database_persists(self, tmp_path):
        path = tmp_path / "db" / "swapmesh.db"
        order = create_buy_order(BUYER, 5, 1400)

        async def write():
            async with LocalStore(path) as store:
                await store.put_order(order)

        async def read():
            async with LocalStore(path) as store:
                return await store.get_order(order.id)

        run(write())
        assert run(read()).id == order.id


class TestTrades:

    @given(rows=st.lists(
        st.tuples(st.sampled_from([SELLER, BUYER, OTHER]),
                  st.sampled_from([SELLER, BUYER, OTHER]),
                  st.integers(min_value=1, max_value=2_000_000_000)),
        min_size=0, max_size=15,
    ))
    @settings(max_examples=30, deadline=None)
    def test_trades_by_address(self, rows):
        """seller 또는 buyer가 일치하는 거래만, createdAt 내림차순"""
        async def scenario():
            async with LocalStore() as store:
                for i, (seller, buyer, created) in enumerate(rows):
                    await store.put_trade(make_trade(i, seller, buyer, created))
                return await store.get_trades_by_address(SELLER.upper().replace("0X", "0x"))

        result = run(scenario())
        expected = sum(1 for s, b, _ in rows if SELLER in (s, b))
        assert len(result) == expected
        assert all(SELLER in (t.seller, t.buyer) for t in result)
        created = [t.created_at for t in result]
        assert created == sorted(created, reverse=True)

    def test_trade_roundtrip(self):
        trade = make_trade(1, SELLER, BUYER, 1700000000)

        async def scenario():
            async with LocalStore() as store:
                await store.put_trade(trade)
                return await store.get_trade(trade.trade_id), await store.get_all_trades()

        loaded, all_trades = run(scenario())
        assert loaded == trade
        assert all_trades == [trade]


class TestSettings:

    def test_setting_default_and_overwrite(self):
        async def scenario():
            async with LocalStore() as store:
                missing = await store.get_setting("network", "arbitrum")
                await store.set_setting("network", "polygon")
                await store.set_setting("relays", ["wss://a", "wss://b"])
                return missing, await store.get_setting("network"), await store.get_setting("relays")

        assert run(scenario()) == ("arbitrum", "polygon", ["wss://a", "wss://b"])

    def test_closed_store_raises(self):
        with pytest.raises(RuntimeError):
            LocalStore().db
