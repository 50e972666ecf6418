"""주문 유틸 테스트
Feature: swapmesh
Property: 만료 주문은 구조 검증에서 만료 사유로 거부
Property: 브로드캐스트 사본에는 계좌 정보가 없다
"""

import re
from dataclasses import replace

import pytest
from hypothesis import given, strategies as st, settings

from swapmesh.models import Order
from swapmesh.orders import (
    DEFAULT_EXPIRY_MS, create_buy_order, create_sell_order, generate_order_id,
    is_order_expired, now_ms, strip_sensitive_fields, validate_order,
)

SELLER = "0x19E7E376E7C213B7E7e7e46cc70A5dD086DAff2A"
BUYER = "0x1563915e194D8CfBA1943570603F7606A3115508"


def signed(order: Order) -> Order:
    """구조 검증용 더미 서명"""
    return replace(order, signature="0x" + "ab" * 65)


class TestOrderId:

    def test_format(self):
        assert re.fullmatch(r"ord-[0-9a-z]+-[0-9a-z]{6}", generate_order_id())

    def test_timestamp_encoded_base36(self):
        assert generate_order_id(36 ** 3).startswith("ord-1000-")
        assert generate_order_id(0).startswith("ord-0-")

    def test_unique(self):
        ids = {generate_order_id(1700000000000) for _ in range(200)}
        assert len(ids) > 190


class TestCreate:

    def test_sell_order_defaults(self):
        order = create_sell_order(SELLER, 100, 1420, "국민 123")
        assert order.type == "SELL" and order.is_sell
        assert order.local
        assert order.expiry - order.created_at == DEFAULT_EXPIRY_MS
        assert order.bank_account == "국민 123"

    def test_buy_order_has_no_bank_account(self):
        order = create_buy_order(BUYER, 50, 1400)
        assert order.type == "BUY"
        assert order.bank_account is None
        assert "bankAccount" not in order.to_dict()
        assert order.to_dict()["buyer"] == BUYER


class TestValidate:

    def test_valid(self):
        assert validate_order(signed(create_sell_order(SELLER, 100, 1420, "x"))).valid

    @given(offset=st.integers(min_value=0, max_value=10**9))
    @settings(max_examples=100)
    def test_expired_order_rejected(self, offset):
        """expiry <= now 이면 'Order has expired'"""
        now = 1_700_000_000_000
        order = replace(signed(create_sell_order(SELLER, 100, 1420, "x")), expiry=now - offset)
        result = validate_order(order, now=now)
        assert not result.valid
        assert result.reason == "Order has expired"

    def test_expiry_check_can_be_skipped(self):
        order = replace(signed(create_sell_order(SELLER, 100, 1420, "x")), expiry=1)
        assert validate_order(order, check_expiry=False).valid

    @pytest.mark.parametrize("changes,reason", [
        ({"type": "SWAP"}, "Invalid order type"),
        ({"id": ""}, "Missing order id"),
        ({"owner": "alice"}, "Invalid owner address"),
        ({"amount": 0}, "Invalid amount"),
        ({"amount": -5}, "Invalid amount"),
        ({"price_krw": 0}, "Invalid priceKRW"),
        ({"expiry": 0}, "Invalid expiry"),
        ({"signature": ""}, "Missing signature"),
    ])
    def test_structural_reasons(self, changes, reason):
        order = replace(signed(create_sell_order(SELLER, 100, 1420, "x")), **changes)
        result = validate_order(order)
        assert not result.valid
        assert result.reason.startswith(reason)

    def test_not_an_order(self):
        assert validate_order({"id": "x"}).reason == "Order is not an object"

    def test_is_order_expired_accepts_dict(self):
        assert is_order_expired({"expiry": 10}, now=10)
        assert not is_order_expired({"expiry": 11}, now=10)


class TestStrip:

    @given(account=st.text(min_size=1, max_size=40))
    @settings(max_examples=50)
    def test_sell_order_stripped(self, account):
        order = create_sell_order(SELLER, 100, 1420, account)
        stripped = strip_sensitive_fields(order)
        assert stripped.bank_account is None
        assert stripped.to_dict()["bankAccount"] == ""
        assert order.bank_account == account

    def test_buy_order_unchanged(self):
        order = create_buy_order(BUYER, 1, 1)
        assert strip_sensitive_fields(order) is order


class TestWireFormat:

    def test_sell_roundtrip(self):
        order = signed(create_sell_order(SELLER, 100.5, 1420, "x"))
        restored = Order.from_dict(order.to_dict())
        assert restored.owner == SELLER
        assert restored.amount == 100.5
        assert restored.price_krw == 1420
        assert not restored.local

    def test_owner_key_accepted(self):
        order = Order.from_dict({"id": "a", "type": "BUY", "owner": BUYER, "amount": 1,
                                 "priceKRW": 1, "expiry": now_ms()})
        assert order.owner == BUYER
