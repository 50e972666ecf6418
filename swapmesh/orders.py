"""주문 생성/검증 유틸 - ID 생성, 구조 검증, 만료 판정, 민감 필드 제거"""

from __future__ import annotations

import random
import string
import time
from dataclasses import replace
from typing import Any

from swapmesh.models import Order, OrderType, VerifyResult
from swapmesh.signature import detect_scheme

DEFAULT_EXPIRY_MS = 30 * 60 * 1000   # 30분

_BASE36 = string.digits + string.ascii_lowercase


def now_ms() -> int:
    return int(time.time() * 1000)


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_order_id(timestamp_ms: int | None = None) -> str:
    """주문 ID 생성: ord-<base36 ms>-<random 6자>"""
    ts = _to_base36(timestamp_ms if timestamp_ms is not None else now_ms())
    rand = "".join(random.choices(_BASE36, k=6))
    return f"ord-{ts}-{rand}"


def create_sell_order(seller: str, amount: float, price_krw: int, bank_account: str,
                      expiry_ms: int | None = None) -> Order:
    """서명 전 매도 주문 생성 (기본 30분 만료)"""
    now = now_ms()
    return Order(
        id=generate_order_id(now),
        type=OrderType.SELL.value,
        owner=seller,
        amount=amount,
        price_krw=price_krw,
        expiry=now + (expiry_ms or DEFAULT_EXPIRY_MS),
        created_at=now,
        bank_account=bank_account,
        local=True,
    )


def create_buy_order(buyer: str, amount: float, price_krw: int,
                     expiry_ms: int | None = None) -> Order:
    """서명 전 매수 주문 생성"""
    now = now_ms()
    return Order(
        id=generate_order_id(now),
        type=OrderType.BUY.value,
        owner=buyer,
        amount=amount,
        price_krw=price_krw,
        expiry=now + (expiry_ms or DEFAULT_EXPIRY_MS),
        created_at=now,
        local=True,
    )


def is_order_expired(order: Order | dict[str, Any], now: int | None = None) -> bool:
    """expiry <= now 이면 만료"""
    expiry = order.expiry if isinstance(order, Order) else order.get("expiry", 0)
    current = now if now is not None else now_ms()
    return expiry <= current


def _is_positive_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0


def validate_order(order: Order, check_expiry: bool = True,
                   now: int | None = None) -> VerifyResult:
    """구조 검증. 서명 검증은 하지 않는다 (SignatureService.verify_order 사용)."""
    if not isinstance(order, Order):
        return VerifyResult(False, reason="Order is not an object")
    if order.type not in (OrderType.SELL.value, OrderType.BUY.value):
        return VerifyResult(False, reason=f"Invalid order type: {order.type}")
    if not order.id or not isinstance(order.id, str):
        return VerifyResult(False, reason="Missing order id")
    if not isinstance(order.owner, str) or detect_scheme(order.owner) is None:
        return VerifyResult(False, reason="Invalid owner address")
    if not _is_positive_number(order.amount):
        return VerifyResult(False, reason="Invalid amount")
    if not _is_positive_number(order.price_krw):
        return VerifyResult(False, reason="Invalid priceKRW")
    if not _is_positive_number(order.expiry):
        return VerifyResult(False, reason="Invalid expiry")
    if not order.signature:
        return VerifyResult(False, reason="Missing signature")
    if check_expiry and is_order_expired(order, now):
        return VerifyResult(False, reason="Order has expired")
    return VerifyResult(True)


def strip_sensitive_fields(order: Order) -> Order:
    """브로드캐스트 전 계좌 정보 제거 (수락 후에만 공개)"""
    if not order.is_sell:
        return order
    return replace(order, bank_account=None)
