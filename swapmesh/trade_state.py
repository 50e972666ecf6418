"""거래 UX 상태 머신 - 온체인 상태 + 채팅 시그널 → 세분화된 진행 단계

LOCKED 상태 안에서는 시그널 메시지로 하위 단계를 구분한다.
  buyer_sent       : (판매자 시점) 상대 시그널 또는 (구매자 시점) 내 시그널
  seller_confirmed : (판매자 시점) 내 시그널 또는 (구매자 시점) 상대 시그널
  둘 다 → CONFIRMING, buyer_sent만 → KRW_SENT, 그 외 → ESCROW_LOCKED
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from swapmesh.models import ChatMessage, TradeStatus


class TradeState(str, Enum):
    AWAITING_ESCROW = "AWAITING_ESCROW"
    ESCROW_LOCKED = "ESCROW_LOCKED"
    KRW_SENT = "KRW_SENT"
    CONFIRMING = "CONFIRMING"
    COMPLETED = "COMPLETED"
    REFUNDED = "REFUNDED"
    DISPUTED = "DISPUTED"


class Role(str, Enum):
    SELLER = "seller"
    BUYER = "buyer"


_REVIEW = "운영자가 검토 중입니다. 최대 30일 소요됩니다."

STATE_META: dict[TradeState, dict] = {
    TradeState.AWAITING_ESCROW: {
        "step_index": 0, "label": "에스크로 생성", "badge_variant": "secondary",
        "guidance": {Role.SELLER: None, Role.BUYER: None},
    },
    TradeState.ESCROW_LOCKED: {
        "step_index": 1, "label": "KRW 송금 대기", "badge_variant": "warning",
        "guidance": {
            Role.SELLER: "구매자가 KRW를 보내는 중입니다. 계좌를 확인하세요.",
            Role.BUYER: "판매자의 계좌로 KRW를 송금해주세요.",
        },
    },
    TradeState.KRW_SENT: {
        "step_index": 2, "label": "KRW 송금 완료", "badge_variant": "warning",
        "guidance": {
            Role.SELLER: "입금을 확인하고 USDT를 릴리즈하세요.",
            Role.BUYER: "판매자가 입금을 확인 중입니다.",
        },
    },
    TradeState.CONFIRMING: {
        "step_index": 3, "label": "입금 확인 중", "badge_variant": "default",
        "guidance": {
            Role.SELLER: "입금 확인 후 릴리즈 버튼을 눌러주세요.",
            Role.BUYER: "판매자가 입금을 확인하고 있습니다.",
        },
    },
    TradeState.COMPLETED: {
        "step_index": 4, "label": "거래 완료", "badge_variant": "success",
        "guidance": {Role.SELLER: None, Role.BUYER: None},
    },
    TradeState.REFUNDED: {
        "step_index": 4, "label": "환불 완료", "badge_variant": "info",
        "guidance": {Role.SELLER: None, Role.BUYER: None},
    },
    TradeState.DISPUTED: {
        "step_index": 2, "label": "분쟁 중", "badge_variant": "destructive",
        "guidance": {Role.SELLER: _REVIEW, Role.BUYER: _REVIEW},
    },
}


@dataclass(frozen=True)
class TradeStateView:
    state: TradeState
    step_index: int
    label: str
    guidance: str | None
    badge_variant: str


def _signals(messages: Iterable[ChatMessage]) -> tuple[bool, bool]:
    """(내 시그널 존재, 상대 시그널 존재)"""
    mine = theirs = False
    for m in messages:
        if m.type != "signal":
            continue
        if m.from_me:
            mine = True
        else:
            theirs = True
    return mine, theirs


def resolve_trade_state(status: TradeStatus | int | None, role: Role | str,
                        messages: Iterable[ChatMessage] = (),
                        trade_exists: bool = True) -> TradeState:
    """온체인 상태와 시그널 기록으로 UX 상태 결정 (순수 함수)"""
    if not trade_exists or status is None:
        return TradeState.AWAITING_ESCROW
    role = Role(role)
    try:
        status = TradeStatus(int(status))
    except ValueError:
        return TradeState.AWAITING_ESCROW

    if status == TradeStatus.RELEASED:
        return TradeState.COMPLETED
    if status == TradeStatus.REFUNDED:
        return TradeState.REFUNDED
    if status == TradeStatus.DISPUTED:
        return TradeState.DISPUTED

    mine, theirs = _signals(messages)
    if role == Role.SELLER:
        buyer_sent, seller_confirmed = theirs, mine
    else:
        buyer_sent, seller_confirmed = mine, theirs
    if buyer_sent and seller_confirmed:
        return TradeState.CONFIRMING
    if buyer_sent:
        return TradeState.KRW_SENT
    return TradeState.ESCROW_LOCKED


def describe_trade_state(status: TradeStatus | int | None, role: Role | str,
                         messages: Iterable[ChatMessage] = (),
                         trade_exists: bool = True) -> TradeStateView:
    state = resolve_trade_state(status, role, list(messages), trade_exists)
    meta = STATE_META[state]
    return TradeStateView(
        state=state,
        step_index=meta["step_index"],
        label=meta["label"],
        guidance=meta["guidance"][Role(role)],
        badge_variant=meta["badge_variant"],
    )
