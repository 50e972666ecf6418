"""데이터 모델 정의 - 주문, 협상 메시지, 온체인 거래 미러, 릴레이 봉투"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any


def _text(value: Any) -> str:
    """문자열이 아닌 와이어 값은 빈 문자열로 취급"""
    return value if isinstance(value, str) else ""


def _int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return 0


# ── 주문 관련 ──

class OrderType(str, Enum):
    SELL = "SELL"
    BUY = "BUY"


@dataclass
class Order:
    """서명된 매수/매도 주문"""
    id: str
    type: str                    # SELL / BUY
    owner: str                   # SELL이면 seller, BUY이면 buyer
    amount: float                # USDT 수량
    price_krw: int               # 1 USDT당 KRW
    expiry: int                  # 만료 시각 (ms)
    signature: str = ""
    created_at: int = 0          # 생성 시각 (ms)
    bank_account: str | None = None   # SELL 전용, 수락 후에만 공개
    local: bool = False          # 로컬에서 생성되어 아직 에코를 받지 못한 주문

    @property
    def is_sell(self) -> bool:
        return self.type == OrderType.SELL.value

    def to_dict(self) -> dict[str, Any]:
        """와이어 포맷 (camelCase, seller/buyer 키)"""
        owner_key = "seller" if self.is_sell else "buyer"
        data: dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            owner_key: self.owner,
            "amount": self.amount,
            "priceKRW": self.price_krw,
            "expiry": self.expiry,
            "signature": self.signature,
            "createdAt": self.created_at,
        }
        if self.is_sell:
            data["bankAccount"] = self.bank_account or ""
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Order":
        order_type = _text(data.get("type"))
        owner_key = "seller" if order_type == OrderType.SELL.value else "buyer"
        owner = _text(data.get(owner_key)) or _text(data.get("owner"))
        return cls(
            id=_text(data.get("id")),
            type=order_type,
            owner=owner,
            amount=data.get("amount", 0),
            price_krw=data.get("priceKRW", 0),
            expiry=data.get("expiry", 0),
            signature=_text(data.get("signature")),
            created_at=_int(data.get("createdAt")),
            bank_account=_text(data.get("bankAccount")) or None,
        )


# ── 협상 관련 ──

@dataclass
class AcceptRequest:
    """구매 희망자의 수락 요청 (서명으로 의사를 증명)"""
    order_id: str
    buyer: str
    timestamp: int
    signature: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "orderId": self.order_id,
            "buyer": self.buyer,
            "timestamp": self.timestamp,
            "signature": self.signature,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AcceptRequest":
        return cls(
            order_id=_text(data.get("orderId")),
            buyer=_text(data.get("buyer")) or _text(data.get("requester")),
            timestamp=_int(data.get("timestamp")),
            signature=_text(data.get("signature")),
        )


@dataclass
class AcceptResponse:
    """판매자의 수락/거절 응답. bank_account는 accepted=True일 때만"""
    order_id: str
    buyer: str
    accepted: bool
    bank_account: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "orderId": self.order_id,
            "buyer": self.buyer,
            "accepted": self.accepted,
        }
        if self.accepted and self.bank_account:
            data["bankAccount"] = self.bank_account
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AcceptResponse":
        accepted = data.get("accepted") is True
        return cls(
            order_id=_text(data.get("orderId")),
            buyer=_text(data.get("buyer")) or _text(data.get("requester")),
            accepted=accepted,
            bank_account=(_text(data.get("bankAccount")) or None) if accepted else None,
        )


@dataclass
class TradeNotification:
    """협상 결과를 온체인 거래 ID와 연결"""
    order_id: str
    trade_id: str
    buyer: str

    def to_dict(self) -> dict[str, Any]:
        return {"orderId": self.order_id, "tradeId": self.trade_id, "buyer": self.buyer}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TradeNotification":
        return cls(
            order_id=_text(data.get("orderId")),
            trade_id=_text(data.get("tradeId")),
            buyer=_text(data.get("buyer")),
        )


class EnvelopeType(str, Enum):
    ACCEPT_REQ = "miniswap:accept-req"
    ACCEPT_RES = "miniswap:accept-res"
    TRADE_CREATED = "miniswap:trade-created"

    @classmethod
    def parse(cls, raw: str) -> "EnvelopeType | None":
        """접두사 없는 별칭(accept-req 등)도 허용"""
        for member in cls:
            if raw == member.value or raw == member.value.split(":", 1)[1]:
                return member
        return None


@dataclass
class NegotiationEnvelope:
    """협상 채널 와이어 봉투 {type, payload, timestamp}"""
    type: EnvelopeType
    payload: dict[str, Any]
    timestamp: int

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "payload": self.payload, "timestamp": self.timestamp}


# ── 거래 관련 ──

class TradeStatus(IntEnum):
    """에스크로 컨트랙트 상태 enum"""
    LOCKED = 0
    RELEASED = 1
    DISPUTED = 2
    REFUNDED = 3


@dataclass
class Trade:
    """온체인 거래 미러 (읽기 전용)"""
    trade_id: str
    seller: str
    buyer: str
    status: TradeStatus
    created_at: int              # 컨트랙트 기록 시각 (s)
    expires_at: int
    amount: int                  # USDT 최소 단위 (6 decimals)
    fee_amount: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "tradeId": self.trade_id,
            "seller": self.seller,
            "buyer": self.buyer,
            "status": int(self.status),
            "createdAt": self.created_at,
            "expiresAt": self.expires_at,
            "amount": str(self.amount),
            "feeAmount": str(self.fee_amount),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Trade":
        return cls(
            trade_id=data["tradeId"],
            seller=data.get("seller", ""),
            buyer=data.get("buyer", ""),
            status=TradeStatus(int(data.get("status", 0))),
            created_at=int(data.get("createdAt", 0)),
            expires_at=int(data.get("expiresAt", 0)),
            amount=int(data.get("amount", 0)),
            fee_amount=int(data.get("feeAmount", 0)),
        )


@dataclass
class ChatMessage:
    """거래방 채팅/시그널 항목"""
    id: str
    trade_id: str
    type: str                    # text / signal
    text: str
    sender: str
    timestamp: int
    from_me: bool = False
    local: bool = False          # 낙관적 로컬 항목 (에코 수신 전)

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tradeId": self.trade_id,
            "type": self.type,
            "text": self.text,
            "sender": self.sender,
            "timestamp": self.timestamp,
        }


# ── 가스 대납 관련 ──

@dataclass
class RelayEnvelope:
    """가스 대납 서비스로 제출되는 메타 트랜잭션"""
    action: str
    params: dict[str, Any]
    nonce: int
    deadline: int
    signature: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "params": self.params,
            "nonce": str(self.nonce),
            "deadline": str(self.deadline),
            "signature": self.signature,
        }


# ── 서명 검증 결과 ──

@dataclass
class VerifyResult:
    valid: bool
    recovered: str | None = None
    reason: str | None = None


@dataclass
class Message:
    """메일박스 전송 단위"""
    id: str
    sender: str
    recipient: str
    content: str
    sent_at: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        return cls(
            id=str(data.get("id", "")),
            sender=_text(data.get("from")),
            recipient=_text(data.get("to")),
            content=_text(data.get("content")),
            sent_at=_int(data.get("sentAt")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "from": self.sender,
            "to": self.recipient,
            "content": self.content,
            "sentAt": self.sent_at,
        }


@dataclass
class RelayProbe:
    """랑데부 릴레이 헬스 체크 결과"""
    url: str
    alive: bool
    latency: float = 0.0
    error: str | None = field(default=None)
