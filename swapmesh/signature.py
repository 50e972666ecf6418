"""주문/협상 메시지 서명 및 검증 모듈 - EVM(EIP-191) / TRON(signMessageV2)

두 체계는 주소 형식으로 자동 판별한다.
  - EVM : 0x + 40 hex. 주문 필드를 solidity packed keccak256 으로 해시한 뒤
          32바이트 다이제스트에 personal_sign.
  - TRON: T로 시작하는 base58check 주소. 도메인 문자열 메시지에
          "\\x19TRON Signed Message:\\n<len>" 접두사를 붙여 서명.

주문 서명과 수락 요청 서명은 서로 다른 도메인을 사용하므로 교차 재사용이 불가능하다.
검증은 항상 실패 시 닫힌 쪽(valid=False)으로 끝나며 호출자에게 예외를 던지지 않는다.
"""

from __future__ import annotations

import re
from dataclasses import replace
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

import base58
from eth_abi.packed import encode_packed
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_keys import keys
from eth_utils import keccak, to_checksum_address

from swapmesh.exceptions import SignatureError
from swapmesh.models import VerifyResult

if TYPE_CHECKING:
    from swapmesh.models import Order

TRON_MESSAGE_PREFIX = b"\x19TRON Signed Message:\n"
TRON_ADDRESS_PREFIX = b"\x41"
AMOUNT_SCALE = 10 ** 6               # USDT 6 decimals

_EVM_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


class Scheme(str, Enum):
    EVM = "evm"
    TRON = "tron"


# ── 주소 판별 ──

def is_tron_address(address: str) -> bool:
    if not isinstance(address, str) or not address.startswith("T") or len(address) != 34:
        return False
    try:
        raw = base58.b58decode_check(address)
    except ValueError:
        return False
    return len(raw) == 21 and raw[:1] == TRON_ADDRESS_PREFIX


def detect_scheme(address: str) -> Scheme | None:
    """주소 형식으로 서명 체계 판별. 어느 쪽도 아니면 None"""
    if not isinstance(address, str):
        return None
    if _EVM_ADDRESS_RE.match(address):
        return Scheme.EVM
    if is_tron_address(address):
        return Scheme.TRON
    return None


def tron_address_from_evm(evm_address: str) -> str:
    """20바이트 계정 주소 → 0x41 접두 base58check TRON 주소"""
    raw = bytes.fromhex(evm_address[2:]) if evm_address.startswith("0x") else bytes.fromhex(evm_address)
    return base58.b58encode_check(TRON_ADDRESS_PREFIX + raw).decode()


def same_address(a: str, b: str) -> bool:
    """체계별 주소 비교 (EVM은 대소문자 무시)"""
    if not a or not b:
        return False
    if detect_scheme(a) == Scheme.EVM:
        return a.lower() == b.lower()
    return a == b


# ── 서명 대상 메시지 ──

def scale_amount(amount: float) -> int:
    """round(amount * 1e6), 0.5는 올림 (서명 대상 정수)"""
    return int((Decimal(str(amount)) * AMOUNT_SCALE).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def scale_price(price_krw: float) -> int:
    return int(Decimal(str(price_krw)).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def _scaled_fields(order: Order) -> tuple[int, int]:
    return scale_amount(order.amount), scale_price(order.price_krw)


def build_order_message(order: Order) -> str:
    """TRON 주문 메시지: miniswap:order:<id>:<amt>:<price>:<expiry>"""
    amount_scaled, price_scaled = _scaled_fields(order)
    return f"miniswap:order:{order.id}:{amount_scaled}:{price_scaled}:{order.expiry}"


def build_accept_message(order_id: str, address: str) -> str:
    return f"miniswap:accept:{order_id}:{address}"


def build_order_digest(order: Order) -> bytes:
    """EVM 주문 다이제스트: keccak256(packed(string, uint256, uint256, uint256))"""
    amount_scaled, price_scaled = _scaled_fields(order)
    return keccak(encode_packed(
        ["string", "uint256", "uint256", "uint256"],
        [order.id, amount_scaled, price_scaled, int(order.expiry)],
    ))


def build_accept_digest(order_id: str, address: str) -> bytes:
    return keccak(encode_packed(
        ["string", "string", "address"],
        ["accept", order_id, to_checksum_address(address)],
    ))


def tron_message_hash(message: str | bytes) -> bytes:
    data = message.encode("utf-8") if isinstance(message, str) else message
    return keccak(TRON_MESSAGE_PREFIX + str(len(data)).encode() + data)


def _order_payload(scheme: Scheme, order: Order) -> bytes:
    if scheme == Scheme.EVM:
        return build_order_digest(order)
    return build_order_message(order).encode("utf-8")


def _accept_payload(scheme: Scheme, order_id: str, address: str) -> bytes:
    # TRON 주소는 체크섬 변환 대상이 아니므로 체계별로 하나만 만든다
    if scheme == Scheme.EVM:
        return build_accept_digest(order_id, address)
    return build_accept_message(order_id, address).encode("utf-8")


# ── 서명자 ──

class Signer(Protocol):
    """지갑 추상화. 사용자가 거절하면 SignatureRejectedError를 던진다."""

    @property
    def address(self) -> str: ...

    @property
    def scheme(self) -> Scheme: ...

    async def sign_message(self, message: bytes) -> str: ...

    async def sign_typed_data(self, domain: dict[str, Any], types: dict[str, Any],
                              message: dict[str, Any]) -> str: ...


class LocalSigner:
    """개인키 기반 서명자 (테스트/헤드리스 노드용)"""

    def __init__(self, private_key: str | bytes, scheme: Scheme = Scheme.EVM):
        self._account = Account.from_key(private_key)
        self._key = keys.PrivateKey(bytes(self._account.key))
        self._scheme = scheme

    @property
    def scheme(self) -> Scheme:
        return self._scheme

    @property
    def address(self) -> str:
        if self._scheme == Scheme.TRON:
            return tron_address_from_evm(self._account.address)
        return self._account.address

    async def sign_message(self, message: bytes) -> str:
        if self._scheme == Scheme.TRON:
            sig = self._key.sign_msg_hash(tron_message_hash(message))
            return _vrs_to_hex(sig.r, sig.s, sig.v + 27)
        signed = self._account.sign_message(encode_defunct(primitive=message))
        return "0x" + bytes(signed.signature).hex()

    async def sign_typed_data(self, domain: dict[str, Any], types: dict[str, Any],
                              message: dict[str, Any]) -> str:
        if self._scheme != Scheme.EVM:
            raise SignatureError("Typed data signing requires an EVM signer")
        signed = Account.sign_typed_data(self._account.key, domain, types, message)
        return "0x" + bytes(signed.signature).hex()


def _vrs_to_hex(r: int, s: int, v: int) -> str:
    return "0x" + (r.to_bytes(32, "big") + s.to_bytes(32, "big") + bytes([v])).hex()


def _recover_tron(message: str, signature: str) -> str:
    raw = bytes.fromhex(signature[2:] if signature.startswith("0x") else signature)
    if len(raw) != 65:
        raise ValueError(f"Invalid signature length: {len(raw)}")
    v = raw[64]
    if v >= 27:
        v -= 27
    sig = keys.Signature(raw[:64] + bytes([v]))
    public_key = sig.recover_public_key_from_msg_hash(tron_message_hash(message))
    return tron_address_from_evm(public_key.to_checksum_address())


def _recover_evm(digest: bytes, signature: str) -> str:
    return Account.recover_message(encode_defunct(primitive=digest), signature=signature)


class SignatureService:
    """주문/수락 요청 서명 및 검증"""

    async def sign_order(self, order: Order, signer: Signer) -> Order:
        """서명된 주문 사본 반환"""
        scheme = detect_scheme(order.owner)
        if scheme is None:
            raise SignatureError(f"Unsupported owner address: {order.owner}")
        if not same_address(signer.address, order.owner):
            raise SignatureError("Signer address does not match order owner")
        payload = _order_payload(scheme, order)
        signature = await signer.sign_message(payload)
        return replace(order, signature=signature)

    async def sign_accept_request(self, order_id: str, address: str, signer: Signer) -> str:
        scheme = detect_scheme(address)
        if scheme is None:
            raise SignatureError(f"Unsupported requester address: {address}")
        payload = _accept_payload(scheme, order_id, address)
        return await signer.sign_message(payload)

    def verify_order(self, order: Order) -> VerifyResult:
        """주문 서명이 선언된 소유자와 일치하는지 검증"""
        if not getattr(order, "signature", None):
            return VerifyResult(False, reason="No signature present")
        try:
            scheme = detect_scheme(order.owner)
            if scheme is None:
                return VerifyResult(False, reason=f"Unsupported owner address: {order.owner}")
            if scheme == Scheme.TRON:
                recovered = _recover_tron(build_order_message(order), order.signature)
            else:
                recovered = _recover_evm(build_order_digest(order), order.signature)
        except Exception as e:
            return VerifyResult(False, reason=f"Verification error: {e}")

        if not same_address(recovered, order.owner):
            return VerifyResult(
                False, recovered=recovered,
                reason=f"Signer mismatch: expected {order.owner}, got {recovered}",
            )
        return VerifyResult(True, recovered=recovered)

    def verify_accept_request(self, order_id: str, address: str, signature: str) -> VerifyResult:
        if not signature:
            return VerifyResult(False, reason="No signature present")
        try:
            scheme = detect_scheme(address)
            if scheme is None:
                return VerifyResult(False, reason=f"Unsupported requester address: {address}")
            if scheme == Scheme.TRON:
                recovered = _recover_tron(build_accept_message(order_id, address), signature)
            else:
                recovered = _recover_evm(build_accept_digest(order_id, address), signature)
        except Exception as e:
            return VerifyResult(False, reason=f"Verification error: {e}")

        if not same_address(recovered, address):
            return VerifyResult(False, recovered=recovered,
                                reason="Signer does not match requester address")
        return VerifyResult(True, recovered=recovered)
