"""에스크로 컨트랙트 조회 - JSON-RPC eth_call (aiohttp) + ABI 인코딩 (eth_abi)

이 모듈은 읽기 전용이다. 상태 변경은 RelaySigningClient를 통해서만 요청한다.
"""

from __future__ import annotations

import asyncio
import itertools
import logging

import aiohttp
from eth_abi import decode, encode
from eth_utils import function_signature_to_4byte_selector, to_checksum_address

from swapmesh.exceptions import NetworkError, ValidationError
from swapmesh.models import Trade, TradeStatus

logger = logging.getLogger(__name__)

TRADE_TUPLE = "(address,uint8,uint64,address,uint64,uint128,uint128)"


def trade_id_bytes(trade_id: str) -> bytes:
    raw = bytes.fromhex(trade_id[2:] if trade_id.startswith("0x") else trade_id)
    if len(raw) != 32:
        raise ValidationError(f"tradeId must be 32 bytes: {trade_id}")
    return raw


def encode_call(signature: str, arg_types: list[str], args: list) -> str:
    """함수 시그니처 + 인자 → eth_call data (0x hex)"""
    selector = function_signature_to_4byte_selector(signature)
    return "0x" + (selector + encode(arg_types, args)).hex()


class EscrowContract:
    """MiniSwapEscrow 조회 클라이언트"""

    _ids = itertools.count(1)

    def __init__(self, rpc_url: str, address: str, timeout: float = 10.0):
        self.rpc_url = rpc_url
        self.address = address
        self.timeout = timeout

    async def _eth_call(self, data: str) -> bytes:
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": "eth_call",
            "params": [{"to": self.address, "data": data}, "latest"],
        }
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.rpc_url, json=payload,
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                ) as resp:
                    if resp.status != 200:
                        raise NetworkError(f"RPC HTTP {resp.status}")
                    body = await resp.json()
        except asyncio.TimeoutError as e:
            raise NetworkError(f"RPC timeout after {self.timeout}s") from e
        except (aiohttp.ClientError, ValueError) as e:
            raise NetworkError(f"RPC request failed: {e}") from e
        if not isinstance(body, dict):
            raise NetworkError(f"RPC malformed response: {type(body).__name__}")
        if body.get("error"):
            err = body["error"]
            message = err.get("message", err) if isinstance(err, dict) else err
            raise NetworkError(f"RPC error: {message}")
        result = body.get("result") or "0x"
        if not isinstance(result, str) or not result.startswith("0x"):
            raise NetworkError(f"RPC malformed result: {result!r}")
        try:
            return bytes.fromhex(result[2:])
        except ValueError as e:
            raise NetworkError(f"RPC malformed result: {e}") from e

    async def get_trade(self, trade_id: str) -> Trade | None:
        """거래 조회. seller가 0 주소면 존재하지 않는 거래"""
        data = encode_call("getTrade(bytes32)", ["bytes32"], [trade_id_bytes(trade_id)])
        raw = await self._eth_call(data)
        seller, status, created_at, buyer, expires_at, amount, fee = decode([TRADE_TUPLE], raw)[0]
        if int(seller, 16) == 0:
            logger.debug(f"[에스크로] 거래 없음: {trade_id}")
            return None
        return Trade(
            trade_id=trade_id,
            seller=to_checksum_address(seller),
            buyer=to_checksum_address(buyer),
            status=TradeStatus(status),
            created_at=created_at,
            expires_at=expires_at,
            amount=amount,
            fee_amount=fee,
        )

    async def calc_total(self, amount: int) -> tuple[int, int]:
        """(판매자가 잠글 총액, 수수료)"""
        raw = await self._eth_call(encode_call("calcTotal(uint256)", ["uint256"], [amount]))
        total, fee = decode(["uint256", "uint256"], raw)
        return total, fee

    async def is_refundable(self, trade_id: str) -> bool:
        raw = await self._eth_call(
            encode_call("isRefundable(bytes32)", ["bytes32"], [trade_id_bytes(trade_id)])
        )
        return bool(decode(["bool"], raw)[0])

    async def meta_nonces(self, owner: str) -> int:
        """메타 트랜잭션 nonce"""
        raw = await self._eth_call(
            encode_call("metaNonces(address)", ["address"], [to_checksum_address(owner)])
        )
        return decode(["uint256"], raw)[0]
