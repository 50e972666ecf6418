"""가스 대납 릴레이 클라이언트 - EIP-712 메타 트랜잭션 서명 후 릴레이 API 제출

사용자는 네이티브 가스 코인 없이 deposit/release/dispute/refund 를 요청할 수 있다.
실패는 SponsorshipServiceError로 올리고 자동 재시도하지 않는다.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any

import aiohttp

from swapmesh.escrow import trade_id_bytes
from swapmesh.exceptions import SponsorshipServiceError, ValidationError
from swapmesh.models import RelayEnvelope

if TYPE_CHECKING:
    from swapmesh.escrow import EscrowContract
    from swapmesh.signature import Signer

logger = logging.getLogger(__name__)

DEADLINE_WINDOW = 3600   # 1시간 유효

_ACTOR_FIELDS = [
    {"name": "actor", "type": "address"},
    {"name": "tradeId", "type": "bytes32"},
    {"name": "nonce", "type": "uint256"},
    {"name": "deadline", "type": "uint256"},
]

PRIMARY_TYPES: dict[str, tuple[str, list[dict[str, str]]]] = {
    "deposit": ("DepositFor", [
        {"name": "seller", "type": "address"},
        {"name": "buyer", "type": "address"},
        {"name": "amount", "type": "uint256"},
        {"name": "nonce", "type": "uint256"},
        {"name": "deadline", "type": "uint256"},
    ]),
    "release": ("ReleaseFor", _ACTOR_FIELDS),
    "dispute": ("DisputeFor", _ACTOR_FIELDS),
    "refund": ("RefundFor", _ACTOR_FIELDS),
}


def build_domain(escrow_address: str, chain_id: int) -> dict[str, Any]:
    return {
        "name": "MiniSwapEscrow",
        "version": "1",
        "chainId": chain_id,
        "verifyingContract": escrow_address,
    }


def build_typed_data(action: str, sender: str, params: dict[str, Any], nonce: int,
                     deadline: int) -> tuple[dict[str, list], dict[str, Any]]:
    """(types, message) 생성. 알 수 없는 action이면 ValidationError"""
    if action not in PRIMARY_TYPES:
        raise ValidationError(f"Unknown relay action: {action}")
    primary, fields = PRIMARY_TYPES[action]
    if action == "deposit":
        if "buyer" not in params or "amount" not in params:
            raise ValidationError("deposit requires buyer and amount")
        message = {
            "seller": sender,
            "buyer": params["buyer"],
            "amount": int(params["amount"]),
            "nonce": nonce,
            "deadline": deadline,
        }
    else:
        if "tradeId" not in params:
            raise ValidationError(f"{action} requires tradeId")
        message = {
            "actor": sender,
            "tradeId": trade_id_bytes(params["tradeId"]),
            "nonce": nonce,
            "deadline": deadline,
        }
    return {primary: fields}, message


class RelaySigningClient:
    """에스크로 액션을 서명해 가스 대납 서비스에 제출"""

    def __init__(self, base_url: str, escrow: EscrowContract, chain_id: int,
                 deadline_window: int = DEADLINE_WINDOW, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.escrow = escrow
        self.chain_id = chain_id
        self.deadline_window = deadline_window
        self.timeout = timeout

    async def build_envelope(self, action: str, params: dict[str, Any],
                             signer: Signer) -> RelayEnvelope:
        if action not in PRIMARY_TYPES:
            raise ValidationError(f"Unknown relay action: {action}")
        sender = signer.address
        nonce = await self.escrow.meta_nonces(sender)
        deadline = int(time.time()) + self.deadline_window
        types, message = build_typed_data(action, sender, params, nonce, deadline)
        domain = build_domain(self.escrow.address, self.chain_id)
        # 사용자가 거절하면 SignatureRejectedError가 그대로 전파된다
        signature = await signer.sign_typed_data(domain, types, message)

        wire_params = {"from": sender, "escrowAddress": self.escrow.address, **params}
        if "amount" in params:
            wire_params["amount"] = str(params["amount"])
        return RelayEnvelope(action, wire_params, nonce, deadline, signature)

    async def relay(self, action: str, params: dict[str, Any], signer: Signer) -> str:
        """메타 트랜잭션 제출 후 txHash 반환"""
        envelope = await self.build_envelope(action, params, signer)
        data = await self._post("/api/relay", envelope.to_dict(), "Relay")
        tx_hash = data.get("txHash")
        if not tx_hash:
            raise SponsorshipServiceError("Relay response missing txHash")
        logger.info(f"[릴레이] {action} 제출: {tx_hash}")
        return tx_hash

    async def request_drip(self, address: str) -> dict[str, Any]:
        """첫 사용자용 소량 가스 코인 지급 요청 → {txHash, amount}"""
        data = await self._post("/api/drip", {"address": address}, "Drip")
        logger.info(f"[릴레이] drip {address}: {data.get('txHash')}")
        return data

    async def _post(self, path: str, payload: dict[str, Any], label: str) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    url, json=payload, timeout=aiohttp.ClientTimeout(total=self.timeout)
                ) as resp:
                    try:
                        data = await resp.json(content_type=None)
                    except ValueError:
                        data = {}
                    if resp.status >= 300:
                        message = data.get("error") if isinstance(data, dict) else None
                        raise SponsorshipServiceError(
                            message or f"{label} failed", status=resp.status
                        )
        except aiohttp.ClientError as e:
            raise SponsorshipServiceError(f"{label} request failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise SponsorshipServiceError(f"{label} request timed out") from e
        if not isinstance(data, dict):
            raise SponsorshipServiceError(f"{label} returned malformed response")
        if data.get("error"):
            raise SponsorshipServiceError(str(data["error"]))
        return data
