"""마켓 노드 - 저장소/가십/협상 조립, 주문 게시·취소·조회, 만료 GC, 네트워크 전환"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Callable

from swapmesh.exceptions import ExpiredError, NotFoundError, SignatureError, ValidationError
from swapmesh.gossip import OrderGossipNetwork
from swapmesh.models import AcceptRequest, AcceptResponse, Order, OrderType, Trade
from swapmesh.networks import get_network
from swapmesh.orders import create_buy_order, create_sell_order, is_order_expired, validate_order
from swapmesh.signature import SignatureService, Signer

if TYPE_CHECKING:
    from swapmesh.config import Config
    from swapmesh.escrow import EscrowContract
    from swapmesh.negotiation import NegotiationChannel
    from swapmesh.relay_client import RelaySigningClient
    from swapmesh.session_stats import SessionStats
    from swapmesh.store import LocalStore

logger = logging.getLogger(__name__)

GossipFactory = Callable[["Config"], OrderGossipNetwork]


class MarketNode:
    """한 사용자의 P2P 마켓 참여 단위"""

    def __init__(self, config: Config, store: LocalStore,
                 negotiation: NegotiationChannel | None = None,
                 escrow: EscrowContract | None = None,
                 signatures: SignatureService | None = None,
                 stats: SessionStats | None = None,
                 gossip_factory: GossipFactory | None = None,
                 relay: RelaySigningClient | None = None):
        self.config = config
        self.store = store
        self.negotiation = negotiation
        self.escrow = escrow
        self.relay = relay
        self.signatures = signatures or SignatureService()
        self.stats = stats
        self._gossip_factory = gossip_factory or (
            lambda cfg: OrderGossipNetwork(cfg, store, self.signatures, stats)
        )
        self.gossip = self._gossip_factory(config)
        self._gc_task: asyncio.Task | None = None
        self._cancelled = False

        self.on_order: Callable[[Order], None] | None = None
        self.on_cancel: Callable[[str], None] | None = None
        self._wire_gossip()

    @property
    def connected(self) -> bool:
        return self.gossip.connected

    def _wire_gossip(self) -> None:
        self.gossip.on_order = self._on_remote_order
        self.gossip.on_cancel = self._on_remote_cancel

    def _on_remote_order(self, order: Order) -> None:
        if self.on_order:
            self.on_order(order)

    def _on_remote_cancel(self, order_id: str) -> None:
        if self.negotiation:
            self.negotiation.drop_order(order_id)
        if self.on_cancel:
            self.on_cancel(order_id)

    # ── 수명 주기 ──

    async def start(self) -> None:
        self._cancelled = False
        await self.store.open()
        await self.gc()
        self.gossip.start()
        if self.negotiation:
            self.negotiation.start()
        self._gc_task = asyncio.create_task(self._gc_loop(), name="만료GC")
        logger.info(f"[노드] 시작: {self.config.room_namespace}")

    async def stop(self) -> None:
        self._cancelled = True
        if self._gc_task and not self._gc_task.done():
            self._gc_task.cancel()
        await self.gossip.stop()
        if self.negotiation:
            await self.negotiation.stop()
        logger.info("[노드] 종료")

    async def _gc_loop(self) -> None:
        while not self._cancelled:
            await asyncio.sleep(self.config.cleanup_interval)
            if self._cancelled:
                return
            try:
                await self.gc()
            except Exception as e:
                logger.error(f"[노드] 만료 GC 실패: {e}")

    async def gc(self) -> int:
        """만료 주문 삭제 후 사라진 주문의 대기 요청 정리"""
        deleted = await self.store.delete_expired_orders()
        if self.negotiation:
            live = {o.id for o in await self.store.get_all_orders()}
            for req in self.negotiation.pending_requests():
                if req.order_id not in live:
                    self.negotiation.drop_order(req.order_id)
                    self.gossip.forget(req.order_id)
        return deleted

    # ── 주문 ──

    async def post_order(self, order: Order, signer: Signer | None = None) -> Order:
        """서명(필요 시) → 검증 → 로컬 저장 → 브로드캐스트"""
        if not order.signature and signer is not None:
            order = await self.signatures.sign_order(order, signer)
        result = validate_order(order)
        if not result.valid:
            raise ValidationError(result.reason or "Invalid order")
        result = self.signatures.verify_order(order)
        if not result.valid:
            raise SignatureError(result.reason or "Invalid signature")
        await self.gossip.broadcast_order(order)
        logger.info(f"[노드] 주문 게시: {order.id} {order.type} {order.amount} @ {order.price_krw}")
        return order

    async def create_sell_order(self, amount: float, price_krw: int, bank_account: str,
                                signer: Signer) -> Order:
        """설정된 주문 유효기간(order_ttl)으로 매도 주문 생성 후 게시"""
        order = create_sell_order(signer.address, amount, price_krw, bank_account,
                                  expiry_ms=self.config.order_ttl * 1000)
        return await self.post_order(order, signer)

    async def create_buy_order(self, amount: float, price_krw: int, signer: Signer) -> Order:
        order = create_buy_order(signer.address, amount, price_krw,
                                 expiry_ms=self.config.order_ttl * 1000)
        return await self.post_order(order, signer)

    async def cancel_order(self, order_id: str) -> None:
        if await self.store.get_order(order_id) is None:
            raise NotFoundError(f"Order not found: {order_id}")
        await self.gossip.broadcast_cancel(order_id)
        if self.negotiation:
            self.negotiation.drop_order(order_id)
        logger.info(f"[노드] 주문 취소: {order_id}")

    async def sell_orders(self) -> list[Order]:
        """유효한 매도 주문 (낮은 가격 순)"""
        await self.gc()
        orders = await self.store.get_orders_by_type(OrderType.SELL.value)
        return sorted((o for o in orders if not is_order_expired(o)), key=lambda o: o.price_krw)

    async def buy_orders(self) -> list[Order]:
        """유효한 매수 주문 (높은 가격 순)"""
        await self.gc()
        orders = await self.store.get_orders_by_type(OrderType.BUY.value)
        return sorted((o for o in orders if not is_order_expired(o)),
                      key=lambda o: o.price_krw, reverse=True)

    async def my_orders(self, owner: str) -> list[Order]:
        await self.gc()
        return await self.store.get_orders_by_owner(owner)

    async def _live_order(self, order_id: str) -> Order:
        order = await self.store.get_order(order_id)
        if order is None:
            raise NotFoundError(f"Order not found: {order_id}")
        if is_order_expired(order):
            raise ExpiredError(f"Order has expired: {order_id}")
        return order

    # ── 협상 ──

    def _require_negotiation(self) -> NegotiationChannel:
        if self.negotiation is None:
            raise RuntimeError("Negotiation channel is not configured")
        return self.negotiation

    async def request_accept(self, order_id: str, signer: Signer) -> AcceptRequest:
        order = await self._live_order(order_id)
        return await self._require_negotiation().request_accept(order, signer)

    async def respond_accept(self, order_id: str, buyer: str,
                             accepted: bool) -> list[AcceptResponse]:
        """수락 시 계좌 정보는 저장된 원본 주문에서 가져오고, 체결된 주문은 오더북에서 내린다"""
        negotiation = self._require_negotiation()
        order = await self._live_order(order_id)
        bank_account = order.bank_account if accepted else None
        outbox = await negotiation.respond_accept(
            AcceptResponse(order_id, buyer, accepted, bank_account)
        )
        if accepted:
            await self.gossip.broadcast_cancel(order_id)
            self.gossip.forget(order_id)
            logger.info(f"[노드] 체결 주문 내림: {order_id} → {buyer}")
        return outbox

    async def notify_trade_created(self, buyer: str, order_id: str, trade_id: str) -> None:
        await self._require_negotiation().notify_trade_created(buyer, order_id, trade_id)
        if self.escrow is not None:
            await self.track_trade(trade_id)

    async def track_trade(self, trade_id: str) -> Trade | None:
        """온체인 거래를 조회해 로컬 캐시에 반영"""
        if self.escrow is None:
            raise RuntimeError("Escrow contract is not configured")
        trade = await self.escrow.get_trade(trade_id)
        if trade is not None:
            await self.store.put_trade(trade)
        return trade

    # ── 가스 대납 ──

    def _require_relay(self) -> RelaySigningClient:
        if self.relay is None:
            raise RuntimeError("Sponsorship relay is not configured")
        return self.relay

    async def relay_action(self, action: str, params: dict[str, Any], signer: Signer) -> str:
        """deposit/release/dispute/refund 메타 트랜잭션 제출 후 거래 캐시 갱신"""
        tx_hash = await self._require_relay().relay(action, params, signer)
        trade_id = params.get("tradeId")
        if trade_id and self.escrow is not None:
            await self.track_trade(trade_id)
        return tx_hash

    async def request_drip(self, address: str) -> dict[str, Any]:
        return await self._require_relay().request_drip(address)

    # ── 네트워크 전환 ──

    async def switch_network(self, key: str) -> None:
        """현재 룸을 떠나고 새 네트워크 네임스페이스로 재참가"""
        network = get_network(key)
        if key == self.config.network_key:
            return
        await self.gossip.stop()
        self.config.network_key = key
        if network.chain_id is not None:
            self.config.chain_id = network.chain_id
            if self.relay is not None:
                self.relay.chain_id = network.chain_id
        self.gossip = self._gossip_factory(self.config)
        self._wire_gossip()
        if not self._cancelled:
            self.gossip.start()
        logger.info(f"[노드] 네트워크 전환: {network.name} ({self.config.room_namespace})")
