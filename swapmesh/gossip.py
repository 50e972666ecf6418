"""주문 가십 네트워크 - 랑데부 룸 참가, 주문 수집/검증/저장, 신규 피어 동기화, 재연결"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Callable

from swapmesh.backoff import ReconnectBackoff, Supervisor, run_until_first_failure
from swapmesh.exceptions import NetworkError
from swapmesh.models import Order, OrderType
from swapmesh.orders import is_order_expired, strip_sensitive_fields, validate_order
from swapmesh.rendezvous import RendezvousRoom, select_relays
from swapmesh.signature import SignatureService

if TYPE_CHECKING:
    from swapmesh.config import Config
    from swapmesh.session_stats import SessionStats
    from swapmesh.store import LocalStore

logger = logging.getLogger(__name__)

ROOM_NAME = "orderbook"

SELL_CHANNEL = "sell-orders"
BUY_CHANNEL = "buy-orders"
CANCEL_CHANNEL = "cancel-order"
SYNC_CHANNEL = "sync-req"

_CHANNEL_TYPES = {SELL_CHANNEL: OrderType.SELL.value, BUY_CHANNEL: OrderType.BUY.value}

RoomFactory = Callable[[list[str], str], RendezvousRoom]


def channel_for(order: Order) -> str:
    return SELL_CHANNEL if order.is_sell else BUY_CHANNEL


class OrderGossipNetwork:
    """체인별 오더북 룸에서 서명된 주문을 주고받는 가십 레이어

    수신 파이프라인: ID 중복 제거 → 구조 검증 → 서명 검증 → 만료 확인.
    어느 단계든 실패하면 메시지만 버리고 피어 연결은 유지한다.
    """

    def __init__(self, config: Config, store: LocalStore,
                 signatures: SignatureService | None = None,
                 stats: SessionStats | None = None,
                 room_factory: RoomFactory | None = None):
        self.config = config
        self.store = store
        self.signatures = signatures or SignatureService()
        self.stats = stats
        self._room_factory = room_factory or (
            lambda urls, namespace: RendezvousRoom(urls, namespace, ROOM_NAME)
        )
        self.backoff = ReconnectBackoff(
            config.reconnect_base, config.reconnect_max, config.reconnect_factor
        )
        self._supervisor = Supervisor("가십", self._session, self.backoff,
                                      on_failure=self._record_reconnect)
        self._room: RendezvousRoom | None = None
        self._relays: list[str] | None = None
        self._known_ids: set[str] = set()
        self._all_peers_left = asyncio.Event()
        self._connected = False
        self._cancelled = False

        self.on_order: Callable[[Order], None] | None = None
        self.on_cancel: Callable[[str], None] | None = None
        self.on_connection_change: Callable[[bool], None] | None = None

    @property
    def connected(self) -> bool:
        """피어가 한 명 이상 있으면 True"""
        return self._connected

    @property
    def namespace(self) -> str:
        return self.config.room_namespace

    def start(self) -> None:
        self._cancelled = False
        self._supervisor.start()
        logger.info(f"[가십] 시작: {self.namespace}")

    async def stop(self) -> None:
        """취소 플래그 → 태스크 취소 → 룸 퇴장 순서로 정리"""
        self._cancelled = True
        self._supervisor.stop()
        room, self._room = self._room, None
        self._set_connected(False)
        if room is not None:
            await room.leave()
        await self._supervisor.wait_closed()
        logger.info(f"[가십] 종료: {self.namespace}")

    # ── 세션 ──

    async def _session(self) -> None:
        if self._relays is None:
            self._relays = await select_relays(
                self.config.relay_urls, self.config.min_relays, self.config.relay_probe_timeout
            )
        if self._cancelled:
            return
        room = self._room_factory(self._relays, self.namespace)
        room.on_message = self._on_message
        room.on_peer_join = self._on_peer_join
        room.on_peer_leave = self._on_peer_leave
        self._all_peers_left.clear()
        await room.connect()
        if self._cancelled:
            await room.leave()
            return
        self._room = room
        self.backoff.reset()
        logger.info(f"[가십] 룸 연결 성공 ({len(self._relays)}개 릴레이)")
        try:
            await run_until_first_failure(room.run(), self._watch_peers())
        finally:
            if self._room is room:
                self._room = None
                self._set_connected(False)
                await room.leave()

    async def _watch_peers(self) -> None:
        await self._all_peers_left.wait()
        raise NetworkError("All peers left the room")

    def _record_reconnect(self, reason: str) -> None:
        if self.stats:
            self.stats.record_reconnect("gossip", reason)

    def _set_connected(self, value: bool) -> None:
        if value == self._connected:
            return
        self._connected = value
        if self.on_connection_change:
            self.on_connection_change(value)

    # ── 피어 이벤트 ──

    async def _on_peer_join(self, peer: str) -> None:
        if self._cancelled or self._room is None:
            return
        logger.info(f"[가십] 피어 참가: {peer[:8]}")
        self.backoff.reset()
        self._set_connected(True)
        if self.stats:
            self.stats.record_peer_join()
        await self._room.send(SYNC_CHANNEL, {}, to=peer)

    async def _on_peer_leave(self, peer: str) -> None:
        if self._cancelled or self._room is None:
            return
        logger.info(f"[가십] 피어 퇴장: {peer[:8]}")
        if self.stats:
            self.stats.record_peer_leave()
        if not self._room.peers:
            self._set_connected(False)
            self._all_peers_left.set()

    # ── 메시지 처리 ──

    async def _on_message(self, action: str, data: Any, peer: str) -> None:
        if self._cancelled:
            return
        if action in _CHANNEL_TYPES:
            await self.ingest(action, data, peer)
        elif action == CANCEL_CHANNEL:
            await self._handle_cancel(data, peer)
        elif action == SYNC_CHANNEL:
            await self._handle_sync_request(peer)
        else:
            logger.debug(f"[가십] 알 수 없는 채널 무시: {action}")

    def _drop(self, reason: str, peer: str, order_id: str | None = None) -> None:
        logger.warning(f"[가십] 주문 폐기 ({reason}) peer={peer[:8]} id={order_id}")
        if self.stats:
            self.stats.record_drop("gossip", reason, peer, order_id)

    async def ingest(self, channel: str, data: Any, peer: str = "") -> Order | None:
        """수신 주문 처리. 채택되면 Order, 아니면 None"""
        if not isinstance(data, dict):
            self._drop("Order is not an object", peer)
            return None
        order_id = data.get("id")
        if not isinstance(order_id, str) or not order_id:
            self._drop("Missing order id", peer)
            return None
        if order_id in self._known_ids:
            return None
        order = Order.from_dict(data)
        if order.type != _CHANNEL_TYPES.get(channel):
            self._drop(f"Type {order.type} on channel {channel}", peer, order.id)
            return None

        result = validate_order(order, check_expiry=False)
        if not result.valid:
            self._drop(result.reason or "invalid", peer, order.id)
            return None
        result = self.signatures.verify_order(order)
        if not result.valid:
            self._drop(result.reason or "bad signature", peer, order.id)
            return None
        if is_order_expired(order):
            self._drop("Order has expired", peer, order.id)
            return None

        self._known_ids.add(order.id)
        await self.store.put_order(order)
        if self.stats:
            self.stats.record_accepted("gossip")
        if self.on_order:
            self.on_order(order)
        return order

    async def _handle_cancel(self, data: Any, peer: str) -> None:
        # 취소 메시지는 서명 검증 없이 처리 (권고 성격)
        order_id = data.get("orderId") if isinstance(data, dict) else None
        if not isinstance(order_id, str) or not order_id:
            self._drop("Malformed cancel", peer)
            return
        self._known_ids.discard(order_id)
        await self.store.delete_order(order_id)
        logger.info(f"[가십] 주문 취소 수신: {order_id}")
        if self.on_cancel:
            self.on_cancel(order_id)

    async def _handle_sync_request(self, peer: str) -> None:
        room = self._room
        if room is None:
            return
        await self.store.delete_expired_orders()
        orders = await self.store.get_all_orders()
        sent = 0
        for order in orders:
            if self._cancelled or self._room is not room:
                return
            if is_order_expired(order):
                continue
            await room.send(channel_for(order), strip_sensitive_fields(order).to_dict(), to=peer)
            sent += 1
        logger.info(f"[가십] 동기화 응답 {sent}건 → {peer[:8]}")

    # ── 송신 ──

    async def broadcast_order(self, order: Order) -> None:
        """로컬 저장(원본) 후 계좌 정보를 제거한 사본을 브로드캐스트"""
        self._known_ids.add(order.id)
        await self.store.put_order(order)
        if self._room is None:
            logger.info(f"[가십] 오프라인, 로컬 저장만: {order.id}")
            return
        await self._room.send(channel_for(order), strip_sensitive_fields(order).to_dict())

    async def broadcast_cancel(self, order_id: str) -> None:
        self._known_ids.discard(order_id)
        await self.store.delete_order(order_id)
        if self._room is not None:
            await self._room.send(CANCEL_CHANNEL, {"orderId": order_id})

    def forget(self, order_id: str) -> None:
        """GC로 사라진 주문을 중복 제거 집합에서도 제거"""
        self._known_ids.discard(order_id)
