"""협상 채널 - 수락 요청/응답/거래 생성 알림 봉투의 1:1 인증 전달

연결 시 받은편지함을 동기화해 과거 봉투를 재생한 뒤 실시간 스트림을 연다.
스트림 오류나 하트비트 실패가 나면 세션 전체를 백오프 후 재시작한다.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Callable

from swapmesh.backoff import ReconnectBackoff, Supervisor, run_until_first_failure
from swapmesh.exceptions import NetworkError
from swapmesh.models import (
    AcceptRequest, AcceptResponse, EnvelopeType, Message, NegotiationEnvelope,
    Order, TradeNotification,
)
from swapmesh.orders import now_ms
from swapmesh.signature import SignatureService, Signer, same_address

if TYPE_CHECKING:
    from swapmesh.mailbox import MailboxClient
    from swapmesh.session_stats import SessionStats

logger = logging.getLogger(__name__)

HEARTBEAT_INTERVAL = 30.0


def encode_envelope(kind: EnvelopeType, payload: dict) -> str:
    return json.dumps(NegotiationEnvelope(kind, payload, now_ms()).to_dict())


def decode_envelope(content: str) -> NegotiationEnvelope | None:
    """협상 봉투가 아니면 None (일반 채팅 등)"""
    try:
        doc = json.loads(content)
    except (TypeError, ValueError):
        return None
    if not isinstance(doc, dict) or not isinstance(doc.get("payload"), dict):
        return None
    kind = EnvelopeType.parse(str(doc.get("type", "")))
    if kind is None:
        return None
    timestamp = doc.get("timestamp")
    if not isinstance(timestamp, int) or isinstance(timestamp, bool):
        timestamp = 0
    return NegotiationEnvelope(kind, doc["payload"], timestamp)


class NegotiationChannel:
    """주문 소유자와 구매 희망자 사이의 협상 채널

    판매자가 한 요청자를 수락하면 같은 주문의 나머지 대기 요청은
    await 없이 한 번에 대기열에서 제거되고 거절 응답이 예약된다.
    """

    def __init__(self, client: MailboxClient, signatures: SignatureService | None = None,
                 backoff: ReconnectBackoff | None = None,
                 heartbeat_interval: float = HEARTBEAT_INTERVAL,
                 stats: SessionStats | None = None):
        self.client = client
        self.signatures = signatures or SignatureService()
        self.backoff = backoff or ReconnectBackoff()
        self.heartbeat_interval = heartbeat_interval
        self.stats = stats
        self._supervisor = Supervisor("협상", self._session, self.backoff,
                                      on_failure=self._record_reconnect)
        self._pending: dict[str, list[AcceptRequest]] = {}
        self._decided: set[str] = set()
        self._seen_requests: set[tuple[str, str]] = set()
        self._seen_responses: set[tuple[str, str]] = set()
        self._seen_trades: set[str] = set()
        self._unsent: list[AcceptResponse] = []
        self._cancelled = False

        self.on_accept_request: Callable[[AcceptRequest], None] | None = None
        self.on_accept_response: Callable[[AcceptResponse], None] | None = None
        self.on_trade_created: Callable[[TradeNotification], None] | None = None

    @property
    def owner(self) -> str:
        return self.client.owner

    def start(self) -> None:
        self._cancelled = False
        self._supervisor.start()

    async def stop(self) -> None:
        self._cancelled = True
        self._supervisor.stop()
        await self._supervisor.wait_closed()
        logger.info("[협상] 종료")

    # ── 세션 ──

    async def _session(self) -> None:
        await self.client.sync()
        history = await self.client.inbox()
        for msg in history:
            if self._cancelled:
                return
            self.handle_message(msg, replay=True)
        await self._flush_unsent()
        self.backoff.reset()
        logger.info(f"[협상] 기록 {len(history)}건 재생, 실시간 스트림 시작")
        await run_until_first_failure(self._consume_stream(), self._heartbeat())

    async def _consume_stream(self) -> None:
        async for msg in self.client.stream():
            if self._cancelled:
                return
            if same_address(msg.sender, self.owner):
                continue
            self.handle_message(msg)

    async def _heartbeat(self) -> None:
        # 한 번이라도 실패하면 예외가 전파되어 세션이 재시작된다
        while not self._cancelled:
            await asyncio.sleep(self.heartbeat_interval)
            await self.client.sync()
            await self._flush_unsent()

    def _record_reconnect(self, reason: str) -> None:
        if self.stats:
            self.stats.record_reconnect("negotiation", reason)

    def _drop(self, reason: str, sender: str, order_id: str | None = None) -> None:
        logger.warning(f"[협상] 봉투 폐기 ({reason}) from={sender} order={order_id}")
        if self.stats:
            self.stats.record_drop("negotiation", reason, sender, order_id)

    # ── 수신 ──

    def handle_message(self, msg: Message, replay: bool = False) -> None:
        """봉투 하나 처리. 형식이 잘못된 메시지는 버리고 세션은 유지한다"""
        envelope = decode_envelope(msg.content)
        if envelope is None:
            return
        try:
            self._route(envelope, msg, replay)
        except (TypeError, ValueError, AttributeError) as e:
            self._drop(f"Malformed envelope: {e}", msg.sender)

    def _route(self, envelope: NegotiationEnvelope, msg: Message, replay: bool) -> None:
        own = same_address(msg.sender, self.owner)
        if envelope.type == EnvelopeType.ACCEPT_REQ:
            if not own:
                self._handle_request(AcceptRequest.from_dict(envelope.payload), msg.sender)
        elif envelope.type == EnvelopeType.ACCEPT_RES:
            response = AcceptResponse.from_dict(envelope.payload)
            if own:
                if replay:
                    self._restore_own_response(response)
            else:
                self._handle_response(response)
        elif envelope.type == EnvelopeType.TRADE_CREATED and not own:
            self._handle_trade_created(TradeNotification.from_dict(envelope.payload))

    def _handle_request(self, req: AcceptRequest, sender: str) -> None:
        if not req.order_id or not req.buyer:
            self._drop("Malformed accept request", sender, req.order_id)
            return
        key = (req.order_id, req.buyer.lower())
        if key in self._seen_requests:
            return
        if not req.signature:
            self._drop("No signature present", sender, req.order_id)
            return
        result = self.signatures.verify_accept_request(req.order_id, req.buyer, req.signature)
        if not result.valid:
            self._drop(result.reason or "invalid", sender, req.order_id)
            return
        self._seen_requests.add(key)
        if req.order_id in self._decided:
            logger.info(f"[협상] 이미 체결된 주문의 요청 무시: {req.order_id} ({req.buyer})")
            return
        self._pending.setdefault(req.order_id, []).append(req)
        if self.stats:
            self.stats.record_accepted("negotiation")
        logger.info(f"[협상] 수락 요청: {req.order_id} ← {req.buyer}")
        if self.on_accept_request:
            self.on_accept_request(req)

    def _handle_response(self, response: AcceptResponse) -> None:
        if not same_address(response.buyer, self.owner):
            return
        key = (response.order_id, response.buyer.lower())
        if key in self._seen_responses:
            return
        self._seen_responses.add(key)
        logger.info(f"[협상] 응답 수신: {response.order_id} accepted={response.accepted}")
        if self.on_accept_response:
            self.on_accept_response(response)

    def _restore_own_response(self, response: AcceptResponse) -> None:
        """내가 과거에 보낸 응답을 재생해 대기열 상태 복원"""
        self._seen_requests.add((response.order_id, response.buyer.lower()))
        if response.accepted:
            self._decided.add(response.order_id)
            self._pending.pop(response.order_id, None)
        else:
            self._remove_pending(response.order_id, response.buyer)

    def _handle_trade_created(self, notice: TradeNotification) -> None:
        if not notice.order_id or notice.order_id in self._seen_trades:
            return
        self._seen_trades.add(notice.order_id)
        logger.info(f"[협상] 거래 생성 알림: {notice.order_id} → {notice.trade_id}")
        if self.on_trade_created:
            self.on_trade_created(notice)

    # ── 대기열 ──

    def pending_requests(self, order_id: str | None = None) -> list[AcceptRequest]:
        if order_id is not None:
            return list(self._pending.get(order_id, []))
        return [r for reqs in self._pending.values() for r in reqs]

    def drop_order(self, order_id: str) -> None:
        self._pending.pop(order_id, None)

    def _remove_pending(self, order_id: str, buyer: str) -> None:
        remaining = [r for r in self._pending.get(order_id, []) if not same_address(r.buyer, buyer)]
        if remaining:
            self._pending[order_id] = remaining
        else:
            self._pending.pop(order_id, None)

    # ── 송신 ──

    async def request_accept(self, order: Order, signer: Signer) -> AcceptRequest:
        """주문 소유자에게 서명된 수락 요청 전송"""
        signature = await self.signatures.sign_accept_request(order.id, signer.address, signer)
        req = AcceptRequest(order.id, signer.address, now_ms(), signature)
        await self.client.send(order.owner, encode_envelope(EnvelopeType.ACCEPT_REQ, req.to_dict()))
        logger.info(f"[협상] 수락 요청 전송: {order.id} → {order.owner}")
        return req

    async def respond_accept(self, response: AcceptResponse) -> list[AcceptResponse]:
        """수락/거절 응답 전송. 수락이면 나머지 대기 요청자 전원에게 거절 전송.

        대기열 변경과 발송 목록 작성은 첫 await 이전에 끝난다.
        전송에 실패한 응답은 미전송 목록에 남아 다음 하트비트나 세션 시작 때 재전송된다.
        """
        outbox = [response]
        if response.accepted:
            others = [r for r in self._pending.pop(response.order_id, [])
                      if not same_address(r.buyer, response.buyer)]
            self._decided.add(response.order_id)
            outbox.extend(AcceptResponse(response.order_id, r.buyer, False) for r in others)
        else:
            self._remove_pending(response.order_id, response.buyer)
        self._unsent.extend(outbox)

        for res in outbox:
            await self._deliver(res)
        logger.info(
            f"[협상] 응답 전송: {response.order_id} → {response.buyer} "
            f"accepted={response.accepted}, 자동 거절 {len(outbox) - 1}건"
        )
        return outbox

    @property
    def unsent_responses(self) -> list[AcceptResponse]:
        return list(self._unsent)

    async def _deliver(self, res: AcceptResponse) -> bool:
        try:
            await self.client.send(res.buyer, encode_envelope(EnvelopeType.ACCEPT_RES, res.to_dict()))
        except Exception as e:
            logger.warning(f"[협상] 응답 전송 실패, 재시도 대기: {res.order_id} → {res.buyer} ({e})")
            return False
        if res in self._unsent:
            self._unsent.remove(res)
        return True

    async def _flush_unsent(self) -> None:
        """미전송 응답 재전송. 하나라도 실패하면 NetworkError로 세션을 재시작한다"""
        failed = 0
        for res in list(self._unsent):
            if self._cancelled:
                return
            if not await self._deliver(res):
                failed += 1
        if failed:
            raise NetworkError(f"{failed} accept responses still undelivered")

    async def notify_trade_created(self, buyer: str, order_id: str, trade_id: str) -> None:
        notice = TradeNotification(order_id, trade_id, buyer)
        await self.client.send(buyer, encode_envelope(EnvelopeType.TRADE_CREATED, notice.to_dict()))
        logger.info(f"[협상] 거래 생성 알림 전송: {order_id} → {buyer}")
