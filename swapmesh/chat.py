"""거래방 채팅 - 거래별 1:1 메시지/시그널, 낙관적 로컬 항목 및 에코 정합"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import TYPE_CHECKING, Callable

from swapmesh.backoff import ReconnectBackoff, Supervisor, run_until_first_failure
from swapmesh.models import ChatMessage, Message
from swapmesh.orders import now_ms
from swapmesh.signature import same_address

if TYPE_CHECKING:
    from swapmesh.mailbox import MailboxClient
    from swapmesh.session_stats import SessionStats

logger = logging.getLogger(__name__)

HEARTBEAT_INTERVAL = 30.0


class TradeChat:
    """거래 상대방과의 채팅방 (tradeId로 필터링)"""

    def __init__(self, client: MailboxClient, peer: str, trade_id: str,
                 backoff: ReconnectBackoff | None = None,
                 heartbeat_interval: float = HEARTBEAT_INTERVAL,
                 stats: SessionStats | None = None):
        self.client = client
        self.peer = peer
        self.trade_id = trade_id
        self.backoff = backoff or ReconnectBackoff()
        self.heartbeat_interval = heartbeat_interval
        self.stats = stats
        self._supervisor = Supervisor("채팅", self._session, self.backoff,
                                      on_failure=self._on_failure)
        self._messages: list[ChatMessage] = []
        self._connected = False
        self._cancelled = False
        self.on_message: Callable[[ChatMessage], None] | None = None

    @property
    def messages(self) -> list[ChatMessage]:
        return list(self._messages)

    @property
    def connected(self) -> bool:
        return self._connected

    def start(self) -> None:
        self._cancelled = False
        self._supervisor.start()

    async def stop(self) -> None:
        self._cancelled = True
        self._connected = False
        self._supervisor.stop()
        await self._supervisor.wait_closed()

    def _on_failure(self, reason: str) -> None:
        self._connected = False
        if self.stats:
            self.stats.record_reconnect("chat", reason)

    # ── 세션 ──

    async def _session(self) -> None:
        await self.client.sync()
        history = await self.client.conversation(self.peer)
        if self._cancelled:
            return
        self.load_history(history)
        self._connected = True
        self.backoff.reset()
        logger.info(f"[채팅] {self.trade_id} 기록 {len(self._messages)}건")
        await run_until_first_failure(self._consume_stream(), self._heartbeat())

    async def _consume_stream(self) -> None:
        async for msg in self.client.stream():
            if self._cancelled:
                return
            self.ingest(msg)

    async def _heartbeat(self) -> None:
        while not self._cancelled:
            await asyncio.sleep(self.heartbeat_interval)
            await self.client.sync()

    # ── 수신 ──

    def _parse(self, msg: Message) -> ChatMessage | None:
        try:
            data = json.loads(msg.content)
        except (TypeError, ValueError):
            return None
        if not isinstance(data, dict) or data.get("tradeId") != self.trade_id:
            return None
        entry_id = data.get("id")
        kind = data.get("type")
        text = data.get("text")
        sender = data.get("sender")
        ts = data.get("timestamp")
        # 필드 타입이 어긋나면 봉투 값을 쓴다
        if not isinstance(ts, int) or isinstance(ts, bool) or ts <= 0:
            ts = msg.sent_at
        return ChatMessage(
            id=entry_id if isinstance(entry_id, str) and entry_id else msg.id,
            trade_id=self.trade_id,
            type=kind if isinstance(kind, str) and kind else "text",
            text=text if isinstance(text, str) else "",
            sender=sender if isinstance(sender, str) and sender else msg.sender,
            timestamp=ts,
            from_me=same_address(msg.sender, self.client.owner),
        )

    def _in_conversation(self, msg: Message) -> bool:
        if same_address(msg.sender, self.peer):
            return same_address(msg.recipient, self.client.owner)
        return same_address(msg.sender, self.client.owner) and same_address(msg.recipient, self.peer)

    def load_history(self, history: list[Message]) -> None:
        """기록으로 목록을 재구성. 아직 에코되지 않은 로컬 항목은 유지"""
        entries: list[ChatMessage] = []
        ids: set[str] = set()
        for msg in history:
            entry = self._parse(msg)
            if entry is None or entry.id in ids:
                continue
            ids.add(entry.id)
            entries.append(entry)
        entries.extend(m for m in self._messages if m.local and m.id not in ids)
        self._messages = entries

    def ingest(self, msg: Message) -> ChatMessage | None:
        """실시간 메시지 반영. 같은 ID의 로컬 항목은 확정 처리"""
        if not self._in_conversation(msg):
            return None
        entry = self._parse(msg)
        if entry is None:
            return None
        for existing in self._messages:
            if existing.id == entry.id:
                existing.local = False
                return None
        self._messages.append(entry)
        if self.on_message:
            self.on_message(entry)
        return entry

    # ── 송신 ──

    async def send(self, text: str, kind: str = "text") -> ChatMessage:
        """낙관적 로컬 항목을 먼저 추가한 뒤 전송"""
        entry = ChatMessage(
            id=f"me-{uuid.uuid4().hex[:12]}",
            trade_id=self.trade_id,
            type=kind,
            text=text,
            sender=self.client.owner,
            timestamp=now_ms(),
            from_me=True,
            local=True,
        )
        self._messages.append(entry)
        try:
            await self.client.send(self.peer, entry.to_wire(), message_id=entry.id)
        except Exception as e:
            logger.warning(f"[채팅] 전송 실패: {e}")
            raise
        return entry

    async def signal(self, text: str) -> ChatMessage:
        """거래 진행 시그널 (송금 완료/입금 확인 등)"""
        return await self.send(text, kind="signal")
