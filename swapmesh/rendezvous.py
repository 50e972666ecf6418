"""랑데부 릴레이 전송 모듈 - 릴레이 헬스 체크, 룸 참가, 액션 채널 송수신

릴레이 와이어 프로토콜 (JSON 텍스트 프레임):
  client → relay : {"op": "join", "room", "peer"} / {"op": "leave"}
                   {"op": "send", "action", "data", "to"?, "mid"}
  relay → client : {"op": "peers", "peers": [...]}
                   {"op": "peer-join", "peer"} / {"op": "peer-leave", "peer"}
                   {"op": "msg", "from", "action", "data", "mid"?}
릴레이는 주문 데이터를 보관하지 않고 중계만 한다.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
import uuid
from collections import OrderedDict, defaultdict
from typing import Any, Awaitable, Callable

import websockets

from swapmesh.exceptions import NetworkError
from swapmesh.models import RelayProbe

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str, Any, str], Awaitable[None]]
PeerHandler = Callable[[str], Awaitable[None]]

SEEN_MID_LIMIT = 4096


async def probe_relay(url: str, timeout: float) -> RelayProbe:
    """단일 릴레이 접속 가능 여부를 제한 시간 내에 확인"""
    started = time.monotonic()
    try:
        ws = await asyncio.wait_for(websockets.connect(url, open_timeout=timeout), timeout)
        await ws.close()
        return RelayProbe(url=url, alive=True, latency=time.monotonic() - started)
    except Exception as e:
        return RelayProbe(url=url, alive=False, latency=time.monotonic() - started, error=str(e))


async def select_relays(candidates: list[str], min_relays: int, timeout: float) -> list[str]:
    """응답한 릴레이가 min_relays 미만이면 후보 전체를 그대로 사용"""
    probes = await asyncio.gather(*(probe_relay(u, timeout) for u in candidates))
    alive = [p.url for p in probes if p.alive]
    for p in probes:
        if not p.alive:
            logger.warning(f"[릴레이] 응답 없음: {p.url} ({p.error})")
    if len(alive) < min_relays:
        logger.warning(
            f"[릴레이] 응답 {len(alive)}/{len(candidates)}개, 최소 {min_relays}개 미달, 전체 후보 사용"
        )
        return list(candidates)
    logger.info(f"[릴레이] 사용: {alive}")
    return alive


def room_topic(namespace: str, room_name: str) -> str:
    """네임스페이스/룸 이름으로 릴레이 토픽 생성"""
    return hashlib.sha256(f"{namespace}:{room_name}".encode()).hexdigest()


class RendezvousRoom:
    """여러 랑데부 릴레이를 통한 애드혹 피어 메시 룸"""

    def __init__(self, relay_urls: list[str], namespace: str, room_name: str = "orderbook",
                 peer_id: str | None = None, open_timeout: float = 10.0):
        self.relay_urls = relay_urls
        self.topic = room_topic(namespace, room_name)
        self.peer_id = peer_id or uuid.uuid4().hex
        self.open_timeout = open_timeout
        self.on_message: MessageHandler | None = None
        self.on_peer_join: PeerHandler | None = None
        self.on_peer_leave: PeerHandler | None = None
        self._sockets: dict[str, Any] = {}
        self._peer_relays: dict[str, set[str]] = defaultdict(set)
        self._seen_mids: OrderedDict[str, None] = OrderedDict()
        self._closed = False

    @property
    def peers(self) -> list[str]:
        return [p for p, relays in self._peer_relays.items() if relays]

    async def connect(self) -> None:
        """모든 릴레이에 접속 후 룸 참가. 하나도 안 되면 NetworkError"""
        results = await asyncio.gather(
            *(self._open(url) for url in self.relay_urls), return_exceptions=True
        )
        for url, res in zip(self.relay_urls, results):
            if isinstance(res, Exception):
                logger.warning(f"[랑데부] {url} 접속 실패: {res}")
        if not self._sockets:
            raise NetworkError("No rendezvous relay reachable")
        logger.info(f"[랑데부] 룸 참가 ({len(self._sockets)}개 릴레이) peer={self.peer_id[:8]}")

    async def _open(self, url: str) -> None:
        ws = await websockets.connect(url, open_timeout=self.open_timeout, ping_interval=20)
        await ws.send(json.dumps({"op": "join", "room": self.topic, "peer": self.peer_id}))
        self._sockets[url] = ws

    async def run(self) -> None:
        """릴레이 수신 루프. 모든 릴레이가 끊기면 NetworkError"""
        readers = [asyncio.create_task(self._read(url, ws)) for url, ws in list(self._sockets.items())]
        try:
            await asyncio.gather(*readers)
        finally:
            for t in readers:
                t.cancel()
        if not self._closed:
            raise NetworkError("All rendezvous relays disconnected")

    async def _read(self, url: str, ws) -> None:
        try:
            async for raw in ws:
                await self._dispatch(url, raw)
        except websockets.ConnectionClosed as e:
            logger.warning(f"[랑데부] {url} 연결 종료: {e}")
        finally:
            self._sockets.pop(url, None)
            for peer in list(self._peer_relays):
                await self._peer_gone(peer, url)

    async def _dispatch(self, url: str, raw: str | bytes) -> None:
        """프레임 하나 처리. 형식이 잘못됐거나 핸들러가 실패하면 그 프레임만 버린다"""
        try:
            frame = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(f"[랑데부] {url} 잘못된 프레임 무시")
            return
        if not isinstance(frame, dict):
            return
        try:
            await self._handle_frame(url, frame)
        except Exception as e:
            logger.warning(f"[랑데부] {url} 프레임 처리 실패, 무시: {type(e).__name__}: {e}")

    async def _handle_frame(self, url: str, frame: dict) -> None:
        op = frame.get("op")
        if op == "peers":
            peers = frame.get("peers")
            if not isinstance(peers, list):
                return
            for peer in peers:
                if isinstance(peer, str):
                    await self._peer_seen(peer, url)
        elif op == "peer-join":
            peer = frame.get("peer")
            if isinstance(peer, str):
                await self._peer_seen(peer, url)
        elif op == "peer-leave":
            peer = frame.get("peer")
            if isinstance(peer, str):
                await self._peer_gone(peer, url)
        elif op == "msg":
            mid = frame.get("mid")
            if mid is not None and not isinstance(mid, str):
                return
            if mid:
                if mid in self._seen_mids:
                    return
                self._seen_mids[mid] = None
                if len(self._seen_mids) > SEEN_MID_LIMIT:
                    self._seen_mids.popitem(last=False)
            sender = frame.get("from", "")
            action = frame.get("action", "")
            if not isinstance(sender, str) or not isinstance(action, str):
                return
            if sender == self.peer_id:
                return
            if self.on_message:
                await self.on_message(action, frame.get("data"), sender)

    async def _peer_seen(self, peer: str, url: str) -> None:
        if not peer or peer == self.peer_id:
            return
        first = not self._peer_relays[peer]
        self._peer_relays[peer].add(url)
        if first and self.on_peer_join:
            await self.on_peer_join(peer)

    async def _peer_gone(self, peer: str, url: str) -> None:
        relays = self._peer_relays.get(peer)
        if not relays or url not in relays:
            return
        relays.discard(url)
        if not relays:
            del self._peer_relays[peer]
            if self.on_peer_leave:
                await self.on_peer_leave(peer)

    async def send(self, action: str, data: Any, to: str | None = None) -> None:
        """액션 채널로 전송. to가 없으면 룸 전체 브로드캐스트"""
        frame = {"op": "send", "action": action, "data": data, "mid": uuid.uuid4().hex}
        if to:
            frame["to"] = to
        payload = json.dumps(frame)
        for url, ws in list(self._sockets.items()):
            try:
                await ws.send(payload)
            except websockets.ConnectionClosed:
                logger.warning(f"[랑데부] {url} 전송 실패 (연결 종료)")

    async def leave(self) -> None:
        self._closed = True
        for url, ws in list(self._sockets.items()):
            try:
                await ws.send(json.dumps({"op": "leave"}))
                await ws.close()
            except websockets.ConnectionClosed:
                pass
        self._sockets.clear()
        self._peer_relays.clear()
