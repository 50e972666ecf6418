"""메일박스 클라이언트 - 주소 기반 저장 후 전달(store-and-forward) 메시징

HTTP (aiohttp):
  POST /v1/messages                       {from, to, content, id}
  GET  /v1/conversations/{peer}/messages  ?owner=
  GET  /v1/inbox                          ?owner=
  POST /v1/sync                           {owner}
WebSocket (websockets):
  /v1/stream?owner=   → {id, from, to, content, sentAt} 푸시

호출자가 open()/close()로 수명을 관리한다. 전역 싱글턴은 없다.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any, AsyncIterator
from urllib.parse import quote, urlsplit, urlunsplit

import aiohttp
import websockets

from swapmesh.exceptions import NetworkError
from swapmesh.models import Message
from swapmesh.orders import now_ms

logger = logging.getLogger(__name__)


def to_ws_url(base_url: str) -> str:
    parts = urlsplit(base_url)
    scheme = {"https": "wss", "http": "ws"}.get(parts.scheme, parts.scheme)
    return urlunsplit((scheme, parts.netloc, parts.path, parts.query, parts.fragment))


class MailboxClient:
    """한 주소(owner)에 대한 메일박스 세션"""

    def __init__(self, base_url: str, owner: str, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.owner = owner
        self.timeout = timeout
        self._session: aiohttp.ClientSession | None = None

    async def open(self) -> "MailboxClient":
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
            logger.info(f"[메일박스] 열림: {self.owner}")
        return self

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> "MailboxClient":
        return await self.open()

    async def __aexit__(self, *exc) -> None:
        await self.close()

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise RuntimeError("MailboxClient is not open")
        return self._session

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        url = f"{self.base_url}{path}"
        try:
            async with self.session.request(method, url, **kwargs) as resp:
                if resp.status >= 300:
                    body = await resp.text()
                    raise NetworkError(f"Mailbox {method} {path} HTTP {resp.status}: {body[:200]}")
                return await resp.json()
        except aiohttp.ClientError as e:
            raise NetworkError(f"Mailbox {method} {path} failed: {e}") from e

    async def send(self, to: str, content: str | dict, message_id: str | None = None) -> Message:
        """메시지 전송. dict 내용은 JSON 문자열로 직렬화"""
        body = content if isinstance(content, str) else json.dumps(content)
        msg = Message(
            id=message_id or uuid.uuid4().hex,
            sender=self.owner,
            recipient=to,
            content=body,
            sent_at=now_ms(),
        )
        payload = {"from": msg.sender, "to": msg.recipient, "content": msg.content, "id": msg.id}
        data = await self._request("POST", "/v1/messages", json=payload)
        if isinstance(data, dict) and data.get("sentAt"):
            msg.sent_at = int(data["sentAt"])
        return msg

    async def conversation(self, peer: str) -> list[Message]:
        """peer와의 DM 기록 (오래된 순)"""
        data = await self._request(
            "GET", f"/v1/conversations/{quote(peer)}/messages", params={"owner": self.owner}
        )
        return self._parse_list(data)

    async def inbox(self) -> list[Message]:
        data = await self._request("GET", "/v1/inbox", params={"owner": self.owner})
        return self._parse_list(data)

    async def sync(self) -> None:
        """서버 측 대화 목록 동기화 (하트비트 겸용)"""
        await self._request("POST", "/v1/sync", json={"owner": self.owner})

    async def stream(self) -> AsyncIterator[Message]:
        """실시간 메시지 스트림. 연결이 끊기면 NetworkError"""
        url = f"{to_ws_url(self.base_url)}/v1/stream?owner={quote(self.owner)}"
        try:
            async with websockets.connect(url, ping_interval=20) as ws:
                logger.info(f"[메일박스] 스트림 연결: {self.owner}")
                async for raw in ws:
                    try:
                        doc = json.loads(raw)
                    except ValueError:
                        logger.warning("[메일박스] 잘못된 스트림 프레임 무시")
                        continue
                    if isinstance(doc, dict):
                        yield Message.from_dict(doc)
        except (OSError, websockets.WebSocketException) as e:
            raise NetworkError(f"Mailbox stream failed: {e}") from e
        raise NetworkError("Mailbox stream closed")

    @staticmethod
    def _parse_list(data: Any) -> list[Message]:
        if isinstance(data, dict):
            data = data.get("messages", [])
        if not isinstance(data, list):
            return []
        messages = [Message.from_dict(d) for d in data if isinstance(d, dict)]
        messages.sort(key=lambda m: m.sent_at)
        return messages
