"""MailboxClient 테스트 - HTTP 요청 형식, 목록 파싱, 에러 매핑"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from swapmesh.exceptions import NetworkError
from swapmesh.mailbox import MailboxClient, to_ws_url

OWNER = "0x" + "aa" * 20
PEER = "0x" + "bb" * 20


def client_with(body, status=200):
    mock_resp = MagicMock()
    mock_resp.status = status
    mock_resp.json = AsyncMock(return_value=body)
    mock_resp.text = AsyncMock(return_value=json.dumps(body))
    mock_resp.__aenter__ = AsyncMock(return_value=mock_resp)
    mock_resp.__aexit__ = AsyncMock(return_value=False)

    session = MagicMock()
    session.request = MagicMock(return_value=mock_resp)
    client = MailboxClient("https://mailbox.test/", OWNER)
    client._session = session
    return client, session


class TestUrls:

    def test_ws_url(self):
        assert to_ws_url("https://mailbox.test/base") == "wss://mailbox.test/base"
        assert to_ws_url("http://localhost:8080") == "ws://localhost:8080"

    def test_session_requires_open(self):
        with pytest.raises(RuntimeError):
            MailboxClient("https://mailbox.test", OWNER).session


class TestSend:

    def test_dict_content_serialized(self):
        client, session = client_with({"sentAt": 123})
        msg = asyncio.run(client.send(PEER, {"type": "text", "text": "안녕"}, message_id="me-1"))
        method, url = session.request.call_args.args
        payload = session.request.call_args.kwargs["json"]
        assert (method, url) == ("POST", "https://mailbox.test/v1/messages")
        assert payload == {"from": OWNER, "to": PEER, "id": "me-1",
                           "content": json.dumps({"type": "text", "text": "안녕"})}
        assert msg.id == "me-1" and msg.sent_at == 123

    def test_http_error_mapped(self):
        client, _ = client_with({"error": "boom"}, status=500)
        with pytest.raises(NetworkError, match="HTTP 500"):
            asyncio.run(client.send(PEER, "hi"))

    def test_client_error_mapped(self):
        client, session = client_with({})
        session.request = MagicMock(side_effect=aiohttp.ClientConnectionError("down"))
        with pytest.raises(NetworkError, match="down"):
            asyncio.run(client.sync())


class TestLists:

    def test_conversation_sorted_oldest_first(self):
        body = {"messages": [
            {"id": "2", "from": PEER, "to": OWNER, "content": "b", "sentAt": 20},
            {"id": "1", "from": OWNER, "to": PEER, "content": "a", "sentAt": 10},
            "junk",
        ]}
        client, session = client_with(body)
        messages = asyncio.run(client.conversation(PEER))
        assert [m.id for m in messages] == ["1", "2"]
        assert session.request.call_args.kwargs["params"] == {"owner": OWNER}
        assert f"/v1/conversations/{PEER}/messages" in session.request.call_args.args[1]

    def test_inbox_plain_list(self):
        client, _ = client_with([{"id": "x", "from": PEER, "to": OWNER, "content": "c"}])
        messages = asyncio.run(client.inbox())
        assert messages[0].sender == PEER

    def test_unexpected_shape(self):
        assert MailboxClient._parse_list("nope") == []
