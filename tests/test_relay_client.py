"""RelaySigningClient 테스트 - EIP-712 봉투 구성, 에러 매핑, 재시도 없음"""

import asyncio
import time
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest
from eth_account import Account
from eth_account.messages import encode_typed_data

from swapmesh.exceptions import SignatureRejectedError, SponsorshipServiceError, ValidationError
from swapmesh.relay_client import (
    PRIMARY_TYPES, RelaySigningClient, build_domain, build_typed_data,
)
from swapmesh.signature import LocalSigner

signer = LocalSigner("0x" + "11" * 32)
BUYER = Account.from_key("0x" + "22" * 32).address
ESCROW = Account.from_key("0x" + "33" * 32).address
TRADE_ID = "0x" + "cd" * 32


def make_escrow(nonce=3):
    escrow = MagicMock()
    escrow.address = ESCROW
    escrow.meta_nonces = AsyncMock(return_value=nonce)
    return escrow


def mock_http(body, status=200):
    mock_resp = MagicMock()
    mock_resp.status = status
    mock_resp.json = AsyncMock(return_value=body)
    mock_resp.__aenter__ = AsyncMock(return_value=mock_resp)
    mock_resp.__aexit__ = AsyncMock(return_value=False)

    mock_session = MagicMock()
    mock_session.post = MagicMock(return_value=mock_resp)
    mock_session.__aenter__ = AsyncMock(return_value=mock_session)
    mock_session.__aexit__ = AsyncMock(return_value=False)
    return mock_session


def recover(domain, types, message, signature):
    signable = encode_typed_data(domain, types, message)
    return Account.recover_message(signable, signature=signature)


class TestTypedData:

    @pytest.mark.parametrize("action,primary", [
        ("deposit", "DepositFor"), ("release", "ReleaseFor"),
        ("dispute", "DisputeFor"), ("refund", "RefundFor"),
    ])
    def test_primary_types(self, action, primary):
        params = {"buyer": BUYER, "amount": 100} if action == "deposit" else {"tradeId": TRADE_ID}
        types, message = build_typed_data(action, signer.address, params, 1, 2)
        assert list(types) == [primary]
        assert message["nonce"] == 1 and message["deadline"] == 2

    def test_unknown_action(self):
        with pytest.raises(ValidationError):
            build_typed_data("withdraw", signer.address, {}, 0, 0)

    def test_missing_params(self):
        with pytest.raises(ValidationError):
            build_typed_data("deposit", signer.address, {"buyer": BUYER}, 0, 0)
        with pytest.raises(ValidationError):
            build_typed_data("release", signer.address, {}, 0, 0)

    def test_domain(self):
        assert build_domain(ESCROW, 42161) == {
            "name": "MiniSwapEscrow", "version": "1",
            "chainId": 42161, "verifyingContract": ESCROW,
        }


class TestRelay:

    def test_deposit_envelope_posted(self):
        session = mock_http({"txHash": "0xfeed"})
        client = RelaySigningClient("https://sponsor.test/", make_escrow(nonce=3), 42161)
        with patch("aiohttp.ClientSession", return_value=session):
            tx = asyncio.run(client.relay("deposit", {"buyer": BUYER, "amount": 100_000_000}, signer))

        assert tx == "0xfeed"
        url = session.post.call_args.args[0]
        body = session.post.call_args.kwargs["json"]
        assert url == "https://sponsor.test/api/relay"
        assert body["action"] == "deposit"
        assert body["nonce"] == "3"
        assert body["params"] == {"from": signer.address, "escrowAddress": ESCROW,
                                  "buyer": BUYER, "amount": "100000000"}
        deadline = int(body["deadline"])
        assert 3500 < deadline - time.time() <= 3600

        types, message = build_typed_data("deposit", signer.address,
                                          {"buyer": BUYER, "amount": 100_000_000}, 3, deadline)
        recovered = recover(build_domain(ESCROW, 42161), types, message, body["signature"])
        assert recovered == signer.address

    def test_release_uses_trade_id(self):
        session = mock_http({"txHash": "0xbeef"})
        client = RelaySigningClient("https://sponsor.test", make_escrow(), 137)
        with patch("aiohttp.ClientSession", return_value=session):
            tx = asyncio.run(client.relay("release", {"tradeId": TRADE_ID}, signer))
        assert tx == "0xbeef"
        assert session.post.call_args.kwargs["json"]["params"]["tradeId"] == TRADE_ID

    def test_unknown_action_never_calls_service(self):
        escrow = make_escrow()
        client = RelaySigningClient("https://sponsor.test", escrow, 42161)
        with patch("aiohttp.ClientSession") as session_cls:
            with pytest.raises(ValidationError):
                asyncio.run(client.relay("withdraw", {}, signer))
        session_cls.assert_not_called()
        escrow.meta_nonces.assert_not_called()

    def test_user_rejection_propagates(self):
        rejecting = MagicMock()
        rejecting.address = signer.address
        rejecting.sign_typed_data = AsyncMock(side_effect=SignatureRejectedError("User rejected"))
        client = RelaySigningClient("https://sponsor.test", make_escrow(), 42161)
        with patch("aiohttp.ClientSession") as session_cls:
            with pytest.raises(SignatureRejectedError):
                asyncio.run(client.relay("refund", {"tradeId": TRADE_ID}, rejecting))
        session_cls.assert_not_called()


class TestServiceErrors:

    def test_error_status_mapped(self):
        session = mock_http({"error": "nonce too low"}, status=400)
        client = RelaySigningClient("https://sponsor.test", make_escrow(), 42161)
        with patch("aiohttp.ClientSession", return_value=session):
            with pytest.raises(SponsorshipServiceError) as exc:
                asyncio.run(client.relay("dispute", {"tradeId": TRADE_ID}, signer))
        assert exc.value.status == 400
        assert str(exc.value) == "nonce too low (HTTP 400)"
        assert session.post.call_count == 1

    def test_error_without_body(self):
        session = mock_http(None, status=503)
        client = RelaySigningClient("https://sponsor.test", make_escrow(), 42161)
        with patch("aiohttp.ClientSession", return_value=session):
            with pytest.raises(SponsorshipServiceError, match="Relay failed"):
                asyncio.run(client.relay("dispute", {"tradeId": TRADE_ID}, signer))

    def test_network_error_wrapped(self):
        session = MagicMock()
        session.__aenter__ = AsyncMock(side_effect=aiohttp.ClientConnectionError("refused"))
        session.__aexit__ = AsyncMock(return_value=False)
        client = RelaySigningClient("https://sponsor.test", make_escrow(), 42161)
        with patch("aiohttp.ClientSession", return_value=session):
            with pytest.raises(SponsorshipServiceError, match="refused"):
                asyncio.run(client.relay("refund", {"tradeId": TRADE_ID}, signer))

    def test_missing_tx_hash(self):
        client = RelaySigningClient("https://sponsor.test", make_escrow(), 42161)
        with patch("aiohttp.ClientSession", return_value=mock_http({})):
            with pytest.raises(SponsorshipServiceError):
                asyncio.run(client.relay("refund", {"tradeId": TRADE_ID}, signer))


class TestDrip:

    def test_drip(self):
        session = mock_http({"txHash": "0x01", "amount": "0.0005"})
        client = RelaySigningClient("https://sponsor.test", make_escrow(), 42161)
        with patch("aiohttp.ClientSession", return_value=session):
            result = asyncio.run(client.request_drip(signer.address))
        assert result == {"txHash": "0x01", "amount": "0.0005"}
        assert session.post.call_args.kwargs["json"] == {"address": signer.address}

    def test_drip_refused(self):
        session = mock_http({"error": "Balance already sufficient"}, status=400)
        client = RelaySigningClient("https://sponsor.test", make_escrow(), 42161)
        with patch("aiohttp.ClientSession", return_value=session):
            with pytest.raises(SponsorshipServiceError, match="Balance already sufficient"):
                asyncio.run(client.request_drip(signer.address))

    def test_primary_type_table_complete(self):
        assert set(PRIMARY_TYPES) == {"deposit", "release", "dispute", "refund"}
