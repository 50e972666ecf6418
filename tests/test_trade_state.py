"""거래 상태 머신 테스트
Feature: swapmesh
Property: LOCKED + 시그널 없음 = ESCROW_LOCKED
Property: LOCKED + 상대 시그널 (판매자 시점) = KRW_SENT
Property: RELEASED = COMPLETED (시그널 무관)
"""

from hypothesis import given, strategies as st, settings

from swapmesh.models import ChatMessage, TradeStatus
from swapmesh.trade_state import (
    STATE_META, Role, TradeState, describe_trade_state, resolve_trade_state,
)


def msg(kind: str, from_me: bool, idx: int = 0) -> ChatMessage:
    return ChatMessage(id=f"m{idx}", trade_id="t1", type=kind, text="", sender="x",
                       timestamp=idx, from_me=from_me)


message_st = st.builds(
    msg, kind=st.sampled_from(["text", "signal"]), from_me=st.booleans(),
    idx=st.integers(min_value=0, max_value=1000),
)
role_st = st.sampled_from([Role.SELLER, Role.BUYER])


class TestTerminalStates:

    @given(role=role_st, messages=st.lists(message_st, max_size=10))
    @settings(max_examples=100)
    def test_released_is_completed(self, role, messages):
        assert resolve_trade_state(TradeStatus.RELEASED, role, messages) == TradeState.COMPLETED

    @given(role=role_st, messages=st.lists(message_st, max_size=10))
    @settings(max_examples=50)
    def test_refunded_and_disputed(self, role, messages):
        assert resolve_trade_state(TradeStatus.REFUNDED, role, messages) == TradeState.REFUNDED
        assert resolve_trade_state(TradeStatus.DISPUTED, role, messages) == TradeState.DISPUTED

    def test_no_trade_awaits_escrow(self):
        assert resolve_trade_state(None, "buyer") == TradeState.AWAITING_ESCROW
        assert resolve_trade_state(TradeStatus.LOCKED, "buyer", trade_exists=False) == \
            TradeState.AWAITING_ESCROW

    def test_unknown_status_awaits_escrow(self):
        assert resolve_trade_state(9, "seller") == TradeState.AWAITING_ESCROW


class TestLockedSubsteps:

    @given(role=role_st, texts=st.lists(st.booleans(), max_size=10))
    @settings(max_examples=50)
    def test_no_signals_is_escrow_locked(self, role, texts):
        messages = [msg("text", mine, i) for i, mine in enumerate(texts)]
        assert resolve_trade_state(TradeStatus.LOCKED, role, messages) == TradeState.ESCROW_LOCKED

    def test_seller_sees_counterparty_signal(self):
        state = resolve_trade_state(TradeStatus.LOCKED, Role.SELLER, [msg("signal", False)])
        assert state == TradeState.KRW_SENT

    def test_buyer_sees_own_signal(self):
        state = resolve_trade_state(TradeStatus.LOCKED, Role.BUYER, [msg("signal", True)])
        assert state == TradeState.KRW_SENT

    def test_both_signals_confirming(self):
        messages = [msg("signal", False, 1), msg("signal", True, 2)]
        assert resolve_trade_state(TradeStatus.LOCKED, "seller", messages) == TradeState.CONFIRMING
        assert resolve_trade_state(TradeStatus.LOCKED, "buyer", messages) == TradeState.CONFIRMING

    def test_seller_own_signal_only_stays_locked(self):
        state = resolve_trade_state(TradeStatus.LOCKED, Role.SELLER, [msg("signal", True)])
        assert state == TradeState.ESCROW_LOCKED

    @given(messages=st.lists(message_st, max_size=10))
    @settings(max_examples=100)
    def test_views_are_mirror_images(self, messages):
        """판매자와 구매자가 서로의 시그널을 보면 같은 단계에 있다"""
        mirrored = [msg(m.type, not m.from_me, i) for i, m in enumerate(messages)]
        assert resolve_trade_state(TradeStatus.LOCKED, Role.SELLER, messages) == \
            resolve_trade_state(TradeStatus.LOCKED, Role.BUYER, mirrored)


class TestDescribe:

    def test_metadata(self):
        view = describe_trade_state(TradeStatus.LOCKED, "buyer", [])
        assert view.state == TradeState.ESCROW_LOCKED
        assert view.step_index == 1
        assert view.label == "KRW 송금 대기"
        assert view.badge_variant == "warning"
        assert view.guidance == "판매자의 계좌로 KRW를 송금해주세요."

    def test_every_state_has_metadata(self):
        assert set(STATE_META) == set(TradeState)

    def test_completed_has_no_guidance(self):
        view = describe_trade_state(TradeStatus.RELEASED, "seller")
        assert view.step_index == 4
        assert view.guidance is None
