"""SessionStats 테스트 - 드롭 사유 집계, 주기 로그 작성 후 리셋"""

import asyncio
import json

from swapmesh.session_stats import SessionStats


def test_drop_counts_group_by_reason_prefix():
    stats = SessionStats()
    stats.record_drop("gossip", "Invalid amount", peer="p1", entity_id="o1")
    stats.record_drop("gossip", "Invalid amount", peer="p2")
    stats.record_drop("negotiation", "Signer mismatch: 0xabc")
    assert stats.drop_counts == {"gossip:Invalid amount": 2, "negotiation:Signer mismatch": 1}


def test_drop_buffer_bounded():
    stats = SessionStats()
    for i in range(SessionStats.MAX_EVENT_BUFFER + 10):
        stats.record_drop("gossip", "x", entity_id=str(i))
    assert len(stats.get_periodic_stats()["drops"]) <= SessionStats.MAX_EVENT_BUFFER


def test_periodic_log_written_and_reset(tmp_path):
    stats = SessionStats(tmp_path / "logs")
    stats.record_drop("gossip", "Order has expired")
    stats.record_accepted("gossip")
    stats.record_reconnect("gossip", "All peers left the room")
    stats.record_peer_join()
    stats.record_peer_leave()

    path = asyncio.run(stats.write_periodic_log())
    data = json.loads(path.read_text())
    assert data["accepted_counts"] == {"gossip": 1}
    assert data["reconnect_count"] == 1
    assert data["peer_joins"] == 1 and data["peer_leaves"] == 1
    assert stats.drop_counts == {}
    assert stats.reconnect_count == 0


def test_no_log_dir():
    assert asyncio.run(SessionStats().write_periodic_log()) is None
