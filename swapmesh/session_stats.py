"""세션 통계 로깅 모듈 - 메시지 드롭 사유, 재연결, 피어 이벤트, 주기 JSON 로그"""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)


class SessionStats:
    """가십/협상 세션 통계"""

    MAX_EVENT_BUFFER = 10000  # 이벤트 기록 최대 보관 수

    def __init__(self, log_dir: Path | str | None = None):
        self.log_dir = Path(log_dir) if log_dir else None
        if self.log_dir:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        self._drops: list[dict] = []
        self._reconnects: list[dict] = []
        self._drop_counts: dict[str, int] = defaultdict(int)
        self._accepted_counts: dict[str, int] = defaultdict(int)
        self._peer_joins = 0
        self._peer_leaves = 0

    def record_drop(self, component: str, reason: str, peer: str | None = None,
                    entity_id: str | None = None) -> None:
        """검증/서명 실패로 버려진 메시지 기록"""
        if len(self._drops) >= self.MAX_EVENT_BUFFER:
            self._drops = self._drops[-self.MAX_EVENT_BUFFER // 2:]
        self._drops.append({
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "component": component,
            "reason": reason,
            "peer": peer,
            "entity_id": entity_id,
        })
        self._drop_counts[f"{component}:{reason.split(':')[0]}"] += 1

    def record_accepted(self, component: str) -> None:
        self._accepted_counts[component] += 1

    def record_reconnect(self, component: str, reason: str) -> None:
        self._reconnects.append({
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "component": component,
            "reason": reason,
        })

    def record_peer_join(self) -> None:
        self._peer_joins += 1

    def record_peer_leave(self) -> None:
        self._peer_leaves += 1

    @property
    def drop_counts(self) -> dict[str, int]:
        return dict(self._drop_counts)

    @property
    def reconnect_count(self) -> int:
        return len(self._reconnects)

    def get_periodic_stats(self) -> dict:
        """현재 주기 통계 반환"""
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "drops": list(self._drops),
            "drop_counts": dict(self._drop_counts),
            "accepted_counts": dict(self._accepted_counts),
            "reconnect_count": len(self._reconnects),
            "reconnects": list(self._reconnects),
            "peer_joins": self._peer_joins,
            "peer_leaves": self._peer_leaves,
        }

    async def write_periodic_log(self) -> Path | None:
        """주기 통계 JSON 로그 작성 후 리셋"""
        if self.log_dir is None:
            return None
        stats = self.get_periodic_stats()
        now = datetime.now(timezone.utc)
        log_file = self.log_dir / f"stats_{now.strftime('%Y%m%d_%H')}.json"
        with open(log_file, "w") as f:
            json.dump(stats, f, indent=2, default=str)
        self._drops.clear()
        self._reconnects.clear()
        self._drop_counts.clear()
        self._accepted_counts.clear()
        self._peer_joins = 0
        self._peer_leaves = 0
        logger.info(f"[로그] {log_file}")
        return log_file
