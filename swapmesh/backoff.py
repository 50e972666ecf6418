"""재연결 백오프 및 감독 태스크 - 지수 백오프 상태, 취소 플래그, 세션 재시작 루프"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

RECONNECT_BASE = 2.0
RECONNECT_MAX = 60.0
RECONNECT_FACTOR = 2.0


class ReconnectBackoff:
    """지수 백오프 상태 (시도 횟수 + 다음 대기 시간)"""

    def __init__(self, base: float = RECONNECT_BASE, cap: float = RECONNECT_MAX,
                 factor: float = RECONNECT_FACTOR):
        self.base = base
        self.cap = cap
        self.factor = factor
        self.failures = 0

    @property
    def delay(self) -> float:
        """연속 실패 N회 후 다음 대기 시간: min(base * factor^N, cap)"""
        return self.compute_delay(self.failures, self.base, self.cap, self.factor)

    def next_delay(self) -> float:
        """실패 1회 기록, 이번에 기다릴 시간 반환"""
        delay = self.delay
        self.failures += 1
        return delay

    def reset(self) -> None:
        self.failures = 0

    @staticmethod
    def compute_delay(attempt: int, base: float = RECONNECT_BASE, cap: float = RECONNECT_MAX,
                      factor: float = RECONNECT_FACTOR) -> float:
        # 큰 attempt에서 float overflow 방지
        if attempt > 64:
            return cap
        return min(base * factor ** attempt, cap)


async def run_until_first_failure(*coros: Awaitable[None]) -> None:
    """여러 코루틴을 동시에 실행하고 하나라도 끝나거나 실패하면 나머지를 취소"""
    tasks = [asyncio.ensure_future(c) for c in coros]
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
    for t in pending:
        t.cancel()
    await asyncio.gather(*pending, return_exceptions=True)
    for t in done:
        exc = t.exception()
        if exc is not None:
            raise exc


class Supervisor:
    """세션 코루틴을 감독하며 실패 시 백오프 후 재시작

    세션은 연결이 성립하면 스스로 backoff.reset()을 호출한다.
    stop()은 동기적으로 취소 플래그를 세우고 태스크를 취소한다.
    """

    def __init__(self, name: str, session: Callable[[], Awaitable[None]],
                 backoff: ReconnectBackoff,
                 on_failure: Callable[[str], None] | None = None):
        self.name = name
        self._session = session
        self.backoff = backoff
        self.on_failure = on_failure
        self.cancelled = False
        self._task: asyncio.Task | None = None

    def start(self) -> asyncio.Task:
        self.cancelled = False
        self._task = asyncio.create_task(self._loop(), name=self.name)
        return self._task

    async def _loop(self) -> None:
        while not self.cancelled:
            try:
                await self._session()
                reason = "session ended"
            except asyncio.CancelledError:
                raise
            except Exception as e:
                reason = f"{type(e).__name__}: {e}"
            if self.cancelled:
                break
            delay = self.backoff.next_delay()
            logger.warning(f"[{self.name}] {reason}, {delay:.1f}초 후 재시작")
            if self.on_failure:
                self.on_failure(reason)
            await asyncio.sleep(delay)

    def stop(self) -> None:
        self.cancelled = True
        if self._task and not self._task.done():
            self._task.cancel()

    async def wait_closed(self) -> None:
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            pass
