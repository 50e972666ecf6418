"""메인 애플리케이션 - 노드 모듈 초기화 및 동시 실행"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

from swapmesh.backoff import ReconnectBackoff
from swapmesh.config import Config
from swapmesh.escrow import EscrowContract
from swapmesh.mailbox import MailboxClient
from swapmesh.negotiation import NegotiationChannel
from swapmesh.node import MarketNode
from swapmesh.relay_client import RelaySigningClient
from swapmesh.session_stats import SessionStats
from swapmesh.signature import LocalSigner, Scheme
from swapmesh.store import LocalStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[
        logging.StreamHandler(sys.stdout),
    ],
)
logger = logging.getLogger(__name__)


async def main(config_path: str = "config.yaml") -> None:
    """노드 조립 후 시그널까지 실행"""
    config = Config.from_yaml(config_path)

    # 디렉토리 생성 (로깅 FileHandler보다 먼저)
    Path(config.log_dir).mkdir(parents=True, exist_ok=True)

    file_handler = logging.FileHandler(
        Path(config.log_dir) / "swapmesh.log", encoding="utf-8"
    )
    file_handler.setFormatter(
        logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    )
    logging.getLogger().addHandler(file_handler)

    # 모듈 초기화
    stats = SessionStats(config.log_dir)
    store = LocalStore(config.db_path)
    escrow = EscrowContract(config.rpc_url, config.escrow_address) if config.escrow_address else None
    relay: RelaySigningClient | None = None
    if escrow is not None and config.sponsorship_url:
        relay = RelaySigningClient(config.sponsorship_url, escrow, config.chain_id,
                                   deadline_window=config.relay_deadline_window)

    # 개인키가 있으면 협상 채널까지 연다 (없으면 오더북 관전 모드)
    mailbox: MailboxClient | None = None
    negotiation: NegotiationChannel | None = None
    private_key = os.environ.get("SWAPMESH_PRIVATE_KEY")
    if private_key:
        scheme = Scheme.TRON if config.network_key == "tron" else Scheme.EVM
        signer = LocalSigner(private_key, scheme)
        mailbox = await MailboxClient(config.mailbox_url, signer.address).open()
        negotiation = NegotiationChannel(
            mailbox,
            backoff=ReconnectBackoff(config.reconnect_base, config.reconnect_max,
                                     config.reconnect_factor),
            heartbeat_interval=config.heartbeat_interval,
            stats=stats,
        )
        logger.info(f"지갑: {signer.address}")

    node = MarketNode(config, store, negotiation=negotiation, escrow=escrow, stats=stats,
                      relay=relay)

    logger.info("=== swapmesh 노드 시작 ===")
    logger.info(f"네트워크: {config.network_key} / 룸: {config.room_namespace}")
    logger.info(f"릴레이 후보: {config.relay_urls}")
    if relay is not None:
        logger.info(f"가스 대납 서비스: {config.sponsorship_url}")
    await node.start()

    async def periodic_log():
        while True:
            await asyncio.sleep(config.stats_interval)
            await stats.write_periodic_log()

    # graceful shutdown
    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler():
        logger.info("종료 신호 수신, 정리 중...")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    log_task = asyncio.create_task(periodic_log())
    await shutdown_event.wait()

    log_task.cancel()
    try:
        await node.stop()
        await stats.write_periodic_log()
    except Exception as e:
        logger.error(f"종료 처리 실패: {e}")
    finally:
        if mailbox is not None:
            await mailbox.close()
        await store.close()

    logger.info("=== 노드 종료 ===")


def run() -> None:
    config_file = sys.argv[1] if len(sys.argv) > 1 else "config.yaml"
    asyncio.run(main(config_file))


if __name__ == "__main__":
    run()
