"""노드 설정 모듈 - config.yaml 로드 및 Config 데이터클래스"""

from dataclasses import dataclass, field, asdict
from pathlib import Path

import yaml


@dataclass
class Config:
    """노드 설정 (config.yaml에서 로드)"""
    app_id: str = "miniswap-orderbook-v1"
    network_key: str = "arbitrum"
    relay_urls: list[str] = field(default_factory=lambda: [
        "wss://relay.damus.io",
        "wss://nos.lol",
        "wss://relay.nostr.band",
    ])
    min_relays: int = 2
    relay_probe_timeout: float = 4.0
    mailbox_url: str = "https://mailbox.miniswap.dev"
    sponsorship_url: str = ""
    rpc_url: str = "https://arb1.arbitrum.io/rpc"
    escrow_address: str = ""
    chain_id: int = 42161
    db_path: str = "./data/swapmesh.db"
    log_dir: str = "./logs"
    reconnect_base: float = 2.0
    reconnect_max: float = 60.0
    reconnect_factor: float = 2.0
    heartbeat_interval: float = 30.0
    cleanup_interval: float = 30.0
    order_ttl: int = 30 * 60
    relay_deadline_window: int = 3600
    stats_interval: int = 3600

    @classmethod
    def from_yaml(cls, path: str) -> "Config":
        """YAML 파일에서 Config 객체 생성"""
        p = Path(path)
        if not p.exists():
            return cls()
        with open(p, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})

    def to_yaml(self, path: str) -> None:
        """Config 객체를 YAML 파일로 저장"""
        with open(path, "w", encoding="utf-8") as f:
            yaml.dump(asdict(self), f, default_flow_style=False, allow_unicode=True)

    def to_dict(self) -> dict:
        """Config를 딕셔너리로 변환"""
        return asdict(self)

    @property
    def room_namespace(self) -> str:
        """체인별로 오더북을 분리하는 랑데부 네임스페이스"""
        return f"{self.app_id}:{self.network_key}"
