"""멀티체인 네트워크 레지스트리 - 체인 ID, RPC, 탐색기 URL, USDT 주소"""

from __future__ import annotations

from dataclasses import dataclass

from swapmesh.exceptions import ValidationError


@dataclass(frozen=True)
class Network:
    key: str
    chain_type: str              # evm / tron
    name: str
    chain_id: int | None
    native_symbol: str
    rpc_url: str | None
    explorer_url: str
    explorer_tx_template: str
    explorer_address_template: str
    usdt_address: str
    usdt_decimals: int = 6

    @property
    def is_evm(self) -> bool:
        return self.chain_type == "evm"


NETWORKS: dict[str, Network] = {
    "arbitrum": Network(
        key="arbitrum", chain_type="evm", name="Arbitrum One", chain_id=42161,
        native_symbol="ETH", rpc_url="https://arb1.arbitrum.io/rpc",
        explorer_url="https://arbiscan.io",
        explorer_tx_template="https://arbiscan.io/tx/{hash}",
        explorer_address_template="https://arbiscan.io/address/{addr}",
        usdt_address="0xFd086bC7CD5C481DCC9C85ebE478A1C0b69FCbb9",
    ),
    "polygon": Network(
        key="polygon", chain_type="evm", name="Polygon", chain_id=137,
        native_symbol="POL", rpc_url="https://polygon-rpc.com",
        explorer_url="https://polygonscan.com",
        explorer_tx_template="https://polygonscan.com/tx/{hash}",
        explorer_address_template="https://polygonscan.com/address/{addr}",
        usdt_address="0xc2132D05D31c914a87C6611C10748AEb04B58e8F",
    ),
    "tron": Network(
        key="tron", chain_type="tron", name="Tron", chain_id=None,
        native_symbol="TRX", rpc_url=None,
        explorer_url="https://tronscan.org",
        explorer_tx_template="https://tronscan.org/#/transaction/{hash}",
        explorer_address_template="https://tronscan.org/#/address/{addr}",
        usdt_address="TR7NHqjeKQxGTCi8q8ZY4pL8otSzgjLj6t",
    ),
}

DEFAULT_NETWORK = "arbitrum"


def get_network(key: str) -> Network:
    try:
        return NETWORKS[key]
    except KeyError:
        raise ValidationError(f"Unknown network: {key}") from None


def explorer_url(key: str, kind: str, value: str) -> str:
    """kind: tx / address"""
    network = get_network(key)
    if kind == "tx":
        return network.explorer_tx_template.format(hash=value)
    if kind == "address":
        return network.explorer_address_template.format(addr=value)
    raise ValidationError(f"Unknown explorer link kind: {kind}")
