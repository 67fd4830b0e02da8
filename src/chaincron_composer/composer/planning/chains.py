"""Static chain registry.

Chain-specific RPC and bridge details are consumed as static configuration. The
composer only needs enough of it to label gas amounts and to tell testnets apart.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class ChainConfig:
    key: str
    name: str
    chain_id: int
    gas_token: str
    is_testnet: bool


SUPPORTED_CHAINS: dict[str, ChainConfig] = {
    chain.key: chain
    for chain in (
        ChainConfig(key="flow", name="Flow", chain_id=747, gas_token="FLOW", is_testnet=False),
        ChainConfig(key="forte", name="Forte", chain_id=1, gas_token="FTE", is_testnet=True),
        ChainConfig(key="ethereum", name="Ethereum", chain_id=1, gas_token="ETH", is_testnet=False),
        ChainConfig(key="polygon", name="Polygon", chain_id=137, gas_token="MATIC", is_testnet=False),
        ChainConfig(
            key="arbitrum", name="Arbitrum One", chain_id=42161, gas_token="ETH", is_testnet=False
        ),
        ChainConfig(key="optimism", name="Optimism", chain_id=10, gas_token="ETH", is_testnet=False),
        ChainConfig(key="base", name="Base", chain_id=8453, gas_token="ETH", is_testnet=False),
    )
}


def get_chain(key: str) -> ChainConfig | None:
    return SUPPORTED_CHAINS.get(key.strip().lower())


def gas_token_for(key: str) -> str:
    """Symbol used to label gas on `key`; unknown chains fall back to the upper-cased key."""

    chain = get_chain(key)
    if chain is None:
        return key.strip().upper()
    return chain.gas_token