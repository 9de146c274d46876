"""Chain definitions for supported EVM networks."""

from __future__ import annotations

from dataclasses import dataclass, replace


@dataclass(frozen=True)
class Chain:
    """An EVM-compatible blockchain network."""

    name: str
    chain_id: int
    rpc_url: str
    native_symbol: str
    explorer_url: str


CHAINS: dict[str, Chain] = {
    "ethereum": Chain(
        name="ethereum",
        chain_id=1,
        rpc_url="https://eth.llamarpc.com",
        native_symbol="ETH",
        explorer_url="https://etherscan.io",
    ),
    "sepolia": Chain(
        name="sepolia",
        chain_id=11155111,
        rpc_url="https://ethereum-sepolia-rpc.publicnode.com",
        native_symbol="ETH",
        explorer_url="https://sepolia.etherscan.io",
    ),
    "base": Chain(
        name="base",
        chain_id=8453,
        rpc_url="https://mainnet.base.org",
        native_symbol="ETH",
        explorer_url="https://basescan.org",
    ),
    "base-sepolia": Chain(
        name="base-sepolia",
        chain_id=84532,
        rpc_url="https://sepolia.base.org",
        native_symbol="ETH",
        explorer_url="https://sepolia.basescan.org",
    ),
    "polygon": Chain(
        name="polygon",
        chain_id=137,
        rpc_url="https://polygon-rpc.com",
        native_symbol="POL",
        explorer_url="https://polygonscan.com",
    ),
}


def get_chain(name: str, rpc_overrides: dict[str, str] | None = None) -> Chain:
    """Get a chain by name, applying a configured RPC URL override.

    Raises ``KeyError`` if the chain is unknown.
    """
    if name not in CHAINS:
        raise KeyError(
            f"Unknown chain '{name}'. Available: {list_chain_names()}"
        )
    chain = CHAINS[name]
    if rpc_overrides and name in rpc_overrides:
        chain = replace(chain, rpc_url=rpc_overrides[name])
    return chain


def list_chain_names() -> list[str]:
    """Return the names of all supported chains."""
    return list(CHAINS.keys())
