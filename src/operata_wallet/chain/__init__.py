"""EVM chain access: network definitions and the Web3 transfer provider."""

from operata_wallet.chain.chains import CHAINS, Chain, get_chain, list_chain_names
from operata_wallet.chain.provider import IncomingTransfer, TransferReceipt, Web3Provider

__all__ = [
    "CHAINS",
    "Chain",
    "IncomingTransfer",
    "TransferReceipt",
    "Web3Provider",
    "get_chain",
    "list_chain_names",
]
