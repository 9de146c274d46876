"""Web3 provider for Ethereum-compatible networks."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from web3 import Web3
from web3.middleware import ExtraDataToPOAMiddleware

from operata_wallet.chain.chains import get_chain
from operata_wallet.errors import ChainError

logger = logging.getLogger("operata_wallet.chain.provider")


@dataclass(frozen=True)
class TransferReceipt:
    """Finalization evidence for a submitted transfer."""

    tx_hash: str
    block_number: int
    succeeded: bool


@dataclass(frozen=True)
class IncomingTransfer:
    """A native-token transfer into a watched address."""

    tx_hash: str
    sender: str
    amount: Decimal
    block_number: int
    timestamp: datetime


def _to_hex(tx_hash) -> str:
    return tx_hash.to_0x_hex() if hasattr(tx_hash, "to_0x_hex") else Web3.to_hex(tx_hash)


class Web3Provider:
    """Manages Web3 connections across EVM chains.

    All methods are blocking; async callers run them in a worker thread.
    """

    def __init__(
        self,
        rpc_overrides: dict[str, str] | None = None,
        receipt_timeout: float = 120.0,
    ) -> None:
        self._instances: dict[str, Web3] = {}
        self._rpc_overrides = dict(rpc_overrides or {})
        self.receipt_timeout = receipt_timeout

    def get_web3(self, chain_name: str) -> Web3:
        """Return a (cached) Web3 instance for the given chain.

        Injects POA middleware for non-mainnet chains.
        """
        if chain_name in self._instances:
            return self._instances[chain_name]

        chain = get_chain(chain_name, self._rpc_overrides)
        w3 = Web3(Web3.HTTPProvider(chain.rpc_url))

        if chain.chain_id != 1:
            w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)

        self._instances[chain_name] = w3
        return w3

    @staticmethod
    def is_address(address: str) -> bool:
        return Web3.is_address(address)

    def get_native_balance(self, address: str, chain_name: str) -> Decimal:
        """Get the native token balance in human-readable units (e.g. ETH)."""
        w3 = self.get_web3(chain_name)
        checksum = Web3.to_checksum_address(address)
        balance_wei = w3.eth.get_balance(checksum)
        return Decimal(str(Web3.from_wei(balance_wei, "ether")))

    def get_block_number(self, chain_name: str) -> int:
        return self.get_web3(chain_name).eth.block_number

    def submit_transfer(
        self,
        private_key: bytes,
        to_address: str,
        amount_ether: str | Decimal,
        chain_name: str,
    ) -> str:
        """Build, sign and broadcast a native-token transfer.

        Uses EIP-1559 fee parameters with a legacy gas price fallback. Gas
        is paid from the sending wallet's own balance.

        Returns
        -------
        str
            The ``0x`` transaction hash. Confirmation is a separate step, see
            :meth:`wait_for_receipt`.

        Raises
        ------
        ChainError
            If the transaction could not be built, signed or broadcast.
        """
        w3 = self.get_web3(chain_name)
        chain = get_chain(chain_name, self._rpc_overrides)
        checksum_to = Web3.to_checksum_address(to_address)
        from_account = w3.eth.account.from_key(private_key)
        value = Web3.to_wei(Decimal(str(amount_ether)), "ether")

        try:
            nonce = w3.eth.get_transaction_count(from_account.address, "pending")
            tx: dict = {
                "from": from_account.address,
                "to": checksum_to,
                "value": value,
                "nonce": nonce,
                "chainId": chain.chain_id,
            }

            # Try EIP-1559 first, fall back to legacy gas price
            latest = w3.eth.get_block("latest")
            base_fee = latest.get("baseFeePerGas")
            if base_fee is not None:
                max_priority = Web3.to_wei(1.5, "gwei")
                tx["maxFeePerGas"] = base_fee * 2 + max_priority
                tx["maxPriorityFeePerGas"] = max_priority
            else:
                tx["gasPrice"] = w3.eth.gas_price
            tx["gas"] = w3.eth.estimate_gas(tx)

            signed = w3.eth.account.sign_transaction(tx, private_key)
            tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
        except Exception as exc:
            raise ChainError(f"Transfer to {checksum_to} on {chain_name} failed: {exc}") from exc

        return _to_hex(tx_hash)

    def wait_for_receipt(self, tx_hash: str, chain_name: str) -> TransferReceipt:
        """Block until *tx_hash* is mined or the receipt timeout passes.

        A reverted transaction is returned with ``succeeded=False``.

        Raises
        ------
        ChainError
            If no receipt arrives within the timeout.
        """
        w3 = self.get_web3(chain_name)
        try:
            receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        except Exception as exc:
            raise ChainError(f"No receipt for {tx_hash} on {chain_name}: {exc}") from exc

        return TransferReceipt(
            tx_hash=tx_hash,
            block_number=receipt["blockNumber"],
            succeeded=receipt.get("status") == 1,
        )

    def get_incoming_transfers(
        self,
        address: str,
        chain_name: str,
        from_block: int,
        to_block: int,
    ) -> list[IncomingTransfer]:
        """Scan ``[from_block, to_block]`` for native transfers into *address*."""
        w3 = self.get_web3(chain_name)
        watched = Web3.to_checksum_address(address)
        transfers: list[IncomingTransfer] = []

        for number in range(from_block, to_block + 1):
            block = w3.eth.get_block(number, full_transactions=True)
            timestamp = datetime.fromtimestamp(block["timestamp"], tz=timezone.utc)
            for tx in block["transactions"]:
                to = tx.get("to")
                if not to or Web3.to_checksum_address(to) != watched:
                    continue
                if not tx.get("value"):
                    continue
                transfers.append(
                    IncomingTransfer(
                        tx_hash=_to_hex(tx["hash"]),
                        sender=tx["from"],
                        amount=Decimal(str(Web3.from_wei(tx["value"], "ether"))),
                        block_number=number,
                        timestamp=timestamp,
                    )
                )
        return transfers
