"""Key custody using eth-account keypairs sealed by the envelope cipher."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

from eth_account import Account
from eth_keys import keys

from operata_wallet.config import is_unexpanded
from operata_wallet.errors import CustodyError
from operata_wallet.vault.crypto import decrypt, encrypt

logger = logging.getLogger("operata_wallet.vault")


@dataclass(frozen=True)
class SealedKeyPair:
    """A freshly generated keypair, private half already sealed."""

    address: str
    public_key: str
    sealed_private_key: str


class KeyVault:
    """Generates, seals and temporarily unseals wallet signing keys.

    Parameters
    ----------
    master_secret:
        Process-wide secret the per-key AES keys are derived from.

    Raises
    ------
    ValueError
        If *master_secret* is empty or still an unexpanded ``${VAR}``
        placeholder.
    """

    def __init__(self, master_secret: str) -> None:
        if not master_secret or is_unexpanded(master_secret):
            raise ValueError(
                "Vault master secret is not set. Export OPERATA_ENCRYPTION_KEY "
                "or set vault.master_secret in config.yaml."
            )
        self._secret = master_secret

    def generate(self) -> SealedKeyPair:
        """Generate a new secp256k1 keypair and seal its private key.

        Returns
        -------
        SealedKeyPair
            The checksummed address, hex public key and sealed private key.
        """
        acct = Account.create()
        public_key = keys.PrivateKey(acct.key).public_key.to_hex()
        sealed = encrypt(bytes(acct.key), self._secret)
        logger.info(f"Generated signing key for {acct.address}")
        return SealedKeyPair(
            address=acct.address,
            public_key=public_key,
            sealed_private_key=sealed,
        )

    def seal(self, private_key: bytes) -> str:
        """Seal raw private key bytes (used when importing an existing key)."""
        return encrypt(private_key, self._secret)

    @contextmanager
    def unsealed(self, sealed_private_key: str) -> Iterator[bytes]:
        """Yield the raw private key for the duration of a signing call.

        The plaintext is only reachable inside the ``with`` block; the vault
        keeps no reference to it.

        Raises
        ------
        CustodyError
            If the sealed key cannot be opened.
        """
        private_key = decrypt(sealed_private_key, self._secret)
        if len(private_key) != 32:
            raise CustodyError("Unsealed key has an unexpected length")
        try:
            yield private_key
        finally:
            del private_key
