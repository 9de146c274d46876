"""Key custody vault.

Signing keys are generated with eth-account and stored only as AES-256-GCM
envelopes keyed from a process master secret. Plaintext keys exist only
inside :meth:`KeyVault.unsealed`.
"""

from operata_wallet.vault.crypto import decrypt, encrypt
from operata_wallet.vault.keystore import KeyVault, SealedKeyPair

__all__ = ["KeyVault", "SealedKeyPair", "decrypt", "encrypt"]
