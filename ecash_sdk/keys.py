"""
Ecash Escrow SDK - Wallet Keys

Dedicated payment key and recovery seed. This key signs escrow
witnesses only; it is never the identity key of the messaging layer.
"""

import logging
from typing import Optional

from coincurve.keys import PrivateKey

from .crypto import mnemonic_to_seed, proof_signing_hash, sign_schnorr
from .errors import CryptoError, SeedUnavailableError

log = logging.getLogger(__name__)


class WalletKeyManager:
    """
    Payment key service.

    Usage:
        keys = WalletKeyManager.generate(mnemonic="abandon ... about")
        keys.pubkey_hex            # share with counterparties
        keys.sign_proof_secret(p)  # NUT-11 witness signature
        keys.require_seed()        # raises if no seed configured
    """

    def __init__(self, privkey_hex: str, seed: Optional[bytes] = None,
                 mnemonic: Optional[str] = None):
        try:
            self._privkey = PrivateKey(bytes.fromhex(privkey_hex))
        except ValueError as e:
            raise CryptoError(f"Invalid wallet private key: {e}")
        if seed is None and mnemonic:
            seed = mnemonic_to_seed(mnemonic)
        self._seed = seed
        self.mnemonic = mnemonic

    @classmethod
    def generate(cls, mnemonic: Optional[str] = None,
                 seed: Optional[bytes] = None) -> "WalletKeyManager":
        """Fresh random payment key; seed comes from the caller."""
        return cls(PrivateKey().secret.hex(), seed=seed, mnemonic=mnemonic)

    def adopt_mnemonic(self, mnemonic: str):
        """Take the recovery phrase found in a stored wallet record."""
        self._seed = mnemonic_to_seed(mnemonic)
        self.mnemonic = mnemonic

    @property
    def privkey_hex(self) -> str:
        return self._privkey.secret.hex()

    @property
    def pubkey_hex(self) -> str:
        """Compressed public key (33 bytes hex)."""
        return self._privkey.public_key.format(compressed=True).hex()

    @property
    def has_seed(self) -> bool:
        return bool(self._seed)

    def require_seed(self) -> bytes:
        """Seed for deterministic outputs. Missing seed is fatal."""
        if not self._seed:
            log.error("Deterministic output requested but no seed is configured")
            raise SeedUnavailableError()
        return self._seed

    def sign_proof_secret(self, secret: str) -> str:
        """Schnorr signature over SHA256(secret)."""
        return sign_schnorr(proof_signing_hash(secret), self._privkey)

    def owns(self, pubkey_hex: str) -> bool:
        """True if pubkey_hex (compressed or x-only) is this wallet's key."""
        mine = self.pubkey_hex.lower()
        other = pubkey_hex.lower()
        if len(other) == 64:
            return mine[2:] == other
        return mine == other
