"""
Ecash Escrow SDK

Chaumian ecash (Cashu) wallet core with HTLC escrow.

Architecture:
  - Proofs are bearer tokens; only the mint's live state decides validity
  - Proof batches live on a distributed store shared by the user's devices
  - In-flight operations, counters and HTLCs live in a local ledger
  - Escrow is a NUT-14 HTLC: payee claims with the preimage, payer
    refunds after locktime

Usage:
    from ecash_sdk import EcashWallet, WalletConfig, WalletKeyManager, FileRelayTransport

    config = WalletConfig.from_env()
    keys = WalletKeyManager(privkey_hex, mnemonic=config.mnemonic)
    wallet = EcashWallet.from_config(config, FileRelayTransport("store.json"), keys)
    await wallet.connect()

    lock = await wallet.lock_for_escrow(1000, payment_hash, payee_pubkey, 3600)
"""

from .config import ClaimConfirmationPolicy, WalletConfig, mask_secret, setup_logging
from .ecash_types import (
    HtlcStatus,
    MeltQuote,
    MintQuote,
    PendingHtlc,
    Proof,
    ProofState,
    RecoveryToken,
    WalletBalance,
)
from .errors import (
    CryptoError,
    EcashError,
    HtlcNotRefundableError,
    InsufficientFundsError,
    InvalidTransitionError,
    MintRejectedError,
    MintTransportError,
    PreimageMismatchError,
    StoreError,
)
from .htlc_escrow import HTLCEscrow
from .keys import WalletKeyManager
from .ledger import ProofLedger
from .mint_client import MintClient
from .proof_store import AesGcmCipher, EventCipher, FileRelayTransport, ProofStore, RelayTransport
from .token_codec import decode_token, encode_token
from .wallet import EcashWallet, FailureReason
from .denominations import select_proofs, split_amount, validate_amount

__version__ = "0.1.0"
__all__ = [
    # Config
    "WalletConfig", "ClaimConfirmationPolicy", "setup_logging", "mask_secret",
    # Types
    "Proof", "ProofState", "HtlcStatus", "PendingHtlc", "MintQuote", "MeltQuote",
    "RecoveryToken", "WalletBalance",
    # Errors
    "EcashError", "CryptoError", "MintTransportError", "MintRejectedError",
    "InsufficientFundsError", "InvalidTransitionError", "HtlcNotRefundableError",
    "PreimageMismatchError", "StoreError",
    # Core
    "EcashWallet", "FailureReason", "HTLCEscrow", "MintClient", "ProofLedger",
    "ProofStore", "RelayTransport", "EventCipher", "AesGcmCipher", "FileRelayTransport",
    "WalletKeyManager",
    # Tokens / amounts
    "encode_token", "decode_token", "split_amount", "select_proofs", "validate_amount",
]
