"""
Ecash Escrow SDK - Proof Ledger

Local bookkeeping that the wallet process alone writes: per-keyset
counters, in-flight blinded operations, pending HTLCs, recovery tokens,
pending deposits, transaction history and the cached balance.

Stored as one JSON document, replaced atomically (temp file + rename).
With a passphrase the document is sealed with AES-256-GCM under a
Scrypt-derived key:

    b"ECL1" || salt (16) || nonce (12) || ciphertext+tag
"""

import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from .ecash_types import (
    HtlcStatus,
    OperationStatus,
    PaymentTransaction,
    PendingBlindedOperation,
    PendingDeposit,
    PendingHtlc,
    RecoveryToken,
    WalletBalance,
)
from .errors import InvalidTransitionError, LedgerError

log = logging.getLogger(__name__)

LEDGER_VERSION = 1
ENCRYPTED_MAGIC = b"ECL1"
SALT_SIZE = 16
NONCE_SIZE = 12
MAX_TRANSACTIONS = 100


def _derive_key(passphrase: str, salt: bytes) -> bytes:
    return Scrypt(salt=salt, length=32, n=2 ** 14, r=8, p=1).derive(passphrase.encode("utf-8"))


class ProofLedger:
    """
    Single-writer local ledger.

    Usage:
        ledger = ProofLedger("~/.ecash/ledger.json", passphrase="...")

        n = ledger.get_counter(keyset_id)
        ledger.save_operation(op)            # BEFORE the mint request
        ledger.advance_counter(keyset_id, n + len(outputs))
        ledger.remove_operation(op.id)       # AFTER proofs are durable
    """

    def __init__(self, storage_path, passphrase: Optional[str] = None):
        """
        Initialize ledger.

        Args:
            storage_path: Ledger file path (parent dirs are created)
            passphrase: Encrypt the file at rest when given

        Raises:
            LedgerError: Existing file unreadable or wrong passphrase
        """
        self.storage_path = Path(storage_path).expanduser()
        self._passphrase = passphrase
        self._salt: Optional[bytes] = None
        self._key: Optional[bytes] = None
        self._lock = threading.RLock()

        self.counters: Dict[str, int] = {}
        self.operations: Dict[str, PendingBlindedOperation] = {}
        self.htlcs: Dict[str, PendingHtlc] = {}
        self.recovery_tokens: Dict[str, RecoveryToken] = {}
        self.deposits: Dict[str, PendingDeposit] = {}
        self.transactions: List[PaymentTransaction] = []
        self.balance = WalletBalance()
        self.mint_url: Optional[str] = None

        self._load()

    # ═══════════════════════════════════════════════════════════════════
    # PERSISTENCE
    # ═══════════════════════════════════════════════════════════════════

    def _seal(self, plaintext: bytes) -> bytes:
        if self._key is None:
            self._salt = os.urandom(SALT_SIZE)
            self._key = _derive_key(self._passphrase, self._salt)
        nonce = os.urandom(NONCE_SIZE)
        return ENCRYPTED_MAGIC + self._salt + nonce + AESGCM(self._key).encrypt(nonce, plaintext, ENCRYPTED_MAGIC)

    def _open(self, raw: bytes) -> bytes:
        if not raw.startswith(ENCRYPTED_MAGIC):
            if self._passphrase:
                raise LedgerError("Ledger is not encrypted but a passphrase was given")
            return raw
        if not self._passphrase:
            raise LedgerError("Ledger is encrypted; passphrase required")
        offset = len(ENCRYPTED_MAGIC)
        salt = raw[offset:offset + SALT_SIZE]
        nonce = raw[offset + SALT_SIZE:offset + SALT_SIZE + NONCE_SIZE]
        body = raw[offset + SALT_SIZE + NONCE_SIZE:]
        key = _derive_key(self._passphrase, salt)
        try:
            plaintext = AESGCM(key).decrypt(nonce, body, ENCRYPTED_MAGIC)
        except InvalidTag:
            raise LedgerError("Wrong passphrase or corrupted ledger")
        self._salt, self._key = salt, key
        return plaintext

    def _load(self):
        """Load ledger from storage. A missing file is an empty ledger."""
        if not self.storage_path.exists():
            return
        try:
            data = json.loads(self._open(self.storage_path.read_bytes()))
        except (OSError, ValueError) as e:
            raise LedgerError(f"Failed to load ledger {self.storage_path}: {e}")

        self.counters = {k: int(v) for k, v in data.get("counters", {}).items()}
        self.operations = {
            d["id"]: PendingBlindedOperation.from_dict(d) for d in data.get("operations", [])
        }
        self.htlcs = {d["escrow_id"]: PendingHtlc.from_dict(d) for d in data.get("htlcs", [])}
        self.recovery_tokens = {
            d["id"]: RecoveryToken.from_dict(d) for d in data.get("recovery_tokens", [])
        }
        self.deposits = {d["quote_id"]: PendingDeposit.from_dict(d) for d in data.get("deposits", [])}
        self.transactions = [PaymentTransaction.from_dict(d) for d in data.get("transactions", [])]
        self.balance = WalletBalance.from_dict(data.get("balance", {}))
        self.mint_url = data.get("mint_url")
        log.info(f"Loaded ledger: {len(self.operations)} pending ops, {len(self.htlcs)} HTLCs, "
                 f"{len(self.recovery_tokens)} recovery tokens")

    def _save(self):
        """Persist to disk (atomic write via temp file + rename)."""
        data = {
            "version": LEDGER_VERSION,
            "updated_ts": int(time.time()),
            "mint_url": self.mint_url,
            "counters": self.counters,
            "operations": [op.to_dict() for op in self.operations.values()],
            "htlcs": [h.to_dict() for h in self.htlcs.values()],
            "recovery_tokens": [t.to_dict() for t in self.recovery_tokens.values()],
            "deposits": [d.to_dict() for d in self.deposits.values()],
            "transactions": [t.to_dict() for t in self.transactions],
            "balance": self.balance.to_dict(),
        }
        raw = json.dumps(data, indent=2).encode("utf-8")
        if self._passphrase:
            raw = self._seal(raw)
        try:
            self.storage_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_file = self.storage_path.with_suffix(".tmp")
            with open(tmp_file, "wb") as f:
                f.write(raw)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_file, 0o600)
            os.replace(tmp_file, self.storage_path)
        except OSError as e:
            log.critical(f"Ledger write failed: {e}")
            raise LedgerError(f"Failed to save ledger: {e}")

    # ═══════════════════════════════════════════════════════════════════
    # COUNTERS
    # ═══════════════════════════════════════════════════════════════════

    def get_counter(self, keyset_id: str) -> int:
        """Next unused counter for keyset."""
        with self._lock:
            return self.counters.get(keyset_id, 0)

    def get_counters(self) -> Dict[str, int]:
        with self._lock:
            return dict(self.counters)

    def next_free_counter(self, keyset_id: str) -> int:
        """
        First counter not claimed by the confirmed counter or by any
        unresolved operation's deterministic outputs.
        """
        with self._lock:
            counter = self.counters.get(keyset_id, 0)
            for op in self.operations.values():
                for pre in op.output_premints:
                    if pre.keyset_id == keyset_id and pre.counter is not None:
                        counter = max(counter, pre.counter + 1)
            return counter

    def advance_counter(self, keyset_id: str, new_value: int):
        """
        Move the counter forward after a confirmed mint operation.

        Raises:
            LedgerError: If new_value would move the counter backwards
        """
        with self._lock:
            current = self.counters.get(keyset_id, 0)
            if new_value < current:
                raise LedgerError(f"Counter for {keyset_id} cannot go back ({current} -> {new_value})")
            if new_value == current:
                return
            self.counters[keyset_id] = new_value
            self._save()
            log.debug(f"Counter {keyset_id}: {current} -> {new_value}")

    # ═══════════════════════════════════════════════════════════════════
    # PENDING BLINDED OPERATIONS
    # ═══════════════════════════════════════════════════════════════════

    def save_operation(self, op: PendingBlindedOperation):
        with self._lock:
            self.operations[op.id] = op
            self._save()
        log.debug(f"Saved {op.operation_type.value} operation {op.id} "
                  f"({len(op.output_premints)} outputs, status {op.status.value})")

    def get_operation(self, op_id: str) -> Optional[PendingBlindedOperation]:
        with self._lock:
            return self.operations.get(op_id)

    def update_operation_status(self, op_id: str, status: OperationStatus) -> bool:
        with self._lock:
            op = self.operations.get(op_id)
            if op is None:
                return False
            op.status = status
            self._save()
            return True

    def remove_operation(self, op_id: str) -> bool:
        with self._lock:
            if self.operations.pop(op_id, None) is None:
                return False
            self._save()
            return True

    def get_unresolved_operations(self) -> List[PendingBlindedOperation]:
        """Every marker still present: outcome unknown or proofs not yet durable."""
        with self._lock:
            return sorted(self.operations.values(), key=lambda op: op.created_at)

    def cleanup_expired_operations(self, now: Optional[int] = None) -> int:
        """Drop FAILED markers past their expiry. Others need reconciliation."""
        with self._lock:
            expired = [op_id for op_id, op in self.operations.items()
                       if op.status is OperationStatus.FAILED and op.is_expired(now)]
            for op_id in expired:
                del self.operations[op_id]
            if expired:
                self._save()
            return len(expired)

    # ═══════════════════════════════════════════════════════════════════
    # PENDING HTLCS
    # ═══════════════════════════════════════════════════════════════════

    def save_htlc(self, htlc: PendingHtlc):
        with self._lock:
            self.htlcs[htlc.escrow_id] = htlc
            self._save()

    def get_htlc(self, escrow_id: str) -> Optional[PendingHtlc]:
        with self._lock:
            return self.htlcs.get(escrow_id)

    def get_htlcs(self, status: Optional[HtlcStatus] = None) -> List[PendingHtlc]:
        with self._lock:
            result = [h for h in self.htlcs.values() if status is None or h.status is status]
        result.sort(key=lambda h: h.created_ts)
        return result

    def get_refundable_htlcs(self, now: Optional[int] = None, skew: int = 0) -> List[PendingHtlc]:
        return [h for h in self.get_htlcs(HtlcStatus.LOCKED) if h.is_refundable(now, skew)]

    def find_htlc_by_payment_hash(self, payment_hash: str) -> Optional[PendingHtlc]:
        payment_hash = payment_hash.lower()
        for h in self.get_htlcs():
            if h.payment_hash.lower() == payment_hash:
                return h
        return None

    def update_htlc_status(self, escrow_id: str, status: HtlcStatus) -> bool:
        """
        Apply a state-machine transition.

        Returns:
            True if the status changed, False for an idempotent repeat

        Raises:
            KeyError: Unknown escrow
            InvalidTransitionError: Transition not allowed
        """
        with self._lock:
            htlc = self.htlcs.get(escrow_id)
            if htlc is None:
                raise KeyError(escrow_id)
            if htlc.status is status and status.is_terminal:
                return False
            if not htlc.status.can_transition_to(status):
                raise InvalidTransitionError(escrow_id, htlc.status.value, status.value)
            htlc.status = status
            htlc.updated_ts = int(time.time())
            self._save()
        log.info(f"HTLC {escrow_id} -> {status.value}")
        return True

    def cleanup_resolved_htlcs(self, older_than_s: int = 7 * 24 * 3600) -> int:
        cutoff = int(time.time()) - older_than_s
        with self._lock:
            stale = [k for k, h in self.htlcs.items()
                     if h.status.is_terminal and h.updated_ts < cutoff]
            for k in stale:
                del self.htlcs[k]
            if stale:
                self._save()
            return len(stale)

    # ═══════════════════════════════════════════════════════════════════
    # RECOVERY TOKENS
    # ═══════════════════════════════════════════════════════════════════

    def save_recovery_token(self, token: RecoveryToken):
        with self._lock:
            self.recovery_tokens[token.id] = token
            self._save()
        log.critical(f"Recovery token {token.id} saved: {token.total_amount} sats ({token.reason})")

    def get_recovery_tokens(self) -> List[RecoveryToken]:
        with self._lock:
            return sorted(self.recovery_tokens.values(), key=lambda t: t.created_at)

    def remove_recovery_token(self, token_id: str) -> bool:
        with self._lock:
            if self.recovery_tokens.pop(token_id, None) is None:
                return False
            self._save()
            return True

    # ═══════════════════════════════════════════════════════════════════
    # DEPOSITS / HISTORY / BALANCE / MINT
    # ═══════════════════════════════════════════════════════════════════

    def save_deposit(self, deposit: PendingDeposit):
        with self._lock:
            self.deposits[deposit.quote_id] = deposit
            self._save()

    def get_deposits(self) -> List[PendingDeposit]:
        with self._lock:
            return list(self.deposits.values())

    def remove_deposit(self, quote_id: str) -> bool:
        with self._lock:
            if self.deposits.pop(quote_id, None) is None:
                return False
            self._save()
            return True

    def get_expired_deposits(self, now: Optional[int] = None) -> List[PendingDeposit]:
        """Quotes past their expiry; the caller settles them against the mint."""
        now = int(time.time()) if now is None else now
        with self._lock:
            return [d for d in self.deposits.values() if d.expiry and d.expiry < now]

    def add_transaction(self, tx: PaymentTransaction):
        with self._lock:
            self.transactions.insert(0, tx)
            del self.transactions[MAX_TRANSACTIONS:]
            self._save()

    def get_transactions(self) -> List[PaymentTransaction]:
        with self._lock:
            return list(self.transactions)

    def cache_balance(self, balance: WalletBalance):
        with self._lock:
            self.balance = balance
            self._save()

    def save_mint_url(self, url: str):
        with self._lock:
            self.mint_url = url
            self._save()
