"""
Ecash Escrow SDK - Wallet

EcashWallet wires the mint client, the distributed proof store, the
local ledger and the payment key into the operations callers use:
deposit, withdraw, lock / claim / refund escrow, sync and recovery.

Rules every spend-affecting method follows:
  - runs under the wallet's single asyncio.Lock
  - unresolved in-flight operations are reconciled first
  - new proofs are published to the store, or kept as a RecoveryToken
  - spent proofs leave the store only via ProofStore.remove_spent_proofs

Public methods return result objects; library exceptions stop here.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .blinded_ops import (
    begin_operation,
    fail_operation,
    finish_operation,
    input_fee,
    mark_sent,
    plan_change_outputs,
    plan_outputs,
    recover_outputs,
)
from .config import WalletConfig, mask_secret, normalize_mint_url, same_mint
from .crypto import proof_y, verify_preimage
from .denominations import validate_amount
from .ecash_types import (
    HtlcSecret,
    HtlcStatus,
    MeltQuote,
    MeltQuoteState,
    MintQuote,
    MintQuoteState,
    OperationStatus,
    OperationType,
    PaymentTransaction,
    PendingBlindedOperation,
    PendingDeposit,
    PendingHtlc,
    Proof,
    ProofState,
    RecoveryToken,
    TransactionType,
    WalletBalance,
)
from .errors import (
    CryptoError,
    EcashError,
    HtlcNotRefundableError,
    InsufficientFundsError,
    InvalidTransitionError,
    LedgerError,
    MintError,
    MintProtocolError,
    MintRejectedError,
    MintTransportError,
    PreimageMismatchError,
    StoreError,
)
from .htlc_escrow import HTLCEscrow
from .keys import WalletKeyManager
from .ledger import ProofLedger
from .mint_client import MintClient, build_outputs
from .mint_ws import SubscriptionKind, wait_for_quote_state
from .proof_store import AesGcmCipher, EventCipher, ProofSelection, ProofStore, RelayTransport
from .token_codec import TokenError, decode_token, encode_token

log = logging.getLogger(__name__)

CHECKSTATE_BATCH = 100
MAX_SELECTION_ROUNDS = 3

# exceptions converted to result objects at the public boundary
WALLET_ERRORS = (EcashError, TokenError)


# =============================================================================
# RESULTS
# =============================================================================

class FailureReason(Enum):
    INSUFFICIENT_FUNDS = "insufficient_funds"
    MINT_UNREACHABLE = "mint_unreachable"
    MINT_REJECTED = "mint_rejected"
    ALREADY_SPENT = "already_spent"
    PROVIDER_INCOMPATIBLE = "provider_incompatible"
    INVALID_PREIMAGE = "invalid_preimage"
    INVALID_TOKEN = "invalid_token"
    NOT_REFUNDABLE = "not_refundable"
    INVALID_STATE = "invalid_state"
    NOT_PAID = "not_paid"
    PAYMENT_PENDING = "payment_pending"
    STORE_UNAVAILABLE = "store_unavailable"
    LEDGER = "ledger"
    CRYPTO = "crypto"
    INVALID_AMOUNT = "invalid_amount"
    NOT_FOUND = "not_found"


# checked in order: subclasses before their parents
_REASONS: List[Tuple[type, FailureReason, str]] = [
    (InsufficientFundsError, FailureReason.INSUFFICIENT_FUNDS, ""),
    (PreimageMismatchError, FailureReason.INVALID_PREIMAGE, "Preimage does not match the payment hash"),
    (HtlcNotRefundableError, FailureReason.NOT_REFUNDABLE, ""),
    (InvalidTransitionError, FailureReason.INVALID_STATE, ""),
    (TokenError, FailureReason.INVALID_TOKEN, ""),
    (MintTransportError, FailureReason.MINT_UNREACHABLE, "Mint unreachable, try again later"),
    (MintProtocolError, FailureReason.PROVIDER_INCOMPATIBLE, "Mint response not understood"),
    (MintRejectedError, FailureReason.MINT_REJECTED, ""),
    (StoreError, FailureReason.STORE_UNAVAILABLE, "Wallet store unreachable"),
    (LedgerError, FailureReason.LEDGER, ""),
    (CryptoError, FailureReason.CRYPTO, ""),
]


def _token_secrets(htlc: PendingHtlc) -> set:
    try:
        return {p.secret for p in decode_token(htlc.token).proofs}
    except TokenError:
        return set()


def classify_error(error: Exception) -> Tuple[FailureReason, str]:
    """Map an SDK exception to a failure reason and a user-facing message."""
    if isinstance(error, MintRejectedError) and error.is_already_spent:
        return FailureReason.ALREADY_SPENT, "Proofs already spent"
    if isinstance(error, MintRejectedError) and error.is_pending:
        return FailureReason.PAYMENT_PENDING, "Mint reports the operation as pending"
    for cls, reason, message in _REASONS:
        if isinstance(error, cls):
            text = getattr(error, "message", None) or str(error)
            return reason, message or text
    return FailureReason.MINT_REJECTED, str(error)


@dataclass
class OperationResult:
    success: bool
    reason: Optional[FailureReason] = None
    message: str = ""

    @classmethod
    def failed(cls, error: Exception, **kwargs):
        reason, message = classify_error(error)
        return cls(success=False, reason=reason, message=message, **kwargs)


@dataclass
class QuoteResult(OperationResult):
    mint_quote: Optional[MintQuote] = None
    melt_quote: Optional[MeltQuote] = None


@dataclass
class DepositResult(OperationResult):
    quote_id: str = ""
    amount_sats: int = 0


@dataclass
class WithdrawResult(OperationResult):
    paid: bool = False
    payment_preimage: Optional[str] = None
    amount_sats: int = 0
    fee_paid: int = 0
    change_sats: int = 0


@dataclass
class LockResult(OperationResult):
    htlc: Optional[PendingHtlc] = None

    @property
    def token(self) -> Optional[str]:
        return self.htlc.token if self.htlc else None


@dataclass
class ClaimResult(OperationResult):
    amount_sats: int = 0
    payment_hash: Optional[str] = None


@dataclass
class HtlcRefundInfo:
    escrow_id: str
    success: bool
    amount_sats: int = 0
    status: HtlcStatus = HtlcStatus.LOCKED
    reason: Optional[FailureReason] = None
    message: str = ""


@dataclass
class SyncResult(OperationResult):
    balance_sats: int = 0
    pending_sats: int = 0
    verified: int = 0
    spent_removed: int = 0
    from_cache: bool = False


@dataclass
class RestoreResult(OperationResult):
    recovered_sats: int = 0
    proof_count: int = 0
    next_counter: int = 0


# =============================================================================
# WALLET
# =============================================================================

class EcashWallet:
    """
    Ecash wallet with HTLC escrow.

    Usage:
        wallet = EcashWallet.from_config(config, transport, keys)
        await wallet.connect()

        quote = await wallet.request_deposit(1000)
        ...pay quote.mint_quote.request...
        await wallet.check_deposit(quote.mint_quote.quote)

        lock = await wallet.lock_for_escrow(500, payment_hash, payee_pubkey, 3600)
        ...hand lock.token to the payee...

        await wallet.refund_expired_htlcs()
    """

    def __init__(self, config: WalletConfig, mint: MintClient, store: ProofStore,
                 ledger: ProofLedger, keys: WalletKeyManager):
        self.config = config
        self.mint = mint
        self.store = store
        self.ledger = ledger
        self.keys = keys
        self.escrow = HTLCEscrow(mint, keys, ledger, refund_skew=config.refund_skew)
        self._lock = asyncio.Lock()
        self.connected = False

    @classmethod
    def from_config(cls, config: WalletConfig, transport: RelayTransport,
                    keys: WalletKeyManager, cipher: Optional[EventCipher] = None,
                    http_client=None) -> "EcashWallet":
        """Build every collaborator from config."""
        mint = MintClient(config.mint_url, timeout=config.http_timeout, http_client=http_client)
        store = ProofStore(transport, cipher or AesGcmCipher.from_private_key(keys.privkey_hex),
                           publish_retries=config.publish_retries,
                           retry_backoff=config.retry_backoff)
        ledger = ProofLedger(config.ledger_path, config.ledger_passphrase)
        return cls(config, mint, store, ledger, keys)

    @property
    def mint_url(self) -> str:
        return self.mint.mint_url

    async def close(self):
        await self.mint.close()

    # ═══════════════════════════════════════════════════════════════════
    # CONNECT
    # ═══════════════════════════════════════════════════════════════════

    async def connect(self) -> bool:
        """
        Attach to the mint and run startup recovery.

        Order: capabilities and keyset, reconcile in-flight operations,
        settle expired deposit quotes, refund expired HTLCs, retry
        recovery tokens.
        """
        try:
            caps = await self.mint.get_info()
            keyset = await self.mint.get_active_keyset()
        except MintError as e:
            log.error(f"Cannot connect to mint {self.mint_url}: {e}")
            return False

        if not caps.supports_escrow:
            log.warning(f"Mint {caps.name or self.mint_url} lacks HTLC, melt or checkstate support")
        self.ledger.save_mint_url(self.mint_url)
        self.connected = True
        log.info(f"Connected to {caps.name or self.mint_url} {caps.version} (keyset {keyset.id})")

        async with self._lock:
            try:
                await self._reconcile_operations()
            except WALLET_ERRORS as e:
                log.warning(f"Reconciliation incomplete: {e}")
            try:
                await self._settle_expired_deposits()
            except WALLET_ERRORS as e:
                log.warning(f"Expired deposit check incomplete: {e}")
            for info in await self._refund_expired_locked():
                if not info.success:
                    log.warning(f"Auto-refund of {info.escrow_id} failed: {info.message}")
            try:
                await self._retry_recovery_tokens_locked()
            except WALLET_ERRORS as e:
                log.warning(f"Recovery token retry incomplete: {e}")
        return True

    # ═══════════════════════════════════════════════════════════════════
    # DURABILITY
    # ═══════════════════════════════════════════════════════════════════

    def _save_recovery(self, proofs: Sequence[Proof], reason: str,
                       mint_url: Optional[str] = None) -> RecoveryToken:
        mint_url = mint_url or self.mint_url
        token = RecoveryToken(
            id=uuid.uuid4().hex,
            token=encode_token(list(proofs), mint_url),
            total_amount=sum(p.amount for p in proofs),
            mint_url=mint_url,
            reason=reason,
        )
        self.ledger.save_recovery_token(token)
        return token

    async def _persist_proofs(self, proofs: Sequence[Proof], reason: str) -> Optional[str]:
        """
        Make new proofs durable: store publish with retries, else a
        RecoveryToken. Never skipped.
        """
        if not proofs:
            return None
        event_id = await self.store.publish_with_retry(proofs, self.mint_url)
        if event_id is None:
            self._save_recovery(proofs, reason)
        return event_id

    async def _cleanup_spent(self, spent_secrets: Iterable[str]):
        """Drop spent proofs from the store, keeping their unspent neighbours."""
        spent = list(spent_secrets)
        if not spent:
            return
        try:
            result = await self.store.remove_spent_proofs(spent)
        except StoreError as e:
            log.warning(f"Spent-proof cleanup deferred: {e}")
            return
        for mint_url, proofs in result.unsaved.items():
            self._save_recovery(proofs, "republish after spend failed", mint_url)

    async def _check_states(self, proofs: Sequence[Proof]) -> Dict[str, ProofState]:
        states: Dict[str, ProofState] = {}
        for i in range(0, len(proofs), CHECKSTATE_BATCH):
            states.update(await self.mint.check_proofs(proofs[i:i + CHECKSTATE_BATCH]))
        return states

    # ═══════════════════════════════════════════════════════════════════
    # RECONCILIATION
    # ═══════════════════════════════════════════════════════════════════

    async def _reconcile_operations(self) -> int:
        """
        Resolve markers left by interrupted operations.

        Returns:
            Number of markers resolved

        Raises:
            MintTransportError: Mint unreachable (remaining markers kept)
        """
        resolved = 0
        for op in self.ledger.get_unresolved_operations():
            if op.status is OperationStatus.STARTED:
                # request never left the process
                self.ledger.remove_operation(op.id)
                resolved += 1
                continue
            if op.status is OperationStatus.FAILED:
                continue
            try:
                if await self._reconcile_operation(op):
                    resolved += 1
            except MintRejectedError as e:
                log.warning(f"Cannot reconcile {op.operation_type.value} {op.id}: {e}")
        self.ledger.cleanup_expired_operations()
        return resolved

    async def _reconcile_operation(self, op: PendingBlindedOperation) -> bool:
        proofs = await recover_outputs(self.mint, op.output_premints)
        if proofs:
            signed = {p.secret for p in proofs}
            finish_operation(self.ledger, op, used=[p for p in op.output_premints if p.secret in signed])
            states = await self._check_states(proofs)
            live = [p for p in proofs if states.get(p.secret) is not ProofState.SPENT]
            plain = [p for p in live if HtlcSecret.from_secret(p.secret) is None]
            locked = [p for p in live if HtlcSecret.from_secret(p.secret) is not None]
            await self._persist_proofs(plain, f"reconciled {op.operation_type.value} {op.id}")
            mint_url = op.mint_url or self.mint_url
            if locked and self._adopt_locked(locked, mint_url, f"interrupted {op.id}") is None:
                self._save_recovery(locked, f"HTLC outputs of interrupted {op.id}", mint_url)
            await self._cleanup_spent(op.input_secrets)
            self._settle_redeemed_htlc(op, sum(p.amount for p in plain))
            self.ledger.remove_operation(op.id)
            log.info(f"Reconciled {op.operation_type.value} {op.id}: "
                     f"{sum(p.amount for p in plain)} sats recovered")
            return True

        if op.input_secrets:
            states = await self.mint.check_state([proof_y(s) for s in op.input_secrets])
            if states and all(s.state is ProofState.UNSPENT for s in states):
                self.ledger.remove_operation(op.id)
                log.info(f"{op.operation_type.value} {op.id} never reached the mint; marker dropped")
                return True
            if op.operation_type is OperationType.MELT and op.quote_id:
                quote = await self.mint.check_melt_quote(op.quote_id)
                if quote.state is MeltQuoteState.PENDING:
                    return False
            if op.operation_type is OperationType.REFUND_HTLC:
                htlc = self._htlc_holding(op.input_secrets, HtlcStatus.LOCKED)
                if htlc is not None:
                    log.warning(f"HTLC {htlc.escrow_id} spent by counterparty before refund; marking failed")
                    self.escrow.transition(htlc, HtlcStatus.FAILED)
                self.ledger.remove_operation(op.id)
                return True
            log.critical(f"{op.operation_type.value} {op.id}: inputs spent but no outputs recoverable")
            await self._cleanup_spent(op.input_secrets)
            fail_operation(self.ledger, op)
            return True

        if op.operation_type is OperationType.MINT and op.quote_id:
            quote = await self.mint.check_mint_quote(op.quote_id)
            if quote.state is MintQuoteState.UNPAID:
                self.ledger.remove_operation(op.id)
                return True
        # paid-but-unminted deposits are finished by check_deposit / recover_deposit
        return False

    def _htlc_holding(self, secrets: Iterable[str],
                      status: Optional[HtlcStatus] = None) -> Optional[PendingHtlc]:
        """HTLC record whose locked proofs include any of secrets."""
        wanted = set(secrets)
        for htlc in self.ledger.get_htlcs(status):
            if _token_secrets(htlc) & wanted:
                return htlc
        return None

    def _adopt_locked(self, locked: Sequence[Proof], mint_url: str,
                      source: str) -> Optional[PendingHtlc]:
        """
        Track HTLC outputs that never got a ledger record (lock reply lost).

        The rebuilt record is LOCKED, so the expired-HTLC refund scan
        covers it. Returns None for outputs this wallet cannot refund.
        """
        existing = self._htlc_holding(p.secret for p in locked)
        if existing is not None:
            return existing
        cond = HtlcSecret.from_secret(locked[0].secret)
        if cond.locktime is None or not any(self.keys.owns(pk) for pk in cond.refund_pubkeys):
            log.warning(f"HTLC outputs from {source} are not refundable by this wallet")
            return None

        amount = sum(p.amount for p in locked)
        htlc = PendingHtlc(
            escrow_id=uuid.uuid4().hex,
            token=encode_token(list(locked), mint_url),
            amount_sats=amount,
            locktime=cond.locktime,
            counterparty_pubkey=cond.pubkeys[0] if cond.pubkeys else "",
            payment_hash=cond.payment_hash,
            refund_pubkey=self.keys.pubkey_hex,
            mint_url=mint_url,
        )
        self.ledger.save_htlc(htlc)
        self.ledger.add_transaction(PaymentTransaction(
            id=htlc.escrow_id, type=TransactionType.ESCROW_LOCK, amount_sats=amount,
            status="locked", counterparty_pubkey=htlc.counterparty_pubkey))
        log.warning(f"Recovered HTLC {htlc.escrow_id} from {source}: {amount} sats "
                    f"locked until {htlc.locktime}")
        return htlc

    def _settle_redeemed_htlc(self, op: PendingBlindedOperation, amount: int):
        """A reconciled claim or refund swap is a definitive outcome for its HTLC."""
        if op.operation_type is OperationType.REFUND_HTLC:
            target = HtlcStatus.REFUNDED
        elif op.operation_type is OperationType.CLAIM_HTLC:
            target = HtlcStatus.CLAIMED
        else:
            return
        htlc = self._htlc_holding(op.input_secrets, HtlcStatus.LOCKED)
        if htlc is None:
            return
        self.escrow.transition(htlc, target)
        if target is HtlcStatus.REFUNDED:
            self._record_refund(htlc, amount)
        log.info(f"HTLC {htlc.escrow_id} {target.value} by reconciled {op.id}")

    def _record_refund(self, htlc: PendingHtlc, amount: int):
        self.ledger.add_transaction(PaymentTransaction(
            id=f"{htlc.escrow_id}-refund", type=TransactionType.ESCROW_REFUND,
            amount_sats=amount, status="refunded",
            counterparty_pubkey=htlc.counterparty_pubkey, ride_context=htlc.ride_context))

    async def _ensure_reconciled(self):
        pending = [op for op in self.ledger.get_unresolved_operations()
                   if op.status in (OperationStatus.PENDING, OperationStatus.COMPLETED)
                   and op.operation_type is not OperationType.MINT]
        if pending:
            await self._reconcile_operations()

    # ═══════════════════════════════════════════════════════════════════
    # PROOF SELECTION
    # ═══════════════════════════════════════════════════════════════════

    async def _select(self, amount: int) -> ProofSelection:
        selection = await self.store.select_proofs_for_spending(amount, self.mint_url)
        if selection is None and self.ledger.balance.available_sats >= amount:
            log.info(f"Store selection short of {amount} but cached balance is "
                     f"{self.ledger.balance.available_sats}; resyncing")
            await self.store.fetch_proofs(force_refresh=True)
            selection = await self.store.select_proofs_for_spending(amount, self.mint_url)
        if selection is None:
            raise InsufficientFundsError(amount, await self.store.get_balance(self.mint_url))
        return selection

    async def _select_verified(self, amount: int) -> Tuple[ProofSelection, int]:
        """
        Select proofs covering amount plus input fee, all UNSPENT at the mint.

        Returns:
            (selection, input_fee)
        """
        target = amount
        check = self.mint.capabilities is None or self.mint.capabilities.supports_checkstate
        for _ in range(MAX_SELECTION_ROUNDS):
            selection = await self._select(target)
            if check:
                states = await self._check_states(selection.to_proofs())
                spent = [s for s in selection.secrets if states.get(s) is ProofState.SPENT]
                if spent:
                    log.warning(f"{len(spent)} selected proofs already spent; cleaning up and reselecting")
                    await self._cleanup_spent(spent)
                    continue
                if any(states.get(s) is ProofState.PENDING for s in selection.secrets):
                    raise InsufficientFundsError(target, selection.total_amount,
                                                 "Selected proofs are pending at the mint")
            fee = await input_fee(self.mint, selection.to_proofs())
            if selection.total_amount >= amount + fee:
                return selection, fee
            target = amount + fee
        raise InsufficientFundsError(target, await self.store.get_balance(self.mint_url))

    async def _resync_after_rejection(self, proofs: Sequence[Proof]):
        """The mint refused our inputs: find out which ones are really spent."""
        try:
            states = await self._check_states(proofs)
        except MintError as e:
            log.warning(f"Verification after rejection failed: {e}")
            return
        await self._cleanup_spent([s for s, st in states.items() if st is ProofState.SPENT])

    # ═══════════════════════════════════════════════════════════════════
    # DEPOSIT (MINT)
    # ═══════════════════════════════════════════════════════════════════

    async def request_deposit(self, amount: int) -> QuoteResult:
        valid, message = validate_amount(amount)
        if not valid:
            return QuoteResult(False, FailureReason.INVALID_AMOUNT, message)
        try:
            quote = await self.mint.request_mint_quote(amount)
        except WALLET_ERRORS as e:
            return QuoteResult.failed(e)
        self.ledger.save_deposit(PendingDeposit(quote_id=quote.quote, amount=amount,
                                                invoice=quote.request, expiry=quote.expiry))
        log.info(f"Deposit quote {quote.quote} for {amount} sats")
        return QuoteResult(True, mint_quote=quote)

    def _deposit_amount(self, quote_id: str, quote: MintQuote) -> int:
        for d in self.ledger.get_deposits():
            if d.quote_id == quote_id:
                return d.amount
        return quote.amount

    async def _mint_quote(self, quote_id: str, amount: int,
                          op: Optional[PendingBlindedOperation] = None
                          ) -> Tuple[List[Proof], PendingBlindedOperation]:
        if op is None:
            keyset = await self.mint.get_active_keyset()
            premints = plan_outputs(self.ledger, self.keys, keyset.id, amount)
            op = begin_operation(self.ledger, OperationType.MINT, self.mint_url, premints,
                                 quote_id=quote_id, amount_sats=amount)
        mark_sent(self.ledger, op)
        try:
            signatures = await self.mint.mint(quote_id, [p.to_blinded_message() for p in op.output_premints])
        except MintRejectedError:
            fail_operation(self.ledger, op)
            raise
        proofs = await self.mint.unblind(signatures, op.output_premints)
        finish_operation(self.ledger, op)
        return proofs, op

    async def _recover_deposit_locked(self, quote_id: str) -> List[Proof]:
        """
        Direct path for a deposit whose normal mint call failed.

        PAID   -> mint again with the persisted outputs
        ISSUED -> restore signatures for the persisted outputs
        """
        quote = await self.mint.check_mint_quote(quote_id)
        ops = [op for op in self.ledger.get_unresolved_operations()
               if op.operation_type is OperationType.MINT and op.quote_id == quote_id]

        if quote.state is MintQuoteState.ISSUED:
            for op in ops:
                proofs = await recover_outputs(self.mint, op.output_premints)
                if proofs:
                    signed = {p.secret for p in proofs}
                    finish_operation(self.ledger, op,
                                     used=[p for p in op.output_premints if p.secret in signed])
                    return await self._finish_deposit(quote_id, proofs, op)
            log.critical(f"Quote {quote_id} issued but no persisted outputs were signed")
            raise MintProtocolError(f"Quote {quote_id} already issued to unknown outputs")

        if quote.state is MintQuoteState.PAID:
            op = ops[-1] if ops else None
            proofs, op = await self._mint_quote(quote_id, self._deposit_amount(quote_id, quote), op)
            return await self._finish_deposit(quote_id, proofs, op)

        return []

    async def _settle_expired_deposits(self) -> int:
        """
        Mint or forget deposit quotes past their expiry.

        A paid quote is minted (or restored if already issued); an unpaid
        or unknown one is dropped.
        """
        settled = 0
        for deposit in self.ledger.get_expired_deposits():
            try:
                quote = await self.mint.check_mint_quote(deposit.quote_id)
            except MintRejectedError as e:
                log.info(f"Expired deposit {deposit.quote_id} unknown to mint ({e}); dropped")
                self.ledger.remove_deposit(deposit.quote_id)
                settled += 1
                continue
            if quote.state is MintQuoteState.UNPAID:
                log.info(f"Deposit {deposit.quote_id} expired unpaid; dropped")
                self.ledger.remove_deposit(deposit.quote_id)
                settled += 1
                continue
            try:
                if await self._recover_deposit_locked(deposit.quote_id):
                    settled += 1
            except MintProtocolError as e:
                log.error(f"Expired deposit {deposit.quote_id} unrecoverable: {e}")
                self.ledger.remove_deposit(deposit.quote_id)
                settled += 1
        return settled

    async def _finish_deposit(self, quote_id: str, proofs: List[Proof],
                              op: Optional[PendingBlindedOperation]) -> List[Proof]:
        await self._persist_proofs(proofs, f"deposit {quote_id}")
        if op is not None:
            self.ledger.remove_operation(op.id)
        self.ledger.remove_deposit(quote_id)
        amount = sum(p.amount for p in proofs)
        self.ledger.add_transaction(PaymentTransaction(
            id=quote_id, type=TransactionType.DEPOSIT, amount_sats=amount, status="completed"))
        log.info(f"Deposit {quote_id} minted: {amount} sats in {len(proofs)} proofs")
        return proofs

    async def check_deposit(self, quote_id: str, wait: bool = True) -> DepositResult:
        """
        Mint a paid deposit quote.

        Args:
            quote_id: Quote from request_deposit
            wait: Wait up to quote_timeout for payment (websocket or polling)
        """
        async with self._lock:
            try:
                if wait:
                    quote = await wait_for_quote_state(
                        self.mint, SubscriptionKind.BOLT11_MINT_QUOTE, quote_id,
                        {MintQuoteState.PAID.value, MintQuoteState.ISSUED.value},
                        timeout=self.config.quote_timeout)
                else:
                    quote = await self.mint.check_mint_quote(quote_id)
                if quote is None or not quote.is_paid():
                    return DepositResult(False, FailureReason.NOT_PAID, "Invoice not paid yet",
                                         quote_id=quote_id)

                if quote.state is MintQuoteState.ISSUED:
                    proofs = await self._recover_deposit_locked(quote_id)
                else:
                    try:
                        proofs, op = await self._mint_quote(quote_id, self._deposit_amount(quote_id, quote))
                        proofs = await self._finish_deposit(quote_id, proofs, op)
                    except (MintTransportError, MintRejectedError) as e:
                        log.warning(f"Mint of {quote_id} failed ({e}); trying recovery path")
                        proofs = await self._recover_deposit_locked(quote_id)
            except WALLET_ERRORS as e:
                return DepositResult.failed(e, quote_id=quote_id)

        if not proofs:
            return DepositResult(False, FailureReason.NOT_PAID, "Invoice not paid yet", quote_id=quote_id)
        return DepositResult(True, quote_id=quote_id, amount_sats=sum(p.amount for p in proofs))

    async def recover_deposit(self, quote_id: str) -> DepositResult:
        async with self._lock:
            try:
                proofs = await self._recover_deposit_locked(quote_id)
            except WALLET_ERRORS as e:
                return DepositResult.failed(e, quote_id=quote_id)
        if not proofs:
            return DepositResult(False, FailureReason.NOT_PAID, "Quote not paid", quote_id=quote_id)
        return DepositResult(True, quote_id=quote_id, amount_sats=sum(p.amount for p in proofs))

    # ═══════════════════════════════════════════════════════════════════
    # WITHDRAW (MELT)
    # ═══════════════════════════════════════════════════════════════════

    async def get_melt_quote(self, bolt11: str) -> QuoteResult:
        try:
            quote = await self.mint.request_melt_quote(bolt11)
        except WALLET_ERRORS as e:
            return QuoteResult.failed(e)
        return QuoteResult(True, melt_quote=quote)

    async def withdraw(self, quote: MeltQuote) -> WithdrawResult:
        """
        Pay a melt quote.

        Change outputs cover inputs - (amount + input fee); the mint fills
        as many as the unused fee reserve allows.
        """
        async with self._lock:
            selection = None
            try:
                caps = self.mint.capabilities
                if caps is not None and not caps.supports_melt:
                    return WithdrawResult(False, FailureReason.PROVIDER_INCOMPATIBLE,
                                          "Mint does not support withdrawals")
                await self._ensure_reconciled()
                selection, fee = await self._select_verified(quote.total_amount)
                inputs = selection.to_proofs()
                keyset = await self.mint.get_active_keyset()
                change_amount = selection.total_amount - quote.amount - fee
                premints = plan_change_outputs(self.ledger, self.keys, keyset.id, change_amount)
                op = begin_operation(self.ledger, OperationType.MELT, self.mint_url, premints,
                                     input_secrets=selection.secrets, quote_id=quote.quote,
                                     amount_sats=quote.amount)
                mark_sent(self.ledger, op)
                try:
                    response = await self.mint.melt(quote.quote, inputs,
                                                    [p.to_blinded_message() for p in premints])
                except MintRejectedError as e:
                    fail_operation(self.ledger, op)
                    if e.is_already_spent:
                        await self._resync_after_rejection(inputs)
                    raise

                if not response.paid:
                    state = (await self.mint.check_melt_quote(quote.quote)).state
                    if state is MeltQuoteState.PENDING:
                        return WithdrawResult(False, FailureReason.PAYMENT_PENDING,
                                              "Payment in flight; will reconcile", amount_sats=quote.amount)
                    fail_operation(self.ledger, op)
                    self.ledger.remove_operation(op.id)
                    return WithdrawResult(False, FailureReason.MINT_REJECTED, "Payment failed",
                                          amount_sats=quote.amount)

                change = await self.mint.unblind(response.change, premints[:len(response.change)])
                finish_operation(self.ledger, op)
                await self._cleanup_spent(selection.secrets)
                await self._persist_proofs(change, f"melt change {quote.quote}")
                self.ledger.remove_operation(op.id)
            except WALLET_ERRORS as e:
                return WithdrawResult.failed(e, amount_sats=quote.amount)

        change_sats = sum(p.amount for p in change)
        self.ledger.add_transaction(PaymentTransaction(
            id=quote.quote, type=TransactionType.WITHDRAWAL, amount_sats=quote.amount, status="completed"))
        log.info(f"Withdrew {quote.amount} sats (change {change_sats})")
        return WithdrawResult(True, paid=True, payment_preimage=response.payment_preimage,
                              amount_sats=quote.amount,
                              fee_paid=selection.total_amount - quote.amount - change_sats,
                              change_sats=change_sats)

    # ═══════════════════════════════════════════════════════════════════
    # ESCROW
    # ═══════════════════════════════════════════════════════════════════

    async def lock_for_escrow(self, amount: int, payment_hash: str, payee_pubkey: str,
                              expiry_seconds: Optional[int] = None,
                              preimage: Optional[str] = None,
                              ride_context: Optional[str] = None) -> LockResult:
        """
        Lock funds in an HTLC for payee_pubkey.

        Args:
            amount: Sats to lock
            payment_hash: SHA256(preimage), hex
            payee_pubkey: Payee's payment key
            expiry_seconds: Lifetime before refund is allowed (default escrow_expiry)
            preimage: Kept for refunds on mints that require it
            ride_context: Caller reference stored with the HTLC
        """
        valid, message = validate_amount(amount)
        if not valid:
            return LockResult(False, FailureReason.INVALID_AMOUNT, message)

        async with self._lock:
            selection = None
            try:
                caps = self.mint.capabilities
                if caps is not None and not caps.supports_htlc:
                    return LockResult(False, FailureReason.PROVIDER_INCOMPATIBLE,
                                      "Mint does not support HTLC escrow")
                await self._ensure_reconciled()
                locktime = int(time.time()) + (expiry_seconds or self.config.escrow_expiry)
                selection, _ = await self._select_verified(amount)
                outcome = await self.escrow.lock(selection.to_proofs(), amount, payment_hash,
                                                 payee_pubkey, locktime, preimage, ride_context)
            except MintRejectedError as e:
                if e.is_already_spent and selection is not None:
                    await self._resync_after_rejection(selection.to_proofs())
                return LockResult.failed(e)
            except WALLET_ERRORS as e:
                return LockResult.failed(e)

            await self._cleanup_spent(selection.secrets)
            await self._persist_proofs(outcome.change_proofs, f"lock change {outcome.htlc.escrow_id}")
            self.ledger.remove_operation(outcome.operation_id)

        self.ledger.add_transaction(PaymentTransaction(
            id=outcome.htlc.escrow_id, type=TransactionType.ESCROW_LOCK, amount_sats=amount,
            status="locked", counterparty_pubkey=payee_pubkey, ride_context=ride_context))
        await self.store.record_spend("out", amount)
        return LockResult(True, htlc=outcome.htlc)

    async def claim_escrow(self, token: str, preimage: str,
                           payment_hash: Optional[str] = None) -> ClaimResult:
        """Redeem an HTLC token locked to this wallet's payment key."""
        if payment_hash is not None and not verify_preimage(preimage, payment_hash):
            return ClaimResult(False, FailureReason.INVALID_PREIMAGE,
                               "Preimage does not match the payment hash", payment_hash=payment_hash)
        async with self._lock:
            try:
                await self._ensure_reconciled()
                outcome = await self.escrow.claim(token, preimage)
            except MintRejectedError as e:
                if e.is_already_spent:
                    return ClaimResult(False, FailureReason.ALREADY_SPENT,
                                       "HTLC already claimed or refunded", payment_hash=payment_hash)
                return ClaimResult.failed(e, payment_hash=payment_hash)
            except WALLET_ERRORS as e:
                return ClaimResult.failed(e, payment_hash=payment_hash)

            await self._persist_proofs(outcome.proofs, f"claim {outcome.payment_hash}")
            self.ledger.remove_operation(outcome.operation_id)

        self.ledger.add_transaction(PaymentTransaction(
            id=outcome.operation_id, type=TransactionType.ESCROW_RECEIVE,
            amount_sats=outcome.amount, status="claimed"))
        await self.store.record_spend("in", outcome.amount)
        log.info(f"Claimed {outcome.amount} sats (hash {mask_secret(outcome.payment_hash)})")
        return ClaimResult(True, amount_sats=outcome.amount, payment_hash=outcome.payment_hash)

    async def _refund_expired_locked(self, now: Optional[int] = None) -> List[HtlcRefundInfo]:
        try:
            await self._ensure_reconciled()
        except WALLET_ERRORS as e:
            log.warning(f"Reconciliation before refund incomplete: {e}")
        in_flight = {s for op in self.ledger.get_unresolved_operations()
                     if op.operation_type is OperationType.REFUND_HTLC
                     and op.status is not OperationStatus.FAILED
                     for s in op.input_secrets}

        results = []
        for htlc in self.ledger.get_refundable_htlcs(now, self.config.refund_skew):
            if in_flight & _token_secrets(htlc):
                results.append(HtlcRefundInfo(htlc.escrow_id, False, htlc.amount_sats,
                                              reason=FailureReason.MINT_UNREACHABLE,
                                              message="Earlier refund still unresolved"))
                continue
            try:
                outcome = await self.escrow.refund(htlc, now)
            except WALLET_ERRORS as e:
                reason, message = classify_error(e)
                results.append(HtlcRefundInfo(htlc.escrow_id, False, htlc.amount_sats,
                                              status=htlc.status, reason=reason, message=message))
                continue
            await self._persist_proofs(outcome.proofs, f"refund {htlc.escrow_id}")
            self.ledger.remove_operation(outcome.operation_id)
            self._record_refund(htlc, outcome.amount)
            results.append(HtlcRefundInfo(htlc.escrow_id, True, outcome.amount,
                                          status=HtlcStatus.REFUNDED))
        return results

    async def refund_expired_htlcs(self, now: Optional[int] = None) -> List[HtlcRefundInfo]:
        """Refund every LOCKED HTLC past its locktime."""
        async with self._lock:
            return await self._refund_expired_locked(now)

    async def mark_htlc_claimed(self, escrow_id: Optional[str] = None,
                                payment_hash: Optional[str] = None) -> bool:
        """
        Apply an out-of-band completion notice under the configured policy.

        Returns:
            True if the HTLC moved to CLAIMED
        """
        if escrow_id:
            htlc = self.ledger.get_htlc(escrow_id)
        elif payment_hash:
            htlc = self.ledger.find_htlc_by_payment_hash(payment_hash)
        else:
            raise ValueError("escrow_id or payment_hash required")
        if htlc is None:
            log.warning(f"Claim notice for unknown HTLC {escrow_id or mask_secret(payment_hash)}")
            return False
        async with self._lock:
            try:
                return await self.escrow.confirm_claim(htlc, self.config.claim_policy)
            except InvalidTransitionError as e:
                log.warning(f"Ignoring claim notice: {e.message}")
                return False
            except (MintError, TokenError) as e:
                log.warning(f"Could not verify claim of {htlc.escrow_id}: {e}")
                return False

    # ═══════════════════════════════════════════════════════════════════
    # SYNC / RESTORE / RECOVERY
    # ═══════════════════════════════════════════════════════════════════

    def _pending_sats(self) -> int:
        return sum(h.amount_sats for h in self.ledger.get_htlcs(HtlcStatus.LOCKED))

    async def sync(self) -> SyncResult:
        """Verify every stored proof at the mint and drop the spent ones."""
        async with self._lock:
            try:
                stored = await self.store.fetch_proofs(force_refresh=True)
            except StoreError as e:
                cached = self.ledger.balance
                return SyncResult(False, FailureReason.STORE_UNAVAILABLE, str(e),
                                  balance_sats=cached.available_sats,
                                  pending_sats=cached.pending_sats, from_cache=True)
            mine = [p.proof for p in stored if same_mint(p.mint_url, self.mint_url)]
            stored_total = sum(p.amount for p in mine)
            try:
                states = await self._check_states(mine)
            except MintTransportError:
                log.warning("Mint unreachable; trusting stored balance")
                return SyncResult(True, message="Mint unreachable; balance not verified",
                                  balance_sats=stored_total, pending_sats=self._pending_sats(),
                                  from_cache=True)
            except WALLET_ERRORS as e:
                return SyncResult.failed(e, balance_sats=stored_total)

            spent = [p.secret for p in mine if states.get(p.secret) is ProofState.SPENT]
            await self._cleanup_spent(spent)
            available = sum(p.amount for p in mine if states.get(p.secret) is ProofState.UNSPENT)
            balance = WalletBalance(available_sats=available, pending_sats=self._pending_sats(),
                                    last_updated=int(time.time()))
            self.ledger.cache_balance(balance)
        log.info(f"Sync: {len(mine)} proofs verified, {len(spent)} spent removed, {available} sats")
        return SyncResult(True, balance_sats=available, pending_sats=balance.pending_sats,
                          verified=len(mine), spent_removed=len(spent))

    async def restore_from_seed(self, keyset_id: Optional[str] = None,
                                batch: int = 100, gap: int = 3) -> RestoreResult:
        """
        Recover deterministic proofs from the mint (NUT-09).

        Scans counter batches until `gap` consecutive batches come back
        empty, keeps UNSPENT proofs not already in the store, publishes
        them and moves the counter past the highest signed output.
        """
        async with self._lock:
            try:
                seed = self.keys.require_seed()
                if keyset_id is None:
                    keyset_id = (await self.mint.get_active_keyset()).id
                counter = 0
                empty = 0
                highest = -1
                recovered: List[Proof] = []
                while empty < gap:
                    premints = build_outputs([1] * batch, keyset_id, seed, counter)
                    proofs = await recover_outputs(self.mint, premints)
                    if proofs:
                        empty = 0
                        signed = {p.secret for p in proofs}
                        highest = max(pre.counter for pre in premints if pre.secret in signed)
                        recovered.extend(proofs)
                    else:
                        empty += 1
                    counter += batch

                states = await self._check_states(recovered)
                known = {p.secret for p in await self.store.fetch_proofs(force_refresh=True)}
                fresh = [p for p in recovered
                         if states.get(p.secret) is ProofState.UNSPENT and p.secret not in known]
                await self._persist_proofs(fresh, f"seed restore {keyset_id}")
                if highest + 1 > self.ledger.get_counter(keyset_id):
                    self.ledger.advance_counter(keyset_id, highest + 1)
                await self._publish_metadata()
            except WALLET_ERRORS as e:
                return RestoreResult.failed(e)

        amount = sum(p.amount for p in fresh)
        log.info(f"Restore {keyset_id}: {len(fresh)} proofs ({amount} sats), counter {highest + 1}")
        return RestoreResult(True, recovered_sats=amount, proof_count=len(fresh),
                             next_counter=max(highest + 1, 0))

    async def _publish_metadata(self) -> Optional[str]:
        return await self.store.publish_wallet_metadata(
            self.keys.privkey_hex, self.mint_url, self.keys.mnemonic, self.ledger.get_counters())

    async def has_stored_wallet(self) -> bool:
        """True if the store already holds a wallet record for this key."""
        try:
            return await self.store.has_existing_wallet()
        except StoreError as e:
            log.warning(f"Cannot check for stored wallet: {e}")
            return False

    async def restore_from_store(self) -> RestoreResult:
        """
        Adopt the wallet record found in the store.

        Takes the stored mnemonic when this wallet has no seed and moves
        every derivation counter up to the stored value. Counters never
        go backwards.

        Returns:
            RestoreResult with the stored balance for the current mint
        """
        async with self._lock:
            try:
                state = await self.store.restore_wallet()
            except StoreError as e:
                return RestoreResult.failed(e)
            if state is None:
                return RestoreResult(False, FailureReason.NOT_FOUND, "No wallet record in the store")

            if state.privkey != self.keys.privkey_hex:
                log.warning("Stored wallet record was written with a different payment key")
            if state.mnemonic and not self.keys.has_seed:
                self.keys.adopt_mnemonic(state.mnemonic)
            for keyset_id, counter in state.counters.items():
                if counter > self.ledger.get_counter(keyset_id):
                    self.ledger.advance_counter(keyset_id, counter)

        mine = [p for p in state.proofs if same_mint(p.mint_url, self.mint_url)]
        amount = sum(p.amount for p in mine)
        others = sorted({p.mint_url for p in state.proofs} - {p.mint_url for p in mine})
        if others:
            log.info(f"Stored proofs also held for {', '.join(others)}")
        log.info(f"Wallet record adopted: {len(mine)} proofs ({amount} sats), "
                 f"{len(state.counters)} keyset counters")
        return RestoreResult(True, recovered_sats=amount, proof_count=len(mine),
                             next_counter=max(state.counters.values(), default=0))

    async def change_mint(self, new_url: str) -> OperationResult:
        """
        Move the wallet to the mint's new URL.

        Stored proofs are republished under the new URL before the old
        records are deleted. Refused while HTLCs are locked, since their
        tokens name the old URL.
        """
        new_url = normalize_mint_url(new_url)
        old_url = self.mint_url
        if same_mint(new_url, old_url):
            return OperationResult(True, message="Mint URL unchanged")

        async with self._lock:
            locked = self.ledger.get_htlcs(HtlcStatus.LOCKED)
            if locked:
                return OperationResult(False, FailureReason.INVALID_STATE,
                                       f"{len(locked)} HTLCs still locked at {old_url}")
            old_caps = self.mint.capabilities
            try:
                await self._ensure_reconciled()
                self.mint.set_mint_url(new_url)
                await self.mint.get_info()
                stored = await self.store.fetch_proofs(force_refresh=True)
                moving = [p for p in stored if same_mint(p.mint_url, old_url)]
                if moving and await self.store.republish_proofs_with_new_mint(moving, new_url) is None:
                    raise StoreError(f"Could not republish {len(moving)} proofs for {new_url}")
            except WALLET_ERRORS as e:
                self.mint.set_mint_url(old_url)
                self.mint.capabilities = old_caps
                log.error(f"Mint change to {new_url} failed: {e}")
                return OperationResult.failed(e)

            self.config.mint_url = new_url
            self.ledger.save_mint_url(new_url)
            await self._publish_metadata()
        log.info(f"Mint changed {old_url} -> {new_url}: {sum(p.amount for p in moving)} sats moved")
        return OperationResult(True)

    async def _retry_recovery_tokens_locked(self) -> int:
        recovered = 0
        for rt in self.ledger.get_recovery_tokens():
            try:
                decoded = decode_token(rt.token)
            except TokenError as e:
                log.error(f"Recovery token {rt.id} unreadable: {e}")
                continue
            states = await self._check_states(decoded.proofs)
            unspent = [p for p in decoded.proofs if states.get(p.secret) is ProofState.UNSPENT]
            if unspent and HtlcSecret.from_secret(unspent[0].secret) is not None:
                if self._adopt_locked(unspent, decoded.mint_url, f"recovery token {rt.id}") is None:
                    continue
                self.ledger.remove_recovery_token(rt.id)
                continue
            if unspent:
                event_id = await self.store.publish_with_retry(unspent, decoded.mint_url)
                if event_id is None:
                    continue
            self.ledger.remove_recovery_token(rt.id)
            recovered += sum(p.amount for p in unspent)
            log.info(f"Recovery token {rt.id} resolved: {sum(p.amount for p in unspent)} sats republished")
        return recovered

    async def retry_recovery_tokens(self) -> int:
        """Re-verify and republish recovery tokens; returns sats recovered."""
        async with self._lock:
            try:
                return await self._retry_recovery_tokens_locked()
            except WALLET_ERRORS as e:
                log.warning(f"Recovery token retry stopped: {e}")
                return 0

    async def get_balance(self) -> WalletBalance:
        """Store balance for this mint; the cached balance when the store is down."""
        try:
            available = await self.store.get_balance(self.mint_url)
        except StoreError as e:
            log.warning(f"Store unavailable, using cached balance: {e}")
            return self.ledger.balance
        balance = WalletBalance(available_sats=available, pending_sats=self._pending_sats(),
                                last_updated=int(time.time()))
        self.ledger.cache_balance(balance)
        return balance
