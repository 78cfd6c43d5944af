"""
Ecash Escrow SDK - HTLC Escrow

Hash time-locked ecash (NUT-14) on top of mint swaps.

  payer:  lock   -> plain proofs swapped for HTLC proofs, PendingHtlc LOCKED
  payee:  claim  -> HTLC proofs + preimage + signature -> plain proofs
  payer:  refund -> after locktime, HTLC proofs + refund signature -> plain proofs

States: LOCKED -> CLAIMED | REFUNDED | FAILED (all terminal).
"""

import logging
import secrets
import time
import uuid
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from .blinded_ops import (
    begin_operation,
    fail_operation,
    finish_operation,
    input_fee,
    mark_sent,
    plan_outputs,
)
from .config import ClaimConfirmationPolicy, mask_secret, same_mint
from .crypto import compute_payment_hash, generate_preimage, verify_preimage
from .denominations import split_amount
from .ecash_types import (
    HtlcSecret,
    HtlcStatus,
    HtlcWitness,
    OperationType,
    PendingBlindedOperation,
    PendingHtlc,
    Proof,
    ProofState,
)
from .errors import (
    CryptoError,
    HtlcNotRefundableError,
    InsufficientFundsError,
    InvalidTransitionError,
    MintRejectedError,
    PreimageMismatchError,
)
from .keys import WalletKeyManager
from .ledger import ProofLedger
from .mint_client import MintClient, build_conditional_outputs
from .token_codec import TokenError, decode_token, encode_token

log = logging.getLogger(__name__)

ZERO_PREIMAGE = "0" * 64


@dataclass
class LockOutcome:
    htlc: PendingHtlc
    locked_proofs: List[Proof]
    change_proofs: List[Proof]
    operation_id: str
    fee: int = 0


@dataclass
class RedeemOutcome:
    """Plain proofs received from a claim or refund swap."""
    proofs: List[Proof]
    operation_id: str
    payment_hash: str
    fee: int = 0

    @property
    def amount(self) -> int:
        return sum(p.amount for p in self.proofs)


@dataclass
class _SwapResult:
    conditional: List[Proof] = field(default_factory=list)
    plain: List[Proof] = field(default_factory=list)
    op: Optional[PendingBlindedOperation] = None
    fee: int = 0


class HTLCEscrow:
    """
    HTLC escrow engine.

    Usage:
        escrow = HTLCEscrow(mint, keys, ledger)

        preimage, payment_hash = escrow.generate_secret()
        outcome = await escrow.lock(inputs, 1000, payment_hash, payee_pubkey,
                                    locktime=int(time.time()) + 7200)

        # payee
        received = await escrow.claim(outcome.htlc.token, preimage)

        # payer, after locktime
        refunded = await escrow.refund(outcome.htlc)
    """

    def __init__(self, mint: MintClient, keys: WalletKeyManager, ledger: ProofLedger,
                 refund_skew: int = 0):
        """
        Args:
            mint: Client of the mint that issues the HTLC proofs
            keys: Dedicated payment key (signs witnesses)
            ledger: Local ledger (operations, HTLC records, counters)
            refund_skew: Extra seconds past locktime before refunding
        """
        self.mint = mint
        self.keys = keys
        self.ledger = ledger
        self.refund_skew = refund_skew

    @staticmethod
    def generate_secret() -> Tuple[str, str]:
        """
        Random preimage and its payment hash.

        Returns:
            (preimage, payment_hash) as hex strings
        """
        preimage = generate_preimage()
        return preimage, compute_payment_hash(preimage)

    def build_htlc_secret(self, payment_hash: str, payee_pubkey: str, locktime: int,
                          refund_pubkey: Optional[str] = None) -> str:
        """Fresh NUT-10 HTLC secret (new nonce per call)."""
        return HtlcSecret(
            nonce=secrets.token_hex(32),
            payment_hash=payment_hash.lower(),
            pubkeys=[payee_pubkey],
            locktime=locktime,
            refund_pubkeys=[refund_pubkey or self.keys.pubkey_hex],
        ).to_secret()

    @staticmethod
    def parse_htlc_secret(secret: str) -> Optional[HtlcSecret]:
        return HtlcSecret.from_secret(secret)

    # ═══════════════════════════════════════════════════════════════════
    # SWAP PLUMBING
    # ═══════════════════════════════════════════════════════════════════

    async def _swap(self, operation_type: OperationType, inputs: Sequence[Proof],
                    locked_amount: int = 0,
                    make_secret=None) -> _SwapResult:
        """
        Swap inputs for (optional) HTLC outputs plus deterministic plain outputs.

        The operation marker is written before the request and left in the
        ledger afterwards; the caller removes it once the plain proofs are
        durable.

        Raises:
            InsufficientFundsError: Inputs do not cover locked_amount + fee
            MintRejectedError: Definitive rejection (marker set FAILED)
            MintTransportError: Outcome unknown (marker left PENDING)
        """
        keyset = await self.mint.get_active_keyset()
        total = sum(p.amount for p in inputs)
        fee = await input_fee(self.mint, inputs)
        plain_amount = total - locked_amount - fee
        if plain_amount < 0:
            raise InsufficientFundsError(locked_amount + fee, total)

        conditional = []
        if locked_amount:
            conditional = build_conditional_outputs(split_amount(locked_amount), keyset.id, make_secret)
        plain = plan_outputs(self.ledger, self.keys, keyset.id, plain_amount)
        premints = conditional + plain

        op = begin_operation(self.ledger, operation_type, self.mint.mint_url, premints,
                             input_secrets=[p.secret for p in inputs],
                             amount_sats=locked_amount or plain_amount)
        mark_sent(self.ledger, op)
        try:
            signatures = await self.mint.swap(list(inputs),
                                              [p.to_blinded_message() for p in premints])
        except MintRejectedError:
            fail_operation(self.ledger, op)
            raise

        proofs = await self.mint.unblind(signatures, premints)
        if len(proofs) != len(premints):
            log.error(f"Swap returned {len(proofs)} proofs for {len(premints)} outputs")
            raise CryptoError(f"Swap returned {len(proofs)} proofs for {len(premints)} outputs")
        finish_operation(self.ledger, op)
        return _SwapResult(conditional=proofs[:len(conditional)],
                           plain=proofs[len(conditional):], op=op, fee=fee)

    # ═══════════════════════════════════════════════════════════════════
    # LOCK (payer)
    # ═══════════════════════════════════════════════════════════════════

    async def lock(self, inputs: Sequence[Proof], amount: int, payment_hash: str,
                   payee_pubkey: str, locktime: int,
                   preimage: Optional[str] = None,
                   ride_context: Optional[str] = None) -> LockOutcome:
        """
        Lock `amount` sats behind payment_hash for payee_pubkey.

        Args:
            inputs: Verified-unspent plain proofs, sum >= amount + fee
            amount: Sats to lock
            payment_hash: SHA256 of the preimage (hex)
            payee_pubkey: Payee's payment key (compressed hex)
            locktime: Unix time after which the payer may refund
            preimage: Stored for refunds on mints that still require one
            ride_context: Opaque caller reference kept with the record

        Returns:
            LockOutcome with the PendingHtlc (already saved as LOCKED)
        """
        if amount <= 0:
            raise ValueError("Lock amount must be positive")
        if preimage is not None and not verify_preimage(preimage, payment_hash):
            raise PreimageMismatchError()

        refund_pubkey = self.keys.pubkey_hex
        result = await self._swap(
            OperationType.LOCK_HTLC, inputs, locked_amount=amount,
            make_secret=lambda: self.build_htlc_secret(payment_hash, payee_pubkey,
                                                       locktime, refund_pubkey),
        )

        htlc = PendingHtlc(
            escrow_id=uuid.uuid4().hex,
            token=encode_token(result.conditional, self.mint.mint_url),
            amount_sats=amount,
            locktime=locktime,
            counterparty_pubkey=payee_pubkey,
            payment_hash=payment_hash.lower(),
            refund_pubkey=refund_pubkey,
            mint_url=self.mint.mint_url,
            preimage=preimage,
            ride_context=ride_context,
        )
        self.ledger.save_htlc(htlc)
        log.info(f"Locked {amount} sats as HTLC {htlc.escrow_id} "
                 f"(hash {mask_secret(payment_hash)}, locktime {locktime}, "
                 f"change {sum(p.amount for p in result.plain)})")
        return LockOutcome(htlc=htlc, locked_proofs=result.conditional,
                           change_proofs=result.plain, operation_id=result.op.id, fee=result.fee)

    # ═══════════════════════════════════════════════════════════════════
    # CLAIM (payee)
    # ═══════════════════════════════════════════════════════════════════

    def _parse_locked(self, token: str) -> Tuple[List[Proof], List[HtlcSecret]]:
        decoded = decode_token(token)
        if not same_mint(decoded.mint_url, self.mint.mint_url):
            raise TokenError(f"Token is from {decoded.mint_url}, wallet uses {self.mint.mint_url}")
        parsed = []
        for proof in decoded.proofs:
            htlc = HtlcSecret.from_secret(proof.secret)
            if htlc is None:
                raise TokenError("Token contains a proof that is not HTLC-locked")
            parsed.append(htlc)
        return decoded.proofs, parsed

    async def claim(self, token: str, preimage: str) -> RedeemOutcome:
        """
        Redeem an HTLC token with the preimage.

        The preimage is checked against every proof before anything is
        sent to the mint.

        Raises:
            PreimageMismatchError: Wrong preimage (no network call made)
            CryptoError: Token is locked to another payment key
            MintRejectedError: Mint refused (already_spent: claimed or refunded)
        """
        proofs, conditions = self._parse_locked(token)
        for cond in conditions:
            if not verify_preimage(preimage, cond.payment_hash):
                log.error(f"Preimage does not match payment hash {mask_secret(cond.payment_hash)}")
                raise PreimageMismatchError()
            if cond.pubkeys and not any(self.keys.owns(pk) for pk in cond.pubkeys):
                log.error("HTLC token is locked to another payment key")
                raise CryptoError("HTLC token is locked to another payment key")

        inputs = [
            Proof(amount=p.amount, id=p.id, secret=p.secret, C=p.C,
                  witness=HtlcWitness(preimage, [self.keys.sign_proof_secret(p.secret)]).to_json())
            for p in proofs
        ]
        result = await self._swap(OperationType.CLAIM_HTLC, inputs)
        log.info(f"Claimed HTLC {mask_secret(conditions[0].payment_hash)}: "
                 f"{sum(p.amount for p in result.plain)} sats")
        return RedeemOutcome(proofs=result.plain, operation_id=result.op.id,
                             payment_hash=conditions[0].payment_hash, fee=result.fee)

    # ═══════════════════════════════════════════════════════════════════
    # REFUND (payer)
    # ═══════════════════════════════════════════════════════════════════

    async def refund(self, htlc: PendingHtlc, now: Optional[int] = None) -> RedeemOutcome:
        """
        Take back an expired HTLC.

        Raises:
            InvalidTransitionError: HTLC is no longer LOCKED
            HtlcNotRefundableError: Before locktime, or not our refund key
            MintRejectedError: Mint refused; already-spent marks the HTLC FAILED
        """
        now = int(time.time()) if now is None else now
        if not htlc.is_active():
            raise InvalidTransitionError(htlc.escrow_id, htlc.status.value, HtlcStatus.REFUNDED.value)
        if not htlc.is_refundable(now, self.refund_skew):
            raise HtlcNotRefundableError(
                f"HTLC {htlc.escrow_id} locked until {htlc.locktime} (now {now})")

        proofs, conditions = self._parse_locked(htlc.token)
        for cond in conditions:
            if not any(self.keys.owns(pk) for pk in cond.refund_pubkeys):
                raise HtlcNotRefundableError(f"HTLC {htlc.escrow_id}: wallet key is not the refund key")

        placeholder = htlc.preimage or ZERO_PREIMAGE
        inputs = [
            Proof(amount=p.amount, id=p.id, secret=p.secret, C=p.C,
                  witness=HtlcWitness(placeholder, [self.keys.sign_proof_secret(p.secret)]).to_json())
            for p in proofs
        ]
        try:
            result = await self._swap(OperationType.REFUND_HTLC, inputs)
        except MintRejectedError as e:
            if e.is_already_spent:
                log.warning(f"HTLC {htlc.escrow_id} already spent by counterparty; marking failed")
                self.transition(htlc, HtlcStatus.FAILED)
            raise

        self.transition(htlc, HtlcStatus.REFUNDED)
        log.info(f"Refunded HTLC {htlc.escrow_id}: {sum(p.amount for p in result.plain)} sats")
        return RedeemOutcome(proofs=result.plain, operation_id=result.op.id,
                             payment_hash=htlc.payment_hash, fee=result.fee)

    # ═══════════════════════════════════════════════════════════════════
    # STATE MACHINE
    # ═══════════════════════════════════════════════════════════════════

    def transition(self, htlc: PendingHtlc, new_status: HtlcStatus) -> bool:
        """
        Move an HTLC to a terminal state.

        Returns:
            True if changed, False for a repeat of the current terminal state
        """
        changed = self.ledger.update_htlc_status(htlc.escrow_id, new_status)
        htlc.status = new_status
        return changed

    async def confirm_claim(self, htlc: PendingHtlc, policy: ClaimConfirmationPolicy) -> bool:
        """
        Apply an out-of-band claim notice.

        TRUST_MESSAGE transitions immediately. VERIFY_AT_MINT transitions
        only when the mint reports every locked proof SPENT.

        Returns:
            True if the HTLC is now CLAIMED by this call
        """
        if htlc.status is HtlcStatus.CLAIMED:
            return False
        if policy is ClaimConfirmationPolicy.VERIFY_AT_MINT:
            proofs = decode_token(htlc.token).proofs
            states = await self.mint.check_proofs(proofs)
            if not proofs or any(states.get(p.secret) is not ProofState.SPENT for p in proofs):
                log.info(f"Claim notice for HTLC {htlc.escrow_id} not confirmed by mint")
                return False
        return self.transition(htlc, HtlcStatus.CLAIMED)
