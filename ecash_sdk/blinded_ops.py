"""
Ecash Escrow SDK - Blinded Operation Lifecycle

Every request that sends blinded outputs to the mint goes through the
same four steps:

    op = begin_operation(...)      # premints written to the ledger
    mark_sent(ledger, op)          # just before the request
    ...mint request...
    finish_operation(ledger, op)   # counter advanced, marker COMPLETED
    ledger.remove_operation(op.id) # after the proofs are durable

A marker left behind by a crash is resolved with recover_outputs().
"""

import logging
import uuid
from typing import Dict, Iterable, List, Optional, Sequence

from .denominations import split_amount
from .ecash_types import (
    OperationStatus,
    OperationType,
    PendingBlindedOperation,
    PreMintSecret,
    Proof,
)
from .keys import WalletKeyManager
from .ledger import ProofLedger
from .mint_client import MintClient, build_outputs

log = logging.getLogger(__name__)


def plan_outputs(ledger: ProofLedger, keys: WalletKeyManager, keyset_id: str,
                 amount: int) -> List[PreMintSecret]:
    """Deterministic outputs for `amount`, starting at the next free counter."""
    if amount <= 0:
        return []
    counter = ledger.next_free_counter(keyset_id)
    return build_outputs(split_amount(amount), keyset_id, keys.require_seed(), counter)


def plan_change_outputs(ledger: ProofLedger, keys: WalletKeyManager, keyset_id: str,
                        max_change: int) -> List[PreMintSecret]:
    """
    Blank outputs for melt change (NUT-08).

    The mint returns at most max_change and picks the denominations, so
    enough outputs are sent to represent any value up to max_change.
    """
    if max_change <= 0:
        return []
    amounts = split_amount(max_change)
    amounts += [1] * (max_change.bit_length() - len(amounts))
    counter = ledger.next_free_counter(keyset_id)
    return build_outputs(amounts, keyset_id, keys.require_seed(), counter)


def begin_operation(ledger: ProofLedger, operation_type: OperationType, mint_url: str,
                    premints: Sequence[PreMintSecret],
                    input_secrets: Iterable[str] = (),
                    quote_id: Optional[str] = None,
                    amount_sats: int = 0) -> PendingBlindedOperation:
    """Persist the in-flight marker. Must happen before any network call."""
    counters = [p.counter for p in premints if p.counter is not None]
    op = PendingBlindedOperation(
        id=uuid.uuid4().hex,
        operation_type=operation_type,
        mint_url=mint_url,
        output_premints=list(premints),
        input_secrets=list(input_secrets),
        quote_id=quote_id,
        amount_sats=amount_sats,
        keyset_id=premints[0].keyset_id if premints else None,
        counter_start=min(counters) if counters else None,
    )
    ledger.save_operation(op)
    return op


def mark_sent(ledger: ProofLedger, op: PendingBlindedOperation):
    op.status = OperationStatus.PENDING
    ledger.update_operation_status(op.id, OperationStatus.PENDING)


def finish_operation(ledger: ProofLedger, op: PendingBlindedOperation,
                     used: Optional[Sequence[PreMintSecret]] = None):
    """
    Mint confirmed the operation: advance counters past the outputs used.

    Args:
        used: Premints that were actually signed (defaults to all)
    """
    highest: Dict[str, int] = {}
    for pre in (op.output_premints if used is None else used):
        if pre.counter is not None:
            highest[pre.keyset_id] = max(highest.get(pre.keyset_id, -1), pre.counter)
    for keyset_id, counter in highest.items():
        if counter + 1 > ledger.get_counter(keyset_id):
            ledger.advance_counter(keyset_id, counter + 1)
    op.status = OperationStatus.COMPLETED
    ledger.update_operation_status(op.id, OperationStatus.COMPLETED)


def fail_operation(ledger: ProofLedger, op: PendingBlindedOperation):
    """Definitive rejection: nothing was signed, the counters stay free."""
    op.status = OperationStatus.FAILED
    ledger.update_operation_status(op.id, OperationStatus.FAILED)


async def input_fee(mint: MintClient, inputs: Sequence[Proof]) -> int:
    """NUT-02 input fee: ceil(sum(input_fee_ppk) / 1000)."""
    ppk = 0
    for keyset_id in {p.id for p in inputs}:
        keyset = await mint.get_keyset(keyset_id)
        ppk += keyset.input_fee_ppk * sum(1 for p in inputs if p.id == keyset_id)
    return (ppk + 999) // 1000


async def recover_outputs(mint: MintClient,
                          premints: Sequence[PreMintSecret]) -> List[Proof]:
    """
    Proofs for any of `premints` the mint already signed (NUT-09).

    Returns:
        Proofs in premint order (unsigned premints are skipped)
    """
    if not premints:
        return []
    by_b = {p.B_: p for p in premints}
    pairs = await mint.restore([p.to_blinded_message() for p in premints])
    matched_sigs = []
    matched_pre = []
    for message, sig in pairs:
        pre = by_b.get(message.B_)
        if pre is None:
            log.warning(f"Mint restored an output we did not ask for ({message.B_[:16]})")
            continue
        matched_sigs.append(sig)
        matched_pre.append(pre)
    if not matched_sigs:
        return []
    return await mint.unblind(matched_sigs, matched_pre)
