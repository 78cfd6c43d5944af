"""
Tests for the HTLC escrow engine: lock, claim, refund and the state machine.
"""

import time

import pytest

from ecash_sdk.config import ClaimConfirmationPolicy
from ecash_sdk.denominations import split_amount
from ecash_sdk.ecash_types import HtlcSecret, HtlcStatus, OperationStatus
from ecash_sdk.errors import (
    CryptoError,
    HtlcNotRefundableError,
    InsufficientFundsError,
    InvalidTransitionError,
    MintRejectedError,
    PreimageMismatchError,
)
from ecash_sdk.htlc_escrow import HTLCEscrow
from ecash_sdk.ledger import ProofLedger
from ecash_sdk.mint_client import build_outputs
from ecash_sdk.token_codec import TokenError, decode_token, encode_token

from conftest import new_payment


# =============================================================================
# Fixtures
# =============================================================================

async def mint_proofs(mint_client, fake_mint, ledger, keys, amount):
    """Mint plain deterministic proofs straight through the client."""
    quote = await mint_client.request_mint_quote(amount)
    fake_mint.pay_quote(quote.quote)
    keyset = await mint_client.get_active_keyset()
    start = ledger.next_free_counter(keyset.id)
    premints = build_outputs(split_amount(amount), keyset.id, keys.require_seed(), start)
    sigs = await mint_client.mint(quote.quote, [p.to_blinded_message() for p in premints])
    ledger.advance_counter(keyset.id, start + len(premints))
    return await mint_client.unblind(sigs, premints)


@pytest.fixture
def payer_escrow(mint_client, payer_keys, ledger):
    return HTLCEscrow(mint_client, payer_keys, ledger)


@pytest.fixture
def payee_escrow(mint_client, payee_keys, tmp_path):
    return HTLCEscrow(mint_client, payee_keys, ProofLedger(tmp_path / "payee-ledger.json"))


@pytest.fixture
async def locked(payer_escrow, payee_keys, mint_client, fake_mint, ledger, payer_keys):
    """100 sats locked to the payee for one hour."""
    inputs = await mint_proofs(mint_client, fake_mint, ledger, payer_keys, 128)
    preimage, payment_hash = new_payment()
    locktime = int(time.time()) + 3600
    outcome = await payer_escrow.lock(inputs, 100, payment_hash, payee_keys.pubkey_hex, locktime,
                                      ride_context="ride-7")
    return outcome, preimage, payment_hash


class TestSecrets:
    """NUT-14 secret construction."""

    def test_fresh_nonce_and_lowercase_hash(self, payer_escrow, payee_keys):
        s1 = payer_escrow.build_htlc_secret("AB" * 32, payee_keys.pubkey_hex, 1_000)
        s2 = payer_escrow.build_htlc_secret("AB" * 32, payee_keys.pubkey_hex, 1_000)
        assert s1 != s2
        parsed = HTLCEscrow.parse_htlc_secret(s1)
        assert parsed.payment_hash == "ab" * 32
        assert parsed.pubkeys == [payee_keys.pubkey_hex]
        assert parsed.locktime == 1_000
        assert parsed.refund_pubkeys == [payer_escrow.keys.pubkey_hex]

    def test_secret_shape(self, payer_escrow, payee_keys):
        secret = payer_escrow.build_htlc_secret("cd" * 32, payee_keys.pubkey_hex, 5)
        assert secret.startswith('["HTLC",{"nonce":')
        assert HtlcSecret.from_secret("deadbeef") is None

    def test_generate_secret(self):
        preimage, payment_hash = HTLCEscrow.generate_secret()
        assert len(preimage) == 64
        assert len(payment_hash) == 64


class TestLock:
    async def test_lock_creates_htlc(self, locked, ledger, payee_keys):
        outcome, _, payment_hash = locked
        htlc = outcome.htlc
        assert htlc.status is HtlcStatus.LOCKED
        assert htlc.amount_sats == 100
        assert htlc.ride_context == "ride-7"
        assert ledger.get_htlc(htlc.escrow_id) is not None
        assert sum(p.amount for p in outcome.locked_proofs) == 100
        assert sum(p.amount for p in outcome.change_proofs) == 28
        decoded = decode_token(htlc.token)
        for p in decoded.proofs:
            cond = HtlcSecret.from_secret(p.secret)
            assert cond.payment_hash == payment_hash
            assert cond.pubkeys == [payee_keys.pubkey_hex]

    async def test_change_uses_deterministic_outputs(self, locked, ledger, fake_mint):
        outcome, _, _ = locked
        op = ledger.get_operation(outcome.operation_id)
        assert op.status is OperationStatus.COMPLETED
        plain = [p for p in op.output_premints if p.counter is not None]
        assert sum(p.amount for p in plain) == 28
        assert ledger.get_counter(fake_mint.keyset_id) == max(p.counter for p in plain) + 1

    async def test_fee_deducted_from_change(self, payer_escrow, mint_client, fake_mint, ledger,
                                            payer_keys, payee_keys):
        fake_mint.input_fee_ppk = 1000
        inputs = await mint_proofs(mint_client, fake_mint, ledger, payer_keys, 7)
        _, payment_hash = new_payment()
        outcome = await payer_escrow.lock(inputs, 2, payment_hash, payee_keys.pubkey_hex,
                                          int(time.time()) + 60)
        assert outcome.fee == 3
        assert sum(p.amount for p in outcome.change_proofs) == 2

    async def test_inputs_must_cover_fee(self, payer_escrow, mint_client, fake_mint, ledger,
                                         payer_keys, payee_keys):
        fake_mint.input_fee_ppk = 1000
        inputs = await mint_proofs(mint_client, fake_mint, ledger, payer_keys, 4)
        _, payment_hash = new_payment()
        with pytest.raises(InsufficientFundsError):
            await payer_escrow.lock(inputs, 4, payment_hash, payee_keys.pubkey_hex, int(time.time()) + 60)

    async def test_mismatched_preimage_rejected_offline(self, payer_escrow, fake_mint, payee_keys):
        _, payment_hash = new_payment()
        fake_mint.requests.clear()
        with pytest.raises(PreimageMismatchError):
            await payer_escrow.lock([], 10, payment_hash, payee_keys.pubkey_hex, 1, preimage="00" * 32)
        assert fake_mint.requests == []


class TestClaim:
    async def test_payee_claims(self, locked, payee_escrow, fake_mint):
        outcome, preimage, payment_hash = locked
        redeemed = await payee_escrow.claim(outcome.htlc.token, preimage)
        assert redeemed.amount == 100
        assert redeemed.payment_hash == payment_hash
        assert all(HtlcSecret.from_secret(p.secret) is None for p in redeemed.proofs)
        assert all(fake_mint.is_spent(p.secret) for p in outcome.locked_proofs)

    async def test_wrong_preimage_makes_no_request(self, locked, payee_escrow, fake_mint):
        outcome, _, _ = locked
        fake_mint.requests.clear()
        with pytest.raises(PreimageMismatchError):
            await payee_escrow.claim(outcome.htlc.token, "ff" * 32)
        assert fake_mint.requests == []

    async def test_other_key_cannot_claim(self, locked, payer_escrow):
        outcome, preimage, _ = locked
        with pytest.raises(CryptoError):
            await payer_escrow.claim(outcome.htlc.token, preimage)

    async def test_double_claim_already_spent(self, locked, payee_escrow):
        outcome, preimage, _ = locked
        await payee_escrow.claim(outcome.htlc.token, preimage)
        with pytest.raises(MintRejectedError) as exc:
            await payee_escrow.claim(outcome.htlc.token, preimage)
        assert exc.value.is_already_spent

    async def test_plain_token_rejected(self, payee_escrow, mint_client, fake_mint, payee_keys, tmp_path):
        proofs = await mint_proofs(mint_client, fake_mint, ProofLedger(tmp_path / "x.json"), payee_keys, 4)
        with pytest.raises(TokenError):
            await payee_escrow.claim(encode_token(proofs, mint_client.mint_url), "00" * 32)

    async def test_foreign_mint_token_rejected(self, locked, payee_escrow):
        outcome, preimage, _ = locked
        decoded = decode_token(outcome.htlc.token)
        with pytest.raises(TokenError):
            await payee_escrow.claim(encode_token(decoded.proofs, "https://elsewhere.test"), preimage)


class TestRefund:
    """Refund strictly after locktime, only for LOCKED HTLCs."""

    async def test_not_before_locktime(self, locked, payer_escrow, fake_mint):
        outcome, _, _ = locked
        htlc = outcome.htlc
        fake_mint.requests.clear()
        for now in (htlc.locktime - 1, htlc.locktime):
            with pytest.raises(HtlcNotRefundableError):
                await payer_escrow.refund(htlc, now=now)
        assert fake_mint.requests == []

    async def test_refund_after_locktime(self, locked, payer_escrow, fake_mint, ledger):
        outcome, _, _ = locked
        htlc = outcome.htlc
        fake_mint.now = htlc.locktime + 1
        refunded = await payer_escrow.refund(htlc, now=htlc.locktime + 1)
        assert refunded.amount == 100
        assert ledger.get_htlc(htlc.escrow_id).status is HtlcStatus.REFUNDED

    async def test_mint_enforces_locktime(self, locked, payer_escrow, fake_mint, ledger):
        """The mint's clock is authoritative; a rejected refund leaves the HTLC LOCKED."""
        outcome, _, _ = locked
        htlc = outcome.htlc
        fake_mint.now = htlc.locktime - 10
        with pytest.raises(MintRejectedError):
            await payer_escrow.refund(htlc, now=htlc.locktime + 1)
        assert ledger.get_htlc(htlc.escrow_id).status is HtlcStatus.LOCKED

    async def test_refund_after_claim_marks_failed(self, locked, payer_escrow, payee_escrow,
                                                   fake_mint, ledger):
        outcome, preimage, _ = locked
        await payee_escrow.claim(outcome.htlc.token, preimage)
        htlc = outcome.htlc
        fake_mint.now = htlc.locktime + 1
        with pytest.raises(MintRejectedError):
            await payer_escrow.refund(htlc, now=htlc.locktime + 1)
        assert ledger.get_htlc(htlc.escrow_id).status is HtlcStatus.FAILED

    async def test_terminal_htlc_not_refunded(self, locked, payer_escrow):
        outcome, _, _ = locked
        payer_escrow.transition(outcome.htlc, HtlcStatus.CLAIMED)
        with pytest.raises(InvalidTransitionError):
            await payer_escrow.refund(outcome.htlc, now=outcome.htlc.locktime + 1)

    async def test_refund_skew(self, locked, mint_client, payer_keys, ledger):
        outcome, _, _ = locked
        escrow = HTLCEscrow(mint_client, payer_keys, ledger, refund_skew=30)
        with pytest.raises(HtlcNotRefundableError):
            await escrow.refund(outcome.htlc, now=outcome.htlc.locktime + 30)


class TestClaimConfirmation:
    async def test_trust_message(self, locked, payer_escrow, ledger):
        outcome, _, _ = locked
        assert await payer_escrow.confirm_claim(outcome.htlc, ClaimConfirmationPolicy.TRUST_MESSAGE)
        assert ledger.get_htlc(outcome.htlc.escrow_id).status is HtlcStatus.CLAIMED
        assert not await payer_escrow.confirm_claim(outcome.htlc, ClaimConfirmationPolicy.TRUST_MESSAGE)

    async def test_verify_at_mint(self, locked, payer_escrow, payee_escrow, ledger):
        outcome, preimage, _ = locked
        assert not await payer_escrow.confirm_claim(outcome.htlc, ClaimConfirmationPolicy.VERIFY_AT_MINT)
        assert ledger.get_htlc(outcome.htlc.escrow_id).status is HtlcStatus.LOCKED
        await payee_escrow.claim(outcome.htlc.token, preimage)
        assert await payer_escrow.confirm_claim(outcome.htlc, ClaimConfirmationPolicy.VERIFY_AT_MINT)
        assert ledger.get_htlc(outcome.htlc.escrow_id).status is HtlcStatus.CLAIMED

    async def test_no_transition_after_refund(self, locked, payer_escrow, fake_mint):
        outcome, _, _ = locked
        fake_mint.now = outcome.htlc.locktime + 1
        await payer_escrow.refund(outcome.htlc, now=outcome.htlc.locktime + 1)
        with pytest.raises(InvalidTransitionError):
            await payer_escrow.confirm_claim(outcome.htlc, ClaimConfirmationPolicy.TRUST_MESSAGE)
