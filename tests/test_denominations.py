"""
Tests for denomination splitting, proof selection and amount validation.
"""

import pytest

from ecash_sdk.denominations import (
    count_outputs,
    format_split,
    select_proofs,
    split_amount,
    split_amount_grouped,
    sum_proofs,
    validate_amount,
)
from ecash_sdk.ecash_types import Proof


def _proofs(*amounts):
    return [Proof(amount=a, id="00aa", secret=f"s{i}-{a}", C="02" + "00" * 32)
            for i, a in enumerate(amounts)]


class TestSplitAmount:
    """Binary decomposition."""

    def test_examples(self):
        assert split_amount(13) == [1, 4, 8]
        assert split_amount(64) == [64]
        assert split_amount(0) == []

    def test_sum_and_powers(self):
        for amount in (1, 7, 100, 1000, 2 ** 20 + 3):
            parts = split_amount(amount)
            assert sum(parts) == amount
            assert all(p > 0 and p & (p - 1) == 0 for p in parts)
            assert len(parts) == bin(amount).count("1")

    def test_negative_rejected(self):
        with pytest.raises(ValueError):
            split_amount(-1)

    def test_non_integer_rejected(self):
        with pytest.raises(TypeError):
            split_amount(1.5)
        with pytest.raises(TypeError):
            split_amount(True)

    def test_grouped_and_format(self):
        assert split_amount_grouped([8, 8, 2, 1, 1]) == [(8, 2), (2, 1), (1, 2)]
        assert format_split(13) == "1×8 + 1×4 + 1×1 sat (3 proofs)"
        assert count_outputs(255) == 8


class TestSelectProofs:
    """Selection covers the target with minimal overshoot."""

    def test_exact_single(self):
        chosen = select_proofs(_proofs(8, 4, 2), 4)
        assert [p.amount for p in chosen] == [4]

    def test_greedy_exact(self):
        chosen = select_proofs(_proofs(16, 8, 4, 2, 1), 13)
        assert sorted(p.amount for p in chosen) == [1, 4, 8]

    def test_prefers_smaller_overshoot(self):
        chosen = select_proofs(_proofs(8, 4, 2), 7)
        assert sum_proofs(chosen) == 8

    def test_insufficient_returns_none(self):
        assert select_proofs(_proofs(4, 2), 7) is None

    def test_always_covers_target(self):
        proofs = _proofs(32, 16, 16, 4, 2, 1, 1)
        for target in range(1, sum_proofs(proofs) + 1):
            chosen = select_proofs(proofs, target)
            assert chosen is not None
            assert sum_proofs(chosen) >= target
            assert len({p.secret for p in chosen}) == len(chosen)

    def test_non_positive_target(self):
        with pytest.raises(ValueError):
            select_proofs(_proofs(1), 0)


class TestValidateAmount:
    def test_valid(self):
        ok, message = validate_amount(1000)
        assert ok
        assert "proofs" in message

    @pytest.mark.parametrize("amount", [0, -5, 2 ** 40])
    def test_invalid(self, amount):
        ok, _ = validate_amount(amount)
        assert not ok

    def test_output_limit(self):
        ok, message = validate_amount(255, max_outputs=4)
        assert not ok
        assert "8 outputs" in message
