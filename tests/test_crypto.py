"""
Tests for the BDHKE primitives, deterministic derivation and witnesses.
"""

import hashlib
import hmac

import pytest
from coincurve.keys import PrivateKey

from ecash_sdk.crypto import (
    CURVE_ORDER,
    blind_message,
    compute_payment_hash,
    derive_secret,
    hash_to_curve,
    mnemonic_to_seed,
    point_to_hex,
    proof_signing_hash,
    sign_blinded,
    sign_schnorr,
    unblind_signature,
    verify_preimage,
    verify_schnorr,
    verify_unblinded,
)
from ecash_sdk.errors import CryptoError
from ecash_sdk.keys import WalletKeyManager

TREZOR_MNEMONIC = " ".join(["abandon"] * 11 + ["about"])
TREZOR_SEED = (
    "c55257c360c07c72029aebc1b53c05ed0362ada38ead3e3e9efa3708e5349553"
    "1f09a6987599d18264c1e1c92f2cf141630c7a3c4ab7c81b2f001698e7463b04"
)


class TestHashToCurve:
    """Known-answer vectors for the double-hash construction."""

    @pytest.mark.parametrize("message,expected", [
        ("00" * 32, "024cce997d3b518f739663b757deaec95bcd9473c30a14ac2fd04023a739d1a725"),
        ("00" * 31 + "01", "022e7158e11c9506f1aa4248bf531298daa7febd6194f003edcd9b93ade6253acf"),
        ("00" * 31 + "02", "026cdbe15362df59cd1dd3c9c11de8aedac2106eca69236ecd9fbe117af897be4f"),
    ])
    def test_vectors(self, message, expected):
        assert point_to_hex(hash_to_curve(bytes.fromhex(message))) == expected

    def test_deterministic(self):
        assert point_to_hex(hash_to_curve(b"ride-42")) == point_to_hex(hash_to_curve(b"ride-42"))


class TestBlindSignature:
    """Blind -> sign -> unblind yields C = kY."""

    def test_roundtrip_verifies(self):
        k = PrivateKey()
        B_, r = blind_message("test_secret")
        C = unblind_signature(sign_blinded(B_, k), r, k.public_key)
        assert verify_unblinded("test_secret", C, k)

    def test_wrong_mint_key_fails_verification(self):
        """Unblinding with another amount's key gives an invalid proof."""
        k_signed = PrivateKey()
        k_other = PrivateKey()
        B_, r = blind_message("secret")
        C = unblind_signature(sign_blinded(B_, k_signed), r, k_other.public_key)
        assert not verify_unblinded("secret", C, k_signed)

    def test_fixed_blinding_factor_is_reproducible(self):
        B1, _ = blind_message("s", r=12345)
        B2, _ = blind_message("s", r=12345)
        assert point_to_hex(B1) == point_to_hex(B2)


class TestDerivation:
    """NUT-13 HMAC derivation."""

    def test_matches_hmac_construction(self):
        seed = bytes(range(64))
        keyset_id = "009a1f293253e41e"
        secret, r = derive_secret(seed, keyset_id, 7)
        msg = b"Cashu_KDF_HMAC_SHA256" + bytes.fromhex(keyset_id) + (7).to_bytes(8, "big")
        assert secret == hmac.new(seed, msg + b"\x00", hashlib.sha256).hexdigest()
        r_raw = hmac.new(seed, msg + b"\x01", hashlib.sha256).digest()
        assert r == int.from_bytes(r_raw, "big") % CURVE_ORDER

    def test_counters_produce_distinct_secrets(self):
        seed = b"\x01" * 64
        secrets = {derive_secret(seed, "00ffd48b8f5ecf80", c)[0] for c in range(10_000)}
        assert len(secrets) == 10_000

    def test_keyset_changes_output(self):
        seed = b"\x02" * 64
        assert derive_secret(seed, "00aa", 0) != derive_secret(seed, "00bb", 0)

    def test_negative_counter_rejected(self):
        with pytest.raises(CryptoError):
            derive_secret(b"\x01" * 64, "00aa", -1)

    def test_empty_seed_rejected(self):
        with pytest.raises(CryptoError):
            derive_secret(b"", "00aa", 0)


class TestMnemonic:
    def test_bip39_trezor_vector(self):
        assert mnemonic_to_seed(TREZOR_MNEMONIC, "TREZOR").hex() == TREZOR_SEED

    def test_whitespace_normalized(self):
        assert mnemonic_to_seed("  " + TREZOR_MNEMONIC.replace(" ", "   ")) == mnemonic_to_seed(TREZOR_MNEMONIC)


class TestSchnorr:
    def test_sign_verify_compressed_and_xonly(self):
        key = PrivateKey()
        digest = proof_signing_hash('["HTLC",{"nonce":"00","data":"ab"}]')
        sig = sign_schnorr(digest, key)
        compressed = key.public_key.format().hex()
        assert verify_schnorr(digest, sig, compressed)
        assert verify_schnorr(digest, sig, compressed[2:])

    def test_other_key_rejected(self):
        digest = proof_signing_hash("secret")
        sig = sign_schnorr(digest, PrivateKey())
        assert not verify_schnorr(digest, sig, PrivateKey().public_key.format().hex())

    def test_garbage_signature_is_false(self):
        assert not verify_schnorr(proof_signing_hash("s"), "zz", "02" + "11" * 32)

    def test_key_manager_signs_sha256_of_secret(self):
        keys = WalletKeyManager("33" * 32)
        sig = keys.sign_proof_secret("my secret")
        assert verify_schnorr(hashlib.sha256(b"my secret").digest(), sig, keys.pubkey_hex)


class TestPreimage:
    def test_hash_over_raw_bytes(self):
        preimage = "00" * 32
        assert compute_payment_hash(preimage) == hashlib.sha256(b"\x00" * 32).hexdigest()

    def test_verify_case_insensitive_hash(self):
        preimage = "42" * 32
        assert verify_preimage(preimage, compute_payment_hash(preimage).upper())

    def test_non_hex_preimage_is_false(self):
        assert not verify_preimage("not-hex", "00" * 32)


class TestKeyManager:
    def test_invalid_private_key(self):
        with pytest.raises(CryptoError):
            WalletKeyManager("00" * 32)

    def test_mnemonic_gives_seed(self):
        keys = WalletKeyManager("33" * 32, mnemonic=TREZOR_MNEMONIC)
        assert keys.require_seed() == mnemonic_to_seed(TREZOR_MNEMONIC)

    def test_missing_seed_is_fatal(self):
        with pytest.raises(CryptoError):
            WalletKeyManager("33" * 32).require_seed()

    def test_owns_xonly(self):
        keys = WalletKeyManager("33" * 32)
        assert keys.owns(keys.pubkey_hex[2:])
        assert not keys.owns(WalletKeyManager("44" * 32).pubkey_hex)
