"""
Ecash Escrow SDK - Cryptographic Core

Blind Diffie-Hellman key exchange (NUT-00), deterministic secrets
(NUT-13), BIP-340 Schnorr witnesses (NUT-11) and HTLC preimages.

Pure functions, no I/O. Points are coincurve PublicKey objects; every
value that crosses a wire boundary is compressed-point hex.

    Y  = hash_to_curve(secret)
    B_ = Y + rG                 (wallet blinds)
    C_ = kB_                    (mint signs)
    C  = C_ - rK = kY           (wallet unblinds)
"""

import hashlib
import hmac
import secrets
import unicodedata
from typing import Optional, Tuple, Union

from coincurve.keys import PrivateKey, PublicKey, PublicKeyXOnly

from .errors import CryptoError

# secp256k1 group order
CURVE_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

DOMAIN_SEPARATOR = b"Secp256k1_HashToCurve_Cashu_"
DERIVATION_DOMAIN = b"Cashu_KDF_HMAC_SHA256"
MAX_HASH_TO_CURVE_ITERATIONS = 2 ** 16


# ═══════════════════════════════════════════════════════════════════════
# POINT HELPERS
# ═══════════════════════════════════════════════════════════════════════

def _scalar_bytes(value: int) -> bytes:
    if not 0 < value < CURVE_ORDER:
        raise CryptoError("Scalar out of range")
    return value.to_bytes(32, "big")


def point_from_hex(point_hex: str) -> PublicKey:
    """Parse a compressed point, raising CryptoError on garbage."""
    try:
        return PublicKey(bytes.fromhex(point_hex))
    except ValueError as e:
        raise CryptoError(f"Invalid curve point: {e}")


def point_to_hex(point: PublicKey) -> str:
    return point.format(compressed=True).hex()


def negate_point(point: PublicKey) -> PublicKey:
    """-P has the same x coordinate and the opposite y parity."""
    raw = bytearray(point.format(compressed=True))
    raw[0] = 0x03 if raw[0] == 0x02 else 0x02
    return PublicKey(bytes(raw))


def random_scalar() -> int:
    while True:
        value = int.from_bytes(secrets.token_bytes(32), "big")
        if 0 < value < CURVE_ORDER:
            return value


# ═══════════════════════════════════════════════════════════════════════
# HASH TO CURVE
# ═══════════════════════════════════════════════════════════════════════

def hash_to_curve(message: bytes) -> PublicKey:
    """
    Map a message to a curve point (double hash, NUT-00).

    msg_hash = SHA256(DOMAIN_SEPARATOR || message)
    for counter = 0, 1, ...:
        candidate = 0x02 || SHA256(msg_hash || counter_le32)
        return candidate if it lies on the curve

    Raises:
        CryptoError: If no valid point is found within 2^16 iterations
    """
    msg_hash = hashlib.sha256(DOMAIN_SEPARATOR + message).digest()
    for counter in range(MAX_HASH_TO_CURVE_ITERATIONS):
        digest = hashlib.sha256(msg_hash + counter.to_bytes(4, "little")).digest()
        try:
            return PublicKey(b"\x02" + digest)
        except ValueError:
            continue
    raise CryptoError("No valid point found")


def proof_y(secret: str) -> str:
    """Y = hash_to_curve(secret) as hex; the key used by checkstate."""
    return point_to_hex(hash_to_curve(secret.encode("utf-8")))


# ═══════════════════════════════════════════════════════════════════════
# BLIND / UNBLIND
# ═══════════════════════════════════════════════════════════════════════

def blind_message(secret: str, r: Optional[int] = None) -> Tuple[PublicKey, int]:
    """
    Blind a secret for the mint.

    Args:
        secret: Proof secret (UTF-8 string)
        r: Blinding factor; random when omitted

    Returns:
        (B_, r)
    """
    if r is None:
        r = random_scalar()
    Y = hash_to_curve(secret.encode("utf-8"))
    rG = PrivateKey(_scalar_bytes(r)).public_key
    return PublicKey.combine_keys([Y, rG]), r


def sign_blinded(B_: PublicKey, k: Union[int, PrivateKey]) -> PublicKey:
    """C_ = kB_. Mint-side operation, used by tests and verification."""
    if isinstance(k, PrivateKey):
        return B_.multiply(k.secret)
    return B_.multiply(_scalar_bytes(k))


def unblind_signature(C_: PublicKey, r: int, K: PublicKey) -> PublicKey:
    """
    Remove the blinding factor: C = C_ - rK.

    K must be the mint key for the amount the mint DECLARED in its
    response, not the amount originally requested.
    """
    rK = K.multiply(_scalar_bytes(r))
    try:
        return PublicKey.combine_keys([C_, negate_point(rK)])
    except ValueError as e:
        raise CryptoError(f"Unblinding produced the point at infinity: {e}")


def verify_unblinded(secret: str, C: PublicKey, k: Union[int, PrivateKey]) -> bool:
    """True if C == kY (needs the mint private key)."""
    Y = hash_to_curve(secret.encode("utf-8"))
    return point_to_hex(sign_blinded(Y, k)) == point_to_hex(C)


# ═══════════════════════════════════════════════════════════════════════
# DETERMINISTIC SECRETS (NUT-13)
# ═══════════════════════════════════════════════════════════════════════

def _keyset_id_bytes(keyset_id: str) -> bytes:
    try:
        return bytes.fromhex(keyset_id)
    except ValueError:
        # legacy base64 keyset ids
        return keyset_id.encode("utf-8")


def derive_secret(seed: bytes, keyset_id: str, counter: int) -> Tuple[str, int]:
    """
    Derive (secret, r) for one output.

    secret = HMAC-SHA256(seed, domain || keyset_id || counter_be64 || 0x00)
    r      = HMAC-SHA256(seed, domain || keyset_id || counter_be64 || 0x01) mod n

    Args:
        seed: Wallet seed bytes (BIP-39 seed)
        keyset_id: Keyset the output will be signed under
        counter: Per-keyset counter value

    Returns:
        (secret_hex, r)
    """
    if not seed:
        raise CryptoError("Empty seed")
    if counter < 0:
        raise CryptoError(f"Negative counter: {counter}")
    base = DERIVATION_DOMAIN + _keyset_id_bytes(keyset_id) + counter.to_bytes(8, "big")
    secret = hmac.new(seed, base + b"\x00", hashlib.sha256).hexdigest()
    r_raw = hmac.new(seed, base + b"\x01", hashlib.sha256).digest()
    r = int.from_bytes(r_raw, "big") % CURVE_ORDER
    if r == 0:
        raise CryptoError(f"Derived zero blinding factor at counter {counter}")
    return secret, r


def mnemonic_to_seed(mnemonic: str, passphrase: str = "") -> bytes:
    """BIP-39 seed: PBKDF2-HMAC-SHA512, 2048 rounds."""
    words = " ".join(mnemonic.split())
    normalized = unicodedata.normalize("NFKD", words).encode("utf-8")
    salt = unicodedata.normalize("NFKD", "mnemonic" + passphrase).encode("utf-8")
    return hashlib.pbkdf2_hmac("sha512", normalized, salt, 2048)


# ═══════════════════════════════════════════════════════════════════════
# SCHNORR (BIP-340)
# ═══════════════════════════════════════════════════════════════════════

def sign_schnorr(message_hash: bytes, privkey: PrivateKey) -> str:
    """Sign a 32-byte digest; returns 64-byte signature hex."""
    if len(message_hash) != 32:
        raise CryptoError("Schnorr message must be a 32-byte hash")
    return privkey.sign_schnorr(message_hash, secrets.token_bytes(32)).hex()


def verify_schnorr(message_hash: bytes, signature_hex: str, pubkey_hex: str) -> bool:
    """Verify against an x-only (32 byte) or compressed (33 byte) pubkey."""
    try:
        raw = bytes.fromhex(pubkey_hex)
        if len(raw) == 33:
            raw = raw[1:]
        return PublicKeyXOnly(raw).verify(bytes.fromhex(signature_hex), message_hash)
    except ValueError:
        return False


def proof_signing_hash(secret: str) -> bytes:
    """Digest signed for P2PK/HTLC witnesses: SHA256(secret)."""
    return hashlib.sha256(secret.encode("utf-8")).digest()


# ═══════════════════════════════════════════════════════════════════════
# PREIMAGES
# ═══════════════════════════════════════════════════════════════════════

def generate_preimage() -> str:
    """Random 32-byte preimage as hex."""
    return secrets.token_bytes(32).hex()


def compute_payment_hash(preimage: str) -> str:
    """SHA256 over the raw preimage bytes."""
    return hashlib.sha256(bytes.fromhex(preimage)).hexdigest()


def verify_preimage(preimage: str, payment_hash: str) -> bool:
    try:
        computed = compute_payment_hash(preimage)
    except ValueError:
        return False
    return hmac.compare_digest(computed, payment_hash.lower())
