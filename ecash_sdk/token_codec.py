"""
Ecash Escrow SDK - Token Codec

Serialized tokens are how proofs travel between wallets (escrow hand-off)
and how recovery tokens are kept locally.

  - cashuA: URL-safe base64 of JSON (V3). Always produced.
  - cashuB: URL-safe base64 of CBOR (V4). Accepted on decode.
"""

import base64
import json
from dataclasses import dataclass
from typing import List

import cbor2

from .ecash_types import Proof

TOKEN_PREFIX_V3 = "cashuA"
TOKEN_PREFIX_V4 = "cashuB"


class TokenError(ValueError):
    """Token string could not be decoded."""


@dataclass
class DecodedToken:
    mint_url: str
    proofs: List[Proof]
    unit: str = "sat"

    @property
    def amount(self) -> int:
        return sum(p.amount for p in self.proofs)


def _b64decode(data: str) -> bytes:
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded)
    except ValueError as e:
        raise TokenError(f"Invalid base64: {e}")


def encode_token(proofs: List[Proof], mint_url: str, unit: str = "sat") -> str:
    """Encode proofs from one mint as a cashuA token."""
    payload = {
        "token": [{"mint": mint_url, "proofs": [p.to_dict() for p in proofs]}],
        "unit": unit,
    }
    raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    return TOKEN_PREFIX_V3 + base64.urlsafe_b64encode(raw).decode("ascii")


def _decode_v3(body: str) -> DecodedToken:
    try:
        data = json.loads(_b64decode(body))
        entries = data["token"]
    except (ValueError, KeyError, TypeError) as e:
        raise TokenError(f"Malformed cashuA token: {e}")
    if not entries:
        raise TokenError("Token has no entries")
    mint_url = entries[0]["mint"]
    proofs = []
    for entry in entries:
        if entry.get("mint") != mint_url:
            raise TokenError("Multi-mint tokens are not supported")
        for p in entry.get("proofs", []):
            proofs.append(Proof.from_dict(p))
    return DecodedToken(mint_url=mint_url, proofs=proofs, unit=data.get("unit", "sat"))


def _decode_v4(body: str) -> DecodedToken:
    try:
        data = cbor2.loads(_b64decode(body))
        mint_url = data["m"]
        proofs = []
        for group in data["t"]:
            keyset_id = group["i"].hex()
            for p in group["p"]:
                witness = p.get("w")
                proofs.append(Proof(
                    amount=int(p["a"]),
                    id=keyset_id,
                    secret=p["s"],
                    C=p["c"].hex(),
                    witness=witness if isinstance(witness, str) else None,
                ))
    except (cbor2.CBORDecodeError, KeyError, TypeError, AttributeError) as e:
        raise TokenError(f"Malformed cashuB token: {e}")
    return DecodedToken(mint_url=mint_url, proofs=proofs, unit=data.get("u", "sat"))


def decode_token(token: str) -> DecodedToken:
    """
    Decode a cashuA or cashuB token.

    Raises:
        TokenError: Unknown prefix or malformed payload
    """
    token = token.strip()
    if token.startswith("cashu:"):
        token = token[len("cashu:"):]
    if token.startswith(TOKEN_PREFIX_V3):
        return _decode_v3(token[len(TOKEN_PREFIX_V3):])
    if token.startswith(TOKEN_PREFIX_V4):
        return _decode_v4(token[len(TOKEN_PREFIX_V4):])
    raise TokenError(f"Invalid token prefix: {token[:10]}")
