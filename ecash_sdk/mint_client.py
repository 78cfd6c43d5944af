"""
Ecash Escrow SDK - Mint Client

Async HTTP client for the Cashu mint protocol (NUT-00 .. NUT-09, NUT-14).

Every request goes through MintClient._request, which maps failures into
the SDK error taxonomy:

  - httpx transport errors / timeouts  -> MintTransportError (retry)
  - HTTP >= 400 with protocol code      -> MintRejectedError   (terminal)
  - undecodable 2xx body                -> MintProtocolError
"""

import logging
import secrets
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import httpx

from .config import DEFAULT_HTTP_TIMEOUT_S, normalize_mint_url
from .crypto import (
    blind_message,
    derive_secret,
    point_from_hex,
    point_to_hex,
    proof_y,
    unblind_signature,
)
from .ecash_types import (
    BlindedMessage,
    BlindSignature,
    Keyset,
    MeltQuote,
    MeltResponse,
    MintCapabilities,
    MintQuote,
    PreMintSecret,
    Proof,
    ProofState,
    ProofStateCheck,
)
from .errors import CryptoError, MintProtocolError, MintRejectedError, MintTransportError

log = logging.getLogger(__name__)

UNIT = "sat"
METHOD = "bolt11"


# ═══════════════════════════════════════════════════════════════════════
# OUTPUT CONSTRUCTION
# ═══════════════════════════════════════════════════════════════════════

def build_outputs(amounts: Sequence[int], keyset_id: str,
                  seed: Optional[bytes] = None,
                  counter_start: int = 0) -> List[PreMintSecret]:
    """
    Build blinded outputs for the given amounts.

    With a seed, output i uses derive_secret(seed, keyset_id,
    counter_start + i). Without one, secrets and blinding factors are
    random; callers only do that for conditioned outputs whose secret is
    replaced anyway (see build_conditional_outputs).
    """
    premints = []
    for i, amount in enumerate(amounts):
        counter = None
        r = None
        if seed is not None:
            counter = counter_start + i
            secret, r = derive_secret(seed, keyset_id, counter)
        else:
            secret = secrets.token_hex(32)
        B_, r = blind_message(secret, r)
        premints.append(PreMintSecret(
            amount=amount,
            secret=secret,
            r=r,
            keyset_id=keyset_id,
            Y=proof_y(secret),
            B_=point_to_hex(B_),
            counter=counter,
        ))
    return premints


def build_conditional_outputs(amounts: Sequence[int], keyset_id: str,
                              make_secret: Callable[[], str]) -> List[PreMintSecret]:
    """Outputs whose secret is a NUT-10 condition (random blinding)."""
    premints = []
    for amount in amounts:
        secret = make_secret()
        B_, r = blind_message(secret)
        premints.append(PreMintSecret(
            amount=amount,
            secret=secret,
            r=r,
            keyset_id=keyset_id,
            Y=proof_y(secret),
            B_=point_to_hex(B_),
        ))
    return premints


def _parse_error(response: httpx.Response) -> Tuple[int, str]:
    try:
        body = response.json()
    except ValueError:
        return response.status_code, response.text[:200]
    if not isinstance(body, dict):
        return response.status_code, str(body)[:200]
    code = body.get("code", response.status_code)
    try:
        code = int(code)
    except (TypeError, ValueError):
        code = response.status_code
    detail = body.get("detail") or body.get("error") or response.text[:200]
    return code, str(detail)


class MintClient:
    """
    Cashu mint client.

    Usage:
        async with MintClient("https://mint.example.com") as mint:
            info = await mint.get_info()
            quote = await mint.request_mint_quote(1000)
            keyset = await mint.get_active_keyset()
            outputs = build_outputs(split_amount(1000), keyset.id, seed, counter)
            sigs = await mint.mint(quote.quote, [o.to_blinded_message() for o in outputs])
            proofs = await mint.unblind(sigs, outputs)
    """

    def __init__(self, mint_url: str, timeout: float = DEFAULT_HTTP_TIMEOUT_S,
                 http_client: Optional[httpx.AsyncClient] = None):
        """
        Initialize mint client.

        Args:
            mint_url: Mint base URL (without /v1)
            timeout: Per-request timeout in seconds
            http_client: Shared AsyncClient (owned by caller when given)
        """
        self.mint_url = normalize_mint_url(mint_url)
        self.timeout = timeout
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None
        self._keysets: Dict[str, Keyset] = {}
        self._active_keyset_id: Optional[str] = None
        self.capabilities: Optional[MintCapabilities] = None

    async def __aenter__(self) -> "MintClient":
        return self

    async def __aexit__(self, *exc):
        await self.close()

    async def close(self):
        if self._owns_client:
            await self._client.aclose()

    def set_mint_url(self, mint_url: str):
        """Point at the mint's new base URL. Cached keysets and capabilities are dropped."""
        self.mint_url = normalize_mint_url(mint_url)
        self._keysets.clear()
        self._active_keyset_id = None
        self.capabilities = None

    @property
    def ws_url(self) -> str:
        if self.mint_url.startswith("https://"):
            return "wss://" + self.mint_url[len("https://"):] + "/v1/ws"
        return "ws://" + self.mint_url.split("://", 1)[-1] + "/v1/ws"

    async def _request(self, method: str, path: str, payload: Optional[dict] = None) -> Any:
        """Make a mint API call."""
        url = f"{self.mint_url}{path}"
        try:
            response = await self._client.request(method, url, json=payload, timeout=self.timeout)
        except httpx.TransportError as e:
            log.warning(f"Mint unreachable ({method} {path}): {e}")
            raise MintTransportError(str(e))

        if response.status_code >= 400:
            code, detail = _parse_error(response)
            log.warning(f"Mint rejected {method} {path}: [{code}] {detail}")
            raise MintRejectedError(code, detail, response.status_code)

        try:
            return response.json()
        except ValueError as e:
            raise MintProtocolError(f"Invalid JSON from {path}: {e}")

    # ═══════════════════════════════════════════════════════════════════
    # INFO / KEYSETS (NUT-01, NUT-02, NUT-06)
    # ═══════════════════════════════════════════════════════════════════

    async def get_info(self) -> MintCapabilities:
        """Fetch and cache mint capabilities."""
        data = await self._request("GET", "/v1/info")
        self.capabilities = MintCapabilities.from_dict(data)
        return self.capabilities

    async def get_keysets(self) -> List[Keyset]:
        """List keysets (ids only, keys fetched lazily)."""
        data = await self._request("GET", "/v1/keysets")
        result = []
        for entry in data.get("keysets", []):
            result.append(Keyset(
                id=entry["id"],
                unit=entry.get("unit", UNIT),
                active=bool(entry.get("active", True)),
                input_fee_ppk=int(entry.get("input_fee_ppk", 0) or 0),
            ))
        return result

    async def get_keyset(self, keyset_id: str) -> Keyset:
        """
        Keys for one keyset, cached.

        Amount keys that do not parse to a positive integer are skipped.
        """
        cached = self._keysets.get(keyset_id)
        if cached is not None and cached.keys:
            return cached

        data = await self._request("GET", f"/v1/keys/{keyset_id}")
        entries = data.get("keysets", [])
        if not entries:
            raise MintProtocolError(f"Keyset {keyset_id} not returned by mint")
        entry = entries[0]
        keys: Dict[int, str] = {}
        for amount_str, pubkey in (entry.get("keys") or {}).items():
            try:
                amount = int(amount_str)
            except (TypeError, ValueError):
                continue
            if amount > 0:
                keys[amount] = pubkey
        keyset = Keyset(
            id=entry.get("id", keyset_id),
            unit=entry.get("unit", UNIT),
            active=bool(entry.get("active", cached.active if cached else True)),
            keys=keys,
            input_fee_ppk=cached.input_fee_ppk if cached else 0,
        )
        self._keysets[keyset.id] = keyset
        return keyset

    async def get_active_keyset(self) -> Keyset:
        """First active sat keyset (hex ids preferred)."""
        if self._active_keyset_id and self._active_keyset_id in self._keysets:
            return self._keysets[self._active_keyset_id]

        keysets = [k for k in await self.get_keysets() if k.active and k.unit == UNIT]
        if not keysets:
            raise MintProtocolError("Mint has no active sat keyset")
        keysets.sort(key=lambda k: 0 if k.id.startswith("00") else 1)
        for k in keysets:
            self._keysets.setdefault(k.id, k)
        keyset = await self.get_keyset(keysets[0].id)
        self._active_keyset_id = keyset.id
        return keyset

    # ═══════════════════════════════════════════════════════════════════
    # MINT (NUT-04)
    # ═══════════════════════════════════════════════════════════════════

    async def request_mint_quote(self, amount: int) -> MintQuote:
        data = await self._request("POST", f"/v1/mint/quote/{METHOD}",
                                   {"amount": amount, "unit": UNIT})
        return MintQuote.from_dict(data, amount=amount)

    async def check_mint_quote(self, quote_id: str) -> MintQuote:
        data = await self._request("GET", f"/v1/mint/quote/{METHOD}/{quote_id}")
        return MintQuote.from_dict(data)

    async def mint(self, quote_id: str, outputs: List[BlindedMessage]) -> List[BlindSignature]:
        """Exchange a paid quote for blind signatures."""
        data = await self._request("POST", f"/v1/mint/{METHOD}", {
            "quote": quote_id,
            "outputs": [o.to_dict() for o in outputs],
        })
        return [BlindSignature.from_dict(s) for s in data.get("signatures", [])]

    # ═══════════════════════════════════════════════════════════════════
    # MELT (NUT-05, NUT-08 change)
    # ═══════════════════════════════════════════════════════════════════

    async def request_melt_quote(self, bolt11: str) -> MeltQuote:
        data = await self._request("POST", f"/v1/melt/quote/{METHOD}",
                                   {"request": bolt11, "unit": UNIT})
        return MeltQuote.from_dict(data, request=bolt11)

    async def check_melt_quote(self, quote_id: str) -> MeltQuote:
        data = await self._request("GET", f"/v1/melt/quote/{METHOD}/{quote_id}")
        return MeltQuote.from_dict(data)

    async def melt(self, quote_id: str, inputs: List[Proof],
                   outputs: List[BlindedMessage]) -> MeltResponse:
        """
        Pay the quoted invoice with inputs.

        Args:
            quote_id: Melt quote ID
            inputs: Proofs worth at least amount + fee_reserve
            outputs: Blank change outputs for the overpaid amount

        Returns:
            MeltResponse (paid flag, preimage, change signatures)
        """
        data = await self._request("POST", f"/v1/melt/{METHOD}", {
            "quote": quote_id,
            "inputs": [p.to_dict() for p in inputs],
            "outputs": [o.to_dict() for o in outputs],
        })
        state = data.get("state")
        paid = state == "PAID" if state is not None else bool(data.get("paid"))
        return MeltResponse(
            paid=paid,
            payment_preimage=data.get("payment_preimage"),
            change=[BlindSignature.from_dict(s) for s in data.get("change", []) or []],
        )

    # ═══════════════════════════════════════════════════════════════════
    # SWAP / CHECKSTATE / RESTORE (NUT-03, NUT-07, NUT-09)
    # ═══════════════════════════════════════════════════════════════════

    async def swap(self, inputs: List[Proof], outputs: List[BlindedMessage]) -> List[BlindSignature]:
        data = await self._request("POST", "/v1/swap", {
            "inputs": [p.to_dict() for p in inputs],
            "outputs": [o.to_dict() for o in outputs],
        })
        return [BlindSignature.from_dict(s) for s in data.get("signatures", [])]

    async def check_state(self, ys: List[str]) -> List[ProofStateCheck]:
        if not ys:
            return []
        data = await self._request("POST", "/v1/checkstate", {"Ys": ys})
        return [ProofStateCheck.from_dict(s) for s in data.get("states", [])]

    async def check_proofs(self, proofs: Sequence[Proof]) -> Dict[str, ProofState]:
        """Map secret -> mint state. Secrets the mint omits are absent."""
        by_y = {proof_y(p.secret): p.secret for p in proofs}
        states = await self.check_state(list(by_y.keys()))
        result = {}
        for s in states:
            secret = by_y.get(s.y)
            if secret is not None:
                result[secret] = s.state
        return result

    async def restore(self, outputs: List[BlindedMessage]) -> List[Tuple[BlindedMessage, BlindSignature]]:
        """Signatures the mint already issued for these outputs, matched by B_."""
        if not outputs:
            return []
        data = await self._request("POST", "/v1/restore", {
            "outputs": [o.to_dict() for o in outputs],
        })
        returned = [BlindedMessage.from_dict(o) for o in data.get("outputs", [])]
        sigs = [BlindSignature.from_dict(s)
                for s in (data.get("signatures") or data.get("promises") or [])]
        return list(zip(returned, sigs))

    # ═══════════════════════════════════════════════════════════════════
    # UNBLINDING
    # ═══════════════════════════════════════════════════════════════════

    async def unblind(self, signatures: List[BlindSignature],
                      premints: List[PreMintSecret]) -> List[Proof]:
        """
        Turn blind signatures into proofs.

        The mint key is selected by the keyset id and amount the mint
        declared in each signature. Unknown keysets are fetched.

        Raises:
            CryptoError: More signatures than outputs, or no key for amount
        """
        if len(signatures) > len(premints):
            raise CryptoError(f"Mint returned {len(signatures)} signatures for {len(premints)} outputs")

        proofs = []
        for sig, pre in zip(signatures, premints):
            if sig.amount != pre.amount:
                log.warning(f"Mint re-denominated output: requested {pre.amount}, signed {sig.amount}")
            keyset = await self.get_keyset(sig.id)
            mint_key = keyset.pubkey_for_amount(sig.amount)
            if mint_key is None:
                log.error(f"No mint key for amount {sig.amount} in keyset {sig.id}")
                raise CryptoError(f"No mint key for amount {sig.amount} in keyset {sig.id}")
            C = unblind_signature(point_from_hex(sig.C_), pre.r, point_from_hex(mint_key))
            proofs.append(Proof(amount=sig.amount, id=sig.id, secret=pre.secret, C=point_to_hex(C)))
        return proofs
