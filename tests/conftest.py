"""
Ecash Escrow SDK Test Fixtures

FakeMint is an in-process Cashu mint behind httpx.MockTransport: real
BDHKE signing with per-amount keys, spent-set tracking, NUT-14 witness
checks, NUT-07 checkstate and NUT-09 restore.
"""

import hashlib
import json
import re
import time
import uuid
from typing import Dict, List, Optional, Set

import httpx
import pytest
from coincurve.keys import PrivateKey

from ecash_sdk.config import WalletConfig
from ecash_sdk.crypto import (
    CURVE_ORDER,
    compute_payment_hash,
    point_from_hex,
    point_to_hex,
    proof_signing_hash,
    proof_y,
    sign_blinded,
    verify_preimage,
    verify_schnorr,
    verify_unblinded,
)
from ecash_sdk.denominations import split_amount
from ecash_sdk.ecash_types import HtlcSecret
from ecash_sdk.errors import StoreError
from ecash_sdk.keys import WalletKeyManager
from ecash_sdk.ledger import ProofLedger
from ecash_sdk.mint_client import MintClient
from ecash_sdk.proof_store import AesGcmCipher, ProofStore, RelayEvent, RelayTransport
from ecash_sdk.wallet import EcashWallet

MINT_URL = "https://mint.test"
MAX_ORDER = 20

PAYER_PRIVKEY = "11" * 32
PAYEE_PRIVKEY = "22" * 32
PAYER_SEED = hashlib.sha512(b"payer seed").digest()
PAYEE_SEED = hashlib.sha512(b"payee seed").digest()


class MintError(Exception):
    def __init__(self, code: int, detail: str):
        self.code = code
        self.detail = detail


def _mint_key(amount: int, salt: str) -> PrivateKey:
    k = int.from_bytes(hashlib.sha256(f"{salt}:{amount}".encode()).digest(), "big") % CURVE_ORDER
    return PrivateKey(k.to_bytes(32, "big"))


# =============================================================================
# Fake mint
# =============================================================================

class FakeMint:
    """
    Minimal bolt11/sat mint.

    Knobs:
        input_fee_ppk      keyset input fee
        fee_reserve        melt quote reserve
        melt_fee           lightning fee actually charged on melt
        fail_next          {path_prefix: n} raise ConnectError before handling
        drop_response      {path_prefix: n} handle, then raise ConnectError
        now                override clock for locktime checks
    """

    def __init__(self, input_fee_ppk: int = 0, salt: str = "fake-mint"):
        self.keys = {1 << i: _mint_key(1 << i, salt) for i in range(MAX_ORDER)}
        pubs = sorted(k.public_key.format().hex() for k in self.keys.values())
        self.keyset_id = "00" + hashlib.sha256("".join(pubs).encode()).hexdigest()[:14]
        self.input_fee_ppk = input_fee_ppk
        self.fee_reserve = 2
        self.melt_fee = 0
        self.nuts: Dict[str, dict] = {
            "4": {"methods": [{"method": "bolt11", "unit": "sat"}], "disabled": False},
            "5": {"methods": [{"method": "bolt11", "unit": "sat"}], "disabled": False},
            "7": {"supported": True},
            "8": {"supported": True},
            "9": {"supported": True},
            "10": {"supported": True},
            "11": {"supported": True},
            "14": {"supported": True},
        }
        self.spent: Set[str] = set()
        self.signed: Dict[str, dict] = {}
        self.mint_quotes: Dict[str, dict] = {}
        self.melt_quotes: Dict[str, dict] = {}
        self.invoices: Dict[str, int] = {}
        self.fail_next: Dict[str, int] = {}
        self.drop_response: Dict[str, int] = {}
        self.requests: List[str] = []
        self.now: Optional[int] = None

    # ── helpers used by tests ─────────────────────────────────────────

    def pay_quote(self, quote_id: str):
        self.mint_quotes[quote_id]["state"] = "PAID"

    def add_invoice(self, amount: int) -> str:
        bolt11 = f"lnbc{amount}n1fake{uuid.uuid4().hex[:8]}"
        self.invoices[bolt11] = amount
        return bolt11

    def is_spent(self, secret: str) -> bool:
        return proof_y(secret) in self.spent

    def clock(self) -> int:
        return self.now if self.now is not None else int(time.time())

    # ── transport entry point ─────────────────────────────────────────

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.requests.append(f"{request.method} {path}")
        for prefix, n in list(self.fail_next.items()):
            if n and path.startswith(prefix):
                self.fail_next[prefix] = n - 1
                raise httpx.ConnectError("mint offline", request=request)

        body = json.loads(request.content) if request.content else {}
        try:
            data = self._route(request.method, path, body)
        except MintError as e:
            return httpx.Response(400, json={"code": e.code, "detail": e.detail})

        for prefix, n in list(self.drop_response.items()):
            if n and path.startswith(prefix):
                self.drop_response[prefix] = n - 1
                raise httpx.ReadTimeout("response lost", request=request)
        return httpx.Response(200, json=data)

    def _route(self, method: str, path: str, body: dict) -> dict:
        if path == "/v1/info":
            return {"name": "Fake Mint", "version": "fake/0.1", "nuts": self.nuts}
        if path == "/v1/keysets":
            return {"keysets": [{"id": self.keyset_id, "unit": "sat", "active": True,
                                 "input_fee_ppk": self.input_fee_ppk}]}
        if path.startswith("/v1/keys/"):
            keys = {str(a): k.public_key.format().hex() for a, k in self.keys.items()}
            return {"keysets": [{"id": self.keyset_id, "unit": "sat", "keys": keys}]}
        if path == "/v1/mint/quote/bolt11" and method == "POST":
            return self._new_mint_quote(body["amount"])
        m = re.match(r"^/v1/mint/quote/bolt11/(\w+)$", path)
        if m:
            return self._mint_quote_view(m.group(1))
        if path == "/v1/mint/bolt11":
            return self._mint(body)
        if path == "/v1/melt/quote/bolt11" and method == "POST":
            return self._new_melt_quote(body["request"])
        m = re.match(r"^/v1/melt/quote/bolt11/(\w+)$", path)
        if m:
            return dict(self.melt_quotes[m.group(1)])
        if path == "/v1/melt/bolt11":
            return self._melt(body)
        if path == "/v1/swap":
            return self._swap(body)
        if path == "/v1/checkstate":
            return {"states": [{"Y": y, "state": "SPENT" if y in self.spent else "UNSPENT",
                                "witness": None} for y in body["Ys"]]}
        if path == "/v1/restore":
            found = [o for o in body["outputs"] if o["B_"] in self.signed]
            return {"outputs": [{"amount": self.signed[o["B_"]]["amount"], "id": o["id"], "B_": o["B_"]}
                                for o in found],
                    "signatures": [self.signed[o["B_"]] for o in found]}
        raise MintError(404, f"no route {method} {path}")

    # ── quotes ────────────────────────────────────────────────────────

    def _new_mint_quote(self, amount: int) -> dict:
        quote_id = uuid.uuid4().hex
        self.mint_quotes[quote_id] = {"quote": quote_id, "request": f"lnbc{amount}n1deposit",
                                      "amount": amount, "state": "UNPAID",
                                      "expiry": self.clock() + 3600}
        return dict(self.mint_quotes[quote_id])

    def _mint_quote_view(self, quote_id: str) -> dict:
        if quote_id not in self.mint_quotes:
            raise MintError(20007, "quote not found")
        return dict(self.mint_quotes[quote_id])

    def _new_melt_quote(self, bolt11: str) -> dict:
        if bolt11 not in self.invoices:
            raise MintError(20008, "unknown invoice")
        quote_id = uuid.uuid4().hex
        self.melt_quotes[quote_id] = {"quote": quote_id, "amount": self.invoices[bolt11],
                                      "fee_reserve": self.fee_reserve, "state": "UNPAID",
                                      "expiry": self.clock() + 3600, "request": bolt11,
                                      "payment_preimage": None}
        return dict(self.melt_quotes[quote_id])

    # ── signing / verification ────────────────────────────────────────

    def _sign_outputs(self, outputs: List[dict]) -> List[dict]:
        for o in outputs:
            if o["amount"] not in self.keys:
                raise MintError(11005, f"unsupported amount {o['amount']}")
            if o["B_"] in self.signed:
                raise MintError(10002, "Blinded message of output already signed")
        sigs = []
        for o in outputs:
            C_ = sign_blinded(point_from_hex(o["B_"]), self.keys[o["amount"]])
            sig = {"amount": o["amount"], "id": self.keyset_id, "C_": point_to_hex(C_)}
            self.signed[o["B_"]] = sig
            sigs.append(sig)
        return sigs

    def _check_witness(self, proof: dict):
        cond = HtlcSecret.from_secret(proof["secret"])
        if cond is None:
            return
        witness = json.loads(proof.get("witness") or "{}")
        sigs = witness.get("signatures") or []
        digest = proof_signing_hash(proof["secret"])

        def signed_by(keys):
            return any(verify_schnorr(digest, s, k) for s in sigs for k in keys)

        preimage = witness.get("preimage", "")
        if verify_preimage(preimage, cond.payment_hash) and (not cond.pubkeys or signed_by(cond.pubkeys)):
            return
        if cond.locktime is not None and self.clock() > cond.locktime and signed_by(cond.refund_pubkeys):
            return
        raise MintError(30004, "HTLC witness invalid")

    def _verify_inputs(self, inputs: List[dict]) -> int:
        ys = [proof_y(p["secret"]) for p in inputs]
        if len(set(ys)) != len(ys):
            raise MintError(11007, "Duplicate inputs provided")
        for p, y in zip(inputs, ys):
            if y in self.spent:
                raise MintError(11001, "Token already spent.")
            key = self.keys.get(p["amount"])
            if key is None or not verify_unblinded(p["secret"], point_from_hex(p["C"]), key):
                raise MintError(10003, "Proof could not be verified")
            self._check_witness(p)
        return sum(p["amount"] for p in inputs)

    def fee_for(self, n_inputs: int) -> int:
        return (self.input_fee_ppk * n_inputs + 999) // 1000

    def _spend(self, inputs: List[dict]):
        for p in inputs:
            self.spent.add(proof_y(p["secret"]))

    # ── operations ────────────────────────────────────────────────────

    def _mint(self, body: dict) -> dict:
        quote = self.mint_quotes.get(body["quote"])
        if quote is None:
            raise MintError(20007, "quote not found")
        if quote["state"] == "UNPAID":
            raise MintError(20001, "Quote request is not paid")
        if quote["state"] == "ISSUED":
            raise MintError(20002, "Tokens have already been issued for quote")
        if sum(o["amount"] for o in body["outputs"]) != quote["amount"]:
            raise MintError(11010, "Outputs do not match quote amount")
        sigs = self._sign_outputs(body["outputs"])
        quote["state"] = "ISSUED"
        return {"signatures": sigs}

    def _swap(self, body: dict) -> dict:
        total_in = self._verify_inputs(body["inputs"])
        total_out = sum(o["amount"] for o in body["outputs"])
        fee = self.fee_for(len(body["inputs"]))
        if total_out != total_in - fee:
            raise MintError(11010, f"Transaction unbalanced: {total_in} in, {total_out} out, fee {fee}")
        sigs = self._sign_outputs(body["outputs"])
        self._spend(body["inputs"])
        return {"signatures": sigs}

    def _melt(self, body: dict) -> dict:
        quote = self.melt_quotes[body["quote"]]
        if quote["state"] == "PAID":
            raise MintError(20006, "Melt quote already paid")
        total_in = self._verify_inputs(body["inputs"])
        fee = self.fee_for(len(body["inputs"]))
        if total_in < quote["amount"] + quote["fee_reserve"] + fee:
            raise MintError(11010, "Inputs do not cover amount plus fee reserve")
        change_value = total_in - quote["amount"] - self.melt_fee - fee
        amounts = split_amount(change_value)[:len(body["outputs"])]
        outputs = [dict(o, amount=a) for o, a in zip(body["outputs"], amounts)]
        change = self._sign_outputs(outputs)
        self._spend(body["inputs"])
        preimage = "ab" * 32
        quote.update(state="PAID", payment_preimage=preimage)
        return {"quote": quote["quote"], "state": "PAID", "payment_preimage": preimage,
                "change": change, "amount": quote["amount"], "fee_reserve": quote["fee_reserve"]}


# =============================================================================
# Fake relay
# =============================================================================

class InMemoryRelay(RelayTransport):
    """Relay stand-in with a call log and failure switches."""

    def __init__(self):
        self.events: Dict[str, RelayEvent] = {}
        self.calls: List[tuple] = []
        self.fail_publish = 0
        self.fail_delete = 0
        self.offline = False
        self._clock = 1_700_000_000

    async def publish(self, kind: int, content: str, tags) -> str:
        if self.offline or self.fail_publish:
            if self.fail_publish:
                self.fail_publish -= 1
            self.calls.append(("publish_failed", int(kind)))
            raise StoreError("relay unreachable")
        self._clock += 1
        event_id = uuid.uuid4().hex
        self.events[event_id] = RelayEvent(event_id, int(kind), content, self._clock, tags)
        self.calls.append(("publish", int(kind), event_id))
        return event_id

    async def fetch(self, kind: int) -> List[RelayEvent]:
        if self.offline:
            raise StoreError("relay unreachable")
        return [e for e in self.events.values() if e.kind == kind]

    async def delete(self, event_ids: List[str]) -> bool:
        if self.offline or self.fail_delete:
            if self.fail_delete:
                self.fail_delete -= 1
            raise StoreError("relay unreachable")
        for eid in event_ids:
            self.events.pop(eid, None)
        self.calls.append(("delete", tuple(event_ids)))
        return True

    def kinds(self, kind: int) -> List[RelayEvent]:
        return [e for e in self.events.values() if e.kind == kind]


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def fake_mint() -> FakeMint:
    return FakeMint()


@pytest.fixture
async def http_client(fake_mint):
    client = httpx.AsyncClient(transport=httpx.MockTransport(fake_mint.handle))
    yield client
    await client.aclose()


@pytest.fixture
def mint_client(http_client) -> MintClient:
    return MintClient(MINT_URL, http_client=http_client)


@pytest.fixture
def relay() -> InMemoryRelay:
    return InMemoryRelay()


@pytest.fixture
def cipher() -> AesGcmCipher:
    return AesGcmCipher(b"\x07" * 32)


@pytest.fixture
def store(relay, cipher) -> ProofStore:
    return ProofStore(relay, cipher, publish_retries=3, retry_backoff=0)


@pytest.fixture
def ledger(tmp_path) -> ProofLedger:
    return ProofLedger(tmp_path / "ledger.json")


@pytest.fixture
def payer_keys() -> WalletKeyManager:
    return WalletKeyManager(PAYER_PRIVKEY, seed=PAYER_SEED)


@pytest.fixture
def payee_keys() -> WalletKeyManager:
    return WalletKeyManager(PAYEE_PRIVKEY, seed=PAYEE_SEED)


def make_config(path) -> WalletConfig:
    return WalletConfig(mint_url=MINT_URL, ledger_path=path, retry_backoff=0,
                        quote_timeout=1, publish_retries=2)


@pytest.fixture
def config(tmp_path) -> WalletConfig:
    return make_config(tmp_path / "ledger.json")


@pytest.fixture
async def wallet(config, mint_client, store, ledger, payer_keys) -> EcashWallet:
    w = EcashWallet(config, mint_client, store, ledger, payer_keys)
    assert await w.connect()
    return w


@pytest.fixture
async def payee_wallet(tmp_path, http_client, cipher, payee_keys) -> EcashWallet:
    relay = InMemoryRelay()
    store = ProofStore(relay, AesGcmCipher(b"\x09" * 32), publish_retries=2, retry_backoff=0)
    w = EcashWallet(make_config(tmp_path / "payee.json"), MintClient(MINT_URL, http_client=http_client),
                    store, ProofLedger(tmp_path / "payee.json"), payee_keys)
    assert await w.connect()
    return w


async def fund(wallet: EcashWallet, fake_mint: FakeMint, amount: int) -> int:
    """Deposit `amount` through the real quote -> pay -> mint flow."""
    quote = await wallet.request_deposit(amount)
    assert quote.success, quote.message
    fake_mint.pay_quote(quote.mint_quote.quote)
    result = await wallet.check_deposit(quote.mint_quote.quote, wait=False)
    assert result.success, result.message
    return result.amount_sats


def new_payment() -> tuple:
    preimage = uuid.uuid4().hex * 2
    return preimage, compute_payment_hash(preimage)
