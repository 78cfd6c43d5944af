"""
Ecash Escrow SDK - Data Types

Proof, quote, HTLC and bookkeeping structures shared by the mint client,
the ledger, the proof store and the wallet.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional
import json
import time


# ═══════════════════════════════════════════════════════════════════════
# PROOFS AND BLINDED MESSAGES
# ═══════════════════════════════════════════════════════════════════════

class ProofState(Enum):
    """Mint-reported proof state (NUT-07)"""
    UNSPENT = "UNSPENT"
    PENDING = "PENDING"
    SPENT = "SPENT"


@dataclass
class Proof:
    """
    Proof - bearer ecash token.

    Validity is decided only by the mint's live state. Holding a Proof
    locally says nothing about whether it is still spendable.

    Structure:
      - amount: power-of-two denomination in sats
      - id: keyset ID that signed it
      - secret: the message the mint signed (hex or NUT-10 JSON)
      - C: unblinded signature, compressed point hex
      - witness: JSON witness for conditioned (HTLC/P2PK) proofs
    """
    amount: int
    id: str
    secret: str
    C: str
    witness: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            "amount": self.amount,
            "id": self.id,
            "secret": self.secret,
            "C": self.C,
        }
        if self.witness is not None:
            data["witness"] = self.witness
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Proof":
        return cls(
            amount=int(data["amount"]),
            id=data["id"],
            secret=data["secret"],
            C=data["C"],
            witness=data.get("witness"),
        )

    def without_witness(self) -> "Proof":
        return Proof(self.amount, self.id, self.secret, self.C)


@dataclass
class BlindedMessage:
    """Output sent to the mint: B_ = Y + rG."""
    amount: int
    id: str
    B_: str

    def to_dict(self) -> dict:
        return {"amount": self.amount, "id": self.id, "B_": self.B_}

    @classmethod
    def from_dict(cls, data: dict) -> "BlindedMessage":
        return cls(amount=int(data["amount"]), id=data["id"], B_=data["B_"])


@dataclass
class BlindSignature:
    """Mint's signature on a blinded message: C_ = kB_."""
    amount: int
    id: str
    C_: str

    def to_dict(self) -> dict:
        return {"amount": self.amount, "id": self.id, "C_": self.C_}

    @classmethod
    def from_dict(cls, data: dict) -> "BlindSignature":
        return cls(amount=int(data["amount"]), id=data["id"], C_=data["C_"])


@dataclass
class PreMintSecret:
    """
    PreMintSecret - the wallet's private precursor to a future Proof.

    Persisted to the ledger BEFORE the request carrying its blinded
    message leaves the process.
    """
    amount: int
    secret: str
    r: int                  # blinding factor
    keyset_id: str
    Y: str                  # hash_to_curve(secret), compressed hex
    B_: str                 # blinded message, compressed hex
    counter: Optional[int] = None

    def to_blinded_message(self) -> BlindedMessage:
        return BlindedMessage(amount=self.amount, id=self.keyset_id, B_=self.B_)

    def to_dict(self) -> dict:
        return {
            "amount": self.amount,
            "secret": self.secret,
            "r": format(self.r, "064x"),
            "keyset_id": self.keyset_id,
            "Y": self.Y,
            "B_": self.B_,
            "counter": self.counter,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PreMintSecret":
        return cls(
            amount=int(data["amount"]),
            secret=data["secret"],
            r=int(data["r"], 16),
            keyset_id=data["keyset_id"],
            Y=data["Y"],
            B_=data["B_"],
            counter=data.get("counter"),
        )


@dataclass
class ProofStateCheck:
    """One entry of a NUT-07 checkstate response."""
    y: str
    state: ProofState
    witness: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "ProofStateCheck":
        return cls(
            y=data["Y"],
            state=ProofState(data["state"]),
            witness=data.get("witness"),
        )


# ═══════════════════════════════════════════════════════════════════════
# KEYSETS AND CAPABILITIES
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class Keyset:
    """Per-denomination mint public keys."""
    id: str
    unit: str = "sat"
    active: bool = True
    keys: Dict[int, str] = field(default_factory=dict)
    input_fee_ppk: int = 0

    def pubkey_for_amount(self, amount: int) -> Optional[str]:
        return self.keys.get(amount)


@dataclass
class MintCapabilities:
    """Parsed NUT-06 /v1/info response."""
    name: str = ""
    version: str = ""
    nuts: Dict[str, Any] = field(default_factory=dict)

    def _supported(self, nut: str) -> bool:
        entry = self.nuts.get(nut)
        if isinstance(entry, dict):
            return bool(entry.get("supported", not entry.get("disabled", False)))
        return bool(entry)

    @property
    def supports_htlc(self) -> bool:
        return self._supported("14")

    @property
    def supports_melt(self) -> bool:
        # NUT-05 advertises methods rather than a boolean
        entry = self.nuts.get("5")
        if isinstance(entry, dict):
            return not entry.get("disabled", False)
        return bool(entry)

    @property
    def supports_checkstate(self) -> bool:
        return self._supported("7")

    @property
    def supports_restore(self) -> bool:
        return self._supported("9")

    @property
    def supports_escrow(self) -> bool:
        return self.supports_htlc and self.supports_melt and self.supports_checkstate

    def websocket_commands(self) -> List[str]:
        """NUT-17 subscription kinds available for bolt11/sat."""
        entry = self.nuts.get("17")
        if not isinstance(entry, dict):
            return []
        commands: List[str] = []
        for method in entry.get("supported", []) or []:
            if method.get("method") == "bolt11" and method.get("unit") == "sat":
                commands.extend(method.get("commands", []) or [])
        return commands

    @property
    def supports_websocket(self) -> bool:
        return bool(self.websocket_commands())

    @classmethod
    def from_dict(cls, data: dict) -> "MintCapabilities":
        return cls(
            name=data.get("name", "") or "",
            version=data.get("version", "") or "",
            nuts=data.get("nuts", {}) or {},
        )


# ═══════════════════════════════════════════════════════════════════════
# QUOTES
# ═══════════════════════════════════════════════════════════════════════

class MintQuoteState(Enum):
    UNPAID = "UNPAID"
    PAID = "PAID"
    ISSUED = "ISSUED"


@dataclass
class MintQuote:
    """Deposit quote: pay `request` to unlock minting of `amount`."""
    quote: str
    request: str
    amount: int
    state: MintQuoteState = MintQuoteState.UNPAID
    expiry: Optional[int] = None

    def is_paid(self) -> bool:
        return self.state in (MintQuoteState.PAID, MintQuoteState.ISSUED)

    @classmethod
    def from_dict(cls, data: dict, amount: int = 0) -> "MintQuote":
        state = data.get("state")
        if state is None:
            # pre-1.0 mints only report "paid"
            state = "PAID" if data.get("paid") else "UNPAID"
        return cls(
            quote=data["quote"],
            request=data.get("request", ""),
            amount=int(data.get("amount") or amount),
            state=MintQuoteState(state),
            expiry=data.get("expiry"),
        )


class MeltQuoteState(Enum):
    UNPAID = "UNPAID"
    PENDING = "PENDING"
    PAID = "PAID"


@dataclass
class MeltQuote:
    """Withdrawal quote: `amount` + `fee_reserve` must be provided as inputs."""
    quote: str
    amount: int
    fee_reserve: int
    state: MeltQuoteState = MeltQuoteState.UNPAID
    expiry: Optional[int] = None
    payment_preimage: Optional[str] = None
    request: str = ""

    @property
    def total_amount(self) -> int:
        return self.amount + self.fee_reserve

    @classmethod
    def from_dict(cls, data: dict, request: str = "") -> "MeltQuote":
        state = data.get("state")
        if state is None:
            state = "PAID" if data.get("paid") else "UNPAID"
        return cls(
            quote=data["quote"],
            amount=int(data.get("amount", 0)),
            fee_reserve=int(data.get("fee_reserve", 0)),
            state=MeltQuoteState(state),
            expiry=data.get("expiry"),
            payment_preimage=data.get("payment_preimage"),
            request=data.get("request", request) or request,
        )


@dataclass
class MeltResponse:
    paid: bool
    payment_preimage: Optional[str] = None
    change: List[BlindSignature] = field(default_factory=list)


# ═══════════════════════════════════════════════════════════════════════
# HTLC
# ═══════════════════════════════════════════════════════════════════════

class HtlcStatus(Enum):
    """HTLC status. LOCKED is initial, the rest are terminal."""
    LOCKED = "locked"
    CLAIMED = "claimed"
    REFUNDED = "refunded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not HtlcStatus.LOCKED

    def can_transition_to(self, new: "HtlcStatus") -> bool:
        """LOCKED -> CLAIMED | REFUNDED | FAILED, nothing else."""
        return self is HtlcStatus.LOCKED and new.is_terminal


@dataclass
class HtlcSecret:
    """
    NUT-10 well-known secret of kind HTLC (NUT-14).

    Serialized as:
        ["HTLC", {"nonce": ..., "data": payment_hash,
                  "tags": [["pubkeys", payee], ["locktime", "..."],
                           ["refund", refund]]}]
    """
    nonce: str
    payment_hash: str
    pubkeys: List[str] = field(default_factory=list)
    locktime: Optional[int] = None
    refund_pubkeys: List[str] = field(default_factory=list)

    def to_secret(self) -> str:
        tags = []
        if self.pubkeys:
            tags.append(["pubkeys"] + list(self.pubkeys))
        if self.locktime is not None:
            tags.append(["locktime", str(self.locktime)])
        if self.refund_pubkeys:
            tags.append(["refund"] + list(self.refund_pubkeys))
        body = {"nonce": self.nonce, "data": self.payment_hash, "tags": tags}
        return json.dumps(["HTLC", body], separators=(",", ":"))

    @classmethod
    def from_secret(cls, secret: str) -> Optional["HtlcSecret"]:
        """Parse a proof secret; None when it is not an HTLC secret."""
        try:
            parsed = json.loads(secret)
        except (ValueError, TypeError):
            return None
        if not (isinstance(parsed, list) and len(parsed) == 2 and parsed[0] == "HTLC"):
            return None
        body = parsed[1]
        if not isinstance(body, dict) or "data" not in body:
            return None
        pubkeys: List[str] = []
        refund: List[str] = []
        locktime = None
        for tag in body.get("tags", []) or []:
            if not tag:
                continue
            if tag[0] == "pubkeys":
                pubkeys.extend(tag[1:])
            elif tag[0] == "refund":
                refund.extend(tag[1:])
            elif tag[0] == "locktime" and len(tag) > 1:
                try:
                    locktime = int(tag[1])
                except ValueError:
                    return None
        return cls(
            nonce=body.get("nonce", ""),
            payment_hash=body["data"],
            pubkeys=pubkeys,
            locktime=locktime,
            refund_pubkeys=refund,
        )


@dataclass
class HtlcWitness:
    """NUT-14 witness: preimage plus P2PK signatures."""
    preimage: str
    signatures: List[str] = field(default_factory=list)

    def to_json(self) -> str:
        return json.dumps({"preimage": self.preimage, "signatures": self.signatures},
                          separators=(",", ":"))


@dataclass
class PendingHtlc:
    """
    PendingHtlc - escrow locked by this wallet (payer side).

    Kept until the payee claims or the wallet refunds after locktime.
    """
    escrow_id: str
    token: str
    amount_sats: int
    locktime: int
    counterparty_pubkey: str
    payment_hash: str
    refund_pubkey: str = ""
    mint_url: str = ""
    preimage: Optional[str] = None
    ride_context: Optional[str] = None
    status: HtlcStatus = HtlcStatus.LOCKED
    created_ts: int = field(default_factory=lambda: int(time.time()))
    updated_ts: int = field(default_factory=lambda: int(time.time()))

    def is_active(self) -> bool:
        return self.status is HtlcStatus.LOCKED

    def is_refundable(self, now: Optional[int] = None, skew: int = 0) -> bool:
        """True once `now` is past locktime (plus optional clock skew)."""
        if now is None:
            now = int(time.time())
        return self.status is HtlcStatus.LOCKED and now > self.locktime + skew

    def to_dict(self) -> dict:
        return {
            "escrow_id": self.escrow_id,
            "token": self.token,
            "amount_sats": self.amount_sats,
            "locktime": self.locktime,
            "counterparty_pubkey": self.counterparty_pubkey,
            "payment_hash": self.payment_hash,
            "refund_pubkey": self.refund_pubkey,
            "mint_url": self.mint_url,
            "preimage": self.preimage,
            "ride_context": self.ride_context,
            "status": self.status.value,
            "created_ts": self.created_ts,
            "updated_ts": self.updated_ts,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PendingHtlc":
        return cls(
            escrow_id=data["escrow_id"],
            token=data["token"],
            amount_sats=int(data["amount_sats"]),
            locktime=int(data["locktime"]),
            counterparty_pubkey=data.get("counterparty_pubkey", ""),
            payment_hash=data["payment_hash"],
            refund_pubkey=data.get("refund_pubkey", ""),
            mint_url=data.get("mint_url", ""),
            preimage=data.get("preimage"),
            ride_context=data.get("ride_context"),
            status=HtlcStatus(data.get("status", "locked")),
            created_ts=int(data.get("created_ts", time.time())),
            updated_ts=int(data.get("updated_ts", time.time())),
        )


# ═══════════════════════════════════════════════════════════════════════
# LEDGER RECORDS
# ═══════════════════════════════════════════════════════════════════════

class OperationType(Enum):
    MINT = "MINT"
    MELT = "MELT"
    SWAP = "SWAP"
    LOCK_HTLC = "LOCK_HTLC"
    CLAIM_HTLC = "CLAIM_HTLC"
    REFUND_HTLC = "REFUND_HTLC"


class OperationStatus(Enum):
    STARTED = "STARTED"       # premints persisted, request not yet sent
    PENDING = "PENDING"       # request sent, outcome unknown
    COMPLETED = "COMPLETED"   # mint signed, proofs not yet durable
    FAILED = "FAILED"         # mint rejected


OPERATION_TTL_S = 24 * 3600


@dataclass
class PendingBlindedOperation:
    """
    In-flight blinded operation marker.

    Written before the network request, removed only after the
    resulting proofs are durable (store or recovery token).
    """
    id: str
    operation_type: OperationType
    mint_url: str
    output_premints: List[PreMintSecret] = field(default_factory=list)
    input_secrets: List[str] = field(default_factory=list)
    quote_id: Optional[str] = None
    amount_sats: int = 0
    keyset_id: Optional[str] = None
    counter_start: Optional[int] = None
    status: OperationStatus = OperationStatus.STARTED
    created_at: int = field(default_factory=lambda: int(time.time()))
    expires_at: int = 0

    def __post_init__(self):
        if not self.expires_at:
            self.expires_at = self.created_at + OPERATION_TTL_S

    def is_expired(self, now: Optional[int] = None) -> bool:
        if now is None:
            now = int(time.time())
        return now > self.expires_at

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "operation_type": self.operation_type.value,
            "mint_url": self.mint_url,
            "quote_id": self.quote_id,
            "input_secrets": list(self.input_secrets),
            "output_premints": [p.to_dict() for p in self.output_premints],
            "amount_sats": self.amount_sats,
            "keyset_id": self.keyset_id,
            "counter_start": self.counter_start,
            "status": self.status.value,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PendingBlindedOperation":
        return cls(
            id=data["id"],
            operation_type=OperationType(data["operation_type"]),
            mint_url=data["mint_url"],
            quote_id=data.get("quote_id"),
            input_secrets=list(data.get("input_secrets", [])),
            output_premints=[PreMintSecret.from_dict(p) for p in data.get("output_premints", [])],
            amount_sats=int(data.get("amount_sats", 0)),
            keyset_id=data.get("keyset_id"),
            counter_start=data.get("counter_start"),
            status=OperationStatus(data.get("status", "STARTED")),
            created_at=int(data.get("created_at", time.time())),
            expires_at=int(data.get("expires_at", 0)),
        )


@dataclass
class RecoveryToken:
    """Portable last-resort copy of proofs that could not be synced."""
    id: str
    token: str              # encoded cashu token
    total_amount: int
    mint_url: str
    reason: str
    created_at: int = field(default_factory=lambda: int(time.time()))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "token": self.token,
            "total_amount": self.total_amount,
            "mint_url": self.mint_url,
            "reason": self.reason,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RecoveryToken":
        return cls(
            id=data["id"],
            token=data["token"],
            total_amount=int(data["total_amount"]),
            mint_url=data["mint_url"],
            reason=data.get("reason", ""),
            created_at=int(data.get("created_at", time.time())),
        )


@dataclass
class PendingDeposit:
    """Deposit quote shown to the user and not yet minted."""
    quote_id: str
    amount: int
    invoice: str
    created_at: int = field(default_factory=lambda: int(time.time()))
    expiry: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "quote_id": self.quote_id,
            "amount": self.amount,
            "invoice": self.invoice,
            "created_at": self.created_at,
            "expiry": self.expiry,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PendingDeposit":
        return cls(
            quote_id=data["quote_id"],
            amount=int(data["amount"]),
            invoice=data.get("invoice", ""),
            created_at=int(data.get("created_at", time.time())),
            expiry=data.get("expiry"),
        )


class TransactionType(Enum):
    ESCROW_LOCK = "escrow_lock"
    ESCROW_RECEIVE = "escrow_receive"
    ESCROW_REFUND = "escrow_refund"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"


@dataclass
class PaymentTransaction:
    id: str
    type: TransactionType
    amount_sats: int
    status: str
    timestamp: int = field(default_factory=lambda: int(time.time()))
    counterparty_pubkey: Optional[str] = None
    ride_context: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "amount_sats": self.amount_sats,
            "status": self.status,
            "timestamp": self.timestamp,
            "counterparty_pubkey": self.counterparty_pubkey,
            "ride_context": self.ride_context,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PaymentTransaction":
        return cls(
            id=data["id"],
            type=TransactionType(data["type"]),
            amount_sats=int(data["amount_sats"]),
            status=data.get("status", ""),
            timestamp=int(data.get("timestamp", time.time())),
            counterparty_pubkey=data.get("counterparty_pubkey"),
            ride_context=data.get("ride_context"),
        )


@dataclass
class WalletBalance:
    available_sats: int = 0
    pending_sats: int = 0
    last_updated: int = 0

    def to_dict(self) -> dict:
        return {
            "available_sats": self.available_sats,
            "pending_sats": self.pending_sats,
            "last_updated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "WalletBalance":
        return cls(
            available_sats=int(data.get("available_sats", 0)),
            pending_sats=int(data.get("pending_sats", 0)),
            last_updated=int(data.get("last_updated", 0)),
        )
