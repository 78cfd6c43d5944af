"""
Ecash Escrow SDK - Distributed Proof Store

NIP-60 style wallet records on a relay network the wallet does not own
exclusively: other devices under the same identity may write the same
records concurrently.

Record kinds:
  17375  wallet metadata   [[key, value], ...]  (privkey, mint, mnemonic, counters)
   7375  proof batch       {"mint": url, "proofs": [...], "del": [old ids]}
   7376  spend history     [["direction", ...], ["amount", ...], ["e", id, "", marker]]
      5  deletion

One proof batch record may hold MANY proofs. A record is deleted only
after every still-unspent proof it holds has been published into a new
record (remove_spent_proofs). Content is encrypted to the owning
identity before it reaches the transport.
"""

import asyncio
import base64
import hashlib
import json
import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, Iterable, List, Optional, Sequence

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .config import DEFAULT_PUBLISH_RETRIES, DEFAULT_RETRY_BACKOFF_S, normalize_mint_url, same_mint
from .denominations import select_proofs
from .ecash_types import Proof
from .errors import StoreError

log = logging.getLogger(__name__)


class EventKind(IntEnum):
    DELETION = 5
    TOKEN = 7375
    HISTORY = 7376
    WALLET = 17375


# =============================================================================
# EXTERNAL COLLABORATORS
# =============================================================================

@dataclass
class RelayEvent:
    id: str
    kind: int
    content: str
    created_at: int
    tags: List[List[str]] = field(default_factory=list)


class RelayTransport(ABC):
    """
    Messaging layer that persists records for the owning identity.

    Implementations raise StoreError when the network is unreachable.
    """

    @abstractmethod
    async def publish(self, kind: int, content: str, tags: List[List[str]]) -> str:
        """Publish a record, return its id."""

    @abstractmethod
    async def fetch(self, kind: int) -> List[RelayEvent]:
        """All live records of a kind for the identity."""

    @abstractmethod
    async def delete(self, event_ids: List[str]) -> bool:
        """Request deletion (kind 5) of records."""


class EventCipher(ABC):
    """Encryption to the owning identity (NIP-44 in production)."""

    @abstractmethod
    def encrypt(self, plaintext: str) -> str:
        pass

    @abstractmethod
    def decrypt(self, ciphertext: str) -> str:
        pass


class AesGcmCipher(EventCipher):
    """Symmetric cipher for single-host deployments and tests."""

    def __init__(self, key: bytes):
        if len(key) != 32:
            raise ValueError("AES-256 key must be 32 bytes")
        self._aead = AESGCM(key)

    @classmethod
    def from_private_key(cls, privkey_hex: str) -> "AesGcmCipher":
        return cls(hashlib.sha256(b"ecash-store:" + bytes.fromhex(privkey_hex)).digest())

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(12)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        try:
            raw = base64.b64decode(ciphertext)
            return self._aead.decrypt(raw[:12], raw[12:], None).decode("utf-8")
        except (ValueError, InvalidTag) as e:
            raise StoreError(f"Cannot decrypt record: {e}")


class FileRelayTransport(RelayTransport):
    """
    Relay stand-in backed by a local JSON file.

    Lets the command line run against one host without a relay network.
    """

    def __init__(self, path):
        self.path = os.path.expanduser(str(path))
        self._seq = 0

    def _read(self) -> List[dict]:
        if not os.path.exists(self.path):
            return []
        try:
            with open(self.path) as f:
                return json.load(f).get("events", [])
        except (OSError, ValueError) as e:
            raise StoreError(f"Cannot read {self.path}: {e}")

    def _write(self, events: List[dict]):
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        tmp = self.path + ".tmp"
        try:
            with open(tmp, "w") as f:
                json.dump({"events": events}, f, indent=2)
            os.replace(tmp, self.path)
        except OSError as e:
            raise StoreError(f"Cannot write {self.path}: {e}")

    async def publish(self, kind: int, content: str, tags: List[List[str]]) -> str:
        events = self._read()
        self._seq += 1
        created_at = int(time.time())
        event_id = hashlib.sha256(
            f"{kind}:{created_at}:{self._seq}:{len(events)}:{content}".encode()
        ).hexdigest()
        if kind == EventKind.WALLET:
            # replaceable
            events = [e for e in events if e["kind"] != kind]
        events.append({"id": event_id, "kind": int(kind), "content": content,
                       "created_at": created_at, "tags": tags})
        self._write(events)
        return event_id

    async def fetch(self, kind: int) -> List[RelayEvent]:
        return [RelayEvent(e["id"], e["kind"], e["content"], e["created_at"], e.get("tags", []))
                for e in self._read() if e["kind"] == kind]

    async def delete(self, event_ids: List[str]) -> bool:
        ids = set(event_ids)
        events = self._read()
        kept = [e for e in events if e["id"] not in ids]
        self._write(kept)
        return True


# =============================================================================
# STORE TYPES
# =============================================================================

@dataclass
class StoredProof:
    """A proof plus the record that holds it."""
    proof: Proof
    event_id: str
    mint_url: str

    @property
    def amount(self) -> int:
        return self.proof.amount

    @property
    def secret(self) -> str:
        return self.proof.secret


@dataclass
class ProofSelection:
    proofs: List[StoredProof]
    total_amount: int
    change_amount: int

    @property
    def event_ids(self) -> List[str]:
        return sorted({p.event_id for p in self.proofs})

    @property
    def secrets(self) -> List[str]:
        return [p.secret for p in self.proofs]

    def to_proofs(self) -> List[Proof]:
        return [p.proof for p in self.proofs]


@dataclass
class CleanupResult:
    """
    Outcome of remove_spent_proofs.

    unsaved holds unspent proofs that could not be republished; their old
    records were left in place and the caller must write a recovery token.
    """
    deleted_event_ids: List[str] = field(default_factory=list)
    republished_event_ids: List[str] = field(default_factory=list)
    removed_count: int = 0
    unsaved: Dict[str, List[Proof]] = field(default_factory=dict)

    @property
    def complete(self) -> bool:
        return not self.unsaved


@dataclass
class WalletState:
    privkey: str
    mint_urls: List[str]
    mnemonic: Optional[str] = None
    counters: Dict[str, int] = field(default_factory=dict)
    proofs: List[StoredProof] = field(default_factory=list)

    @property
    def balance(self) -> int:
        return sum(p.amount for p in self.proofs)


def _valid_hex(value: str, length: int) -> bool:
    if len(value) != length:
        return False
    try:
        bytes.fromhex(value)
    except ValueError:
        return False
    return True


# =============================================================================
# PROOF STORE
# =============================================================================

class ProofStore:
    """
    Proof batches and wallet metadata on the distributed store.

    Usage:
        store = ProofStore(transport, cipher)
        event_id = await store.publish_proofs(proofs, mint_url)
        selection = await store.select_proofs_for_spending(1000, mint_url)
        ...spend selection.to_proofs() at the mint...
        result = await store.remove_spent_proofs(selection.secrets)
        if not result.complete:
            ...write recovery tokens for result.unsaved...
    """

    def __init__(self, transport: RelayTransport, cipher: EventCipher,
                 publish_retries: int = DEFAULT_PUBLISH_RETRIES,
                 retry_backoff: float = DEFAULT_RETRY_BACKOFF_S):
        self.transport = transport
        self.cipher = cipher
        self.publish_retries = publish_retries
        self.retry_backoff = retry_backoff
        self._cache: Optional[List[StoredProof]] = None

    def clear_cache(self):
        self._cache = None

    # ═══════════════════════════════════════════════════════════════════
    # PROOF BATCHES
    # ═══════════════════════════════════════════════════════════════════

    async def publish_proofs(self, proofs: Sequence[Proof], mint_url: str,
                             deleted_event_ids: Iterable[str] = ()) -> Optional[str]:
        """
        Publish one encrypted proof batch.

        Returns:
            Record id, or None if the transport failed (single attempt)
        """
        if not proofs:
            return None
        content = json.dumps({
            "mint": normalize_mint_url(mint_url),
            "proofs": [p.without_witness().to_dict() for p in proofs],
            "del": sorted(deleted_event_ids),
        })
        try:
            event_id = await self.transport.publish(EventKind.TOKEN, self.cipher.encrypt(content), [])
        except StoreError as e:
            log.warning(f"Publish of {len(proofs)} proofs failed: {e}")
            return None
        self.clear_cache()
        log.info(f"Published {len(proofs)} proofs ({sum(p.amount for p in proofs)} sats) "
                 f"to record {event_id[:16]}")
        return event_id

    async def publish_with_retry(self, proofs: Sequence[Proof], mint_url: str,
                                 deleted_event_ids: Iterable[str] = ()) -> Optional[str]:
        """publish_proofs with bounded retries and linear backoff."""
        deleted = list(deleted_event_ids)
        for attempt in range(1, self.publish_retries + 1):
            event_id = await self.publish_proofs(proofs, mint_url, deleted)
            if event_id is not None:
                return event_id
            if attempt < self.publish_retries:
                log.warning(f"Publish attempt {attempt}/{self.publish_retries} failed, retrying")
                await asyncio.sleep(self.retry_backoff * attempt)
        log.error(f"Publish failed after {self.publish_retries} attempts")
        return None

    async def fetch_proofs(self, force_refresh: bool = False) -> List[StoredProof]:
        """
        All proofs across batch records, newest record first.

        Duplicates (same secret in several records) are reported once.

        Raises:
            StoreError: Transport unreachable
        """
        if self._cache is not None and not force_refresh:
            return list(self._cache)

        events = await self.transport.fetch(EventKind.TOKEN)
        events.sort(key=lambda e: e.created_at, reverse=True)
        seen = set()
        result: List[StoredProof] = []
        for event in events:
            try:
                data = json.loads(self.cipher.decrypt(event.content))
                mint_url = data["mint"]
                raw_proofs = data["proofs"]
            except (StoreError, ValueError, KeyError, TypeError) as e:
                log.warning(f"Skipping unreadable record {event.id[:16]}: {e}")
                continue
            for raw in raw_proofs:
                try:
                    proof = Proof.from_dict(raw)
                except (KeyError, TypeError, ValueError) as e:
                    log.warning(f"Skipping malformed proof in {event.id[:16]}: {e}")
                    continue
                if not _valid_hex(proof.C, 66):
                    log.error(f"Record {event.id[:16]} holds a proof with corrupted C ({len(proof.C)} chars)")
                    continue
                if proof.secret in seen:
                    continue
                seen.add(proof.secret)
                result.append(StoredProof(proof=proof, event_id=event.id, mint_url=mint_url))
        self._cache = result
        return list(result)

    async def get_balance(self, mint_url: Optional[str] = None) -> int:
        proofs = await self.fetch_proofs()
        return sum(p.amount for p in proofs if mint_url is None or same_mint(p.mint_url, mint_url))

    async def select_proofs_for_spending(self, amount: int, mint_url: str) -> Optional[ProofSelection]:
        """Pick proofs for a spend at one mint; None if insufficient."""
        candidates = [p for p in await self.fetch_proofs() if same_mint(p.mint_url, mint_url)]
        by_secret = {p.secret: p for p in candidates}
        chosen = select_proofs([p.proof for p in candidates], amount)
        if chosen is None:
            log.info(f"Insufficient proofs: need {amount}, have {sum(p.amount for p in candidates)}")
            return None
        selected = [by_secret[p.secret] for p in chosen]
        total = sum(p.amount for p in selected)
        return ProofSelection(proofs=selected, total_amount=total, change_amount=total - amount)

    async def delete_proof_events(self, event_ids: Sequence[str]) -> bool:
        """
        Raw record deletion.

        Only remove_spent_proofs calls this for records that may still
        hold value.
        """
        if not event_ids:
            return True
        try:
            ok = await self.transport.delete(list(event_ids))
        except StoreError as e:
            log.warning(f"Delete of {len(event_ids)} records failed: {e}")
            return False
        self.clear_cache()
        return ok

    async def remove_spent_proofs(self, spent_secrets: Iterable[str]) -> CleanupResult:
        """
        Drop spent proofs from the store without losing their neighbours.

        1. find every record holding a spent secret
        2. publish that record's remaining proofs into a new record
        3. delete the old records only if step 2 succeeded for all of them

        Raises:
            StoreError: The store could not be read (nothing was changed)
        """
        spent = set(spent_secrets)
        result = CleanupResult()
        if not spent:
            return result

        proofs = await self.fetch_proofs(force_refresh=True)
        affected = sorted({p.event_id for p in proofs if p.secret in spent})
        if not affected:
            return result

        remaining: Dict[str, List[StoredProof]] = {}
        record_mint: Dict[str, str] = {}
        for p in proofs:
            if p.event_id in affected:
                record_mint[p.event_id] = p.mint_url
                if p.secret not in spent:
                    remaining.setdefault(normalize_mint_url(p.mint_url), []).append(p)

        for mint_url, group in remaining.items():
            old_ids = [eid for eid in affected if same_mint(record_mint[eid], mint_url)]
            event_id = await self.publish_with_retry([p.proof for p in group], mint_url, old_ids)
            if event_id is None:
                result.unsaved[mint_url] = [p.proof for p in group]
            else:
                result.republished_event_ids.append(event_id)

        if result.unsaved:
            total = sum(p.amount for g in result.unsaved.values() for p in g)
            log.critical(f"Could not republish {total} sats of unspent proofs; "
                         f"keeping {len(affected)} old records")
            return result

        if await self.delete_proof_events(affected):
            result.deleted_event_ids = affected
            result.removed_count = sum(1 for p in proofs if p.secret in spent)
            log.info(f"Removed {result.removed_count} spent proofs, deleted {len(affected)} records, "
                     f"republished {sum(len(g) for g in remaining.values())} proofs")
        else:
            # republished copies and old records coexist; fetch de-duplicates
            log.warning(f"Delete of {len(affected)} records failed; will retry on next sync")
        return result

    async def republish_proofs_with_new_mint(self, proofs: Sequence[StoredProof],
                                             new_mint_url: str) -> Optional[str]:
        """
        Move proofs to a record tagged with new_mint_url.

        Records are deleted only when every proof they held is in the new
        record or already present elsewhere under another record.
        """
        if not proofs:
            return None
        old_ids = sorted({p.event_id for p in proofs})
        event_id = await self.publish_with_retry([p.proof for p in proofs], new_mint_url, old_ids)
        if event_id is None:
            return None
        moving = {p.secret for p in proofs}
        current = await self.fetch_proofs(force_refresh=True)
        leftovers = [p for p in current
                     if p.event_id in old_ids and p.secret not in moving]
        safe_ids = [eid for eid in old_ids if not any(p.event_id == eid for p in leftovers)]
        if leftovers:
            log.warning(f"{len(old_ids) - len(safe_ids)} records hold other proofs; left in place")
        await self.delete_proof_events(safe_ids)
        return event_id

    # ═══════════════════════════════════════════════════════════════════
    # WALLET METADATA / HISTORY
    # ═══════════════════════════════════════════════════════════════════

    async def publish_wallet_metadata(self, privkey_hex: str, mint_url: str,
                                      mnemonic: Optional[str] = None,
                                      counters: Optional[Dict[str, int]] = None) -> Optional[str]:
        pairs = [["privkey", privkey_hex], ["mint", normalize_mint_url(mint_url)]]
        if mnemonic:
            pairs.append(["mnemonic", mnemonic])
        if counters:
            pairs.append(["counters", json.dumps(counters, sort_keys=True)])
        try:
            return await self.transport.publish(EventKind.WALLET,
                                                self.cipher.encrypt(json.dumps(pairs)), [])
        except StoreError as e:
            log.warning(f"Wallet metadata publish failed: {e}")
            return None

    async def has_existing_wallet(self) -> bool:
        return bool(await self.transport.fetch(EventKind.WALLET))

    async def restore_wallet(self) -> Optional[WalletState]:
        """Wallet metadata plus all proofs, or None if no wallet record exists."""
        events = await self.transport.fetch(EventKind.WALLET)
        if not events:
            return None
        latest = max(events, key=lambda e: e.created_at)
        try:
            pairs = json.loads(self.cipher.decrypt(latest.content))
        except (StoreError, ValueError) as e:
            log.error(f"Wallet record unreadable: {e}")
            return None

        privkey = None
        mnemonic = None
        mints: List[str] = []
        counters: Dict[str, int] = {}
        for pair in pairs:
            if not isinstance(pair, list) or len(pair) < 2:
                continue
            key, value = pair[0], pair[1]
            if key == "privkey":
                privkey = value
            elif key == "mint":
                mints.append(value)
            elif key == "mnemonic":
                mnemonic = value
            elif key == "counters":
                try:
                    counters = {k: int(v) for k, v in json.loads(value).items()}
                except (ValueError, AttributeError):
                    log.warning("Ignoring malformed counters in wallet record")
        if not privkey:
            log.error("Wallet record has no private key")
            return None
        return WalletState(privkey=privkey, mint_urls=mints, mnemonic=mnemonic,
                           counters=counters, proofs=await self.fetch_proofs(force_refresh=True))

    async def record_spend(self, direction: str, amount: int,
                           created: Sequence[str] = (), destroyed: Sequence[str] = ()) -> Optional[str]:
        """Spend history entry (kind 7376). Best effort."""
        rows = [["direction", direction], ["amount", str(amount)]]
        rows += [["e", eid, "", "created"] for eid in created]
        rows += [["e", eid, "", "destroyed"] for eid in destroyed]
        try:
            return await self.transport.publish(EventKind.HISTORY,
                                                self.cipher.encrypt(json.dumps(rows)), [])
        except StoreError as e:
            log.debug(f"History publish failed: {e}")
            return None
