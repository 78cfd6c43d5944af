"""
Ecash Escrow SDK - Errors

Exception hierarchy shared by every layer. Library code raises these;
the wallet orchestrator turns them into result objects at its public
boundary.

Taxonomy:
  - MintTransportError  : no response from the mint, always retryable
  - MintRejectedError   : mint answered with a protocol error, terminal
  - CryptoError         : local verification failure, fatal
  - StoreError          : durable sync failed after retries
"""

from typing import Optional


class EcashError(Exception):
    """Base SDK error."""
    def __init__(self, code: int, message: str):
        self.code = code
        self.message = message
        super().__init__(f"Ecash Error {code}: {message}")


# ═══════════════════════════════════════════════════════════════════════
# LOCAL (CRYPTO / KEYS)
# ═══════════════════════════════════════════════════════════════════════

class CryptoError(EcashError):
    """Hash, signature or derivation mismatch."""
    def __init__(self, message: str):
        super().__init__(-10, message)


class SeedUnavailableError(CryptoError):
    """Deterministic derivation requested without a seed."""
    def __init__(self, message: str = "No wallet seed configured"):
        super().__init__(message)


# ═══════════════════════════════════════════════════════════════════════
# MINT
# ═══════════════════════════════════════════════════════════════════════

class MintError(EcashError):
    """Any failure talking to the mint."""


class MintTransportError(MintError):
    """Network unreachable, timeout, connection reset."""
    def __init__(self, message: str):
        super().__init__(-1, f"Connection failed: {message}")


class MintProtocolError(MintError):
    """Mint answered 2xx with a body we cannot decode."""
    def __init__(self, message: str):
        super().__init__(-2, message)


ALREADY_SPENT_CODES = {11001}
PENDING_CODES = {11000, 11002, 20005}


class MintRejectedError(MintError):
    """Mint answered with an HTTP error and protocol error code."""
    def __init__(self, code: int, detail: str, status: int = 400):
        self.detail = detail
        self.status = status
        super().__init__(code, detail)

    @property
    def is_already_spent(self) -> bool:
        return self.code in ALREADY_SPENT_CODES or "already spent" in self.detail.lower()

    @property
    def is_pending(self) -> bool:
        return self.code in PENDING_CODES or "pending" in self.detail.lower()


# ═══════════════════════════════════════════════════════════════════════
# LEDGER / STORE / ESCROW
# ═══════════════════════════════════════════════════════════════════════

class LedgerError(EcashError):
    """Local ledger could not be read or written."""
    def __init__(self, message: str):
        super().__init__(-20, message)


class StoreError(EcashError):
    """Distributed proof store unreachable after retries."""
    def __init__(self, message: str):
        super().__init__(-30, message)


class InvalidTransitionError(EcashError):
    """HTLC status change not allowed by the state machine."""
    def __init__(self, escrow_id: str, current: str, requested: str):
        self.escrow_id = escrow_id
        self.current = current
        self.requested = requested
        super().__init__(-40, f"HTLC {escrow_id}: cannot move {current} -> {requested}")


class HtlcNotRefundableError(EcashError):
    def __init__(self, message: str):
        super().__init__(-41, message)


class PreimageMismatchError(EcashError):
    def __init__(self, message: str = "Preimage does not match payment hash"):
        super().__init__(-42, message)


class InsufficientFundsError(EcashError):
    def __init__(self, required: int, available: int,
                 message: Optional[str] = None):
        self.required = required
        self.available = available
        super().__init__(-50, message or f"Insufficient funds: need {required}, have {available}")
