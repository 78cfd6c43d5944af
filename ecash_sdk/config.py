"""
Ecash Escrow SDK - Configuration

Wallet settings from environment variables (optionally loaded from a
KEY=value .env file), plus the logging setup and secret masking used
by every module.
"""

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional

# =============================================================================
# DEFAULTS
# =============================================================================

DEFAULT_LEDGER_PATH = Path.home() / ".ecash" / "ledger.json"
DEFAULT_HTTP_TIMEOUT_S = 30.0
DEFAULT_QUOTE_TIMEOUT_S = 60.0
DEFAULT_PUBLISH_RETRIES = 3
DEFAULT_RETRY_BACKOFF_S = 2.0
DEFAULT_ESCROW_EXPIRY_S = 2 * 3600

# Polling schedule when the mint has no websocket support
POLL_DELAYS_S: List[float] = [0.5, 1.0, 2.0, 3.0, 4.0]
POLL_STEADY_DELAY_S = 5.0

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class ClaimConfirmationPolicy(Enum):
    """How an out-of-band claim notice moves an HTLC to CLAIMED."""
    TRUST_MESSAGE = "trust"          # transition on the notice alone
    VERIFY_AT_MINT = "verify"        # transition only if the mint reports SPENT


@dataclass
class WalletConfig:
    """
    Wallet runtime configuration.

    Environment:
      ECASH_MINT_URL            mint base URL
      ECASH_LEDGER_PATH         local ledger file
      ECASH_LEDGER_PASSPHRASE   encrypt the ledger when set
      ECASH_HTTP_TIMEOUT        per-request timeout (s)
      ECASH_QUOTE_TIMEOUT       max wait for a quote state change (s)
      ECASH_PUBLISH_RETRIES     store publish attempts before fallback
      ECASH_RETRY_BACKOFF       base backoff between attempts (s)
      ECASH_CLAIM_POLICY        trust | verify
      ECASH_REFUND_SKEW         extra seconds past locktime before refund
      ECASH_ESCROW_EXPIRY       default HTLC lifetime (s)
      ECASH_LOG_LEVEL           DEBUG, INFO, ...
      ECASH_MNEMONIC            recovery seed phrase (deterministic outputs)
    """
    mint_url: str = ""
    ledger_path: Path = field(default_factory=lambda: DEFAULT_LEDGER_PATH)
    ledger_passphrase: Optional[str] = field(default=None, repr=False)
    http_timeout: float = DEFAULT_HTTP_TIMEOUT_S
    quote_timeout: float = DEFAULT_QUOTE_TIMEOUT_S
    publish_retries: int = DEFAULT_PUBLISH_RETRIES
    retry_backoff: float = DEFAULT_RETRY_BACKOFF_S
    claim_policy: ClaimConfirmationPolicy = ClaimConfirmationPolicy.VERIFY_AT_MINT
    refund_skew: int = 0
    escrow_expiry: int = DEFAULT_ESCROW_EXPIRY_S
    log_level: str = "INFO"
    mnemonic: Optional[str] = field(default=None, repr=False)

    def __post_init__(self):
        self.mint_url = normalize_mint_url(self.mint_url) if self.mint_url else ""
        self.ledger_path = Path(self.ledger_path)
        if self.publish_retries < 1:
            raise ValueError("publish_retries must be at least 1")
        if self.refund_skew < 0:
            raise ValueError("refund_skew must not be negative")

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "WalletConfig":
        """Build config from os.environ (after loading env_file, if any)."""
        if env_file:
            load_env_file(env_file)
        env = os.environ
        return cls(
            mint_url=env.get("ECASH_MINT_URL", ""),
            ledger_path=Path(env.get("ECASH_LEDGER_PATH", str(DEFAULT_LEDGER_PATH))),
            ledger_passphrase=env.get("ECASH_LEDGER_PASSPHRASE") or None,
            http_timeout=float(env.get("ECASH_HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT_S)),
            quote_timeout=float(env.get("ECASH_QUOTE_TIMEOUT", DEFAULT_QUOTE_TIMEOUT_S)),
            publish_retries=int(env.get("ECASH_PUBLISH_RETRIES", DEFAULT_PUBLISH_RETRIES)),
            retry_backoff=float(env.get("ECASH_RETRY_BACKOFF", DEFAULT_RETRY_BACKOFF_S)),
            claim_policy=ClaimConfirmationPolicy(env.get("ECASH_CLAIM_POLICY", "verify").lower()),
            refund_skew=int(env.get("ECASH_REFUND_SKEW", 0)),
            escrow_expiry=int(env.get("ECASH_ESCROW_EXPIRY", DEFAULT_ESCROW_EXPIRY_S)),
            log_level=env.get("ECASH_LOG_LEVEL", "INFO").upper(),
            mnemonic=env.get("ECASH_MNEMONIC") or None,
        )


def load_env_file(path: str) -> int:
    """
    Load KEY=value lines into os.environ without overriding existing keys.

    Returns:
        Number of keys read
    """
    count = 0
    if not os.path.exists(path):
        return count
    with open(path) as f:
        for line in f:
            line = line.strip()
            if line and not line.startswith("#") and "=" in line:
                key, value = line.split("=", 1)
                os.environ.setdefault(key.strip(), value.strip().strip('"').strip("'"))
                count += 1
    return count


def normalize_mint_url(url: str) -> str:
    """Strip trailing slashes and lowercase scheme/host for comparisons."""
    url = url.strip().rstrip("/")
    if "://" in url:
        scheme, rest = url.split("://", 1)
        host, _, path = rest.partition("/")
        url = f"{scheme.lower()}://{host.lower()}" + (f"/{path}" if path else "")
    return url


def same_mint(a: str, b: str) -> bool:
    return normalize_mint_url(a) == normalize_mint_url(b)


# =============================================================================
# LOGGING
# =============================================================================

def setup_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt="%H:%M:%S",
    )


def mask_secret(secret: Optional[str], visible_prefix: int = 4, visible_suffix: int = 4) -> str:
    """Mask a secret for safe logging. NEVER log full secrets/preimages/keys."""
    if not secret or len(secret) <= visible_prefix + visible_suffix:
        return "***"
    return f"{secret[:visible_prefix]}...{secret[-visible_suffix:]}"
