"""
Tests for environment configuration, URL normalization and the CLI entry points.
"""

import argparse

import pytest

from ecash_sdk import cli
from ecash_sdk.config import (
    DEFAULT_PUBLISH_RETRIES,
    ClaimConfirmationPolicy,
    WalletConfig,
    load_env_file,
    mask_secret,
    normalize_mint_url,
    same_mint,
)

ENV_KEYS = [
    "ECASH_MINT_URL", "ECASH_LEDGER_PATH", "ECASH_LEDGER_PASSPHRASE", "ECASH_HTTP_TIMEOUT",
    "ECASH_QUOTE_TIMEOUT", "ECASH_PUBLISH_RETRIES", "ECASH_RETRY_BACKOFF", "ECASH_CLAIM_POLICY",
    "ECASH_REFUND_SKEW", "ECASH_ESCROW_EXPIRY", "ECASH_LOG_LEVEL", "ECASH_MNEMONIC",
]

MNEMONIC = "abandon " * 11 + "about"


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    # set-then-delete so monkeypatch restores whatever was there
    for key in ENV_KEYS:
        monkeypatch.setenv(key, "")
        monkeypatch.delenv(key)
    monkeypatch.setenv("ECASH_LEDGER_PATH", str(tmp_path / "ledger.json"))
    return monkeypatch


class TestFromEnv:
    def test_defaults(self, clean_env, tmp_path):
        config = WalletConfig.from_env()
        assert config.mint_url == ""
        assert config.ledger_path == tmp_path / "ledger.json"
        assert config.publish_retries == DEFAULT_PUBLISH_RETRIES
        assert config.claim_policy is ClaimConfirmationPolicy.VERIFY_AT_MINT
        assert config.refund_skew == 0
        assert config.ledger_passphrase is None

    def test_overrides(self, clean_env):
        clean_env.setenv("ECASH_MINT_URL", "HTTPS://Mint.Example.com/")
        clean_env.setenv("ECASH_CLAIM_POLICY", "TRUST")
        clean_env.setenv("ECASH_PUBLISH_RETRIES", "5")
        clean_env.setenv("ECASH_LOG_LEVEL", "debug")
        clean_env.setenv("ECASH_LEDGER_PASSPHRASE", "pw")
        config = WalletConfig.from_env()
        assert config.mint_url == "https://mint.example.com"
        assert config.claim_policy is ClaimConfirmationPolicy.TRUST_MESSAGE
        assert config.publish_retries == 5
        assert config.log_level == "DEBUG"
        assert config.ledger_passphrase == "pw"

    def test_passphrase_not_in_repr(self, clean_env):
        clean_env.setenv("ECASH_LEDGER_PASSPHRASE", "topsecret")
        clean_env.setenv("ECASH_MNEMONIC", MNEMONIC)
        text = repr(WalletConfig.from_env())
        assert "topsecret" not in text
        assert "abandon" not in text

    def test_env_file_does_not_override(self, clean_env, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text(
            "# wallet\n"
            "ECASH_MINT_URL='https://file.mint'\n"
            "ECASH_REFUND_SKEW=30\n"
            "not a pair\n"
        )
        clean_env.setenv("ECASH_REFUND_SKEW", "5")
        config = WalletConfig.from_env(str(env_file))
        assert config.mint_url == "https://file.mint"
        assert config.refund_skew == 5

    def test_missing_env_file(self, tmp_path):
        assert load_env_file(str(tmp_path / "absent.env")) == 0

    def test_invalid_values(self, clean_env):
        clean_env.setenv("ECASH_CLAIM_POLICY", "maybe")
        with pytest.raises(ValueError):
            WalletConfig.from_env()
        with pytest.raises(ValueError):
            WalletConfig(publish_retries=0)
        with pytest.raises(ValueError):
            WalletConfig(refund_skew=-1)


class TestMintUrls:
    def test_normalize(self):
        assert normalize_mint_url(" https://Mint.Test/ ") == "https://mint.test"
        assert normalize_mint_url("https://MINT.test/Cashu/") == "https://mint.test/Cashu"

    def test_same_mint(self):
        assert same_mint("https://mint.test/", "HTTPS://mint.TEST")
        assert not same_mint("https://mint.test", "https://other.test")


def test_mask_secret():
    assert mask_secret("0123456789abcdef") == "0123...cdef"
    assert mask_secret("short") == "***"
    assert mask_secret(None) == "***"


# =============================================================================
# CLI
# =============================================================================

def _args(tmp_path, command, **extra):
    base = dict(env_file=None, mint=None, log_level="WARNING", command=command,
                store=str(tmp_path / "store.json"), key_file=str(tmp_path / "wallet.key"))
    base.update(extra)
    return argparse.Namespace(**base)


class TestCli:
    async def test_init_writes_key(self, clean_env, tmp_path, capsys):
        args = _args(tmp_path, "init", mnemonic=MNEMONIC, force=False)
        assert await cli.run(args) == 0
        key = (tmp_path / "wallet.key").read_text().strip()
        assert len(key) == 64
        assert (tmp_path / "wallet.key").stat().st_mode & 0o777 == 0o600
        assert (tmp_path / "store.json").exists()
        assert "payment pubkey" in capsys.readouterr().out

        assert await cli.run(args) == 1
        assert (tmp_path / "wallet.key").read_text().strip() == key

    async def test_init_requires_mnemonic(self, clean_env, tmp_path):
        args = _args(tmp_path, "init", mnemonic=None, force=False)
        assert await cli.run(args) == 1
        assert not (tmp_path / "wallet.key").exists()

    async def test_requires_mint(self, clean_env, tmp_path, capsys):
        assert await cli.run(_args(tmp_path, "htlcs", status=None)) == 1
        assert "No mint configured" in capsys.readouterr().out

    async def test_htlcs_offline(self, clean_env, tmp_path, capsys):
        await cli.run(_args(tmp_path, "init", mnemonic=MNEMONIC, force=False))
        capsys.readouterr()
        args = _args(tmp_path, "htlcs", status=None, mint="https://unreachable.invalid")
        assert await cli.run(args) == 0
        assert "No HTLCs" in capsys.readouterr().out
