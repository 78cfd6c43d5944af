#!/usr/bin/env python3
"""
ecash-wallet - single-host command line for the Ecash Escrow SDK.

Proof records are kept in a local file (FileRelayTransport) instead of a
relay network. The payment key lives in a key file next to the ledger.

Usage:
    ecash-wallet init --mnemonic "..."
    ecash-wallet info
    ecash-wallet deposit 1000
    ecash-wallet check-deposit <quote>
    ecash-wallet withdraw lnbc...
    ecash-wallet sync
    ecash-wallet refund-expired
    ecash-wallet recover --from-store
    ecash-wallet change-mint https://new.mint.url
    ecash-wallet htlcs --status locked
"""

import argparse
import asyncio
import dataclasses
import logging
import os
import sys
from pathlib import Path

from .config import WalletConfig, mask_secret, setup_logging
from .ecash_types import HtlcStatus
from .errors import EcashError
from .keys import WalletKeyManager
from .proof_store import FileRelayTransport
from .wallet import EcashWallet

log = logging.getLogger("ecash-wallet")

DEFAULT_HOME = Path.home() / ".ecash"


def _key_path(args) -> Path:
    return Path(os.path.expanduser(args.key_file))


def _load_keys(args, config: WalletConfig) -> WalletKeyManager:
    path = _key_path(args)
    if not path.exists():
        print(f"No wallet key at {path}; run 'ecash-wallet init' first")
        sys.exit(1)
    privkey = path.read_text().strip()
    return WalletKeyManager(privkey, mnemonic=config.mnemonic)


def _build_wallet(args, config: WalletConfig) -> EcashWallet:
    keys = _load_keys(args, config)
    return EcashWallet.from_config(config, FileRelayTransport(args.store), keys)


def _print_header(title: str):
    print("=" * 60)
    print(title)
    print("=" * 60)


# =============================================================================
# COMMANDS
# =============================================================================

async def cmd_init(args, config: WalletConfig):
    path = _key_path(args)
    if path.exists() and not args.force:
        print(f"Wallet key already exists at {path} (use --force to replace)")
        return 1
    mnemonic = args.mnemonic or config.mnemonic
    if not mnemonic:
        print("A recovery mnemonic is required (--mnemonic or ECASH_MNEMONIC)")
        return 1
    keys = WalletKeyManager.generate(mnemonic=mnemonic)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(keys.privkey_hex + "\n")
    os.chmod(path, 0o600)

    wallet = EcashWallet.from_config(config, FileRelayTransport(args.store), keys)
    try:
        await wallet.store.publish_wallet_metadata(keys.privkey_hex, config.mint_url, mnemonic)
    finally:
        await wallet.close()
    print(f"Wallet created, payment pubkey {keys.pubkey_hex}")
    print(f"Key file: {path}")
    return 0


async def cmd_info(wallet: EcashWallet, args):
    caps = await wallet.mint.get_info()
    keyset = await wallet.mint.get_active_keyset()
    _print_header(f"Mint {wallet.mint_url}")
    print(f"  Name:        {caps.name}")
    print(f"  Version:     {caps.version}")
    print(f"  Keyset:      {keyset.id} (fee {keyset.input_fee_ppk} ppk)")
    print(f"  HTLC:        {'yes' if caps.supports_htlc else 'no'}")
    print(f"  Melt:        {'yes' if caps.supports_melt else 'no'}")
    print(f"  Checkstate:  {'yes' if caps.supports_checkstate else 'no'}")
    print(f"  Restore:     {'yes' if caps.supports_restore else 'no'}")
    print(f"  Websocket:   {', '.join(caps.websocket_commands()) or 'no'}")
    print(f"  Payment key: {wallet.keys.pubkey_hex}")
    return 0


async def cmd_balance(wallet: EcashWallet, args):
    balance = await wallet.get_balance()
    print(f"Available: {balance.available_sats} sats")
    print(f"In escrow: {balance.pending_sats} sats")
    tokens = wallet.ledger.get_recovery_tokens()
    if tokens:
        print(f"Recovery tokens: {len(tokens)} ({sum(t.total_amount for t in tokens)} sats), "
              f"run 'ecash-wallet recover'")
    return 0


async def cmd_deposit(wallet: EcashWallet, args):
    result = await wallet.request_deposit(args.amount)
    if not result.success:
        print(f"Deposit failed: {result.message}")
        return 1
    quote = result.mint_quote
    print(f"Pay this invoice to deposit {args.amount} sats:\n")
    print(quote.request)
    print(f"\nQuote: {quote.quote}")
    print(f"Then run: ecash-wallet check-deposit {quote.quote}")
    return 0


async def cmd_check_deposit(wallet: EcashWallet, args):
    result = await wallet.check_deposit(args.quote, wait=not args.no_wait)
    if not result.success:
        print(f"Not minted: {result.message}")
        return 1
    print(f"Minted {result.amount_sats} sats")
    return 0


async def cmd_withdraw(wallet: EcashWallet, args):
    quoted = await wallet.get_melt_quote(args.bolt11)
    if not quoted.success:
        print(f"Quote failed: {quoted.message}")
        return 1
    quote = quoted.melt_quote
    print(f"Amount: {quote.amount} sats, fee reserve: {quote.fee_reserve} sats")
    if not args.yes:
        confirm = input("Pay? [y/N] ")
        if confirm.lower() != "y":
            print("Cancelled")
            return 1
    result = await wallet.withdraw(quote)
    if not result.success:
        print(f"Withdrawal failed: {result.message}")
        return 1
    print(f"Paid {result.amount_sats} sats (fee {result.fee_paid}, change {result.change_sats})")
    if result.payment_preimage:
        print(f"Preimage: {result.payment_preimage}")
    return 0


async def cmd_sync(wallet: EcashWallet, args):
    result = await wallet.sync()
    if not result.success:
        print(f"Sync failed: {result.message}")
        return 1
    note = " (not verified)" if result.from_cache else ""
    print(f"Balance: {result.balance_sats} sats{note}")
    print(f"Verified {result.verified} proofs, removed {result.spent_removed} spent")
    return 0


async def cmd_refund_expired(wallet: EcashWallet, args):
    results = await wallet.refund_expired_htlcs()
    if not results:
        print("No expired HTLCs")
        return 0
    for info in results:
        state = "refunded" if info.success else f"failed: {info.message}"
        print(f"  {info.escrow_id}  {info.amount_sats:>8} sats  {state}")
    return 0 if all(i.success for i in results) else 1


async def cmd_recover(wallet: EcashWallet, args):
    if args.from_store:
        result = await wallet.restore_from_store()
        if not result.success:
            print(f"Store restore failed: {result.message}")
            return 1
        print(f"Wallet record adopted: {result.proof_count} proofs, {result.recovered_sats} sats")
    sats = await wallet.retry_recovery_tokens()
    print(f"Recovery tokens: {sats} sats republished")
    if args.seed:
        result = await wallet.restore_from_seed(batch=args.batch)
        if not result.success:
            print(f"Seed restore failed: {result.message}")
            return 1
        print(f"Seed restore: {result.proof_count} proofs, {result.recovered_sats} sats "
              f"(next counter {result.next_counter})")
    return 0


async def cmd_change_mint(wallet: EcashWallet, args):
    result = await wallet.change_mint(args.url)
    if not result.success:
        print(f"Mint change failed: {result.message}")
        return 1
    print(f"Mint is now {wallet.mint_url}")
    return 0


async def cmd_htlcs(wallet: EcashWallet, args):
    status = HtlcStatus(args.status) if args.status else None
    htlcs = wallet.ledger.get_htlcs(status)
    if not htlcs:
        print("No HTLCs")
        return 0
    print(f"{'ESCROW':<34} {'SATS':>8}  {'STATUS':<9} {'LOCKTIME':>11}  HASH")
    for h in htlcs:
        print(f"{h.escrow_id:<34} {h.amount_sats:>8}  {h.status.value:<9} {h.locktime:>11}  "
              f"{mask_secret(h.payment_hash, 8, 4)}")
    return 0


COMMANDS = {
    "info": cmd_info,
    "balance": cmd_balance,
    "deposit": cmd_deposit,
    "check-deposit": cmd_check_deposit,
    "withdraw": cmd_withdraw,
    "sync": cmd_sync,
    "refund-expired": cmd_refund_expired,
    "recover": cmd_recover,
    "change-mint": cmd_change_mint,
    "htlcs": cmd_htlcs,
}

# commands that should not trigger connect()-time recovery
OFFLINE_COMMANDS = {"htlcs"}


async def run(args) -> int:
    config = WalletConfig.from_env(args.env_file)
    if args.mint:
        config = dataclasses.replace(config, mint_url=args.mint)
    setup_logging(args.log_level or config.log_level)

    if args.command == "init":
        return await cmd_init(args, config)
    if not config.mint_url:
        print("No mint configured (--mint or ECASH_MINT_URL)")
        return 1

    wallet = _build_wallet(args, config)
    try:
        if args.command not in OFFLINE_COMMANDS and not await wallet.connect():
            print(f"Cannot reach mint {config.mint_url}")
            return 1
        return await COMMANDS[args.command](wallet, args)
    except EcashError as e:
        log.error(e.message)
        return 1
    finally:
        await wallet.close()


def main():
    parser = argparse.ArgumentParser(description="Ecash wallet with HTLC escrow")
    parser.add_argument("--env-file", help="KEY=value file loaded before the environment")
    parser.add_argument("--mint", help="Mint URL (overrides ECASH_MINT_URL)")
    parser.add_argument("--store", default=str(DEFAULT_HOME / "store.json"),
                        help="Local proof store file")
    parser.add_argument("--key-file", default=str(DEFAULT_HOME / "wallet.key"),
                        help="Payment key file")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING, ...")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    init_parser = subparsers.add_parser("init", help="Create the payment key and wallet record")
    init_parser.add_argument("--mnemonic", help="Recovery seed phrase (or ECASH_MNEMONIC)")
    init_parser.add_argument("--force", action="store_true", help="Replace an existing key file")

    subparsers.add_parser("info", help="Mint capabilities")
    subparsers.add_parser("balance", help="Stored balance")

    deposit_parser = subparsers.add_parser("deposit", help="Request a deposit invoice")
    deposit_parser.add_argument("amount", type=int, help="Amount in sats")

    check_parser = subparsers.add_parser("check-deposit", help="Mint a paid deposit")
    check_parser.add_argument("quote", help="Quote ID from 'deposit'")
    check_parser.add_argument("--no-wait", action="store_true", help="Check once, do not wait")

    withdraw_parser = subparsers.add_parser("withdraw", help="Pay a lightning invoice")
    withdraw_parser.add_argument("bolt11", help="Invoice")
    withdraw_parser.add_argument("-y", "--yes", action="store_true", help="Skip confirmation")

    subparsers.add_parser("sync", help="Verify stored proofs at the mint")
    subparsers.add_parser("refund-expired", help="Refund HTLCs past their locktime")

    recover_parser = subparsers.add_parser("recover", help="Retry recovery tokens")
    recover_parser.add_argument("--seed", action="store_true", help="Also restore from seed (NUT-09)")
    recover_parser.add_argument("--batch", type=int, default=100, help="Counter batch size")
    recover_parser.add_argument("--from-store", action="store_true",
                                help="Adopt the stored wallet record first")

    change_parser = subparsers.add_parser("change-mint", help="Move stored proofs to the mint's new URL")
    change_parser.add_argument("url", help="New mint URL")

    htlcs_parser = subparsers.add_parser("htlcs", help="List escrow HTLCs")
    htlcs_parser.add_argument("--status", choices=[s.value for s in HtlcStatus])

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        sys.exit(1)
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
