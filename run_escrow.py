#!/usr/bin/env python3
"""
DeedFlow Node Runner — starts an escrow node with:
  - Deed registry, balance book and escrow ledger
  - Optional SQLite persistence
  - REST API
  - Interactive read-only CLI

Usage:
    python run_escrow.py --config deedflow.toml
    python run_escrow.py --demo --no-api        # run the sample sale and exit

Environment variables (alternative to flags):
    DEEDFLOW_SELLER, DEEDFLOW_INSPECTOR, DEEDFLOW_LENDER, DEEDFLOW_API_PORT,
    DEEDFLOW_DB_PATH, DEEDFLOW_LOG_LEVEL (see deedflow_core.config)
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging

from deedflow_core.api import APIServer
from deedflow_core.config import DeedFlowConfig, load_config
from deedflow_core.errors import EscrowError
from deedflow_core.logging_config import setup_logging
from deedflow_core.node import EscrowNode
from deedflow_core.precision import format_amount, tokens
from deedflow_core.signing import Signer

logger = logging.getLogger("deedflow_runner")

DEMO_URI = "https://ipfs.io/ipfs/QmTudSYeM7mz3PkYEWXWqPjomRPHogcMFSq7XAvsvsgAPS"


def apply_dev_parties(cfg: DeedFlowConfig) -> None:
    """Fill unset participants with deterministic development keys."""
    esc = cfg.escrow
    for role in ("seller", "inspector", "lender"):
        if not getattr(esc, role):
            address = Signer.from_seed(role).address
            setattr(esc, role, address)
            logger.warning(f"No {role} configured; using development key {address}")


def run_demo(node: EscrowNode) -> dict:
    """
    Walk one property through a full sale:
    price 10, earnest 5, buyer deposits 5, inspection passes, all three
    parties approve, lender funds the remaining 5, seller finalizes.
    """
    ledger = node.ledger
    seller, inspector, lender = ledger.seller, ledger.inspector, ledger.lender
    buyer = Signer.from_seed("buyer").address

    for address in (buyer, lender):
        if node.balances.balance_of(address) < tokens(10):
            node.balances.credit(address, tokens(10))

    token_id = node.mint(seller, DEMO_URI)
    node.approve_deed(seller, ledger.address, token_id)
    node.list(seller, token_id, buyer, tokens(10), tokens(5))
    node.deposit_earnest(buyer, token_id, tokens(5))
    node.update_inspection_status(inspector, token_id, True)
    for party in (buyer, seller, lender):
        node.approve_sale(party, token_id)
    node.fund(lender, token_id, tokens(5))
    node.finalize_sale(seller, token_id)

    result = {
        "token_id": token_id,
        "owner": node.registry.owner_of(token_id),
        "buyer": buyer,
        "listing_balance": ledger.balance_of(token_id),
        "seller_balance": format_amount(node.balances.balance_of(seller)),
        "events": [e.kind.value for e in ledger.events(token_id)],
    }
    logger.info(f"Demo sale of token {token_id} complete; deed now owned by {result['owner']}")
    return result


# ===================================================================
#  Interactive CLI
# ===================================================================

async def interactive_cli(node: EscrowNode) -> None:
    """Read-only console for inspecting a running node."""
    loop = asyncio.get_running_loop()

    def print_help():
        print("""
  status            - Node & escrow summary
  listing <id>      - Show a listing
  deed <id>         - Show a deed
  balance [addr]    - Balance of addr (default: escrow holder)
  events [id]       - Event log (optionally for one token)
  help              - Show this help
  quit              - Shutdown node
""")

    print_help()
    while True:
        try:
            line = await loop.run_in_executor(None, lambda: input("\n[deedflow] > "))
        except (EOFError, KeyboardInterrupt):
            print("\nShutting down...")
            return
        parts = line.strip().split()
        if not parts:
            continue
        cmd = parts[0].lower()
        try:
            if cmd == "help":
                print_help()
            elif cmd == "status":
                print(json.dumps(node.status(), indent=2, default=str))
            elif cmd == "listing" and len(parts) > 1:
                listing = node.ledger.get_listing(int(parts[1]))
                print(json.dumps(listing.to_dict() if listing else None, indent=2, default=str))
            elif cmd == "deed" and len(parts) > 1:
                deed = node.registry.deeds.get(int(parts[1]))
                print(json.dumps(deed.to_dict() if deed else None, indent=2))
            elif cmd == "balance":
                addr = parts[1] if len(parts) > 1 else node.ledger.address
                print(f"  {addr}: {format_amount(node.balances.balance_of(addr))}")
            elif cmd == "events":
                token_id = int(parts[1]) if len(parts) > 1 else None
                for e in node.ledger.events(token_id):
                    print(f"  #{e.seq} {e.kind.value:<18} token={e.token_id} "
                          f"by={e.caller} amount={format_amount(e.amount)} {e.detail}")
            elif cmd in ("quit", "exit", "q"):
                print("Shutting down...")
                return
            else:
                print(f"  Unknown command: {cmd}. Type 'help'.")
        except ValueError as exc:
            print(f"  Error: {exc}")


# ===================================================================
#  Main entry point
# ===================================================================

def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="DeedFlow escrow node")
    p.add_argument("--config", default=None, help="Path to deedflow.toml config file")
    p.add_argument("--host", default=None, help="API listen host")
    p.add_argument("--port", type=int, default=None, help="API listen port")
    p.add_argument("--db", default=None, help="SQLite path (enables persistence)")
    p.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ...")
    p.add_argument("--log-format", choices=("human", "json"), default=None)
    p.add_argument("--demo", action="store_true", help="Run the sample sale on startup")
    p.add_argument("--no-api", action="store_true", help="Do not start the REST API")
    p.add_argument("--no-cli", action="store_true", help="Run without interactive CLI")
    return p.parse_args(argv)


def build_config(args: argparse.Namespace) -> DeedFlowConfig:
    cfg = load_config(args.config)
    if args.host:
        cfg.api.host = args.host
    if args.port is not None:
        cfg.api.port = args.port
    if args.db:
        cfg.storage.path = args.db
        cfg.storage.enabled = True
    if args.log_level:
        cfg.logging.level = args.log_level.upper()
    if args.log_format:
        cfg.logging.format = args.log_format
    if args.no_api:
        cfg.api.enabled = False
    return cfg


async def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    cfg = build_config(args)
    setup_logging(cfg.logging.level, cfg.logging.format, cfg.logging.file)
    apply_dev_parties(cfg)

    node = EscrowNode(cfg)
    node.load_or_bootstrap()

    if args.demo:
        try:
            print(json.dumps(run_demo(node), indent=2))
        except EscrowError as exc:
            logger.error(f"Demo sale failed: {exc.code}: {exc}")
            node.close()
            return 1

    api = None
    if cfg.api.enabled:
        api = APIServer(node, cfg.api.host, cfg.api.port, api_config=cfg.api)
        await api.start()

    try:
        if api is None:
            return 0
        if args.no_cli:
            await asyncio.Event().wait()
        else:
            await interactive_cli(node)
    except asyncio.CancelledError:
        pass
    finally:
        if api is not None:
            await api.stop()
        node.close()
    return 0


def main_sync() -> int:
    """Synchronous entry point for console_scripts."""
    with contextlib.suppress(KeyboardInterrupt):
        return asyncio.run(main())
    return 130


if __name__ == "__main__":
    raise SystemExit(main_sync())
