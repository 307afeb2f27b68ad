"""
DeedFlow node — combines the deed registry, balance book, escrow ledger
and optional SQLite store into one object the API and CLI drive.

Every mutating call is applied to the ledger first; only if it succeeds
is the new state snapshotted to the store.
"""

from __future__ import annotations

import logging
from typing import Any

from deedflow_core.balances import BalanceBook
from deedflow_core.config import DeedFlowConfig
from deedflow_core.errors import EscrowError
from deedflow_core.escrow import EscrowLedger, Listing, Parties
from deedflow_core.precision import tokens
from deedflow_core.registry import DeedRegistry
from deedflow_core.storage import EscrowStore

logger = logging.getLogger("deedflow_node")


class EscrowNode:
    """A single escrow holder with its registry and value channel."""

    def __init__(self, config: DeedFlowConfig | None = None):
        self.config = config or DeedFlowConfig()
        esc = self.config.escrow
        if not (esc.seller and esc.inspector and esc.lender):
            raise ValueError("escrow.seller, escrow.inspector and escrow.lender are required")

        self.registry = DeedRegistry(esc.nft_address)
        self.balances = BalanceBook()
        self.ledger = EscrowLedger(
            self.registry,
            self.balances,
            Parties(seller=esc.seller, inspector=esc.inspector, lender=esc.lender),
            address=esc.address,
        )
        self.store: EscrowStore | None = None
        if self.config.storage.enabled:
            self.store = EscrowStore(self.config.storage.path)

    # ── lifecycle ────────────────────────────────────────────────

    def load_or_bootstrap(self) -> None:
        """Restore persisted state, or apply genesis funding on first run."""
        store = self.store
        if store is not None and (
            store.load_deeds() or store.load_balances() or store.load_nonces()
        ):
            store.restore(self.ledger)
            return
        self.bootstrap()

    def bootstrap(self) -> None:
        genesis = self.config.genesis
        for address, amount in genesis.balances.items():
            self.balances.credit(address, tokens(amount))
        for uri in genesis.deeds:
            self.registry.mint(self.ledger.seller, uri)
        logger.info(
            f"Genesis: {len(genesis.balances)} funded accounts, "
            f"{len(genesis.deeds)} deeds minted to seller"
        )
        self._persist()

    def close(self) -> None:
        if self.store is not None:
            self.store.close()

    def _persist(self) -> None:
        if self.store is not None:
            self.store.snapshot(self.ledger)

    def _apply(self, op: str, fn, *args) -> Any:
        try:
            result = fn(*args)
        except EscrowError as exc:
            logger.warning(f"{op} rejected: {exc.code}: {exc}")
            raise
        self._persist()
        return result

    # ── replay protection ────────────────────────────────────────

    def use_nonce(self, account: str, nonce: int) -> None:
        """Consume a signed request's nonce; persisted even if the request then fails."""
        self._apply("use_nonce", self.ledger.use_nonce, account, nonce)

    # ── registry operations ──────────────────────────────────────

    def mint(self, caller: str, uri: str = "") -> int:
        """Mint a deed to *caller*."""
        return self._apply("mint", self.registry.mint, caller, uri)

    def approve_deed(self, caller: str, spender: str, token_id: int) -> None:
        self._apply("approve_deed", self.registry.approve, caller, spender, token_id)

    def set_operator(self, caller: str, operator: str, approved: bool) -> None:
        self._apply(
            "set_operator", self.registry.set_approval_for_all, caller, operator, approved,
        )

    # ── escrow operations ────────────────────────────────────────

    def list(
        self, caller: str, token_id: int, buyer: str,
        purchase_price: int, escrow_amount: int,
    ) -> Listing:
        return self._apply(
            "list", self.ledger.list, caller, token_id, buyer, purchase_price, escrow_amount,
        )

    def deposit_earnest(self, caller: str, token_id: int, amount: int) -> int:
        return self._apply("deposit_earnest", self.ledger.deposit_earnest, caller, token_id, amount)

    def fund(self, caller: str, token_id: int, amount: int) -> int:
        return self._apply("fund", self.ledger.fund, caller, token_id, amount)

    def update_inspection_status(self, caller: str, token_id: int, passed: bool) -> None:
        self._apply(
            "update_inspection_status", self.ledger.update_inspection_status,
            caller, token_id, passed,
        )

    def approve_sale(self, caller: str, token_id: int) -> None:
        self._apply("approve_sale", self.ledger.approve_sale, caller, token_id)

    def finalize_sale(self, caller: str, token_id: int) -> None:
        self._apply("finalize_sale", self.ledger.finalize_sale, caller, token_id)

    def cancel_sale(self, caller: str, token_id: int) -> str:
        return self._apply("cancel_sale", self.ledger.cancel_sale, caller, token_id)

    # ── queries ──────────────────────────────────────────────────

    def status(self) -> dict:
        summary = self.ledger.summary()
        summary.update({
            "seller": self.ledger.seller,
            "inspector": self.ledger.inspector,
            "lender": self.ledger.lender,
            "deeds": self.registry.total_supply(),
            "persistent": self.store is not None,
        })
        return summary
