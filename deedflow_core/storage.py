"""
SQLite-based persistence layer for DeedFlow escrow state.

Stores deeds, operator approvals, balances, listings and the escrow event
log so that a node can recover state after restart.

Usage:
    store = EscrowStore("data/deedflow.db")
    store.snapshot(ledger)      # after every applied operation
    ...
    store.restore(fresh_ledger)
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Any

from deedflow_core.escrow import (
    EscrowEvent,
    EscrowLedger,
    EventKind,
    Listing,
    ListingStatus,
)
from deedflow_core.registry import Deed

logger = logging.getLogger("deedflow_storage")


class EscrowStore:
    """Thin SQLite wrapper for persisting escrow state."""

    CURRENT_SCHEMA_VERSION = 2

    def __init__(self, db_path: str = "data/deedflow.db"):
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA busy_timeout = 5000")
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._create_tables()
        self._ensure_schema_version()
        logger.info(f"Storage opened: {db_path}")

    # ── schema ───────────────────────────────────────────────────

    def _create_tables(self) -> None:
        c = self._conn
        c.execute("""
            CREATE TABLE IF NOT EXISTS deeds (
                token_id    INTEGER PRIMARY KEY,
                owner       TEXT NOT NULL,
                uri         TEXT NOT NULL DEFAULT '',
                approved    TEXT NOT NULL DEFAULT '',
                create_time REAL NOT NULL DEFAULT 0
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS operators (
                owner    TEXT NOT NULL,
                operator TEXT NOT NULL,
                PRIMARY KEY (owner, operator)
            )
        """)
        # Amounts are stored as decimal text: they exceed SQLite's 64-bit INTEGER.
        c.execute("""
            CREATE TABLE IF NOT EXISTS balances (
                address TEXT PRIMARY KEY,
                amount  TEXT NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS listings (
                token_id          INTEGER PRIMARY KEY,
                buyer             TEXT NOT NULL,
                purchase_price    TEXT NOT NULL,
                escrow_amount     TEXT NOT NULL,
                balance           TEXT NOT NULL,
                inspection_passed INTEGER NOT NULL DEFAULT 0,
                buyer_approved    INTEGER NOT NULL DEFAULT 0,
                seller_approved   INTEGER NOT NULL DEFAULT 0,
                lender_approved   INTEGER NOT NULL DEFAULT 0,
                status            TEXT NOT NULL,
                listed_at         REAL NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS events (
                seq       INTEGER PRIMARY KEY,
                kind      TEXT NOT NULL,
                token_id  INTEGER NOT NULL,
                caller    TEXT NOT NULL,
                amount    TEXT NOT NULL,
                detail    TEXT NOT NULL DEFAULT '',
                timestamp REAL NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS nonces (
                account TEXT PRIMARY KEY,
                nonce   INTEGER NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                id      INTEGER PRIMARY KEY CHECK (id = 1),
                version INTEGER NOT NULL
            )
        """)
        c.commit()

    def _ensure_schema_version(self) -> None:
        row = self._conn.execute(
            "SELECT version FROM schema_version WHERE id = 1"
        ).fetchone()
        if row is None:
            self._conn.execute(
                "INSERT INTO schema_version (id, version) VALUES (1, ?)",
                (self.CURRENT_SCHEMA_VERSION,),
            )
            self._conn.commit()
        elif row["version"] > self.CURRENT_SCHEMA_VERSION:
            raise RuntimeError(
                f"Database schema v{row['version']} is newer than this software "
                f"(v{self.CURRENT_SCHEMA_VERSION}).  Upgrade DeedFlow."
            )
        elif row["version"] < self.CURRENT_SCHEMA_VERSION:
            # v1 -> v2 only added the nonces table, created above
            self._conn.execute(
                "UPDATE schema_version SET version = ? WHERE id = 1",
                (self.CURRENT_SCHEMA_VERSION,),
            )
            self._conn.commit()
            logger.info(f"Schema upgraded from v{row['version']}")

    # ── loaders ──────────────────────────────────────────────────

    def load_deeds(self) -> list[dict[str, Any]]:
        rows = self._conn.execute("SELECT * FROM deeds ORDER BY token_id").fetchall()
        return [dict(r) for r in rows]

    def load_balances(self) -> dict[str, int]:
        rows = self._conn.execute("SELECT address, amount FROM balances").fetchall()
        return {r["address"]: int(r["amount"]) for r in rows}

    def load_listings(self) -> list[dict[str, Any]]:
        rows = self._conn.execute("SELECT * FROM listings ORDER BY token_id").fetchall()
        return [dict(r) for r in rows]

    def load_nonces(self) -> dict[str, int]:
        rows = self._conn.execute("SELECT account, nonce FROM nonces").fetchall()
        return {r["account"]: r["nonce"] for r in rows}

    def load_events(self, token_id: int | None = None) -> list[dict[str, Any]]:
        if token_id is not None:
            rows = self._conn.execute(
                "SELECT * FROM events WHERE token_id = ? ORDER BY seq", (token_id,)
            ).fetchall()
        else:
            rows = self._conn.execute("SELECT * FROM events ORDER BY seq").fetchall()
        return [dict(r) for r in rows]

    # ── bulk helpers ─────────────────────────────────────────────

    def snapshot(self, ledger: EscrowLedger) -> None:
        """Persist registry, balances, listings and events in one transaction."""
        c = self._conn
        try:
            c.execute("BEGIN IMMEDIATE")
            c.execute("DELETE FROM operators")
            c.execute("DELETE FROM balances")

            for deed in ledger.registry.deeds.values():
                c.execute(
                    """INSERT OR REPLACE INTO deeds
                       (token_id, owner, uri, approved, create_time)
                       VALUES (?, ?, ?, ?, ?)""",
                    (deed.token_id, deed.owner, deed.uri, deed.approved, deed.create_time),
                )
            c.executemany(
                "INSERT INTO operators (owner, operator) VALUES (?, ?)",
                [(owner, op) for owner, ops in ledger.registry.operators.items() for op in ops],
            )
            c.executemany(
                "INSERT INTO balances (address, amount) VALUES (?, ?)",
                [(addr, str(amt)) for addr, amt in ledger.balances.balances.items()],
            )
            for listing in ledger.listings.values():
                c.execute(
                    """INSERT OR REPLACE INTO listings
                       (token_id, buyer, purchase_price, escrow_amount, balance,
                        inspection_passed, buyer_approved, seller_approved,
                        lender_approved, status, listed_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (listing.token_id, listing.buyer, str(listing.purchase_price),
                     str(listing.escrow_amount), str(listing.balance),
                     int(listing.inspection_passed), int(listing.buyer_approved),
                     int(listing.seller_approved), int(listing.lender_approved),
                     listing.status.value, listing.listed_at),
                )
            c.executemany(
                "INSERT OR REPLACE INTO nonces (account, nonce) VALUES (?, ?)",
                list(ledger.nonces.items()),
            )
            # the event log is append-only
            c.executemany(
                """INSERT OR IGNORE INTO events
                   (seq, kind, token_id, caller, amount, detail, timestamp)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                [(e.seq, e.kind.value, e.token_id, e.caller, str(e.amount),
                  e.detail, e.timestamp) for e in ledger.event_log],
            )
            c.execute("COMMIT")
        except Exception:
            c.execute("ROLLBACK")
            raise

    def restore(self, ledger: EscrowLedger) -> None:
        """Load persisted state into a freshly constructed ledger."""
        registry = ledger.registry
        for row in self.load_deeds():
            registry.deeds[row["token_id"]] = Deed(
                token_id=row["token_id"],
                owner=row["owner"],
                uri=row["uri"],
                approved=row["approved"],
                create_time=row["create_time"],
            )
        if registry.deeds:
            registry._next_id = max(registry.deeds) + 1
        for row in self._conn.execute("SELECT owner, operator FROM operators"):
            registry.operators.setdefault(row["owner"], set()).add(row["operator"])

        ledger.balances.balances = self.load_balances()

        for row in self.load_listings():
            ledger.listings[row["token_id"]] = Listing(
                token_id=row["token_id"],
                buyer=row["buyer"],
                purchase_price=int(row["purchase_price"]),
                escrow_amount=int(row["escrow_amount"]),
                balance=int(row["balance"]),
                inspection_passed=bool(row["inspection_passed"]),
                buyer_approved=bool(row["buyer_approved"]),
                seller_approved=bool(row["seller_approved"]),
                lender_approved=bool(row["lender_approved"]),
                status=ListingStatus(row["status"]),
                listed_at=row["listed_at"],
            )

        ledger.nonces = self.load_nonces()

        ledger.event_log = [
            EscrowEvent(
                seq=row["seq"],
                kind=EventKind(row["kind"]),
                token_id=row["token_id"],
                caller=row["caller"],
                amount=int(row["amount"]),
                detail=row["detail"],
                timestamp=row["timestamp"],
            )
            for row in self.load_events()
        ]
        logger.info(
            f"Restored {len(registry.deeds)} deeds, {len(ledger.listings)} listings, "
            f"{len(ledger.event_log)} events"
        )

    # ── lifecycle ────────────────────────────────────────────────

    def close(self) -> None:
        self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
