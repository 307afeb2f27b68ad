"""
Tests for SQLite persistence layer (storage.py).

Covers:
  - Schema creation and version guard
  - snapshot / restore roundtrip (deeds, operators, balances, listings, events)
  - Large amounts survive the TEXT encoding
  - Failed snapshot rolls back
  - Context manager lifecycle
"""

from __future__ import annotations

import os
import sqlite3

import pytest

from deedflow_core.balances import BalanceBook
from deedflow_core.escrow import EscrowLedger, EventKind, ListingStatus, Parties
from deedflow_core.precision import tokens
from deedflow_core.registry import DeedRegistry
from deedflow_core.storage import EscrowStore

BUYER, SELLER, INSPECTOR, LENDER = "0xBuyer", "0xSeller", "0xInspector", "0xLender"
ESCROW = "0xEscrow"


@pytest.fixture
def store(tmp_path):
    """Fresh EscrowStore in a temp directory."""
    s = EscrowStore(str(tmp_path / "test.db"))
    yield s
    s.close()


def _fresh_ledger() -> EscrowLedger:
    return EscrowLedger(
        DeedRegistry("0xRealEstate"), BalanceBook(),
        Parties(SELLER, INSPECTOR, LENDER), address=ESCROW,
    )


# ═══════════════════════════════════════════════════════════════════
#  Schema
# ═══════════════════════════════════════════════════════════════════

class TestSchema:
    def test_tables_created(self, store):
        tables = store._conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table'"
        ).fetchall()
        names = {r["name"] for r in tables}
        assert {"deeds", "operators", "balances", "listings", "events",
                "schema_version"} <= names

    def test_wal_mode_enabled(self, store):
        mode = store._conn.execute("PRAGMA journal_mode").fetchone()[0]
        assert mode == "wal"

    def test_directory_created_if_missing(self, tmp_path):
        deep_path = str(tmp_path / "a" / "b" / "deedflow.db")
        s = EscrowStore(deep_path)
        assert os.path.isfile(deep_path)
        s.close()

    def test_schema_version_recorded(self, store):
        row = store._conn.execute("SELECT version FROM schema_version").fetchone()
        assert row["version"] == EscrowStore.CURRENT_SCHEMA_VERSION

    def test_older_schema_upgraded(self, tmp_path):
        path = str(tmp_path / "old.db")
        s = EscrowStore(path)
        s._conn.execute("DROP TABLE nonces")
        s._conn.execute("UPDATE schema_version SET version = 1")
        s._conn.commit()
        s.close()
        s = EscrowStore(path)
        row = s._conn.execute("SELECT version FROM schema_version").fetchone()
        assert row["version"] == EscrowStore.CURRENT_SCHEMA_VERSION
        assert s.load_nonces() == {}
        s.close()

    def test_newer_schema_rejected(self, tmp_path):
        path = str(tmp_path / "future.db")
        s = EscrowStore(path)
        s._conn.execute("UPDATE schema_version SET version = 99")
        s._conn.commit()
        s.close()
        with pytest.raises(RuntimeError):
            EscrowStore(path)

    def test_empty_db(self, store):
        assert store.load_deeds() == []
        assert store.load_balances() == {}
        assert store.load_listings() == []
        assert store.load_events() == []
        assert store.load_nonces() == {}


# ═══════════════════════════════════════════════════════════════════
#  Snapshot / restore
# ═══════════════════════════════════════════════════════════════════

class TestSnapshotRestore:
    def test_roundtrip(self, store, listed_ledger):
        ledger = listed_ledger
        ledger.registry.set_approval_for_all(SELLER, "0xAgent", True)
        ledger.deposit_earnest(BUYER, 1, tokens(5))
        ledger.update_inspection_status(INSPECTOR, 1, True)
        ledger.approve_sale(BUYER, 1)
        store.snapshot(ledger)

        restored = _fresh_ledger()
        store.restore(restored)

        assert restored.registry.owner_of(1) == ESCROW
        assert restored.registry.token_uri(1) == "ipfs://deed-1"
        assert restored.registry.is_approved_for_all(SELLER, "0xAgent")
        assert restored.balances.balances == ledger.balances.balances
        assert restored.get_listing(1) == ledger.get_listing(1)
        assert restored.event_log == ledger.event_log
        assert restored.approval(1, BUYER)
        assert not restored.approval(1, SELLER)

    def test_nonces_roundtrip(self, store, ledger):
        ledger.use_nonce(BUYER, 4)
        ledger.use_nonce(SELLER, 2 ** 62)
        store.snapshot(ledger)
        ledger.use_nonce(BUYER, 9)
        store.snapshot(ledger)
        restored = _fresh_ledger()
        store.restore(restored)
        assert restored.nonces == {BUYER: 9, SELLER: 2 ** 62}

    def test_next_token_id_continues(self, store, ledger):
        ledger.registry.mint(SELLER)
        store.snapshot(ledger)
        restored = _fresh_ledger()
        store.restore(restored)
        assert restored.registry.mint(SELLER) == 3

    def test_large_amounts(self, store, ledger):
        big = tokens(10 ** 9)
        ledger.balances.credit("0xWhale", big)
        store.snapshot(ledger)
        assert store.load_balances()["0xWhale"] == big

    def test_repeated_snapshots_track_changes(self, store, listed_ledger):
        store.snapshot(listed_ledger)
        listed_ledger.cancel_sale(SELLER, 1)
        store.snapshot(listed_ledger)
        rows = store.load_listings()
        assert len(rows) == 1
        assert rows[0]["status"] == ListingStatus.CANCELLED.value
        kinds = [r["kind"] for r in store.load_events()]
        assert kinds == [EventKind.LISTED.value, EventKind.SALE_CANCELLED.value]

    def test_revoked_operator_removed(self, store, ledger):
        ledger.registry.set_approval_for_all(SELLER, "0xAgent", True)
        store.snapshot(ledger)
        ledger.registry.set_approval_for_all(SELLER, "0xAgent", False)
        store.snapshot(ledger)
        rows = store._conn.execute("SELECT * FROM operators").fetchall()
        assert rows == []

    def test_events_by_token(self, store, listed_ledger):
        token2 = listed_ledger.registry.mint(SELLER)
        listed_ledger.registry.approve(SELLER, ESCROW, token2)
        listed_ledger.list(SELLER, token2, BUYER, tokens(2), 0)
        store.snapshot(listed_ledger)
        assert [r["seq"] for r in store.load_events(token2)] == [2]
        assert len(store.load_events()) == 2

    def test_failed_snapshot_rolls_back(self, store, listed_ledger):
        store.snapshot(listed_ledger)
        listed_ledger.deposit_earnest(BUYER, 1, tokens(5))
        listed_ledger.event_log.append(object())  # not an event
        with pytest.raises(AttributeError):
            store.snapshot(listed_ledger)
        assert store.load_listings()[0]["balance"] == "0"
        assert store.load_balances()[BUYER] == tokens(100)
        assert not store._conn.in_transaction


class TestLifecycle:
    def test_context_manager(self, tmp_path):
        with EscrowStore(str(tmp_path / "cm.db")) as s:
            assert s.load_deeds() == []
        with pytest.raises(sqlite3.ProgrammingError):
            s.load_deeds()
