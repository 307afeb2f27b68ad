"""
Tests for deedflow_core.node — the EscrowNode that ties registry, balance
book, escrow ledger and store together.
"""

from __future__ import annotations

import logging

import pytest

from deedflow_core.config import DeedFlowConfig
from deedflow_core.errors import InspectionNotPassed, NotSeller, StaleNonce
from deedflow_core.node import EscrowNode
from deedflow_core.precision import tokens


class TestConstruction:

    def test_requires_parties(self):
        with pytest.raises(ValueError):
            EscrowNode(DeedFlowConfig())

    def test_no_store_by_default(self, node_config):
        node = EscrowNode(node_config)
        assert node.store is None
        assert node.registry.address == "0xDeedRegistry"
        assert node.ledger.address == "0xEscrow"


class TestBootstrap:

    def test_genesis(self, node_config, signers):
        node = EscrowNode(node_config)
        node.load_or_bootstrap()
        assert node.balances.balance_of(signers["buyer"].address) == tokens(100)
        assert node.balances.balance_of(signers["lender"].address) == tokens(100)
        assert node.registry.owner_of(1) == signers["seller"].address
        assert node.registry.token_uri(1) == "ipfs://deed-1"

    def test_status(self, node_config, signers):
        node = EscrowNode(node_config)
        node.bootstrap()
        s = node.status()
        assert s["seller"] == signers["seller"].address
        assert s["deeds"] == 1
        assert s["active_listings"] == 0
        assert s["persistent"] is False


class TestOperations:

    @pytest.fixture
    def node(self, node_config):
        n = EscrowNode(node_config)
        n.bootstrap()
        return n

    def test_full_sale(self, node, signers):
        seller = signers["seller"].address
        buyer = signers["buyer"].address
        lender = signers["lender"].address
        inspector = signers["inspector"].address

        node.approve_deed(seller, node.ledger.address, 1)
        node.list(seller, 1, buyer, tokens(10), tokens(5))
        assert node.deposit_earnest(buyer, 1, tokens(5)) == tokens(5)
        node.update_inspection_status(inspector, 1, True)
        for party in (buyer, seller, lender):
            node.approve_sale(party, 1)
        assert node.fund(lender, 1, tokens(5)) == tokens(10)
        node.finalize_sale(seller, 1)

        assert node.registry.owner_of(1) == buyer
        assert node.balances.balance_of(seller) == tokens(10)
        assert node.ledger.get_balance() == 0

    def test_operator_listing(self, node, signers):
        seller = signers["seller"].address
        node.set_operator(seller, node.ledger.address, True)
        node.list(seller, 1, signers["buyer"].address, tokens(1), 0)
        assert node.ledger.is_listed(1)

    def test_mint(self, node, signers):
        assert node.mint(signers["seller"].address, "ipfs://deed-2") == 2

    def test_rejection_logged_and_reraised(self, node, signers, caplog):
        with caplog.at_level(logging.WARNING, logger="deedflow_node"):
            with pytest.raises(NotSeller):
                node.list(signers["buyer"].address, 1, signers["buyer"].address,
                          tokens(10), tokens(5))
        assert "list rejected: NotSeller" in caplog.text

    def test_cancel_returns_recipient(self, node, signers):
        seller = signers["seller"].address
        buyer = signers["buyer"].address
        node.approve_deed(seller, node.ledger.address, 1)
        node.list(seller, 1, buyer, tokens(10), tokens(5))
        node.deposit_earnest(buyer, 1, tokens(2))
        assert node.cancel_sale(buyer, 1) == buyer
        assert node.balances.balance_of(buyer) == tokens(100)


class TestPersistence:

    def test_state_survives_restart(self, node_config, signers, tmp_path):
        node_config.storage.enabled = True
        node_config.storage.path = str(tmp_path / "node.db")
        seller = signers["seller"].address
        buyer = signers["buyer"].address

        node = EscrowNode(node_config)
        node.load_or_bootstrap()
        node.approve_deed(seller, node.ledger.address, 1)
        node.list(seller, 1, buyer, tokens(10), tokens(5))
        node.deposit_earnest(buyer, 1, tokens(5))
        node.close()

        again = EscrowNode(node_config)
        again.load_or_bootstrap()
        assert again.ledger.is_listed(1)
        assert again.ledger.balance_of(1) == tokens(5)
        assert again.balances.balance_of(buyer) == tokens(95)
        assert again.registry.owner_of(1) == again.ledger.address
        # genesis is not applied twice
        assert again.registry.total_supply() == 1
        assert again.status()["persistent"] is True
        again.close()

    def test_rejected_operation_not_persisted(self, node_config, signers, tmp_path):
        node_config.storage.enabled = True
        node_config.storage.path = str(tmp_path / "node.db")
        seller = signers["seller"].address

        node = EscrowNode(node_config)
        node.load_or_bootstrap()
        node.approve_deed(seller, node.ledger.address, 1)
        node.list(seller, 1, signers["buyer"].address, tokens(10), tokens(5))
        with pytest.raises(InspectionNotPassed):
            node.finalize_sale(seller, 1)
        events = node.store.load_events()
        assert [e["kind"] for e in events] == ["Listed"]
        node.close()

    def test_nonce_survives_restart(self, node_config, signers, tmp_path):
        node_config.storage.enabled = True
        node_config.storage.path = str(tmp_path / "node.db")
        buyer = signers["buyer"].address

        node = EscrowNode(node_config)
        node.load_or_bootstrap()
        node.use_nonce(buyer, 3)
        node.close()

        again = EscrowNode(node_config)
        again.load_or_bootstrap()
        assert again.ledger.last_nonce(buyer) == 3
        with pytest.raises(StaleNonce):
            again.use_nonce(buyer, 3)
        again.close()
