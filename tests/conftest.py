"""
Shared pytest fixtures for the DeedFlow test suite.
"""

import pytest

from deedflow_core.balances import BalanceBook
from deedflow_core.config import DeedFlowConfig
from deedflow_core.escrow import EscrowLedger, Parties
from deedflow_core.precision import tokens
from deedflow_core.registry import DeedRegistry
from deedflow_core.signing import Signer

BUYER = "0xBuyer"
SELLER = "0xSeller"
INSPECTOR = "0xInspector"
LENDER = "0xLender"
ESCROW = "0xEscrow"


@pytest.fixture
def registry():
    return DeedRegistry("0xRealEstate")


@pytest.fixture
def balances():
    """Buyer and lender each start with 100 tokens."""
    book = BalanceBook()
    book.credit(BUYER, tokens(100))
    book.credit(LENDER, tokens(100))
    return book


@pytest.fixture
def ledger(registry, balances):
    """Escrow with one deed minted to the seller, approved but not listed."""
    esc = EscrowLedger(
        registry, balances,
        Parties(seller=SELLER, inspector=INSPECTOR, lender=LENDER),
        address=ESCROW,
        clock=lambda: 1_000_000.0,
    )
    token_id = registry.mint(SELLER, "ipfs://deed-1", now=1000.0)
    registry.approve(SELLER, ESCROW, token_id)
    return esc


@pytest.fixture
def listed_ledger(ledger):
    """Token 1 listed to the buyer at price 10, earnest 5."""
    ledger.list(SELLER, 1, BUYER, tokens(10), tokens(5))
    return ledger


@pytest.fixture
def signers():
    """Deterministic keys for every role."""
    return {role: Signer.from_seed(f"fixture-{role}")
            for role in ("buyer", "seller", "inspector", "lender")}


@pytest.fixture
def node_config(signers):
    cfg = DeedFlowConfig()
    cfg.escrow.seller = signers["seller"].address
    cfg.escrow.inspector = signers["inspector"].address
    cfg.escrow.lender = signers["lender"].address
    cfg.genesis.balances = {
        signers["buyer"].address: 100.0,
        signers["lender"].address: 100.0,
    }
    cfg.genesis.deeds = ["ipfs://deed-1"]
    return cfg
