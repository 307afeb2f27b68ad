"""
Tests for the property deed registry.

Covers:
  - Minting (sequential ids, metadata)
  - Single-token approval and operator approval
  - transfer_from authorisation
  - Unknown tokens
"""

import unittest

from deedflow_core.errors import AssetNotApproved, AssetNotOwned, UnknownToken
from deedflow_core.registry import Deed, DeedRegistry

ALICE = "0xAlice"
BOB = "0xBob"
CAROL = "0xCarol"


class TestMint(unittest.TestCase):

    def setUp(self):
        self.reg = DeedRegistry("0xRealEstate")

    def test_sequential_ids(self):
        self.assertEqual(self.reg.mint(ALICE, "ipfs://a"), 1)
        self.assertEqual(self.reg.mint(ALICE, "ipfs://b"), 2)
        self.assertEqual(self.reg.mint(BOB), 3)
        self.assertEqual(self.reg.total_supply(), 3)

    def test_owner_and_uri(self):
        token_id = self.reg.mint(ALICE, "ipfs://house", now=12.0)
        self.assertEqual(self.reg.owner_of(token_id), ALICE)
        self.assertEqual(self.reg.token_uri(token_id), "ipfs://house")
        self.assertEqual(self.reg.deeds[token_id].create_time, 12.0)

    def test_tokens_of(self):
        self.reg.mint(ALICE)
        self.reg.mint(BOB)
        self.reg.mint(ALICE)
        self.assertEqual(self.reg.tokens_of(ALICE), [1, 3])
        self.assertEqual(self.reg.tokens_of(CAROL), [])

    def test_unknown_token(self):
        with self.assertRaises(UnknownToken):
            self.reg.owner_of(5)
        with self.assertRaises(UnknownToken):
            self.reg.get_approved(5)

    def test_to_dict(self):
        d = Deed(token_id=1, owner=ALICE, uri="u", create_time=1.0).to_dict()
        self.assertEqual(d, {
            "token_id": 1, "owner": ALICE, "uri": "u",
            "approved": "", "create_time": 1.0,
        })


class TestApproval(unittest.TestCase):

    def setUp(self):
        self.reg = DeedRegistry()
        self.token_id = self.reg.mint(ALICE)

    def test_owner_approves(self):
        self.reg.approve(ALICE, BOB, self.token_id)
        self.assertEqual(self.reg.get_approved(self.token_id), BOB)
        self.assertTrue(self.reg.can_move(BOB, self.token_id))

    def test_stranger_cannot_approve(self):
        with self.assertRaises(AssetNotOwned):
            self.reg.approve(BOB, BOB, self.token_id)

    def test_operator_can_approve(self):
        self.reg.set_approval_for_all(ALICE, CAROL, True)
        self.reg.approve(CAROL, BOB, self.token_id)
        self.assertEqual(self.reg.get_approved(self.token_id), BOB)

    def test_operator_revoked(self):
        self.reg.set_approval_for_all(ALICE, CAROL, True)
        self.assertTrue(self.reg.is_approved_for_all(ALICE, CAROL))
        self.reg.set_approval_for_all(ALICE, CAROL, False)
        self.assertFalse(self.reg.is_approved_for_all(ALICE, CAROL))
        self.assertFalse(self.reg.can_move(CAROL, self.token_id))


class TestTransfer(unittest.TestCase):

    def setUp(self):
        self.reg = DeedRegistry()
        self.token_id = self.reg.mint(ALICE)

    def test_owner_transfers(self):
        self.reg.transfer_from(ALICE, ALICE, BOB, self.token_id)
        self.assertEqual(self.reg.owner_of(self.token_id), BOB)

    def test_approved_spender_transfers_and_approval_clears(self):
        self.reg.approve(ALICE, CAROL, self.token_id)
        self.reg.transfer_from(CAROL, ALICE, CAROL, self.token_id)
        self.assertEqual(self.reg.owner_of(self.token_id), CAROL)
        self.assertEqual(self.reg.get_approved(self.token_id), "")

    def test_unapproved_spender_rejected(self):
        with self.assertRaises(AssetNotApproved):
            self.reg.transfer_from(BOB, ALICE, BOB, self.token_id)
        self.assertEqual(self.reg.owner_of(self.token_id), ALICE)

    def test_wrong_from(self):
        with self.assertRaises(AssetNotOwned):
            self.reg.transfer_from(ALICE, BOB, CAROL, self.token_id)

    def test_empty_destination(self):
        with self.assertRaises(AssetNotApproved):
            self.reg.transfer_from(ALICE, ALICE, "", self.token_id)


if __name__ == "__main__":
    unittest.main()
