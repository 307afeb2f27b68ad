"""
Property deed registry for DeedFlow.

Each property is a non-fungible token with:
  - Sequential token ids starting at 1
  - A single owner and an optional approved address
  - Operator approvals (an operator may move every token of an owner)
  - An opaque metadata URI (never fetched)

Follows the ERC-721 ownership / approval rules.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

from deedflow_core.errors import AssetNotApproved, AssetNotOwned, UnknownToken

logger = logging.getLogger("deedflow_registry")


@dataclass
class Deed:
    """A single property token."""
    token_id: int
    owner: str
    uri: str
    approved: str = ""      # single-token approval (empty = none)
    create_time: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "token_id": self.token_id,
            "owner": self.owner,
            "uri": self.uri,
            "approved": self.approved,
            "create_time": self.create_time,
        }


class DeedRegistry:
    """Tracks every deed, its owner, and who may move it."""

    def __init__(self, address: str = "0xDeedRegistry"):
        self.address = address
        self.deeds: dict[int, Deed] = {}
        # owner -> set of operator addresses
        self.operators: dict[str, set[str]] = {}
        self._next_id = 1

    def _get(self, token_id: int) -> Deed:
        deed = self.deeds.get(token_id)
        if deed is None:
            raise UnknownToken(f"Token {token_id} does not exist")
        return deed

    def mint(self, owner: str, uri: str = "", now: float | None = None) -> int:
        """Mint a new deed to *owner* and return its token id."""
        token_id = self._next_id
        self._next_id += 1
        self.deeds[token_id] = Deed(
            token_id=token_id,
            owner=owner,
            uri=uri,
            create_time=now if now is not None else time.time(),
        )
        logger.info(f"Minted deed #{token_id} to {owner}")
        return token_id

    def owner_of(self, token_id: int) -> str:
        return self._get(token_id).owner

    def token_uri(self, token_id: int) -> str:
        return self._get(token_id).uri

    def total_supply(self) -> int:
        return len(self.deeds)

    def tokens_of(self, owner: str) -> list[int]:
        return sorted(t for t, d in self.deeds.items() if d.owner == owner)

    # ── approvals ────────────────────────────────────────────────

    def approve(self, caller: str, spender: str, token_id: int) -> None:
        """Let *spender* move *token_id*.  Owner or operator only."""
        deed = self._get(token_id)
        if caller != deed.owner and not self.is_approved_for_all(deed.owner, caller):
            raise AssetNotOwned(f"{caller} cannot approve token {token_id}")
        deed.approved = spender

    def get_approved(self, token_id: int) -> str:
        return self._get(token_id).approved

    def set_approval_for_all(self, caller: str, operator: str, approved: bool) -> None:
        ops = self.operators.setdefault(caller, set())
        if approved:
            ops.add(operator)
        else:
            ops.discard(operator)

    def is_approved_for_all(self, owner: str, operator: str) -> bool:
        return operator in self.operators.get(owner, set())

    def can_move(self, spender: str, token_id: int) -> bool:
        """True if *spender* is the owner, approved, or an operator."""
        deed = self._get(token_id)
        return (
            spender == deed.owner
            or spender == deed.approved
            or self.is_approved_for_all(deed.owner, spender)
        )

    # ── transfer ─────────────────────────────────────────────────

    def transfer_from(self, caller: str, from_: str, to: str, token_id: int) -> None:
        """Move *token_id* from *from_* to *to* on behalf of *caller*."""
        deed = self._get(token_id)
        if deed.owner != from_:
            raise AssetNotOwned(f"Token {token_id} is not owned by {from_}")
        if not to:
            raise AssetNotApproved("Cannot transfer to the empty address")
        if not self.can_move(caller, token_id):
            raise AssetNotApproved(f"{caller} is not approved for token {token_id}")
        deed.owner = to
        deed.approved = ""
        logger.debug(f"Deed #{token_id}: {from_} -> {to}")
