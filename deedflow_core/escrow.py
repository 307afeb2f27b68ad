"""
Property-sale escrow for DeedFlow.

An EscrowLedger holds deeds and funds while a sale is in progress:

  1. The seller lists a deed with a buyer, a purchase price and the
     earnest amount.  The deed moves into the escrow's custody.
  2. The buyer deposits earnest money; the lender funds the rest.
  3. The inspector records a pass / fail inspection result.
  4. Buyer, seller and lender each approve the sale.
  5. The seller finalizes (deed to buyer, funds to seller) or the sale
     is cancelled (funds refunded according to the inspection result).

Every operation either applies all of its effects or raises an
:class:`~deedflow_core.errors.EscrowError` and changes nothing.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from deedflow_core.balances import BalanceBook
from deedflow_core.errors import (
    AlreadyListed,
    ApprovalMissing,
    AssetNotApproved,
    AssetNotOwned,
    InspectionNotPassed,
    InsufficientFunds,
    InvalidAddress,
    InvalidAmount,
    NotBuyer,
    NotInspector,
    NotLender,
    NotListed,
    NotSeller,
    StaleNonce,
    Unauthorized,
)
from deedflow_core.precision import format_amount
from deedflow_core.registry import DeedRegistry

logger = logging.getLogger("deedflow_escrow")

ROLES = ("buyer", "seller", "lender")


class ListingStatus(Enum):
    LISTED = "listed"
    FINALIZED = "finalized"
    CANCELLED = "cancelled"


class EventKind(Enum):
    LISTED = "Listed"
    EARNEST_DEPOSITED = "EarnestDeposited"
    FUNDED = "Funded"
    INSPECTION_UPDATED = "InspectionUpdated"
    SALE_APPROVED = "SaleApproved"
    SALE_FINALIZED = "SaleFinalized"
    SALE_CANCELLED = "SaleCancelled"


@dataclass(frozen=True)
class Parties:
    """The fixed participants of an escrow."""
    seller: str
    inspector: str
    lender: str


@dataclass
class Listing:
    """Sale terms and escrow account for one deed."""
    token_id: int
    buyer: str
    purchase_price: int     # base units
    escrow_amount: int      # earnest required from the buyer, base units
    balance: int = 0        # funds held for this listing
    inspection_passed: bool = False
    buyer_approved: bool = False
    seller_approved: bool = False
    lender_approved: bool = False
    status: ListingStatus = ListingStatus.LISTED
    listed_at: float = field(default_factory=time.time)

    @property
    def is_listed(self) -> bool:
        return self.status is ListingStatus.LISTED

    def approved(self, role: str) -> bool:
        return getattr(self, f"{role}_approved")

    def missing_approvals(self) -> list[str]:
        return [role for role in ROLES if not self.approved(role)]

    def to_dict(self) -> dict:
        return {
            "token_id": self.token_id,
            "buyer": self.buyer,
            "purchase_price": self.purchase_price,
            "escrow_amount": self.escrow_amount,
            "balance": self.balance,
            "inspection_passed": self.inspection_passed,
            "approvals": {role: self.approved(role) for role in ROLES},
            "status": self.status.value,
            "listed_at": self.listed_at,
        }


@dataclass
class EscrowEvent:
    """Record of one applied state change."""
    seq: int
    kind: EventKind
    token_id: int
    caller: str
    amount: int = 0
    detail: str = ""
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "seq": self.seq,
            "kind": self.kind.value,
            "token_id": self.token_id,
            "caller": self.caller,
            "amount": self.amount,
            "detail": self.detail,
            "timestamp": self.timestamp,
        }


class EscrowLedger:
    """Runs the sale state machine for every deed held in escrow."""

    def __init__(
        self,
        registry: DeedRegistry,
        balances: BalanceBook,
        parties: Parties,
        address: str = "0xEscrow",
        clock: Callable[[], float] = time.time,
    ):
        self.registry = registry
        self.balances = balances
        self.parties = parties
        self.address = address
        self._clock = clock
        self.listings: dict[int, Listing] = {}
        self.event_log: list[EscrowEvent] = []
        # account -> highest request nonce accepted
        self.nonces: dict[str, int] = {}

    # ── read accessors ───────────────────────────────────────────

    @property
    def nft_address(self) -> str:
        return self.registry.address

    @property
    def seller(self) -> str:
        return self.parties.seller

    @property
    def inspector(self) -> str:
        return self.parties.inspector

    @property
    def lender(self) -> str:
        return self.parties.lender

    def get_listing(self, token_id: int) -> Listing | None:
        return self.listings.get(token_id)

    def is_listed(self, token_id: int) -> bool:
        listing = self.listings.get(token_id)
        return listing is not None and listing.is_listed

    def buyer(self, token_id: int) -> str:
        listing = self.listings.get(token_id)
        return listing.buyer if listing else ""

    def purchase_price(self, token_id: int) -> int:
        listing = self.listings.get(token_id)
        return listing.purchase_price if listing else 0

    def escrow_amount(self, token_id: int) -> int:
        listing = self.listings.get(token_id)
        return listing.escrow_amount if listing else 0

    def inspection_passed(self, token_id: int) -> bool:
        listing = self.listings.get(token_id)
        return listing.inspection_passed if listing else False

    def approval(self, token_id: int, address: str) -> bool:
        listing = self.listings.get(token_id)
        if listing is None:
            return False
        roles = self._roles_of(listing, address)
        return bool(roles) and all(listing.approved(r) for r in roles)

    def balance_of(self, token_id: int) -> int:
        listing = self.listings.get(token_id)
        return listing.balance if listing else 0

    def get_balance(self) -> int:
        """Funds recorded for the escrow holder in the value channel."""
        return self.balances.balance_of(self.address)

    def status(self, token_id: int) -> str:
        listing = self.listings.get(token_id)
        return listing.status.value if listing else "unlisted"

    def active_listings(self) -> list[Listing]:
        return [x for x in self.listings.values() if x.is_listed]

    def events(self, token_id: int | None = None) -> list[EscrowEvent]:
        if token_id is None:
            return list(self.event_log)
        return [e for e in self.event_log if e.token_id == token_id]

    # ── internal helpers ─────────────────────────────────────────

    def _roles_of(self, listing: Listing, address: str) -> list[str]:
        roles = []
        if address == listing.buyer:
            roles.append("buyer")
        if address == self.parties.seller:
            roles.append("seller")
        if address == self.parties.lender:
            roles.append("lender")
        return roles

    def _active(self, token_id: int) -> Listing:
        listing = self.listings.get(token_id)
        if listing is None or not listing.is_listed:
            raise NotListed(f"Token {token_id} is not listed")
        return listing

    def _emit(
        self, kind: EventKind, token_id: int, caller: str,
        amount: int = 0, detail: str = "",
    ) -> EscrowEvent:
        event = EscrowEvent(
            seq=len(self.event_log) + 1,
            kind=kind,
            token_id=token_id,
            caller=caller,
            amount=amount,
            detail=detail,
            timestamp=self._clock(),
        )
        self.event_log.append(event)
        return event

    def _log(self, msg: str, token_id: int, caller: str) -> None:
        logger.info(msg, extra={"token_id": token_id, "caller": caller})

    # ── replay protection ────────────────────────────────────────

    def last_nonce(self, account: str) -> int:
        return self.nonces.get(account, 0)

    def use_nonce(self, account: str, nonce: int) -> None:
        """Accept *nonce* for *account* only if it exceeds every earlier one."""
        last = self.last_nonce(account)
        if nonce <= last:
            raise StaleNonce(f"Nonce {nonce} for {account} is not above {last}")
        self.nonces[account] = nonce

    # ── operations ───────────────────────────────────────────────

    def list(
        self,
        caller: str,
        token_id: int,
        buyer: str,
        purchase_price: int,
        escrow_amount: int,
    ) -> Listing:
        """List a deed for sale and take custody of it."""
        if caller != self.parties.seller:
            raise NotSeller("Only the seller can list a property")
        if self.is_listed(token_id):
            raise AlreadyListed(f"Token {token_id} is already listed")
        if not buyer:
            raise InvalidAddress("A listing needs a buyer")
        if purchase_price <= 0:
            raise InvalidAmount("purchase_price must be positive")
        if escrow_amount < 0 or escrow_amount > purchase_price:
            raise InvalidAmount("escrow_amount must be between 0 and purchase_price")
        if self.registry.owner_of(token_id) != caller:
            raise AssetNotOwned(f"Seller does not own token {token_id}")
        if not self.registry.can_move(self.address, token_id):
            raise AssetNotApproved(f"Escrow is not approved for token {token_id}")

        self.registry.transfer_from(self.address, caller, self.address, token_id)
        listing = Listing(
            token_id=token_id,
            buyer=buyer,
            purchase_price=purchase_price,
            escrow_amount=escrow_amount,
            listed_at=self._clock(),
        )
        self.listings[token_id] = listing
        self._emit(EventKind.LISTED, token_id, caller, purchase_price)
        self._log(
            f"Listed for {format_amount(purchase_price)} "
            f"(earnest {format_amount(escrow_amount)}, buyer {buyer})",
            token_id, caller,
        )
        return listing

    def deposit_earnest(self, caller: str, token_id: int, amount: int) -> int:
        """Move earnest money from the buyer into escrow.  Returns new balance."""
        listing = self._active(token_id)
        if caller != listing.buyer:
            raise NotBuyer("Only the buyer can deposit earnest")
        if amount <= 0:
            raise InvalidAmount("deposit must be positive")
        self.balances.transfer(caller, self.address, amount)
        listing.balance += amount
        self._emit(EventKind.EARNEST_DEPOSITED, token_id, caller, amount)
        self._log(f"Earnest {format_amount(amount)} deposited", token_id, caller)
        return listing.balance

    def fund(self, caller: str, token_id: int, amount: int) -> int:
        """Lender pays the remainder into escrow.  Returns new balance."""
        listing = self._active(token_id)
        if caller != self.parties.lender:
            raise NotLender("Only the lender can fund a listing")
        if amount <= 0:
            raise InvalidAmount("funding must be positive")
        self.balances.transfer(caller, self.address, amount)
        listing.balance += amount
        self._emit(EventKind.FUNDED, token_id, caller, amount)
        self._log(f"Lender funded {format_amount(amount)}", token_id, caller)
        return listing.balance

    def update_inspection_status(self, caller: str, token_id: int, passed: bool) -> None:
        listing = self._active(token_id)
        if caller != self.parties.inspector:
            raise NotInspector("Only the inspector can update inspection status")
        listing.inspection_passed = bool(passed)
        self._emit(
            EventKind.INSPECTION_UPDATED, token_id, caller,
            detail="passed" if passed else "failed",
        )
        self._log(f"Inspection {'passed' if passed else 'failed'}", token_id, caller)

    def approve_sale(self, caller: str, token_id: int) -> None:
        listing = self._active(token_id)
        roles = self._roles_of(listing, caller)
        if not roles:
            raise Unauthorized("Only buyer, seller or lender can approve")
        for role in roles:
            setattr(listing, f"{role}_approved", True)
        self._emit(EventKind.SALE_APPROVED, token_id, caller, detail=",".join(roles))
        self._log(f"Sale approved by {'/'.join(roles)}", token_id, caller)

    def finalize_sale(self, caller: str, token_id: int) -> None:
        """Complete the sale: deed to buyer, funds to seller."""
        listing = self._active(token_id)
        if caller != self.parties.seller:
            raise NotSeller("Only the seller can finalize")
        if not listing.inspection_passed:
            raise InspectionNotPassed(f"Inspection for token {token_id} has not passed")
        missing = listing.missing_approvals()
        if missing:
            raise ApprovalMissing(missing)
        if listing.balance < listing.purchase_price:
            raise InsufficientFunds(
                f"Escrow holds {format_amount(listing.balance)}, "
                f"price is {format_amount(listing.purchase_price)}"
            )

        payout = listing.balance
        self.registry.transfer_from(self.address, self.address, listing.buyer, token_id)
        self.balances.transfer(self.address, self.parties.seller, payout)
        listing.balance = 0
        listing.status = ListingStatus.FINALIZED
        self._emit(EventKind.SALE_FINALIZED, token_id, caller, payout)
        self._log(
            f"Sale finalized: {format_amount(payout)} to seller, deed to {listing.buyer}",
            token_id, caller,
        )

    def cancel_sale(self, caller: str, token_id: int) -> str:
        """
        Abort the sale and return the deed to the seller.

        If the inspection has not passed the buyer gets the escrow balance
        back; otherwise the seller keeps it.  Returns the refund recipient.
        """
        listing = self._active(token_id)
        if caller not in (self.parties.seller, listing.buyer):
            raise Unauthorized("Only the seller or buyer can cancel")

        recipient = self.parties.seller if listing.inspection_passed else listing.buyer
        refund = listing.balance
        self.registry.transfer_from(self.address, self.address, self.parties.seller, token_id)
        self.balances.transfer(self.address, recipient, refund)
        listing.balance = 0
        listing.status = ListingStatus.CANCELLED
        self._emit(EventKind.SALE_CANCELLED, token_id, caller, refund, detail=recipient)
        self._log(
            f"Sale cancelled: {format_amount(refund)} to {recipient}", token_id, caller,
        )
        return recipient

    # ── aggregates ───────────────────────────────────────────────

    def total_held(self) -> int:
        return sum(x.balance for x in self.listings.values() if x.is_listed)

    def summary(self) -> dict:
        return {
            "escrow_address": self.address,
            "nft_address": self.nft_address,
            "active_listings": len(self.active_listings()),
            "total_listings": len(self.listings),
            "total_held": self.total_held(),
            "holder_balance": self.get_balance(),
            "events": len(self.event_log),
        }
