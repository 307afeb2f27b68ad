"""
Error taxonomy for DeedFlow.

Every failed ledger operation raises a subclass of :class:`EscrowError`
and leaves all state untouched.  Each class carries a stable ``code``
string that the API layer returns to clients.
"""

from __future__ import annotations


class EscrowError(Exception):
    """Base class for all ledger failures."""
    code = "EscrowError"


# ── authorization ────────────────────────────────────────────────

class Unauthorized(EscrowError):
    """The caller does not hold the role the operation requires."""
    code = "Unauthorized"


class NotSeller(Unauthorized):
    code = "NotSeller"


class NotBuyer(Unauthorized):
    code = "NotBuyer"


class NotInspector(Unauthorized):
    code = "NotInspector"


class NotLender(Unauthorized):
    code = "NotLender"


# ── listing state ────────────────────────────────────────────────

class NotListed(EscrowError):
    code = "NotListed"


class AlreadyListed(EscrowError):
    code = "AlreadyListed"


class InspectionNotPassed(EscrowError):
    code = "InspectionNotPassed"


class ApprovalMissing(EscrowError):
    """Raised by finalization when one or more parties have not approved."""
    code = "ApprovalMissing"

    def __init__(self, missing: list[str]):
        self.missing = list(missing)
        super().__init__(f"Approval missing from: {', '.join(self.missing)}")


# ── value ────────────────────────────────────────────────────────

class InsufficientFunds(EscrowError):
    code = "InsufficientFunds"


class InvalidAmount(EscrowError):
    code = "InvalidAmount"


class InvalidAddress(EscrowError):
    code = "InvalidAddress"


# ── replay protection ────────────────────────────────────────────

class StaleNonce(EscrowError):
    """A signed request reused a nonce at or below the account's last one."""
    code = "StaleNonce"


# ── asset registry ───────────────────────────────────────────────

class UnknownToken(EscrowError):
    code = "UnknownToken"


class AssetNotOwned(EscrowError):
    code = "AssetNotOwned"


class AssetNotApproved(EscrowError):
    code = "AssetNotApproved"
