"""
Value-transfer channel for DeedFlow.

A minimal account book: every address has a non-negative integer balance
in base units.  Transfers either apply in full or raise without touching
either side.
"""

from __future__ import annotations

from deedflow_core.errors import InsufficientFunds, InvalidAmount
from deedflow_core.precision import format_amount


class BalanceBook:
    """Per-address balances."""

    def __init__(self):
        self.balances: dict[str, int] = {}

    def balance_of(self, address: str) -> int:
        return self.balances.get(address, 0)

    def credit(self, address: str, amount: int) -> int:
        """Mint *amount* into *address* (genesis / faucet funding)."""
        if amount <= 0:
            raise InvalidAmount("credit amount must be positive")
        self.balances[address] = self.balance_of(address) + amount
        return self.balances[address]

    def can_pay(self, address: str, amount: int) -> bool:
        return self.balance_of(address) >= amount

    def transfer(self, source: str, destination: str, amount: int) -> None:
        if amount < 0:
            raise InvalidAmount("transfer amount must not be negative")
        have = self.balance_of(source)
        if have < amount:
            raise InsufficientFunds(
                f"{source} has {format_amount(have)}, needs {format_amount(amount)}"
            )
        if amount == 0 or source == destination:
            return
        self.balances[source] = have - amount
        self.balances[destination] = self.balance_of(destination) + amount

    def total(self) -> int:
        return sum(self.balances.values())
