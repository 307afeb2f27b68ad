"""
DeedFlow - escrow ledger for tokenized real-estate sales.

Key features:
- Property deeds as non-fungible tokens with ERC-721 style approvals
- Escrow state machine: listing, earnest deposit, inspection, approvals,
  finalization or cancellation
- Integer fixed-point amounts (18 decimals)
- secp256k1-signed HTTP API
- SQLite persistence of registry, balances, listings and events
"""

__version__ = "0.3.0"
__all__ = [
    "api",
    "balances",
    "config",
    "errors",
    "escrow",
    "logging_config",
    "node",
    "precision",
    "registry",
    "signing",
    "storage",
]
