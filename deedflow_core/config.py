"""
TOML-based configuration for DeedFlow nodes.

Loads settings from a TOML file and/or environment variables.
Environment variables take precedence over file values.

Usage:
    from deedflow_core.config import load_config
    cfg = load_config("deedflow.toml")
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    try:
        import tomllib  # type: ignore[import]
    except ModuleNotFoundError:
        import tomli as tomllib  # type: ignore[import,no-redef]


@dataclass
class EscrowConfig:
    """Escrow holder identity and the fixed sale participants."""
    address: str = "0xEscrow"
    nft_address: str = "0xDeedRegistry"
    seller: str = ""
    inspector: str = ""
    lender: str = ""


@dataclass
class GenesisConfig:
    """
    Initial funding.

    ``balances`` maps address → starting balance in whole tokens.
    ``deeds`` lists metadata URIs minted to the seller at startup.
    """
    balances: dict[str, float] = field(default_factory=dict)
    deeds: list[str] = field(default_factory=list)


@dataclass
class APIConfig:
    """REST API settings."""
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 8080
    api_key: str = ""                 # require this key on POST endpoints (empty = no auth)
    require_signatures: bool = True   # POST bodies must be signed by ``account``
    rate_limit_rpm: int = 120          # max requests per minute per IP (0 = unlimited)
    cors_origins: list[str] = field(default_factory=list)  # allowed CORS origins (empty = no CORS)
    max_body_bytes: int = 65_536


@dataclass
class StorageConfig:
    """Persistence settings."""
    enabled: bool = False
    path: str = "data/deedflow.db"


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    format: str = "human"   # "human" or "json"
    file: str | None = None


@dataclass
class DeedFlowConfig:
    """Top-level configuration container."""
    escrow: EscrowConfig = field(default_factory=EscrowConfig)
    genesis: GenesisConfig = field(default_factory=GenesisConfig)
    api: APIConfig = field(default_factory=APIConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _merge(dc: Any, raw: dict[str, Any]) -> None:
    """Merge a raw dict into a dataclass instance (in-place)."""
    for key, value in raw.items():
        key_under = key.replace("-", "_")
        if hasattr(dc, key_under):
            setattr(dc, key_under, value)


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_config(path: str | None = None) -> DeedFlowConfig:
    """
    Load configuration from a TOML file, then overlay environment variables.

    Env-var mapping:
        DEEDFLOW_SELLER         -> escrow.seller
        DEEDFLOW_INSPECTOR      -> escrow.inspector
        DEEDFLOW_LENDER         -> escrow.lender
        DEEDFLOW_ESCROW_ADDRESS -> escrow.address
        DEEDFLOW_HOST           -> api.host
        DEEDFLOW_API_PORT       -> api.port
        DEEDFLOW_API_KEY        -> api.api_key
        DEEDFLOW_REQUIRE_SIGS   -> api.require_signatures
        DEEDFLOW_CORS_ORIGINS   -> api.cors_origins   (comma-separated)
        DEEDFLOW_DB_PATH        -> storage.path (and enables storage)
        DEEDFLOW_LOG_LEVEL      -> logging.level
        DEEDFLOW_LOG_FMT        -> logging.format
    """
    cfg = DeedFlowConfig()

    # ── TOML file ────────────────────────────────────────────────
    if path is not None:
        p = Path(path)
        if p.exists():
            with open(p, "rb") as f:
                data = tomllib.load(f)
            for section_name, section_dc in [
                ("escrow", cfg.escrow),
                ("genesis", cfg.genesis),
                ("api", cfg.api),
                ("storage", cfg.storage),
                ("logging", cfg.logging),
            ]:
                if section_name in data:
                    _merge(section_dc, data[section_name])

    # ── Environment variable overrides ───────────────────────────
    if v := os.environ.get("DEEDFLOW_SELLER"):
        cfg.escrow.seller = v
    if v := os.environ.get("DEEDFLOW_INSPECTOR"):
        cfg.escrow.inspector = v
    if v := os.environ.get("DEEDFLOW_LENDER"):
        cfg.escrow.lender = v
    if v := os.environ.get("DEEDFLOW_ESCROW_ADDRESS"):
        cfg.escrow.address = v
    if v := os.environ.get("DEEDFLOW_HOST"):
        cfg.api.host = v
    if v := os.environ.get("DEEDFLOW_API_PORT"):
        cfg.api.port = int(v)
    if v := os.environ.get("DEEDFLOW_API_KEY"):
        cfg.api.api_key = v
    if v := os.environ.get("DEEDFLOW_REQUIRE_SIGS"):
        cfg.api.require_signatures = _env_bool(v)
    if v := os.environ.get("DEEDFLOW_CORS_ORIGINS"):
        cfg.api.cors_origins = [o.strip() for o in v.split(",") if o.strip()]
    if v := os.environ.get("DEEDFLOW_DB_PATH"):
        cfg.storage.path = v
        cfg.storage.enabled = True
    if v := os.environ.get("DEEDFLOW_LOG_LEVEL"):
        cfg.logging.level = v.upper()
    if v := os.environ.get("DEEDFLOW_LOG_FMT"):
        cfg.logging.format = v

    return cfg
