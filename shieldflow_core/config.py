"""
TOML-based configuration for ShieldFlow wallets.

Loads settings from a TOML file and/or environment variables.
Environment variables take precedence over file values.

Usage:
    from shieldflow_core.config import load_config
    cfg = load_config("shieldflow.toml")
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
    import tomli as tomllib  # type: ignore[import,no-redef]


@dataclass
class NetworkConfig:
    """Human-readable prefixes for encoded addresses and viewing keys."""
    address_prefix: str = "zs"
    viewing_key_prefix: str = "zxview"


@dataclass
class TreeConfig:
    """Note-commitment tree shape."""
    depth: int = 32
    root_history: int = 100   # recent roots accepted as spend anchors


@dataclass
class ScanConfig:
    """Trial-decryption settings."""
    workers: int = 4


@dataclass
class ProverConfig:
    """
    Proof backend.

    Only ``"stub"`` is built in; real backends are injected as an
    ``ExternalProverGateway`` by the embedding application.
    """
    backend: str = "stub"
    stub_key: str = ""        # hex; empty = built-in development key


@dataclass
class StorageConfig:
    """Persistence settings."""
    enabled: bool = False
    path: str = "data/wallet.db"


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    format: str = "human"   # "human" or "json"
    file: str | None = None


@dataclass
class ShieldFlowConfig:
    """Top-level configuration container."""
    network: NetworkConfig = field(default_factory=NetworkConfig)
    tree: TreeConfig = field(default_factory=TreeConfig)
    scan: ScanConfig = field(default_factory=ScanConfig)
    prover: ProverConfig = field(default_factory=ProverConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _merge(dc: Any, raw: dict[str, Any]) -> None:
    """Merge a raw dict into a dataclass instance (in-place)."""
    for key, value in raw.items():
        key_under = key.replace("-", "_")
        if hasattr(dc, key_under):
            setattr(dc, key_under, value)


def load_config(path: str | None = None) -> ShieldFlowConfig:
    """
    Load configuration from a TOML file, then overlay environment variables.

    Env-var mapping:
        SHIELDFLOW_ADDRESS_PREFIX -> network.address_prefix
        SHIELDFLOW_TREE_DEPTH     -> tree.depth
        SHIELDFLOW_SCAN_WORKERS   -> scan.workers
        SHIELDFLOW_STUB_KEY       -> prover.stub_key
        SHIELDFLOW_DB_PATH        -> storage.path   (also enables storage)
        SHIELDFLOW_LOG_LEVEL      -> logging.level
        SHIELDFLOW_LOG_FMT        -> logging.format
    """
    cfg = ShieldFlowConfig()

    # ── TOML file ────────────────────────────────────────────────
    if path is not None:
        p = Path(path)
        if p.exists():
            with open(p, "rb") as f:
                data = tomllib.load(f)
            for section_name, section_dc in [
                ("network", cfg.network),
                ("tree", cfg.tree),
                ("scan", cfg.scan),
                ("prover", cfg.prover),
                ("storage", cfg.storage),
                ("logging", cfg.logging),
            ]:
                if section_name in data:
                    _merge(section_dc, data[section_name])

    # ── Environment variable overrides ───────────────────────────
    if v := os.environ.get("SHIELDFLOW_ADDRESS_PREFIX"):
        cfg.network.address_prefix = v
    if v := os.environ.get("SHIELDFLOW_TREE_DEPTH"):
        cfg.tree.depth = int(v)
    if v := os.environ.get("SHIELDFLOW_SCAN_WORKERS"):
        cfg.scan.workers = int(v)
    if v := os.environ.get("SHIELDFLOW_STUB_KEY"):
        cfg.prover.stub_key = v
    if v := os.environ.get("SHIELDFLOW_DB_PATH"):
        cfg.storage.path = v
        cfg.storage.enabled = True
    if v := os.environ.get("SHIELDFLOW_LOG_LEVEL"):
        cfg.logging.level = v.upper()
    if v := os.environ.get("SHIELDFLOW_LOG_FMT"):
        cfg.logging.format = v

    return cfg
