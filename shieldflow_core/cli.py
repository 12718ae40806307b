"""
ShieldFlow command-line tool.

Key and address utilities that need no chain connection:

    shieldflow new-key [--mnemonic PHRASE] [--account N]
    shieldflow address --key HEX [--index N]
    shieldflow decode-address TEXT
    shieldflow viewing-key --key HEX

Settings (address prefixes, logging) come from ``--config`` and the
``SHIELDFLOW_*`` environment variables.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys

from shieldflow_core.address import decode_address, generate_address
from shieldflow_core.config import load_config
from shieldflow_core.errors import ShieldedError
from shieldflow_core.keys import SpendingKey
from shieldflow_core.logging_config import setup_logging

logger = logging.getLogger("shieldflow_cli")


def _spending_key(hex_key: str) -> SpendingKey:
    try:
        raw = bytes.fromhex(hex_key)
    except ValueError as exc:
        raise ShieldedError(f"Spending key is not valid hex: {exc}") from exc
    return SpendingKey(raw)


def _cmd_new_key(args, cfg) -> dict:
    if args.mnemonic:
        sk = SpendingKey.from_mnemonic(args.mnemonic, account=args.account)
    else:
        sk = SpendingKey.generate()
    with sk:
        vk = sk.viewing_key()
        return {
            "spending_key": sk.raw.hex(),
            "viewing_key": vk.encode(cfg.network.viewing_key_prefix),
            "address": generate_address(vk, 0).encode(cfg.network.address_prefix),
        }


def _cmd_address(args, cfg) -> dict:
    with _spending_key(args.key) as sk:
        vk = sk.viewing_key()
    addr = generate_address(vk, args.index)
    return {
        "index": args.index,
        "diversifier": addr.diversifier.hex(),
        "address": addr.encode(cfg.network.address_prefix),
    }


def _cmd_decode_address(args, cfg) -> dict:
    d, pkd = decode_address(args.address, cfg.network.address_prefix)
    return {"diversifier": d.hex(), "pkd": pkd.hex()}


def _cmd_viewing_key(args, cfg) -> dict:
    with _spending_key(args.key) as sk:
        vk = sk.viewing_key()
    return {"viewing_key": vk.encode(cfg.network.viewing_key_prefix)}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="shieldflow", description="ShieldFlow key & address tool")
    parser.add_argument("--config", default=None, help="Path to a TOML config file")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("new-key", help="Generate a spending key")
    p.add_argument("--mnemonic", default=None, help="Derive from a mnemonic phrase instead")
    p.add_argument("--account", type=int, default=0, help="Account index (with --mnemonic)")
    p.set_defaults(func=_cmd_new_key)

    p = sub.add_parser("address", help="Derive a diversified address")
    p.add_argument("--key", required=True, help="Spending key (hex)")
    p.add_argument("--index", type=int, default=0, help="Diversifier index")
    p.set_defaults(func=_cmd_address)

    p = sub.add_parser("decode-address", help="Decode and check an address")
    p.add_argument("address")
    p.set_defaults(func=_cmd_decode_address)

    p = sub.add_parser("viewing-key", help="Export the shareable viewing key")
    p.add_argument("--key", required=True, help="Spending key (hex)")
    p.set_defaults(func=_cmd_viewing_key)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    cfg = load_config(args.config)
    setup_logging(level=cfg.logging.level, fmt=cfg.logging.format, log_file=cfg.logging.file)
    try:
        result = args.func(args, cfg)
    except (ShieldedError, ValueError) as exc:
        logger.error(f"{args.command} failed: {exc}")
        print(f"error: {exc}", file=sys.stderr)
        return 1
    print(json.dumps(result, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
