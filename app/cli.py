"""
CLI de diagnostic pour la toolchain Noir (sans passer par le serveur).

Usage:
    zk-rps commit --move <0|1|2> --salt <HEX>
    zk-rps verify --move <0|1|2> --salt <HEX> --commitment <HEX>
    zk-rps check

`verify` recalcule l'engagement en cas d'échec pour indiquer s'il correspond.
"""

import argparse
import logging
import sys

from app.config.settings import settings
from app.services.field_codec import canonicalize_salt, is_hex_string
from app.services.game_state import MOVE_NAMES
from app.services.prover_bridge import NargoProverBridge, ProverError


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="ZK rock-paper-scissors prover utilities",
        prog="zk-rps",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    commit_parser = subparsers.add_parser("commit", help="Derive the commitment of a move/salt pair")
    commit_parser.add_argument("--move", type=int, required=True, choices=sorted(MOVE_NAMES))
    commit_parser.add_argument("--salt", required=True, help="Hex salt (0x prefix optional)")

    verify_parser = subparsers.add_parser("verify", help="Check a move/salt against a commitment")
    verify_parser.add_argument("--move", type=int, required=True, choices=sorted(MOVE_NAMES))
    verify_parser.add_argument("--salt", required=True, help="Hex salt (0x prefix optional)")
    verify_parser.add_argument("--commitment", required=True, help="Hex commitment")

    subparsers.add_parser("check", help="Show toolchain and circuit status")
    return parser


def _salt_or_exit(value: str) -> str:
    salt = canonicalize_salt(value)
    if not is_hex_string(salt) or salt == "0x":
        print(f"Error: salt must be hexadecimal, got {value!r}", file=sys.stderr)
        sys.exit(1)
    return salt


def main(argv=None):
    """Main CLI entry point."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    bridge = NargoProverBridge.from_settings()

    if args.command == "check":
        status = bridge.toolchain_status()
        print(f"nargo: {status['executable'] or 'NOT FOUND'} ({settings.NARGO_COMMAND})")
        for name, info in status["circuits"].items():
            print(f"{name}: {info['path']} exists={info['exists']} compiled={info['compiled']}")
        sys.exit(0 if status["ok"] else 1)

    salt = _salt_or_exit(args.salt)
    try:
        if args.command == "commit":
            commitment = bridge.derive_commitment(args.move, salt)
            print(f"Move: {args.move} ({MOVE_NAMES[args.move]})")
            print(f"Salt: {salt}")
            print(f"Commitment: {commitment}")
            sys.exit(0)

        commitment = canonicalize_salt(args.commitment).lower()
        if bridge.verify_reveal(args.move, salt, commitment):
            print("SUCCESS: constraints satisfied, witness generated.")
            sys.exit(0)
        print("FAILURE: constraints not satisfied.")
        report = bridge.diagnose_mismatch(args.move, salt, commitment)
        if report["error"]:
            print(f"Could not recompute commitment: {report['error']}")
        else:
            print(f"Recomputed commitment: {report['recomputed']}")
            print(f"Provided commitment:   {report['expected']}")
            print(f"Commitments {'MATCH' if report['match'] else 'DO NOT MATCH'}")
        sys.exit(1)
    except ProverError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
