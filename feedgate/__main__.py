"""feedgate command line entrypoint."""
from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
import sys
from typing import Sequence

from feedgate.actions import CriticalAction
from feedgate.config import resolve_config
from feedgate.errors import ConfigError, PresenceError, StateCorruption
from feedgate.runner import FeedGate

EXIT_OK = 0
EXIT_DENIED = 1
EXIT_GATE_CLOSED = 2
EXIT_STATE_CORRUPT = 3


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="feedgate", description="Gated feed sealing and critical action dispatch.")
    parser.add_argument("--root", type=Path, default=Path.cwd(), help="Repository root holding FEED_LOCK, out/ and keys/.")
    parser.add_argument("--verbose", action="store_true", help="Log at DEBUG level.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Run one gated pass.")
    run.add_argument("--action", choices=[item.value for item in CriticalAction], default=None, help="Critical action to fire after sealing.")

    subparsers.add_parser("status", help="Show seal state, recent health and dispatches (read-only).")

    beacon = subparsers.add_parser("beacon", help="Write the operator start beacon.")
    beacon.add_argument("--operator", required=True, help="Operator identifier.")
    beacon.add_argument("--tz", default="UTC", help="Operator timezone name.")

    ack = subparsers.add_parser("ack", help="Write the operator acknowledgment for this pass.")
    ack.add_argument("--status", default="ack", help="Acknowledgment status.")
    ack.add_argument("--note", default="", help="Free-form note.")

    anchors = subparsers.add_parser("verify-anchors", help="Verify anchors for a seal (read-only).")
    anchors.add_argument("--seal-id", default=None, help="Seal to verify; defaults to the committed seal.")

    quorum = subparsers.add_parser("verify-quorum", help="Count valid authorizations for an action (read-only).")
    quorum.add_argument("--action", required=True, choices=[item.value for item in CriticalAction])
    return parser


def _emit(payload: object) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _dispatch(gate: FeedGate, args: argparse.Namespace) -> int:
    if args.command == "run":
        report = gate.run_once(args.action)
        _emit(report.to_dict())
        return EXIT_OK if report.ok else EXIT_DENIED
    if args.command == "status":
        _emit(gate.status())
        return EXIT_OK
    if args.command == "beacon":
        _emit(gate.presence_gate.write_beacon(args.operator, args.tz))
        return EXIT_OK
    if args.command == "ack":
        _emit(gate.presence_gate.write_ack(gate.load_policy(), status=args.status, note=args.note))
        return EXIT_OK
    if args.command == "verify-anchors":
        verification = gate.verify_anchors(args.seal_id)
        _emit(verification.to_dict())
        return EXIT_OK if verification.ok else EXIT_DENIED
    if args.command == "verify-quorum":
        result = gate.verify_quorum(args.action)
        _emit(result.to_dict())
        return EXIT_OK if result.ok else EXIT_DENIED
    return EXIT_DENIED


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    if not logging.getLogger().handlers:
        logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, stream=sys.stderr)

    gate = FeedGate(resolve_config(args.root))
    try:
        return _dispatch(gate, args)
    except (ConfigError, PresenceError) as exc:
        _emit({"ok": False, "error": exc.reason, "detail": exc.detail})
        return EXIT_GATE_CLOSED
    except StateCorruption as exc:
        _emit({"ok": False, "error": exc.reason, "detail": exc.detail})
        return EXIT_STATE_CORRUPT


if __name__ == "__main__":
    raise SystemExit(main())
