# run.py
# Entry point. Argument parsing and wiring only; no logic lives here.
#
#   python -m agent_audit.run verify runs/run-001.jsonl --strict
#   python -m agent_audit.run diff runs/run-001.jsonl runs/run-002.jsonl
#   python -m agent_audit.run show runs/run-001.jsonl
#   python -m agent_audit.run replay runs/run-001.jsonl

import argparse
import sys
from pathlib import Path

from agent_audit import display
from agent_audit.config import settings
from agent_audit.invariants import NoFileCollision, PlanBeforeAction
from agent_audit.models import Event
from agent_audit.replay import ReplayHarness
from agent_audit.store import EventStore
from agent_audit.verify import VerificationError, verify_run


def _open_store(log_path: Path, blobs_dir: Path | None) -> EventStore:
    return EventStore(
        log_path.stem,
        runs_dir=log_path.parent,
        blobs_dir=blobs_dir or log_path.parent / "blobs",
        max_payload_size=settings.max_payload_size,
    )


def _load(log_path: Path, blobs_dir: Path | None) -> list[Event]:
    return _open_store(log_path, blobs_dir).read_log()


def _cmd_verify(args: argparse.Namespace) -> int:
    strict = args.strict or settings.strict
    display.verification_start(args.log, strict)
    try:
        result = verify_run(args.log, strict=strict, blobs_dir=args.blobs_dir)
    except VerificationError as exc:
        display.verification_fail(exc)
        return 1
    display.verification_pass(result)
    return 0


def _cmd_diff(args: argparse.Namespace) -> int:
    result = ReplayHarness.diff(_load(args.log_a, args.blobs_dir), _load(args.log_b, args.blobs_dir))
    display.diff_report(result)
    return 0 if result.identical else 1


def _cmd_show(args: argparse.Namespace) -> int:
    store = _open_store(args.log, args.blobs_dir)
    events = store.read_log()
    display.run_index(store.get_index())
    display.event_table(events)
    display.causal_tree(events)
    return 0


def _cmd_replay(args: argparse.Namespace) -> int:
    events = _load(args.log, args.blobs_dir)
    result = ReplayHarness(events, invariants=[PlanBeforeAction(), NoFileCollision()]).replay()
    display.replay_report(result)
    drift = ReplayHarness.diff(events, result.events)
    display.diff_report(drift)
    return 0 if result.success and drift.identical else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="agent-audit", description="Verify and inspect agent run logs.")
    parser.add_argument("--blobs-dir", type=Path, default=None, help="Root of per-run blob directories.")
    sub = parser.add_subparsers(dest="command", required=True)

    verify = sub.add_parser("verify", help="Audit a persisted log.")
    verify.add_argument("log", type=Path)
    verify.add_argument("--strict", action="store_true", help="Require a terminal event.")
    verify.set_defaults(func=_cmd_verify)

    diff = sub.add_parser("diff", help="Find where two logs diverge.")
    diff.add_argument("log_a", type=Path)
    diff.add_argument("log_b", type=Path)
    diff.set_defaults(func=_cmd_diff)

    show = sub.add_parser("show", help="Print a log and its causal graph.")
    show.add_argument("log", type=Path)
    show.set_defaults(func=_cmd_show)

    replay = sub.add_parser("replay", help="Re-derive a log and re-check its invariants.")
    replay.add_argument("log", type=Path)
    replay.set_defaults(func=_cmd_replay)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
