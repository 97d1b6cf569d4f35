"""Command-line interface for the KOL wager engine."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from dataclasses import asdict
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from kol_wager_engine import __version__
from kol_wager_engine.chain.keys import audit_escrow_configuration
from kol_wager_engine.config import Settings, get_settings
from kol_wager_engine.jobs import Engine
from kol_wager_engine.settlement.safety import EmergencyHaltError

logger = logging.getLogger(__name__)

Handler = Callable[[Engine, argparse.Namespace], Awaitable[Any]]


def parse_datetime(value: str) -> datetime:
    """argparse type for ISO-8601 timestamps; naive values are UTC."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid timestamp: {value!r}") from None
    return parsed.replace(tzinfo=UTC) if parsed.tzinfo is None else parsed.astimezone(UTC)


def load_payloads(path: Path) -> list[object]:
    """Read webhook payloads from a JSON array, a single object or JSON lines."""
    text = path.read_text(encoding="utf-8").strip()
    if not text:
        return []
    if text.startswith("["):
        payloads: list[object] = json.loads(text)
        return payloads
    try:
        return [json.loads(text)]
    except json.JSONDecodeError:
        return [json.loads(line) for line in text.splitlines() if line.strip()]


def _emit(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str, sort_keys=True))


# ----------------------------------------------------------------------
# Command handlers
# ----------------------------------------------------------------------


async def init_db_command(engine: Engine, args: argparse.Namespace) -> None:
    await engine.init_db()
    _emit({"initialized": True})


async def ingest_command(engine: Engine, args: argparse.Namespace) -> None:
    report = await engine.ingest(load_payloads(args.file))
    _emit(asdict(report))


async def backfill_command(engine: Engine, args: argparse.Namespace) -> None:
    report = await engine.backfill(
        days=args.days,
        wallets=args.wallet or None,
        after=args.after,
        wallet_limit=args.wallet_limit,
        transaction_types=args.type or None,
    )
    _emit({**asdict(report), "summary": report.summary()})


async def bootstrap_markets_command(engine: Engine, args: argparse.Namespace) -> None:
    report = await engine.bootstrap_markets(window_keys=args.window or None, closes_at=args.closes_at)
    _emit(
        {
            "dry_run": report.dry_run,
            "total": report.total,
            "created": report.created,
            "rounds": [asdict(r) for r in report.rounds],
        }
    )


async def close_markets_command(engine: Engine, args: argparse.Namespace) -> None:
    report = await engine.close_markets(
        window_keys=args.window or None, closes_before=args.closes_before, limit=args.limit
    )
    _emit(
        {
            "dry_run": report.dry_run,
            "closes_before": report.closes_before,
            "closed_count": report.closed_count,
            "by_window": report.by_window,
            "sample": [
                {"id": m.id, "window_key": m.window_key, "closes_at": m.window_end} for m in report.sample
            ],
        }
    )


async def snapshot_command(engine: Engine, args: argparse.Namespace) -> None:
    snapshot = await engine.snapshot(args.window, args.end, dry_run=args.dry_run or None)
    _emit(
        {
            "window_key": snapshot.window_key,
            "window_end": snapshot.window_end,
            "content_hash": snapshot.content_hash,
            "sol_price_usd": snapshot.sol_price_usd,
            "entries": [entry.to_dict() for entry in snapshot.entries[: args.top]],
        }
    )


async def audit_snapshot_command(engine: Engine, args: argparse.Namespace) -> int:
    audit = await engine.audit_snapshot(args.window, args.end)
    if audit is None:
        _emit({"found": False})
        return 1
    _emit({**asdict(audit), "matches": audit.matches})
    return 0 if audit.matches else 1


async def settle_command(engine: Engine, args: argparse.Namespace) -> None:
    report = await engine.settle(
        window_keys=args.window or None,
        closes_before=args.closes_before,
        settlement_nonce=args.nonce,
        top_n=args.top_n,
    )
    _emit(
        {
            "dry_run": report.dry_run,
            "top_n": report.top_n,
            "settled": report.settled_count,
            "progress": report.progress.summary(),
            "groups": [
                {
                    "group": group.label,
                    "status": group.status,
                    "snapshot_hash": group.snapshot_hash,
                    "settlement_nonce": group.settlement_nonce,
                    "settlement_hash": group.settlement_hash,
                    "settled": group.settled_market_ids,
                    "winners": group.winners,
                    "reason": group.reason,
                }
                for group in report.groups
            ],
        }
    )


async def plan_payouts_command(engine: Engine, args: argparse.Namespace) -> None:
    _emit(asdict(await engine.plan_payouts(args.market)))


async def payout_command(engine: Engine, args: argparse.Namespace) -> int:
    result = await engine.pay_market(args.market)
    _emit({"outcomes": [asdict(o) for o in result.outcomes], "progress": result.progress.summary()})
    return 1 if result.count("failed") else 0


async def reconcile_payouts_command(engine: Engine, args: argparse.Namespace) -> None:
    result = await engine.reconcile_payouts()
    _emit({"outcomes": [asdict(o) for o in result.outcomes]})


async def process_withdrawals_command(engine: Engine, args: argparse.Namespace) -> None:
    result = await engine.process_withdrawals(limit=args.limit)
    _emit(
        {
            "dry_run": result.dry_run,
            "outcomes": [asdict(o) for o in result.outcomes],
            "progress": result.progress.summary(),
        }
    )


async def halt_command(engine: Engine, args: argparse.Namespace) -> None:
    await engine.halt_switch().activate(args.reason)
    _emit(await engine.halt_switch().status())


async def unhalt_command(engine: Engine, args: argparse.Namespace) -> None:
    await engine.halt_switch().deactivate()
    _emit(await engine.halt_switch().status())


async def halt_status_command(engine: Engine, args: argparse.Namespace) -> None:
    _emit(await engine.halt_switch().status())


def audit_escrow_command(settings: Settings) -> int:
    audit = audit_escrow_configuration(settings.escrow)
    _emit({"ready": audit.is_ready, "wallets": [asdict(w) for w in audit.wallets], "warnings": audit.warnings})
    return 0 if audit.is_ready else 1


def config_command(settings: Settings) -> int:
    _emit(settings.redacted_summary())
    return 0


# ----------------------------------------------------------------------
# Parser
# ----------------------------------------------------------------------


def _add_window_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--window", required=True, help="Window key (e.g. daily, weekly)")
    parser.add_argument("--end", required=True, type=parse_datetime, help="Window end (ISO-8601)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kol-wager-engine",
        description="KOL wallet PnL ranking and wager settlement",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  kol-wager-engine init-db
  kol-wager-engine ingest events.json
  kol-wager-engine backfill --days 2 --wallet-limit 20
  kol-wager-engine bootstrap-markets --window daily
  kol-wager-engine snapshot --window daily --end 2026-10-19T00:00:00Z
  kol-wager-engine settle --window daily --dry-run
  kol-wager-engine payout --market mkt-123
  kol-wager-engine halt --reason "escrow key rotation"
        """,
    )
    parser.add_argument("--version", action="version", version=f"kol-wager-engine {__version__}")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    p = subparsers.add_parser("init-db", help="Create database tables")
    p.set_defaults(func=init_db_command)

    p = subparsers.add_parser("ingest", help="Ingest enhanced webhook payloads from a file")
    p.add_argument("file", type=Path, help="JSON array, single object or JSON lines")
    p.set_defaults(func=ingest_command)

    p = subparsers.add_parser("backfill", help="Backfill recent transaction history for tracked wallets")
    p.add_argument("--days", type=float, default=1.0, help="How far back to go (default: 1)")
    p.add_argument("--wallet", action="append", help="Only this tracked wallet (repeatable)")
    p.add_argument("--after", help="Resume after this wallet address")
    p.add_argument("--wallet-limit", type=int, default=10, help="Wallets per run (default: 10)")
    p.add_argument("--type", action="append", help="Transaction type to keep (repeatable; default: swaps)")
    p.set_defaults(func=backfill_command)

    p = subparsers.add_parser("bootstrap-markets", help="Open markets for the next round of each window")
    p.add_argument("--window", action="append", help="Restrict to a window key (repeatable)")
    p.add_argument("--closes-at", type=parse_datetime, help="Override the round close time")
    p.add_argument("--dry-run", action="store_true", help="Show the rounds without creating markets")
    p.set_defaults(func=bootstrap_markets_command)

    p = subparsers.add_parser("close-markets", help="Close open markets whose window has ended")
    p.add_argument("--window", action="append", help="Restrict to a window key (repeatable)")
    p.add_argument("--closes-before", type=parse_datetime, help="Close markets ending at or before this time")
    p.add_argument("--limit", type=int, default=1000, help="Maximum markets (default: 1000)")
    p.add_argument("--dry-run", action="store_true", help="List without closing")
    p.set_defaults(func=close_markets_command)

    p = subparsers.add_parser("snapshot", help="Compute or load the leaderboard snapshot for a window")
    _add_window_arguments(p)
    p.add_argument("--top", type=int, default=25, help="Entries to print (default: 25)")
    p.add_argument("--dry-run", action="store_true", help="Compute without persisting")
    p.set_defaults(func=snapshot_command)

    p = subparsers.add_parser("audit-snapshot", help="Recompute a stored snapshot and compare hashes")
    _add_window_arguments(p)
    p.set_defaults(func=audit_snapshot_command)

    p = subparsers.add_parser("settle", help="Settle markets whose window has closed")
    p.add_argument("--window", action="append", help="Restrict to a window key (repeatable)")
    p.add_argument("--closes-before", type=parse_datetime, help="Only markets closing before this time")
    p.add_argument("--nonce", help="Explicit settlement nonce")
    p.add_argument("--top-n", type=int, help="Rank threshold for a YES outcome")
    p.add_argument("--dry-run", action="store_true", help="Resolve without writing")
    p.set_defaults(func=settle_command)

    p = subparsers.add_parser("plan-payouts", help="Show the payout plan for a settled market")
    p.add_argument("--market", required=True, help="Market id")
    p.set_defaults(func=plan_payouts_command)

    p = subparsers.add_parser("payout", help="Create and send payouts for a settled market")
    p.add_argument("--market", required=True, help="Market id")
    p.set_defaults(func=payout_command)

    p = subparsers.add_parser("reconcile-payouts", help="Resolve payouts stuck in processing")
    p.set_defaults(func=reconcile_payouts_command)

    p = subparsers.add_parser("process-withdrawals", help="Send requested escrow withdrawals")
    p.add_argument("--limit", type=int, default=25, help="Maximum withdrawals (default: 25)")
    p.add_argument("--dry-run", action="store_true", help="List without sending")
    p.set_defaults(func=process_withdrawals_command)

    p = subparsers.add_parser("halt", help="Activate the emergency halt")
    p.add_argument("--reason", required=True)
    p.set_defaults(func=halt_command)

    p = subparsers.add_parser("unhalt", help="Deactivate the emergency halt")
    p.set_defaults(func=unhalt_command)

    p = subparsers.add_parser("halt-status", help="Show the emergency halt state")
    p.set_defaults(func=halt_status_command)

    p = subparsers.add_parser("audit-escrow", help="Check escrow wallet configuration")
    p.set_defaults(sync_func=audit_escrow_command)

    p = subparsers.add_parser("config", help="Show settings with secrets redacted")
    p.set_defaults(sync_func=config_command)

    return parser


async def run_handler(handler: Handler, settings: Settings, args: argparse.Namespace) -> int:
    async with Engine(settings, dry_run=True if getattr(args, "dry_run", False) else None) as engine:
        code = await handler(engine, args)
    return code if isinstance(code, int) else 0


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    try:
        settings = get_settings()
    except ValidationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else settings.get_logging_level(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if hasattr(args, "sync_func"):
        code: int = args.sync_func(settings)
        return code

    try:
        return asyncio.run(run_handler(args.func, settings, args))
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 130
    except EmergencyHaltError as e:
        logger.error("Refusing to run: %s", e)
        return 2
    except Exception as e:
        logger.exception("Command %s failed: %s", args.command, e)
        return 1
