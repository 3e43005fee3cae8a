"""CLI entry points for mender.

Commands:
  mender run                   Run the daemon (scheduler) until interrupted
  mender cycle                 Run one repair cycle and exit
  mender status                Show cycles, providers, breaker, queues
  mender errors                List aggregated errors
  mender repair [error-id]     Repair one error, or sweep all new errors
  mender confirmations         List fallback work awaiting confirmation
  mender reset-breaker         Reset the repair circuit breaker
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime
from pathlib import Path

from mender.config import MenderConfig, load_config
from mender.daemon import (
    BREAKER_FILE,
    CONFIRMATIONS_FILE,
    CYCLE_LOG,
    ERRORS_FILE,
    IMPROVEMENTS_FILE,
    REPAIR_HISTORY,
    REPAIR_QUEUE_FILE,
    SCHEDULER_FILE,
    Mender,
)
from mender.improvements import ImprovementQueue
from mender.repair.aggregator import ErrorAggregator, ErrorFilter
from mender.repair.auto_repair import AutoRepairer
from mender.repair.breaker import RepairCircuitBreaker
from mender.repair.queue import RepairQueue
from mender.review.confirmation import ConfirmationQueue
from mender.schemas import CycleResult, ErrorStatus
from mender.store import read_jsonl, read_with_fallback

logger = logging.getLogger(__name__)


def main() -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="mender",
        description="Unattended AI repair cycles with resilient providers and a voting safety gate",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument("-c", "--config", default="mender.yaml", help="Config file (default: mender.yaml)")
    parser.add_argument("--root", default=".", help="Project root (default: current directory)")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("run", help="Run the daemon until interrupted")
    subparsers.add_parser("cycle", help="Run a single repair cycle")
    subparsers.add_parser("status", help="Show system status")

    p_errors = subparsers.add_parser("errors", help="List aggregated errors")
    p_errors.add_argument("--status", choices=[s.value for s in ErrorStatus], help="Filter by status")
    p_errors.add_argument("--source", help="Filter by source")
    p_errors.add_argument("--limit", type=int, default=20, help="Max errors to show (default: 20)")

    p_repair = subparsers.add_parser("repair", help="Run automated repair")
    p_repair.add_argument("error_id", nargs="?", help="Repair this error now (default: sweep new errors)")

    p_conf = subparsers.add_parser("confirmations", help="List fallback work awaiting confirmation")
    p_conf.add_argument("--all", action="store_true", help="Include reviewed items")

    p_reset = subparsers.add_parser("reset-breaker", help="Reset the repair circuit breaker")
    p_reset.add_argument("--source", help="Only clear this source's failure streak")

    args = parser.parse_args()

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(name)s: %(message)s")
    else:
        logging.basicConfig(level=logging.INFO, format="%(message)s")

    if not args.command:
        parser.print_help()
        sys.exit(1)

    config = load_config(Path(args.root) / args.config)

    if args.command == "run":
        asyncio.run(cmd_run(args, config))
    elif args.command == "cycle":
        ok = asyncio.run(cmd_cycle(args, config))
        sys.exit(0 if ok else 1)
    elif args.command == "status":
        cmd_status(args, config)
    elif args.command == "errors":
        cmd_errors(args, config)
    elif args.command == "repair":
        asyncio.run(cmd_repair(args, config))
    elif args.command == "confirmations":
        cmd_confirmations(args, config)
    elif args.command == "reset-breaker":
        cmd_reset_breaker(args, config)


def _state_dir(args: argparse.Namespace, config: MenderConfig) -> Path:
    return Path(args.root) / config.workspace_dir


def _when(ts: float | None) -> str:
    if ts is None:
        return "-"
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


def _format_cycle(result: CycleResult) -> str:
    status = "ok" if result.success else f"FAILED in {result.failed_phase}"
    if result.skipped_early:
        status = "nothing to do"
    line = f"{_when(result.started_at)}  {result.cycle_id}  {status}  ({result.duration:.1f}s)"
    if result.failure_reason:
        line += f"\n    {result.failure_reason}"
    return line


async def cmd_run(args: argparse.Namespace, config: MenderConfig) -> None:
    """Run the daemon."""
    mender = Mender(config, root=args.root)
    await mender.run()


async def cmd_cycle(args: argparse.Namespace, config: MenderConfig) -> bool:
    """Run one cycle."""
    mender = Mender(config, root=args.root)
    result = await mender.run_cycle()
    if result is None:
        print("A cycle is already running")
        return False
    print(_format_cycle(result))
    print(f"  Phases: {', '.join(result.phases_run)}")
    print(f"  Issues found: {result.issues_found}, changes made: {result.changes_made}")
    return result.success


def cmd_status(args: argparse.Namespace, config: MenderConfig) -> None:
    """Show system status from the state files."""
    state_dir = _state_dir(args, config)
    if not state_dir.exists():
        print(f"No state in {state_dir}. Run 'mender cycle' or 'mender run' first.")
        return

    cycles = [CycleResult.model_validate(r) for r in read_jsonl(state_dir / CYCLE_LOG, limit=5)]
    print(f"Recent cycles: {len(cycles)}")
    for cycle in cycles:
        print(f"  {_format_cycle(cycle)}")

    breaker = RepairCircuitBreaker(config.breaker, state_dir / BREAKER_FILE).get_state()
    print(f"\nRepair breaker: {breaker.state}")
    if breaker.trip_reason:
        print(f"  Reason: {breaker.trip_reason}")
    blocked = [s for s, n in breaker.consecutive_failures_per_source.items()
               if n >= config.breaker.max_consecutive_failures_per_source]
    if blocked:
        print(f"  Blocked sources: {', '.join(blocked)}")

    stats = ErrorAggregator(state_dir / ERRORS_FILE).get_stats()
    print(f"\nErrors: {stats.total} total")
    for status, count in sorted(stats.by_status.items()):
        print(f"  {status}: {count}")

    queue = RepairQueue(
        ErrorAggregator(state_dir / ERRORS_FILE),
        RepairCircuitBreaker(config.breaker, state_dir / BREAKER_FILE),
        state_dir / REPAIR_QUEUE_FILE,
    )
    print(f"Pending repairs: {queue.pending_count()}")

    conf_stats = ConfirmationQueue(state_dir / CONFIRMATIONS_FILE).get_stats()
    print(f"Confirmations: {json.dumps(conf_stats)}")

    pending = ImprovementQueue(state_dir / IMPROVEMENTS_FILE).get_pending()
    print(f"Queued improvements: {len(pending)}")
    for item in pending[:5]:
        print(f"  [{item.priority}] {item.file or '-'}: {item.message[:80]}")

    raw = read_with_fallback(state_dir / SCHEDULER_FILE)
    if raw:
        scheduler = json.loads(raw)
        print(f"\nScheduler (as of {_when(scheduler.get('saved_at'))}):")
        for task in scheduler.get("tasks", []):
            flag = "" if task["enabled"] else " [disabled]"
            print(f"  {task['id']}{flag}: last {_when(task['last_run'])}, next {_when(task['next_run'])}")


def cmd_errors(args: argparse.Namespace, config: MenderConfig) -> None:
    """List aggregated errors, newest first."""
    aggregator = ErrorAggregator(_state_dir(args, config) / ERRORS_FILE)
    criteria = ErrorFilter(
        statuses=[ErrorStatus(args.status)] if args.status else [],
        sources=[args.source] if args.source else [],
        limit=args.limit,
    )
    errors = aggregator.get_errors(criteria)
    if not errors:
        print("No errors.")
        return
    for error in errors:
        attempts = len(error.repair_attempts)
        print(
            f"{error.id}  {_when(error.timestamp)}  [{error.severity}/{error.category}] "
            f"{error.status}  {error.source}: {error.message[:100]}"
            + (f"  ({attempts} repair attempts)" if attempts else "")
        )


async def cmd_repair(args: argparse.Namespace, config: MenderConfig) -> None:
    """Repair one error now, or sweep all new errors."""
    state_dir = _state_dir(args, config)
    state_dir.mkdir(parents=True, exist_ok=True)
    aggregator = ErrorAggregator(state_dir / ERRORS_FILE)
    breaker = RepairCircuitBreaker(config.breaker, state_dir / BREAKER_FILE)
    queue = RepairQueue(
        aggregator, breaker,
        state_dir / REPAIR_QUEUE_FILE, state_dir / REPAIR_HISTORY,
        max_attempts=config.breaker.max_attempts_per_error,
    )
    repairer = AutoRepairer(queue, aggregator, breaker, config.auto_repair, cwd=args.root)

    if args.error_id:
        task = await repairer.repair_error(args.error_id)
        if task is None:
            print(f"Error {args.error_id} cannot be repaired now (unknown, exhausted, or breaker open)")
            return
        print(f"Repair {task.id}: {task.status}")
        return

    summary = await repairer.run_cycle()
    print(
        f"Queued {summary['queued']}, processed {summary['processed']}: "
        f"{summary['succeeded']} succeeded, {summary['failed']} failed"
    )


def cmd_confirmations(args: argparse.Namespace, config: MenderConfig) -> None:
    """List confirmation queue items."""
    queue = ConfirmationQueue(_state_dir(args, config) / CONFIRMATIONS_FILE)
    items = queue.all() if args.all else queue.get_pending()
    if not items:
        print("Nothing awaiting confirmation.")
        return
    for item in items:
        print(f"{item.id}  change {item.change_id}  {item.status}  priority {item.priority}  {_when(item.created_at)}")
        if item.notes:
            print(f"    {item.reviewer}: {item.notes}")


def cmd_reset_breaker(args: argparse.Namespace, config: MenderConfig) -> None:
    """Reset the repair circuit breaker."""
    breaker = RepairCircuitBreaker(config.breaker, _state_dir(args, config) / BREAKER_FILE)
    if args.source:
        breaker.reset_source(args.source)
        print(f"Cleared failure streak for {args.source}")
    else:
        breaker.reset()
        print("Repair breaker reset")


if __name__ == "__main__":
    main()
