"""CLI interface for mission-runtime."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from datetime import datetime
from pathlib import Path
from typing import TypeVar

from mission_runtime.config import RuntimeConfig, load_config, validate_config
from mission_runtime.errors import MissionRuntimeError
from mission_runtime.metrics import setup_logging
from mission_runtime.models import as_utc
from mission_runtime.runtime import MissionRuntime

DEFAULT_CONFIG = "mission-runtime.toml"

T = TypeVar("T")


def _instant(value: str) -> datetime:
	"""Parse an ISO-8601 instant; a missing offset means UTC."""
	try:
		return as_utc(datetime.fromisoformat(value))
	except ValueError:
		raise argparse.ArgumentTypeError(f"not an ISO-8601 timestamp: {value!r}") from None


def build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(
		prog="mission-runtime",
		description="Mission runtime - scheduled mission execution and delivery",
	)
	parser.add_argument("--config", default=DEFAULT_CONFIG, help="Config file path")
	parser.add_argument("--data-dir", default=None, help="Override storage.data_dir")
	sub = parser.add_subparsers(dest="command")

	# mission-runtime tick
	tick = sub.add_parser("tick", help="Run a single scheduler tick")
	tick.add_argument("--now", type=_instant, default=None, help="ISO-8601 instant to evaluate at (default: now)")

	# mission-runtime run
	sub.add_parser("run", help="Run the scheduler loop until interrupted")

	# mission-runtime slo
	slo = sub.add_parser("slo", help="Evaluate SLOs for an owner")
	slo.add_argument("--owner", required=True)
	slo.add_argument("--lookback-days", type=int, default=None)
	slo.add_argument("--now", type=_instant, default=None, help="ISO-8601 end of the evaluation window (default: now)")

	# mission-runtime dead-letter
	dl = sub.add_parser("dead-letter", help="List dead-letter entries")
	dl.add_argument("--owner", default=None, help="Owner id (omit for the global log)")
	dl.add_argument("--schedule-id", default=None)
	dl.add_argument("--limit", type=int, default=20)

	# mission-runtime purge
	purge = sub.add_parser("purge", help="Purge dead-letter entries for a mission")
	purge.add_argument("--owner", required=True)
	purge.add_argument("--mission-id", required=True)

	sub.add_parser("validate-config", help="Validate config file semantically")

	return parser


def _load(args: argparse.Namespace) -> RuntimeConfig:
	"""Config from ``--config`` if it exists, else defaults."""
	config = load_config(args.config) if Path(args.config).exists() else RuntimeConfig()
	if args.data_dir:
		config.storage.data_dir = args.data_dir
	return config


async def _with_runtime(config: RuntimeConfig, fn: Callable[[MissionRuntime], Awaitable[T]]) -> T:
	runtime = MissionRuntime(config)
	try:
		return await fn(runtime)
	finally:
		await runtime.close()


def cmd_tick(args: argparse.Namespace) -> int:
	"""Run one tick and print its metrics."""
	config = _load(args)
	report = asyncio.run(_with_runtime(config, lambda rt: rt.tick(args.now)))
	if report.skipped_overlap:
		print("Tick skipped: another tick is in flight")
		return 1
	print(report.metrics.to_json())
	for outcome in report.outcomes:
		retry = " (will retry)" if outcome.retry_pending else ""
		print(
			f"[{outcome.status}] {outcome.owner_id}/{outcome.schedule_id} {outcome.local_date} "
			f"attempt {outcome.attempt}{retry} {outcome.reason or ''}"
		)
	return 0


def cmd_run(args: argparse.Namespace) -> int:
	"""Run the scheduler until Ctrl-C."""
	config = _load(args)

	async def _loop(runtime: MissionRuntime) -> None:
		try:
			await runtime.scheduler.run()
		except asyncio.CancelledError:
			runtime.scheduler.stop()

	print(f"Scheduler running every {config.scheduler.tick_interval}s. Press Ctrl-C to stop.")
	try:
		asyncio.run(_with_runtime(config, _loop))
	except KeyboardInterrupt:
		print("\nStopped.")
	return 0


def cmd_slo(args: argparse.Namespace) -> int:
	"""Print the SLO report; non-zero exit when any objective fails."""
	config = _load(args)
	runtime = MissionRuntime(config)
	try:
		report = runtime.evaluate_slos(args.owner, lookback_days=args.lookback_days, now=args.now)
	finally:
		asyncio.run(runtime.close())
	print(json.dumps(report.to_dict(), indent=2))
	return 1 if report.summary.overall == "fail" else 0


def cmd_dead_letter(args: argparse.Namespace) -> int:
	"""List dead-letter entries, newest first."""
	config = _load(args)
	runtime = MissionRuntime(config)
	try:
		entries = runtime.dead_letters.list(args.owner, schedule_id=args.schedule_id, limit=args.limit)
	finally:
		asyncio.run(runtime.close())
	if not entries:
		print("No dead-letter entries.")
		return 0
	for e in entries:
		ts = datetime.fromtimestamp(e.ts / 1000).strftime("%Y-%m-%d %H:%M:%S")
		print(f"{ts} | {e.schedule_id} | {e.source} | ok={e.output_ok_count} fail={e.output_fail_count} | {e.reason}")
	return 0


def cmd_purge(args: argparse.Namespace) -> int:
	"""Purge dead-letter entries for one mission."""
	config = _load(args)
	removed = asyncio.run(_with_runtime(config, lambda rt: rt.purge_for_mission(args.owner, args.mission_id)))
	print(f"Removed {removed} dead-letter entr{'y' if removed == 1 else 'ies'}")
	return 0


def cmd_validate_config(args: argparse.Namespace) -> int:
	"""Load the config file strictly and report semantic problems."""
	config = load_config(args.config)
	if args.data_dir:
		config.storage.data_dir = args.data_dir

	counts = {"error": 0, "warning": 0}
	issues = validate_config(config)
	for level, message in issues:
		counts[level] = counts.get(level, 0) + 1
		print(f"[{level.upper()}] {message}")
	if not issues:
		print(f"{args.config}: no problems found")

	print(f"\n{counts['error']} error(s), {counts['warning']} warning(s)")
	return 1 if counts["error"] else 0


COMMANDS = {
	"tick": cmd_tick,
	"run": cmd_run,
	"slo": cmd_slo,
	"dead-letter": cmd_dead_letter,
	"purge": cmd_purge,
	"validate-config": cmd_validate_config,
}


def main(argv: list[str] | None = None) -> int:
	parser = build_parser()
	args = parser.parse_args(argv)

	if args.command is None:
		parser.print_help()
		return 0

	handler = COMMANDS.get(args.command)
	if handler is None:
		print(f"Unknown command: {args.command}")
		return 1

	try:
		config = _load(args)
	except (FileNotFoundError, ValueError) as exc:
		print(f"Error: {exc}")
		return 1
	setup_logging(config.logging.level, config.logging.json_format)

	try:
		return handler(args)
	except FileNotFoundError as exc:
		print(f"Error: {exc}")
		return 1
	except MissionRuntimeError as exc:
		print(f"Error: {exc}")
		return 1


if __name__ == "__main__":
	sys.exit(main())
