"""gamelink command-line interface."""
from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
from typing import Any, Dict, List, Optional

import uvicorn
from rich.console import Console
from rich.table import Table

from gamelink.config import DEFAULT_CONFIG
from gamelink.connection import ConnectionManager
from gamelink.errors import ConnectionManagerError
from gamelink.lifecycle import build_sinks
from gamelink.models import ConnectionMetrics, ConnectionState
from gamelink.timers import backoff_delays
from gamelink.transport import SSETransport

console = Console()


def _config_overrides(args: argparse.Namespace) -> Dict[str, Any]:
	return {
		"connection_timeout": args.connection_timeout,
		"max_retries": args.max_retries,
		"initial_retry_delay": args.initial_retry_delay,
		"max_retry_delay": args.max_retry_delay,
		"enable_auto_reconnect": False if args.no_auto_reconnect else None,
		"log_to_server": bool(args.remote_log),
	}


def _metrics_table(metrics: ConnectionMetrics) -> Table:
	table = Table(title="Connection attempts", show_lines=False)
	for column in ("#", "success", "duration ms", "error"):
		table.add_column(column.upper())
	for attempt in metrics.attempts:
		table.add_row(
			str(attempt.attempt_number),
			"yes" if attempt.success else "no",
			f"{attempt.duration:.1f}" if attempt.duration is not None else "",
			attempt.error or "",
		)
	table.caption = (
		f"{metrics.successful_attempts}/{metrics.total_attempts} succeeded, "
		f"average connect {metrics.average_connection_time:.1f} ms"
	)
	return table


async def _cmd_watch(args: argparse.Namespace) -> int:
	manager = ConnectionManager(
		SSETransport(args.base_url),
		args.game_id,
		args.player_id,
		_config_overrides(args),
		log_sinks=build_sinks(csv_path=args.log, remote_url=args.remote_log),
	)

	stop_event = asyncio.Event()

	def _on_state(state: ConnectionState) -> None:
		if not args.json:
			console.print(f"[bold]{state.value}[/bold] (retry {manager.retry_count}/{manager.config.max_retries})")

	def _on_message(data: str) -> None:
		if args.print_messages:
			sys.stdout.write(data + "\n")

	manager.on_state_change = _on_state
	manager.on_message = _on_message

	def _signal_handler(*_: Any) -> None:
		stop_event.set()

	loop = asyncio.get_running_loop()
	for sig in (signal.SIGINT, signal.SIGTERM):
		with contextlib.suppress(NotImplementedError):
			loop.add_signal_handler(sig, _signal_handler)

	try:
		try:
			await manager.connect()
		except ConnectionManagerError as exc:
			if not args.json:
				console.print(f"[red]connection failed:[/red] {exc}")
		else:
			with contextlib.suppress(asyncio.TimeoutError):
				await asyncio.wait_for(stop_event.wait(), timeout=args.runtime)
	finally:
		final_state = manager.state
		manager.close()

	metrics = manager.get_metrics()
	if args.json:
		json.dump({"state": final_state.value, "metrics": metrics.to_dict()}, sys.stdout, indent=2)
		sys.stdout.write("\n")
	else:
		console.print(_metrics_table(metrics))
	return 1 if final_state is ConnectionState.FAILED else 0


async def _cmd_backoff(args: argparse.Namespace) -> int:
	config = DEFAULT_CONFIG.with_overrides(
		initial_retry_delay=args.initial_retry_delay,
		max_retry_delay=args.max_retry_delay,
	)
	delays = backoff_delays(config.initial_retry_delay, config.max_retry_delay, args.retries)
	if args.json:
		json.dump(delays, sys.stdout)
		sys.stdout.write("\n")
		return 0
	table = Table(title="Retry back-off schedule")
	table.add_column("RETRY")
	table.add_column("DELAY MS")
	for index, delay in enumerate(delays, start=1):
		table.add_row(str(index), f"{delay:g}")
	console.print(table)
	return 0


async def _cmd_serve(args: argparse.Namespace) -> int:
	config = uvicorn.Config("gamelink.api:app", host=args.host, port=args.port, log_level="info")
	console.print(f"Serving the control API on http://{args.host}:{args.port} (docs at /docs)")
	await uvicorn.Server(config).serve()
	return 0


def _build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(description="gamelink event-stream utilities")
	parser.add_argument("-v", "--verbose", action="count", default=0, help="More logging (repeatable)")
	sub = parser.add_subparsers(dest="command", required=True)

	watch = sub.add_parser("watch", help="Follow a game's event stream with automatic retries")
	watch.add_argument("base_url", help="API base URL, e.g. http://localhost:3000/api")
	watch.add_argument("game_id", help="Game code")
	watch.add_argument("player_id", help="Player identifier")
	watch.add_argument("--log", help="Append lifecycle records to this CSV file")
	watch.add_argument("--remote-log", help="POST lifecycle records to this URL")
	watch.add_argument("--connection-timeout", type=float, help="Connection timeout ms")
	watch.add_argument("--max-retries", type=int, help="Automatic retries per failure streak")
	watch.add_argument("--initial-retry-delay", type=float, help="First back-off delay ms")
	watch.add_argument("--max-retry-delay", type=float, help="Back-off cap ms")
	watch.add_argument("--no-auto-reconnect", action="store_true", help="Do not reconnect after a drop")
	watch.add_argument("--runtime", type=float, help="Stop after this many seconds")
	watch.add_argument("--print-messages", action="store_true", help="Echo raw stream messages")
	watch.add_argument("--json", action="store_true", help="Output JSON")
	watch.set_defaults(handler=_cmd_watch)

	backoff = sub.add_parser("backoff", help="Show the retry delay schedule")
	backoff.add_argument("--initial-retry-delay", type=float, help="First back-off delay ms")
	backoff.add_argument("--max-retry-delay", type=float, help="Back-off cap ms")
	backoff.add_argument("--retries", type=int, default=5, help="Number of retries to show")
	backoff.add_argument("--json", action="store_true", help="Output JSON")
	backoff.set_defaults(handler=_cmd_backoff)

	serve = sub.add_parser("serve", help="Run the HTTP control API")
	serve.add_argument("--host", default="127.0.0.1")
	serve.add_argument("--port", type=int, default=8000)
	serve.set_defaults(handler=_cmd_serve)

	return parser


def main(argv: Optional[List[str]] = None) -> int:
	parser = _build_parser()
	args = parser.parse_args(argv)
	logging.basicConfig(level=logging.WARNING - 10 * min(args.verbose, 2))
	try:
		return asyncio.run(args.handler(args))
	except ValueError as exc:
		parser.error(str(exc))


if __name__ == "__main__":
	sys.exit(main())
