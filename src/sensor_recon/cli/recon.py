"""Maintenance CLI.

Runs reconciliation passes and administrative bulk operations against the
configured database without the HTTP server.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import uvicorn

from sensor_recon.app.compose import AppContainer, compose
from sensor_recon.core.application.scheduler import StalenessScheduler, installer_window, verifier_window
from sensor_recon.core.application.use_cases.boxes import import_devices, open_box
from sensor_recon.core.application.use_cases.reassign_location import reassign_from
from sensor_recon.core.infrastructure.settings import get_settings
from sensor_recon.utils.exceptions import ReconError
from sensor_recon.utils.logging import get_logger

_log = get_logger(__name__)


# ============== Commands ==============

async def _cmd_reconcile(c: AppContainer, args: argparse.Namespace) -> dict[str, Any]:
    results = []
    for iid in args.installation_ids:
        outcome = await c.engine.trigger(iid)
        data = outcome.to_dict()
        data.pop("installation", None)
        results.append(data)
    return {"results": results}


async def _cmd_sweep(c: AppContainer, args: argparse.Namespace) -> dict[str, Any]:
    if args.window == "installer":
        if not args.installer_id:
            raise ReconError("--installer-id is required for the installer window.", code="usage")
        window = installer_window(c.settings, args.installer_id)
    else:
        window = verifier_window(c.settings, args.team_id)
    sched = StalenessScheduler(c.engine, window, max_concurrency=c.settings.SCHEDULER_MAX_CONCURRENCY)
    return await sched.run_once()


async def _cmd_reassign(c: AppContainer, args: argparse.Namespace) -> dict[str, Any]:
    count = await reassign_from(
        storage=c.storage,
        location_id=args.from_location,
        new_location_id=args.to_location,
        actor=args.actor,
        limit=args.batch_limit,
    )
    return {"updated": count}


async def _cmd_open_box(c: AppContainer, args: argparse.Namespace) -> dict[str, Any]:
    count = await open_box(storage=c.storage, box_number=args.box, team_id=args.team_id, actor=args.actor)
    return {"opened": count}


async def _cmd_import(c: AppContainer, args: argparse.Namespace) -> dict[str, Any]:
    records = json.loads(Path(args.file).read_text(encoding="utf-8"))
    if isinstance(records, dict):
        records = records.get("devices", [])
    created = await import_devices(storage=c.storage, records=records, actor=args.actor)
    return {"created": created, "received": len(records)}


_COMMANDS = {
    "reconcile": _cmd_reconcile,
    "sweep": _cmd_sweep,
    "reassign-location": _cmd_reassign,
    "open-box": _cmd_open_box,
    "import-devices": _cmd_import,
}


# ============== Argument parsing ==============

def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="sensor-recon",
        description="Installation reconciliation and administration",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Reconcile two installations now
  sensor-recon reconcile DEV001_1700000000000 DEV002_1700000000500

  # One verifier-window pass for a team
  sensor-recon sweep --window verifier --team-id team-1

  # Move every installation from location 12 to 34
  sensor-recon reassign-location --from 12 --to 34 --actor admin
        """,
    )
    parser.add_argument("--format", choices=["text", "json"], default="json", help="Output format")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("reconcile", help="Reconcile installations by id")
    p.add_argument("installation_ids", nargs="+")

    p = sub.add_parser("sweep", help="Run one staleness pass")
    p.add_argument("--window", choices=["installer", "verifier"], default="verifier")
    p.add_argument("--installer-id")
    p.add_argument("--team-id")

    p = sub.add_parser("reassign-location", help="Bulk move installations to another location id")
    p.add_argument("--from", dest="from_location", required=True)
    p.add_argument("--to", dest="to_location", required=True)
    p.add_argument("--actor")
    p.add_argument("--batch-limit", type=int, default=None)

    p = sub.add_parser("open-box", help="Mark a team's box as opened")
    p.add_argument("--box", required=True)
    p.add_argument("--team-id", required=True)
    p.add_argument("--actor")

    p = sub.add_parser("import-devices", help="Register devices from a JSON file")
    p.add_argument("file")
    p.add_argument("--actor")

    p = sub.add_parser("serve", help="Run the HTTP API")
    p.add_argument("--host", default=None)
    p.add_argument("--port", type=int, default=None)

    return parser.parse_args(argv)


def format_result(result: dict[str, Any], fmt: str) -> str:
    if fmt == "json":
        return json.dumps(result, ensure_ascii=False, indent=2, default=str)
    return "\n".join(f"{k}: {v}" for k, v in result.items())


async def async_main(args: argparse.Namespace) -> int:
    container = None
    try:
        container = await compose()
        await container.bus.start()
        result = await _COMMANDS[args.command](container, args)
        print(format_result(result, args.format))
        return 0
    except ReconError as e:
        _log.error("cli_command_failed", extra={"command": args.command, "code": e.code})
        print(f"{e.title}: {e.description}", file=sys.stderr)
        return 1
    except Exception as e:
        _log.error("cli_command_error", extra={"command": args.command}, exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 2
    finally:
        if container is not None:
            await container.stop()


def serve(args: argparse.Namespace) -> int:
    s = get_settings()
    uvicorn.run(
        "sensor_recon.app.server:app",
        host=args.host or s.HTTP_HOST,
        port=args.port or s.HTTP_PORT,
        log_config=None,
    )
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    if args.command == "serve":
        return serve(args)
    try:
        return asyncio.run(async_main(args))
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        return 130


if __name__ == "__main__":
    sys.exit(main())
