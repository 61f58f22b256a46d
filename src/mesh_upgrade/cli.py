"""
Command-line entry point: ``mesh-upgrade``.

Commands:
    status [UPGRADE_ID]   Show the active upgrade (or one upgrade) and the watchdog record
    history [--limit N]   List recent upgrades, newest first
    trigger               Start an upgrade and run it in this process
    cancel UPGRADE_ID     Cancel an upgrade that has not restarted yet
    test-config           Run all configuration checks
    reconcile             Finalize an upgrade left active by a previous process
    sidecar               Run the upgrader sidecar loop

Global options (--config, --log-level, --debug) go before the command.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from typing import Any

from mesh_upgrade import __version__
from mesh_upgrade.config import AppConfig, load_config
from mesh_upgrade.errors import UpgradeError
from mesh_upgrade.logging import get_logger, setup_logging
from mesh_upgrade.upgrades.controller import UpgradeController
from mesh_upgrade.upgrades.sidecar import UpgradeSidecar

logger = get_logger(__name__)


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mesh-upgrade",
        description="Self-upgrade orchestrator for the mesh dashboard",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", "-c", type=str, help="Path to configuration file")
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error"],
        help="Override log level",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    sub = parser.add_subparsers(dest="cmd", required=True)

    p_status = sub.add_parser("status", help="show upgrade status")
    p_status.add_argument("upgrade_id", nargs="?")

    p_history = sub.add_parser("history", help="list recent upgrades")
    p_history.add_argument("--limit", type=int, default=10)

    p_trigger = sub.add_parser("trigger", help="start an upgrade")
    p_trigger.add_argument("--target-version", default="latest")
    p_trigger.add_argument("--force", action="store_true")
    p_trigger.add_argument("--no-backup", action="store_true")
    p_trigger.add_argument("--initiated-by", default="cli")

    p_cancel = sub.add_parser("cancel", help="cancel an upgrade before restart")
    p_cancel.add_argument("upgrade_id")

    sub.add_parser("test-config", help="run configuration checks")
    sub.add_parser("reconcile", help="finalize an interrupted upgrade")
    sub.add_parser("sidecar", help="run the upgrader sidecar")

    return parser


async def _run_controller_command(args: argparse.Namespace, config: AppConfig) -> int:
    controller = UpgradeController(config)
    await controller.initialize()

    if args.cmd == "status":
        if args.upgrade_id:
            job = await controller.get_upgrade_status(args.upgrade_id)
            if job is None:
                print(f"Upgrade not found: {args.upgrade_id}", file=sys.stderr)
                return 1
            _print_json(job.to_dict())
            return 0

        active = await controller.get_active_upgrade()
        record = controller.get_latest_upgrade_status()
        _print_json(
            {
                "enabled": controller.is_enabled(),
                "deploymentMethod": controller.get_deployment_method(),
                "activeUpgrade": active.to_dict() if active else None,
                "watchdog": record.to_dict() if record else None,
            }
        )
        return 0

    if args.cmd == "history":
        jobs = await controller.get_upgrade_history(args.limit)
        _print_json([job.to_dict() for job in jobs])
        return 0

    if args.cmd == "trigger":
        result = await controller.trigger_upgrade(
            {
                "targetVersion": args.target_version,
                "force": args.force,
                "backup": not args.no_backup,
            },
            initiated_by=args.initiated_by,
        )
        _print_json(result.to_dict())
        await controller.wait_for_background()
        return 0 if result.success else 1

    if args.cmd == "cancel":
        cancel = await controller.cancel_upgrade(args.upgrade_id)
        _print_json(cancel.to_dict())
        return 0 if cancel.success else 1

    if args.cmd == "test-config":
        report = await controller.test_configuration()
        _print_json(report.to_dict())
        return 0 if report.success else 1

    if args.cmd == "reconcile":
        job = await controller.reconcile()
        _print_json(job.to_dict() if job else None)
        return 0

    raise ValueError(f"Unknown command: {args.cmd}")


async def _run_sidecar(config: AppConfig) -> int:
    sidecar = UpgradeSidecar(config)
    loop = asyncio.get_event_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, sidecar.stop)
    await sidecar.run()
    return 0


def main(argv: list[str] | None = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    args = build_parser().parse_args(argv)
    config = load_config(cli_args=argv)
    setup_logging(config.logging)

    try:
        if args.cmd == "sidecar":
            return asyncio.run(_run_sidecar(config))
        return asyncio.run(_run_controller_command(args, config))
    except UpgradeError as e:
        logger.error(
            "Command failed",
            extra={"error_code": e.error_code, "details": e.details},
        )
        print(f"Error: {e.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
