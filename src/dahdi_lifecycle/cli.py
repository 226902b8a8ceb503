#!/usr/bin/env python3
"""
dahdi-lifecycle CLI
===================

Command-line interface for the DAHDI hardware lifecycle orchestrator.

Usage:
    dahdi-lifecycle stop [--force]      # Detach the PBX and unload the DAHDI stack
    dahdi-lifecycle start               # Discover, configure and bring the stack up
    dahdi-lifecycle restart [--force]   # stop, then start
    dahdi-lifecycle restart-light       # Reload the PBX channel driver only

    dahdi-lifecycle status              # Observed phase and PBX reachability
    dahdi-lifecycle hardware            # Discovered cards and candidate drivers
    dahdi-lifecycle reconcile           # Dry-run configuration diff

Global options: --config PATH, --json, --mock
"""

import argparse
import asyncio
import json
import sys
from typing import List, Optional

from .utils.config import SYSTEM_CONFIG_PATH, Config, ConfigurationError
from .utils.logger import DAHDILogger, LoggerConfig
from .core.interfaces import DiscoveryToolError, DriftClassification, Intent, LifecycleError
from .core.orchestrator import LifecycleOrchestrator, LifecycleReport, command_dict

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def load_config(args: argparse.Namespace) -> Config:
    """Load configuration and reconfigure logging from it"""
    config = Config()
    path = args.config
    if path is None and SYSTEM_CONFIG_PATH.exists():
        path = SYSTEM_CONFIG_PATH
    config.load(path)
    if args.mock:
        config.development.mock_hardware = True

    DAHDILogger().configure(LoggerConfig(
        level=config.logging.level,
        format=config.logging.format,
        output_file=config.logging.output,
        max_bytes=config.logging.max_bytes,
        backup_count=config.logging.backup_count,
    ))
    return config


def print_report(report: LifecycleReport, as_json: bool) -> None:
    """Print the outcome on stdout and the failure summary on stderr"""
    if as_json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        print(f"{report.intent.value}: {report.final_phase.value}")
        if report.software_only:
            print("  software-only: no telephony hardware in use")
        if report.reconciliation is not None and not report.reconciliation.skipped:
            print(f"  configuration: {report.reconciliation.classification.value}")
        for advisory in report.advisories:
            print(f"  note: {advisory}")

    if report.succeeded:
        return
    print(report.failure_summary(), file=sys.stderr)
    last = command_dict(report.last_command)
    if last is not None:
        status = "timed out" if last["timed_out"] else f"exit {last['exit_code']}"
        print(f"  last command: {last['command']} ({status})", file=sys.stderr)
        for line in last["stderr_tail"].splitlines():
            print(f"    {line}", file=sys.stderr)


def cmd_lifecycle(args: argparse.Namespace, orchestrator: LifecycleOrchestrator) -> int:
    """Run stop, start, restart or restart-light."""
    intent = Intent(args.command)
    report = asyncio.run(orchestrator.run(intent, force=getattr(args, "force", False)))
    print_report(report, args.json)
    return EXIT_OK if report.succeeded else EXIT_FAILED


def cmd_status(args: argparse.Namespace, orchestrator: LifecycleOrchestrator) -> int:
    """Show observed lifecycle status."""
    status = asyncio.run(orchestrator.status())
    if args.json:
        print(json.dumps(status.to_dict(), indent=2))
        return EXIT_OK

    print(f"Phase: {status.phase.value}")
    print(f"Modules: {', '.join(status.modules) if status.modules else 'none'}")
    print(f"PBX reachable: {'yes' if status.pbx_reachable else 'no'}")
    if status.channel_module_loaded is not None:
        print(f"Channel module loaded: {'yes' if status.channel_module_loaded else 'no'}")
    return EXIT_OK


def cmd_hardware(args: argparse.Namespace, orchestrator: LifecycleOrchestrator) -> int:
    """List discovered telephony hardware."""
    try:
        devices = asyncio.run(orchestrator.discovery.discover())
    except DiscoveryToolError as e:
        print(f"Hardware discovery failed: {e}", file=sys.stderr)
        return EXIT_FAILED

    if args.json:
        print(json.dumps([
            {
                "bus_address": d.bus_address,
                "vendor_product": d.vendor_product,
                "description": d.description,
                "driver_candidates": d.driver_candidates,
                "driver_loaded": d.driver_loaded,
            }
            for d in devices
        ], indent=2))
        return EXIT_OK

    if not devices:
        print("No telephony hardware found")
        return EXIT_OK
    print(f"Devices ({len(devices)}):")
    for device in devices:
        drivers = ", ".join(device.driver_candidates) or "unknown"
        loaded = "+" if device.driver_loaded else "-"
        print(f"  {device.bus_address}  {device.vendor_product}  [{loaded}] {drivers}  {device.description}")
    return EXIT_OK


def cmd_reconcile(args: argparse.Namespace, orchestrator: LifecycleOrchestrator) -> int:
    """Show the configuration diff without changing anything."""
    result = asyncio.run(orchestrator.preview())
    if args.json:
        print(json.dumps({
            "classification": result.classification.value,
            "delta": [str(line) for line in result.delta],
            "warnings": result.warnings,
            "skipped": result.skipped,
        }, indent=2))
    else:
        print(f"Classification: {result.classification.value}")
        if result.skipped:
            print("  nothing generated")
        for warning in result.warnings:
            print(f"  note: {warning}")
        if result.delta:
            print(result.diff_text())
    return EXIT_FAILED if result.classification == DriftClassification.DANGEROUS_DRIFT else EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dahdi-lifecycle",
        description="DAHDI hardware lifecycle orchestrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", help="YAML configuration file")
    parser.add_argument("--json", action="store_true", help="Output as JSON")
    parser.add_argument("--mock", action="store_true",
                        help="Run against the in-memory mock host")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # lifecycle intents
    p = subparsers.add_parser("stop", help="Stop the hardware stack")
    p.add_argument("--force", action="store_true",
                   help="Terminate the PBX instead of unloading its channel driver")
    p.set_defaults(func=cmd_lifecycle)

    p = subparsers.add_parser("start", help="Start the hardware stack")
    p.set_defaults(func=cmd_lifecycle)

    p = subparsers.add_parser("restart", help="Stop, then start the hardware stack")
    p.add_argument("--force", action="store_true",
                   help="Terminate the PBX instead of unloading its channel driver")
    p.set_defaults(func=cmd_lifecycle)

    p = subparsers.add_parser("restart-light",
                              help="Reload the PBX channel driver without touching kernel modules")
    p.set_defaults(func=cmd_lifecycle)

    # read-only
    p = subparsers.add_parser("status", help="Show observed status")
    p.set_defaults(func=cmd_status)

    p = subparsers.add_parser("hardware", help="List telephony hardware")
    p.set_defaults(func=cmd_hardware)

    p = subparsers.add_parser("reconcile", help="Dry-run configuration diff")
    p.set_defaults(func=cmd_reconcile)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return EXIT_FAILED

    try:
        config = load_config(args)
        orchestrator = LifecycleOrchestrator.from_config(config)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG

    try:
        return args.func(args, orchestrator)
    except LifecycleError as e:
        print(f"Error: {e}", file=sys.stderr)
        if e.command is not None:
            print(f"  last command: {e.command.command_line} (exit {e.command.exit_code})", file=sys.stderr)
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
