"""CLI entry points for openindiana-up."""

from __future__ import annotations

import argparse
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from openindiana_up import __version__
from openindiana_up.config import classify_input, load_user_config, resolve_options
from openindiana_up.constants import DB_PATH, DEFAULT_VERSION
from openindiana_up.database import VirtualMachine, create_session_factory
from openindiana_up.exceptions import ManagerError
from openindiana_up.lifecycle import LifecycleController
from openindiana_up.process import ProcessSupervisor
from openindiana_up.qemu import describe_command
from openindiana_up.repository import SqlalchemyVMRepository
from openindiana_up.utils import log

SUBCOMMANDS = ("ps", "start", "stop", "restart", "inspect", "rm", "logs")

TABLE_COLUMNS = ("NAME", "VCPU", "MEMORY", "STATUS", "PID", "BRIDGE", "MAC", "CREATED")


def _add_override_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-c", "--cpu", help="QEMU CPU model (default: host)")
    parser.add_argument("-C", "--cpus", type=int, help="Number of virtual CPUs (default: 2)")
    parser.add_argument("-m", "--memory", help="Guest memory, e.g. 2G (default: 2G)")
    parser.add_argument(
        "-p",
        "--port-forward",
        help="Forward host ports to the guest, e.g. 2222:22,8080:80 (NAT only)",
    )


def build_create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="openindiana-up",
        description="Boot OpenIndiana guests under QEMU and keep track of them.",
        epilog=f"Management commands: {', '.join(SUBCOMMANDS)} (run '<command> --help' for details)",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "input",
        nargs="?",
        metavar="path-or-url-or-version",
        help=f"Local ISO, ISO URL or release version such as {DEFAULT_VERSION} (default: {DEFAULT_VERSION})",
    )
    parser.add_argument("-o", "--output", help="Where to save a downloaded ISO")
    _add_override_flags(parser)
    parser.add_argument("-i", "--image", "--drive", dest="drive", help="Disk image to attach (created if missing)")
    parser.add_argument("--disk-format", help="Disk image format (default: raw)")
    parser.add_argument("-s", "--size", help="Size of a newly created disk image (default: 20G)")
    parser.add_argument("-b", "--bridge", help="Attach the guest to this host bridge instead of NAT")
    parser.add_argument("-d", "--detach", action="store_true", help="Run in the background")
    parser.add_argument("-n", "--name", help="Name for the new virtual machine")
    parser.add_argument("--dry-run", action="store_true", help="Print the QEMU command and exit")
    return parser


def build_command_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="openindiana-up", description="Manage OpenIndiana virtual machines.")
    sub = parser.add_subparsers(dest="command", required=True)

    ps = sub.add_parser("ps", help="List virtual machines")
    ps.add_argument("-a", "--all", action="store_true", help="Include stopped virtual machines")

    start = sub.add_parser("start", help="Start a stopped virtual machine")
    start.add_argument("vm", help="Name or ID")
    start.add_argument("-d", "--detach", action="store_true", help="Run in the background")
    _add_override_flags(start)

    stop = sub.add_parser("stop", help="Stop a running virtual machine")
    stop.add_argument("vm", help="Name or ID")

    restart = sub.add_parser("restart", help="Stop and start a virtual machine in the background")
    restart.add_argument("vm", help="Name or ID")
    _add_override_flags(restart)

    inspect = sub.add_parser("inspect", help="Show the stored record of a virtual machine")
    inspect.add_argument("vm", help="Name or ID")

    rm = sub.add_parser("rm", help="Remove a virtual machine record")
    rm.add_argument("vm", help="Name or ID")

    logs = sub.add_parser("logs", help="Show the console log of a detached virtual machine")
    logs.add_argument("vm", help="Name or ID")
    logs.add_argument("-f", "--follow", action="store_true", help="Keep printing new output")
    return parser


def format_age(created: Optional[datetime], now: Optional[datetime] = None) -> str:
    """Render ``created`` as a rough relative age, e.g. ``5 minutes ago``."""
    if created is None:
        return "-"
    if now is None:
        # SQLite CURRENT_TIMESTAMP is naive UTC.
        now = datetime.now(timezone.utc).replace(tzinfo=None)
    seconds = max(0, int((now - created).total_seconds()))
    for unit, size in (("day", 86400), ("hour", 3600), ("minute", 60)):
        if seconds >= size:
            count = seconds // size
            return f"{count} {unit}{'s' if count != 1 else ''} ago"
    return f"{seconds} second{'s' if seconds != 1 else ''} ago"


def print_vm_table(vms: Sequence[VirtualMachine], now: Optional[datetime] = None) -> None:
    rows: List[Sequence[str]] = [TABLE_COLUMNS]
    for vm in vms:
        rows.append(
            (
                vm.name,
                str(vm.cpus),
                vm.memory,
                vm.status,
                str(vm.pid) if vm.pid is not None else "-",
                vm.bridge or "-",
                vm.mac_address,
                format_age(vm.created_at, now),
            )
        )
    widths = [max(len(row[idx]) for row in rows) for idx in range(len(TABLE_COLUMNS))]
    for row in rows:
        print("  ".join(cell.ljust(width) for cell, width in zip(row, widths)).rstrip())


def show_vm(vm: VirtualMachine) -> None:
    print(yaml.safe_dump(vm.to_dict(), sort_keys=False, default_flow_style=False), end="")


def _dispatch(args: argparse.Namespace, controller: LifecycleController) -> int:
    command = args.command
    if command == "ps":
        print_vm_table(controller.list(show_all=args.all))
        return 0
    if command == "start":
        return controller.start(
            args.vm, cpu=args.cpu, cpus=args.cpus, memory=args.memory,
            port_forward=args.port_forward, detach=args.detach,
        )
    if command == "stop":
        controller.stop(args.vm)
        return 0
    if command == "restart":
        return controller.restart(
            args.vm, cpu=args.cpu, cpus=args.cpus, memory=args.memory, port_forward=args.port_forward,
        )
    if command == "inspect":
        show_vm(controller.inspect(args.vm))
        return 0
    if command == "rm":
        vm = controller.remove(args.vm)
        log("SUCCESS", f"Virtual machine {vm.name} removed.")
        return 0
    if command == "logs":
        return controller.logs(args.vm, follow=args.follow)
    raise ManagerError(f"Unknown command: {command}")


def _create(args: argparse.Namespace, controller: LifecycleController, user_defaults: Dict[str, Any]) -> int:
    config = resolve_options(
        cpu=args.cpu,
        cpus=args.cpus,
        memory=args.memory,
        drive=args.drive,
        disk_format=args.disk_format,
        size=args.size,
        bridge=args.bridge,
        port_forward=args.port_forward,
        detach=args.detach,
        name=args.name,
        user_defaults=user_defaults,
    )
    source = classify_input(args.input)
    if args.dry_run:
        print(describe_command(controller.plan(config, source, output=args.output)))
        return 0
    return controller.create(config, source, output=args.output)


def main(argv: Optional[List[str]] = None, db_path: Optional[Path] = None) -> int:
    if argv is None:
        argv = sys.argv[1:]
    is_command = bool(argv) and argv[0] in SUBCOMMANDS
    parser = build_command_parser() if is_command else build_create_parser()
    args = parser.parse_args(argv)

    session = None
    try:
        user_defaults = load_user_config()
        session = create_session_factory(db_path or DB_PATH)()
        controller = LifecycleController(
            SqlalchemyVMRepository(session), ProcessSupervisor(), user_defaults=user_defaults,
        )
        if is_command:
            return _dispatch(args, controller)
        return _create(args, controller, user_defaults)
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1
    except KeyboardInterrupt:
        log("WARN", "Interrupted")
        return 130
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1
    finally:
        if session is not None:
            session.close()
