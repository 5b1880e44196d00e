#!/usr/bin/env python3
"""
DevStack CLI

Command-line interface for installing, configuring and running local
development servers.
"""

import argparse
import json
import logging
import signal
import sys
import threading
from pathlib import Path

from common.config import DevStackConfig
from common.exceptions import InvalidConfigError
from common.logging_config import setup_logging
from common.result import OperationResult
from store.families import DEFAULT_PHP_VERSION

from .app import DevStack

logger = logging.getLogger(__name__)


def get_stack(args) -> DevStack:
    """Build the stack from --config/--data-dir."""
    try:
        config = DevStackConfig.load(Path(args.config) if args.config else None)
    except InvalidConfigError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        sys.exit(1)
    if args.data_dir:
        config.data_dir = Path(args.data_dir).expanduser()
    setup_logging(level=args.log_level, log_dir=config.logs_dir)
    return DevStack(config)


def report(result: OperationResult, success_message: str = "") -> int:
    """Print a result; returns the exit code."""
    if result:
        if success_message:
            print(success_message)
        for warning in result.warnings:
            print(f"Warning: {warning}", file=sys.stderr)
        return 0

    if result.cancelled:
        print("Cancelled.", file=sys.stderr)
    else:
        print(f"Error: {result.error}", file=sys.stderr)
    for line in result.details.get("recent_logs", []):
        print(f"  | {line}", file=sys.stderr)
    return 1


def cmd_catalog_refresh(args):
    """Refresh available versions from the remote manifest."""
    stack = get_stack(args)
    result = stack.refresh_catalog()
    if result:
        print(f"Updated {result['updated_count']} app(s) ({result['last_updated']})")
    return report(result)


def cmd_catalog_list(args):
    """List catalog apps."""
    stack = get_stack(args)
    results = stack.catalog.search(query=args.query or "", category=args.category)

    if not results:
        print(f"No apps found for: {args.query or '(all)'}")
        return 0

    print(f"Found {len(results)} app(s):\n")
    for app in results:
        latest = app.latest.version if app.latest else "-"
        print(f"  {app.id}")
        print(f"    {app.name} (latest {latest}, {len(app.versions)} version(s))")
        if app.description:
            print(f"    {app.description[:80]}")
        print()

    return 0


def cmd_catalog_info(args):
    """Show detailed app information."""
    stack = get_stack(args)
    app = stack.catalog.get(args.app_id)

    if not app:
        print(f"App not found: {args.app_id}", file=sys.stderr)
        return 1

    print(f"Name:        {app.name}")
    print(f"ID:          {app.id}")
    if app.category:
        print(f"Category:    {app.category}")
    if app.group:
        print(f"Group:       {app.group}")
    if app.description:
        print(f"Description: {app.description}")
    if app.exec_file:
        print(f"Executable:  {app.exec_file}")

    installed = stack.registry.get(app.id)
    print(f"Installed:   {installed.installed_version if installed else 'No'}")

    print("Versions:")
    for version in app.versions:
        print(f"  {version.version:<12} {version.filename}")

    return 0


def cmd_install(args):
    """Install an application."""
    stack = get_stack(args)

    def on_progress(event):
        detail = f" - {event.log_detail}" if event.log_detail else ""
        print(f"  [{event.progress}%] {event.status}{detail}")

    stack.add_progress_listener(on_progress)

    # Ctrl+C cancels the download/extraction instead of killing the process
    done = threading.Event()
    outcome = {}

    def on_done(result):
        outcome["result"] = result
        done.set()

    print(f"Installing {args.app_id}...")
    stack.install_in_background(args.app_id, args.version, args.auto_start, on_done)
    try:
        while not done.wait(0.5):
            pass
    except KeyboardInterrupt:
        print("\nCancelling...")
        stack.cancel_install(args.app_id)
        done.wait()

    result = outcome["result"]
    return report(result, f"Installed {args.app_id} {result.get('version', '')}")


def cmd_uninstall(args):
    """Uninstall an application."""
    stack = get_stack(args)
    print(f"Uninstalling {args.app_id}...")
    return report(stack.uninstall(args.app_id), f"Uninstalled {args.app_id}")


def cmd_list(args):
    """List installed applications."""
    stack = get_stack(args)
    apps = [a for a in stack.list_apps() if a["status"] == "installed" or args.all]

    if args.json:
        print(json.dumps(apps, indent=2))
        return 0

    if not apps:
        print("No apps installed.")
        return 0

    for app in apps:
        version = app.get("installed_version") or "-"
        flags = []
        if app.get("auto_start"):
            flags.append("auto-start")
        if app.get("show_on_dashboard"):
            flags.append("dashboard")
        flag_str = f" [{', '.join(flags)}]" if flags else ""
        print(f"  {app['id']:<12} {version:<10} {app['status']}{flag_str}")

    return 0


def _started_message(verb: str, app_id: str, result: OperationResult) -> str:
    message = f"{verb} {app_id} (PID {result.get('pid')})"
    if result.get("output"):
        message += f"\nOutput: {result['output']}"
    return message


def cmd_start(args):
    """Start a service; without --wait it is detached and outlives the CLI."""
    stack = get_stack(args)
    result = stack.start_service(args.app_id, args.args, detach=not args.wait)
    code = report(result, _started_message("Started", args.app_id, result))
    if code == 0 and args.wait:
        return _supervise(stack)
    return code


def cmd_stop(args):
    stack = get_stack(args)
    return report(stack.stop_service(args.app_id), f"Stopped {args.app_id}")


def cmd_restart(args):
    stack = get_stack(args)
    result = stack.restart_service(args.app_id, args.args, detach=not args.wait)
    code = report(result, _started_message("Restarted", args.app_id, result))
    if code == 0 and args.wait:
        return _supervise(stack)
    return code


def cmd_status(args):
    """Show whether services are running."""
    stack = get_stack(args)
    apps = [args.app_id] if args.app_id else [a.app_id for a in stack.registry.all()]

    for app_id in apps:
        result = stack.service_status(app_id)
        if not result:
            print(f"  {app_id:<12} {result.error}")
            continue
        print(f"  {app_id:<12} {'running' if result['running'] else 'stopped'}")

    return 0


def cmd_logs(args):
    """List or print the server's own log files."""
    stack = get_stack(args)

    if args.clear:
        return report(stack.clear_log_file(args.app_id, args.clear), f"Cleared {args.clear}")

    if args.file:
        result = stack.read_log_file(args.app_id, args.file)
        if result:
            print(result["content"], end="")
        return report(result)

    result = stack.list_log_files(args.app_id)
    if not result:
        return report(result)
    if not result["files"]:
        print(f"No log files for {args.app_id}")
        return 0

    print(f"{result['logs_path']}:")
    for name in result["files"]:
        print(f"  {name}")
    return 0


def cmd_default_version(args):
    """Show or set the default member of a versioned family."""
    stack = get_stack(args)

    if not args.value:
        for key, value in stack.get_default_versions().items():
            print(f"  {key}: {value or '(unset)'}")
        return 0

    result = stack.set_default_version(args.setting, args.value)
    return report(result, f"{args.setting} set to {args.value}")


def cmd_run(args):
    """Start auto-start services and supervise until interrupted."""
    stack = get_stack(args)
    results = stack.start()

    for app_id, result in results.items():
        state = f"started (PID {result.get('pid')})" if result else f"failed: {result.error}"
        print(f"  {app_id}: {state}")

    if not results:
        print("No services flagged for auto-start.")

    return _supervise(stack)


def _supervise(stack: DevStack) -> int:
    """Stream service output until Ctrl+C or SIGTERM, then stop everything."""
    stop = threading.Event()

    def on_log(event):
        print(f"[{event.timestamp}] {event.app_id} [{event.type.value}] {event.message}")

    stack.add_log_listener(on_log)
    signal.signal(signal.SIGTERM, lambda *_: stop.set())

    print("Supervising services (Ctrl+C to stop)...")
    try:
        while not stop.wait(1.0):
            pass
    except KeyboardInterrupt:
        pass
    finally:
        print("\nStopping services...")
        stack.close()

    return 0


def _add_app_arg(parser):
    parser.add_argument("app_id", help="App ID")


def main():
    parser = argparse.ArgumentParser(
        prog="devstack",
        description="Local development stack manager",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable verbose output"
    )
    parser.add_argument("--config", help="Config file (default: ~/.config/devstack/config.json)")
    parser.add_argument("--data-dir", help="Data directory override")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # catalog
    catalog_p = subparsers.add_parser("catalog", help="Browse and refresh the app catalog")
    catalog_sub = catalog_p.add_subparsers(dest="catalog_command")

    refresh_p = catalog_sub.add_parser("refresh", help="Fetch the latest versions")
    refresh_p.set_defaults(func=cmd_catalog_refresh)

    clist_p = catalog_sub.add_parser("list", help="List catalog apps")
    clist_p.add_argument("query", nargs="?", default="", help="Search query")
    clist_p.add_argument("-c", "--category", help="Filter by category")
    clist_p.set_defaults(func=cmd_catalog_list)

    info_p = catalog_sub.add_parser("info", help="Show app details")
    _add_app_arg(info_p)
    info_p.set_defaults(func=cmd_catalog_info)

    # install
    install_p = subparsers.add_parser("install", help="Install an app")
    _add_app_arg(install_p)
    install_p.add_argument("--version", help="Version (default: latest)")
    install_p.add_argument("--auto-start", action="store_true", help="Start on boot")
    install_p.set_defaults(func=cmd_install)

    # uninstall
    uninstall_p = subparsers.add_parser("uninstall", help="Uninstall an app")
    _add_app_arg(uninstall_p)
    uninstall_p.set_defaults(func=cmd_uninstall)

    # list
    list_p = subparsers.add_parser("list", help="List installed apps")
    list_p.add_argument("-a", "--all", action="store_true", help="Include apps not installed")
    list_p.add_argument("--json", action="store_true", help="JSON output")
    list_p.set_defaults(func=cmd_list)

    # start / stop / restart
    start_p = subparsers.add_parser("start", help="Start a service")
    _add_app_arg(start_p)
    start_p.add_argument("--args", help="Arguments (default: stored custom args)")
    start_p.add_argument("--wait", action="store_true", help="Stay attached and stream logs")
    start_p.set_defaults(func=cmd_start)

    stop_p = subparsers.add_parser("stop", help="Stop a service")
    _add_app_arg(stop_p)
    stop_p.set_defaults(func=cmd_stop)

    restart_p = subparsers.add_parser("restart", help="Restart a service")
    _add_app_arg(restart_p)
    restart_p.add_argument("--args", help="Arguments (default: stored custom args)")
    restart_p.add_argument("--wait", action="store_true", help="Stay attached and stream logs")
    restart_p.set_defaults(func=cmd_restart)

    # status
    status_p = subparsers.add_parser("status", help="Show service status")
    status_p.add_argument("app_id", nargs="?", help="App ID (default: all installed)")
    status_p.set_defaults(func=cmd_status)

    # logs
    logs_p = subparsers.add_parser("logs", help="List or show server log files")
    _add_app_arg(logs_p)
    logs_p.add_argument("-f", "--file", help="Log file to print")
    logs_p.add_argument("--clear", metavar="FILE", help="Empty a log file")
    logs_p.set_defaults(func=cmd_logs)

    # default-version
    default_p = subparsers.add_parser("default-version", help="Show or set default versions")
    default_p.add_argument("value", nargs="?", help="Version to make default, e.g. 8.3")
    default_p.add_argument(
        "--setting", default=DEFAULT_PHP_VERSION, help=f"Setting key (default: {DEFAULT_PHP_VERSION})"
    )
    default_p.set_defaults(func=cmd_default_version)

    # run
    run_p = subparsers.add_parser("run", help="Start auto-start services and supervise")
    run_p.set_defaults(func=cmd_run)

    args = parser.parse_args()

    args.log_level = logging.DEBUG if args.verbose else logging.WARNING
    setup_logging(level=args.log_level)

    if args.command is None or not hasattr(args, "func"):
        parser.print_help()
        return 1

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
