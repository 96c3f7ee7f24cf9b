#!/usr/bin/env python3
"""
Command-line interface for cloudmark.

Usage:
    cloudmark backup [--reason user]
    cloudmark list
    cloudmark check
    cloudmark sync [NAME] [--yes]
    cloudmark restore NAME
    cloudmark test [--url URL --username USER --password PASS]
    cloudmark settings show | set KEY VALUE
    cloudmark config show | save [--path PATH]
    cloudmark daemon
    cloudmark relay [--host HOST] [--port PORT]
"""
import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table

from cloudmark.config import CloudmarkConfig, init_config
from cloudmark.scheduler import ScheduleController, period_seconds
from cloudmark.service import CloudService, ServiceResponse
from cloudmark.storage import LocalStore
from cloudmark.timestamps import timestamp_from_filename

logger = logging.getLogger(__name__)

console = Console()


def setup_logging(level: str = "INFO", verbose: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )
    # aiohttp access noise
    logging.getLogger("aiohttp").setLevel(logging.WARNING)


def console_notifier(title: str, message: str):
    console.print(f"[bold cyan]{title}[/bold cyan]: {message}")


def get_store(config: CloudmarkConfig) -> LocalStore:
    store = LocalStore(config.get_data_dir())
    store.ensure_init()
    return store


def get_service(config: CloudmarkConfig, notifier=None) -> CloudService:
    return CloudService(get_store(config), config, notifier=notifier)


def format_time(ms: Optional[int]) -> str:
    if not ms:
        return "-"
    return datetime.fromtimestamp(ms / 1000).strftime("%Y-%m-%d %H:%M:%S")


def emit(response: ServiceResponse, output: str) -> bool:
    """Print a failed response; in json mode print every response."""
    if output == "json":
        print(json.dumps(response.to_dict(), indent=2, default=str))
    elif not response.ok:
        console.print(f"[red]Error ({response.error_type}): {response.error}[/red]")
    return response.ok


def cmd_backup(args):
    """Take a snapshot backup now."""
    service = get_service(args.config_obj)
    response = asyncio.run(service.backup(args.reason))
    if not emit(response, args.output):
        sys.exit(1)
    if args.output == "json":
        return

    result = response.value
    if result['uploaded']:
        console.print(f"[green]✓ Uploaded {result['name']}[/green]")
        if result['deleted']:
            console.print(f"  Rotated out {len(result['deleted'])} old snapshot(s)")
    else:
        console.print(f"[yellow]Backup skipped: {result['skipped']}[/yellow]")


def cmd_list(args):
    """List remote snapshots."""
    service = get_service(args.config_obj)
    response = asyncio.run(service.list_snapshots())
    if not emit(response, args.output):
        sys.exit(1)
    if args.output == "json":
        return

    table = Table(title="Remote Snapshots")
    table.add_column("Name", style="cyan")
    table.add_column("Snapshot time", style="green")
    table.add_column("Server time", style="blue")
    table.add_column("Size", justify="right", style="yellow")
    for item in response.value:
        table.add_row(
            item['name'],
            format_time(timestamp_from_filename(item['name'])),
            format_time(item['lastmod']),
            str(item['size']),
        )
    console.print(table)


def cmd_check(args):
    """Check whether the remote holds newer data."""
    service = get_service(args.config_obj)
    response = asyncio.run(service.check_remote())
    if not emit(response, args.output):
        sys.exit(1)
    if args.output == "json":
        return

    result = response.value
    if not result['applicable']:
        console.print("[yellow]WebDAV is not configured[/yellow]")
    elif result['error']:
        console.print(f"[yellow]{result['error']}[/yellow]")
    elif result['file'] is None:
        console.print("No remote snapshots found")
    elif result['has_newer_data']:
        console.print(Panel(
            f"Remote: {result['file']['name']}\n"
            f"Remote time: {format_time(result['remote_time'])}\n"
            f"Local time: {format_time(result['local_time'])}\n"
            f"Newer by {result['diff_seconds']}s\n\n"
            f"[dim]Run 'cloudmark sync' to restore it[/dim]",
            title="Newer remote data",
            border_style="yellow"
        ))
    else:
        console.print("[green]✓ Local data is up to date[/green]")


def cmd_sync(args):
    """Safe restore from the newest (or a named) remote snapshot."""
    service = get_service(args.config_obj)
    name = args.name

    if not name:
        check = asyncio.run(service.check_remote())
        if not check.ok:
            emit(check, args.output)
            sys.exit(1)
        if not check.value['has_newer_data']:
            console.print("[green]✓ Local data is up to date, nothing to sync[/green]")
            return
        name = check.value['file']['name']

    if not args.yes and not Confirm.ask(f"Replace local data with {name}?", console=console):
        console.print("[yellow]Sync cancelled[/yellow]")
        return

    response = asyncio.run(service.sync_from(name))
    if not emit(response, args.output):
        sys.exit(1)
    if args.output == "json":
        return

    outcome = response.value
    if outcome['status'] == "already_syncing":
        console.print("[yellow]A sync is already in progress[/yellow]")
    else:
        console.print(f"[green]✓ Synced from {name}[/green]")
        console.print(f"  Safety snapshot: {outcome['safety_snapshot']}")


def cmd_restore(args):
    """Plain restore of a named snapshot, without a safety copy."""
    service = get_service(args.config_obj)
    if not args.yes and not Confirm.ask(f"Overwrite local data with {args.name}?", console=console):
        console.print("[yellow]Restore cancelled[/yellow]")
        return

    response = asyncio.run(service.restore(args.name))
    if not emit(response, args.output):
        sys.exit(1)
    if args.output != "json":
        console.print(f"[green]✓ Restored {args.name}[/green]")


def cmd_test(args):
    """Test the WebDAV connection, including write permission."""
    service = get_service(args.config_obj)
    config = None
    if args.url:
        config = {'url': args.url, 'username': args.username, 'password': args.password}

    response = asyncio.run(service.test_connection(config))
    if not emit(response, args.output):
        sys.exit(1)
    if args.output == "json":
        return

    if response.value.get('can_write'):
        console.print("[green]✓ Connection OK, server is writable[/green]")
    else:
        console.print("[yellow]Connection OK, but the write probe failed[/yellow]")


def cmd_settings(args):
    """Show or change backup settings."""
    store = get_store(args.config_obj)
    settings = store.read_settings()

    if args.settings_command == "set":
        try:
            settings.set_value(args.key, args.value)
        except (KeyError, ValueError) as e:
            console.print(f"[red]Error: {e}[/red]")
            sys.exit(1)
        store.write_settings(settings)
        console.print(f"[green]✓ Set {args.key}[/green]")
        return

    data = settings.to_dict()
    if args.output == "json":
        print(json.dumps(data, indent=2))
        return

    table = Table(title="Settings")
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="green")
    for section, values in data.items():
        for key, value in values.items():
            if key == "password" and value:
                value = "********"
            table.add_row(f"{section}.{key}", str(value))
    console.print(table)


def cmd_config(args):
    """Show the effective process configuration or save it to a TOML file."""
    config = args.config_obj

    if args.config_command == "save":
        path = config.save(Path(args.path).expanduser() if args.path else None)
        console.print(f"[green]✓ Configuration saved to {path}[/green]")
        return

    data = asdict(config)
    if args.output == "json":
        print(json.dumps(data, indent=2))
        return

    table = Table(title="Configuration")
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="green")
    for key, value in data.items():
        table.add_row(key, "-" if value is None else str(value))
    console.print(table)


async def run_daemon(config: CloudmarkConfig, interval: float):
    """Watch the store and run debounced and periodic backups until cancelled."""
    service = get_service(config, notifier=console_notifier)
    controller = ScheduleController(
        service.store,
        service.orchestrator,
        debounce_delay=config.debounce_ms / 1000,
        warmup=config.warmup_seconds,
    )
    service.store.add_listener(controller.handle_store_change)
    controller.ensure_periodic()

    check = await service.check_remote()
    if check.ok and check.value['has_newer_data']:
        logger.warning(f"Remote snapshot {check.value['file']['name']} is newer than local data")

    try:
        await service.store.watch(interval)
    finally:
        controller.shutdown()
        service.store.remove_listener(controller.handle_store_change)


def cmd_daemon(args):
    """Run the background backup daemon."""
    config = args.config_obj
    settings = get_store(config).read_settings()
    period = period_seconds(settings.backup.frequency_hours)
    console.print(Panel(
        f"[bold]Backup Daemon[/bold]\n\n"
        f"Data: {config.get_data_dir()}\n"
        f"WebDAV: {settings.webdav.url or '(not configured)'}\n"
        f"Periodic: {f'every {period / 60:.0f} min' if settings.backup.enabled else 'off'}\n"
        f"Debounce: {config.debounce_ms} ms\n\n"
        "[dim]Press Ctrl+C to stop[/dim]",
        title="cloudmark",
        border_style="green"
    ))
    try:
        asyncio.run(run_daemon(config, args.interval))
    except KeyboardInterrupt:
        console.print("\n[yellow]Daemon stopped[/yellow]")


def cmd_relay(args):
    """Serve the same-origin WebDAV relay."""
    from cloudmark.relay import run_relay

    config = args.config_obj
    run_relay(host=args.host or config.relay_host, port=args.port or config.relay_port,
              log_level=config.log_level)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="cloudmark - WebDAV backup and sync for bookmarks",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  cloudmark settings set webdav.url https://dav.example.com/bookmarks/
  cloudmark test
  cloudmark backup
  cloudmark list
  cloudmark check && cloudmark sync --yes
  cloudmark daemon

Configuration:
  Config file: ~/.config/cloudmark/config.toml or ./cloudmark.toml
  Environment: CLOUDMARK_DATA_DIR, CLOUDMARK_RELAY_URL, CLOUDMARK_LOG_LEVEL
        """
    )
    parser.add_argument("--data-dir", help="Data directory (default: ~/.cloudmark)")
    parser.add_argument("--config", help="Config file path")
    parser.add_argument("--relay-url", help="Route WebDAV requests through this relay")
    parser.add_argument("-o", "--output", choices=["table", "json"], default="table",
                        help="Output format")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True, help="Commands")

    backup_parser = subparsers.add_parser("backup", help="Take a snapshot backup now")
    backup_parser.add_argument("--reason", default="user",
                               choices=["user", "scheduled", "mutation-triggered"],
                               help="Backup reason (decides the filename prefix)")
    backup_parser.set_defaults(func=cmd_backup)

    list_parser = subparsers.add_parser("list", help="List remote snapshots")
    list_parser.set_defaults(func=cmd_list)

    check_parser = subparsers.add_parser("check", help="Check for newer remote data")
    check_parser.set_defaults(func=cmd_check)

    sync_parser = subparsers.add_parser("sync", help="Safe restore from a remote snapshot")
    sync_parser.add_argument("name", nargs="?", help="Snapshot name (default: newest if newer)")
    sync_parser.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")
    sync_parser.set_defaults(func=cmd_sync)

    restore_parser = subparsers.add_parser("restore", help="Restore a snapshot without a safety copy")
    restore_parser.add_argument("name", help="Snapshot name")
    restore_parser.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")
    restore_parser.set_defaults(func=cmd_restore)

    test_parser = subparsers.add_parser("test", help="Test the WebDAV connection")
    test_parser.add_argument("--url", help="Test this URL instead of the stored one")
    test_parser.add_argument("--username", default="", help="Username for --url")
    test_parser.add_argument("--password", default="", help="Password for --url")
    test_parser.set_defaults(func=cmd_test)

    settings_parser = subparsers.add_parser("settings", help="Show or change settings")
    settings_subparsers = settings_parser.add_subparsers(dest="settings_command", required=True)
    settings_subparsers.add_parser("show", help="Show settings")
    settings_set = settings_subparsers.add_parser("set", help="Set a setting")
    settings_set.add_argument("key", help="Dotted key, e.g. backup.max_snapshots")
    settings_set.add_argument("value", help="New value")
    settings_parser.set_defaults(func=cmd_settings)

    config_parser = subparsers.add_parser("config", help="Show or save process configuration")
    config_subparsers = config_parser.add_subparsers(dest="config_command", required=True)
    config_subparsers.add_parser("show", help="Show the effective configuration")
    config_save = config_subparsers.add_parser("save", help="Write the effective configuration to TOML")
    config_save.add_argument("--path", help="Target file (default: ~/.config/cloudmark/config.toml)")
    config_parser.set_defaults(func=cmd_config)

    daemon_parser = subparsers.add_parser("daemon", help="Run debounced and periodic backups")
    daemon_parser.add_argument("--interval", type=float, default=2.0,
                               help="Store polling interval in seconds")
    daemon_parser.set_defaults(func=cmd_daemon)

    relay_parser = subparsers.add_parser("relay", help="Serve the WebDAV relay")
    relay_parser.add_argument("--host", help="Bind address")
    relay_parser.add_argument("--port", type=int, help="Port")
    relay_parser.set_defaults(func=cmd_relay)

    return parser


def main(argv: Optional[List[str]] = None):
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    config_args = {}
    if args.config:
        config_args["config_file"] = Path(args.config)
    if args.relay_url:
        config_args["relay_url"] = args.relay_url

    config = init_config(data_dir=args.data_dir, **config_args)
    args.config_obj = config
    setup_logging(config.log_level, args.verbose)

    try:
        args.func(args)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        sys.exit(130)
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
