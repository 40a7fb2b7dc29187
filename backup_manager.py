"""Command line interface for the OTP vault WebDAV backup tool."""
from __future__ import annotations

import argparse
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

from otp_backup.backup import BackupService, OperationResult
from otp_backup.config import BackupConfig, ConfigError, load_config, save_config
from otp_backup.store import ItemStoreError, JsonItemStore


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Encrypted WebDAV backups for the OTP vault.",
    )
    parser.add_argument("--config", default="config.yaml", help="Path to the configuration file.")
    parser.add_argument("--items", default="otp_items.json", help="Path to the local item file.")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="Increase logging verbosity.")

    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("create", help="Create a backup now.")
    subparsers.add_parser("list", help="List backups stored in the remote directory.")
    subparsers.add_parser("test", help="Check that the remote directory is readable and writable.")

    parser_restore = subparsers.add_parser("restore", help="Download and decrypt a backup.")
    parser_restore.add_argument("filename", help="Backup file name as shown by 'list'.")
    parser_restore.add_argument(
        "--apply",
        action="store_true",
        help="Overwrite the local item file with the restored items.",
    )

    parser_init = subparsers.add_parser("init-config", help="Write a configuration file template.")
    parser_init.add_argument("--dir-url", required=True, help="WebDAV directory URL.")
    parser_init.add_argument("--username", default="", help="WebDAV user name.")
    parser_init.add_argument("--retention", type=int, default=0, help="Number of backups to keep (0 = all).")

    return parser


def configure_logging(level: int) -> None:
    if level >= 2:
        log_level = logging.DEBUG
    elif level == 1:
        log_level = logging.INFO
    else:
        log_level = logging.WARNING
    logging.basicConfig(level=log_level, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")


def load_application_config(path: Path) -> BackupConfig:
    try:
        return load_config(path)
    except ConfigError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        sys.exit(1)


def report(result: OperationResult) -> None:
    if not result.success:
        print(result.message, file=sys.stderr)
        sys.exit(1)
    print(result.message)


def handle_create(service: BackupService, config: BackupConfig, store: JsonItemStore) -> None:
    try:
        payload = store.snapshot()
    except ItemStoreError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    result = service.run_create(config, payload)
    report(result)
    print(f"  {result.data.filename} ({result.data.size} bytes)")
    for filename in result.data.pruned:
        print(f"  removed old backup {filename}")


def handle_list(service: BackupService, config: BackupConfig) -> None:
    result = service.run_list(config)
    report(result)
    entries = result.data
    if not entries:
        print("No backups found.")
        return
    print("Backups:")
    for entry in entries:
        created = datetime.fromtimestamp(entry.created_at / 1000)
        print(f"  - {entry.filename}  {created:%Y-%m-%d %H:%M:%S}  {entry.size} bytes")


def handle_restore(service: BackupService, config: BackupConfig, store: JsonItemStore, filename: str, apply: bool) -> None:
    result = service.run_restore(config, filename)
    report(result)
    data = result.data
    print(f"  {len(data['activeItems'])} active, {len(data['deletedItems'])} deleted items.")
    if apply:
        store.apply_restored(data)
        print(f"  Items written to {store.path}")


def handle_init_config(args: argparse.Namespace, config_path: Path) -> None:
    config = BackupConfig(dir_url=args.dir_url, username=args.username, retention=args.retention)
    try:
        config.normalized()
    except ConfigError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        sys.exit(1)
    save_config(config, config_path)
    print(f"Configuration written to {config_path}. Set the passwords via the environment or the file.")


def main(argv: Optional[Iterable[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return

    configure_logging(args.verbose)
    config_path = Path(args.config)

    if args.command == "init-config":
        handle_init_config(args, config_path)
        return

    config = load_application_config(config_path)
    service = BackupService()
    store = JsonItemStore(Path(args.items))

    if args.command == "create":
        handle_create(service, config, store)
    elif args.command == "list":
        handle_list(service, config)
    elif args.command == "restore":
        handle_restore(service, config, store, args.filename, args.apply)
    elif args.command == "test":
        report(service.run_test(config))
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
