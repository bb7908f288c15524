#!/usr/bin/env python
"""
Command-line interface for administering the staging queue.
"""

import argparse
import json
import logging
import sys

from doc_stage.config import Config

logger = logging.getLogger(__name__)


def cmd_install(args, config: Config):
    """Create or verify the staging table."""
    manager = config.get_chunk_manager()
    try:
        actions = manager.install()
    finally:
        manager.store.close()

    if actions:
        for action in actions:
            print(f"  {action.describe()}")
        print(f"Installed {manager.table_name} ({len(actions)} changes)")
    else:
        print(f"{manager.table_name} is up to date")
    return 0


def cmd_uninstall(args, config: Config):
    """Drop the staging table."""
    if not args.yes:
        logger.error("Refusing to drop the staging table without --yes")
        return 1

    manager = config.get_chunk_manager()
    try:
        manager.uninstall()
    finally:
        manager.store.close()

    print(f"Dropped {manager.table_name}")
    return 0


def cmd_status(args, config: Config):
    """Show the number of staged records for a scope."""
    manager = config.get_chunk_manager()
    try:
        pending = manager.count_pending(args.host, args.path)
    finally:
        manager.store.close()

    print(f"{pending} records pending for {args.host}{args.path}")
    return 0


def cmd_peek(args, config: Config):
    """Print staged records for a scope without removing them."""
    manager = config.get_chunk_manager()
    try:
        records = manager.read_chunk(args.host, args.path, args.limit)
    finally:
        manager.store.close()

    for record in records:
        print(json.dumps(record.to_dict()))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Document staging queue management")
    parser.add_argument('--config', '-c', default=None,
                        help='Configuration file path (default: $DOC_STAGE_CONFIG_PATH or config.yaml)')

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    subparsers.add_parser('install', help='Create or verify the staging table')

    uninstall_parser = subparsers.add_parser('uninstall', help='Drop the staging table')
    uninstall_parser.add_argument('--yes', action='store_true',
                                  help='Confirm dropping all staged documents')

    status_parser = subparsers.add_parser('status', help='Show pending record count')
    status_parser.add_argument('host', help='Scope host')
    status_parser.add_argument('path', help='Scope path')

    peek_parser = subparsers.add_parser('peek', help='Show pending records')
    peek_parser.add_argument('host', help='Scope host')
    peek_parser.add_argument('path', help='Scope path')
    peek_parser.add_argument('--limit', type=int, default=10,
                             help='Maximum records to show (default: 10)')

    return parser


def main(argv=None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        'install': cmd_install,
        'uninstall': cmd_uninstall,
        'status': cmd_status,
        'peek': cmd_peek,
    }

    try:
        config = Config(args.config)
        config.configure_logging()
        return commands[args.command](args, config)
    except Exception as e:
        logger.error(f"Command failed: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
