"""Command-line interface for proxywatch."""

import sys
import argparse
import logging

from colorama import Fore

from .utils.config import load_config
from .main import ConnectionsMain
from .api.controller import ClashController
from .features.sorting import SORTABLE_COLUMNS
from .dashboard.dashboard_app import run_dashboard


logger = logging.getLogger(__name__)

SORT_CHOICES = sorted(column.value for column in SORTABLE_COLUMNS)


def cmd_watch(args) -> int:
    """
    Run the live connection table.

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code
    """
    try:
        config = load_config(args.config)

        # Override config with CLI args
        if args.source:
            config.stream_source = args.source

        watcher = ConnectionsMain(
            config,
            keep_closed=True if args.keep_closed else None,
            sort_column=args.sort
        )
        return watcher.run()

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except FileNotFoundError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"ERROR: Configuration error: {e}", file=sys.stderr)
        return 1
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1


def cmd_replay(args) -> int:
    """
    Replay a recorded JSONL stream and print the resulting table.

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code
    """
    try:
        config = load_config(args.config)

        watcher = ConnectionsMain(
            config,
            keep_closed=True if args.keep_closed else None,
            sort_column=args.sort
        )
        return watcher.replay(args.file)

    except FileNotFoundError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"ERROR: Configuration error: {e}", file=sys.stderr)
        return 1


def cmd_close_all(args) -> int:
    """
    Terminate every proxied connection.

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code
    """
    try:
        config = load_config(args.config)
    except (FileNotFoundError, ValueError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    if not args.yes:
        answer = input("Close all connections? [y/N] ")
        if answer.strip().lower() not in ('y', 'yes'):
            print("Aborted.")
            return 0

    controller = ClashController(
        base_url=config.controller_base_url,
        secret=config.controller_secret,
        timeout_seconds=config.controller_timeout_seconds
    )
    result = controller.close_all_connections()

    if not result.ok:
        print(f"{Fore.RED}ERROR: Close all failed: {result.error}", file=sys.stderr)
        return 1

    print("All connections closed.")
    return 0


def cmd_dashboard(args) -> int:
    """
    Launch the web dashboard.

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code (always 0 unless an exception occurs)
    """
    try:
        config = load_config(args.config)
        host = args.host or config.dashboard_host
        port = args.port or config.dashboard_port
        print(f"Starting dashboard at http://{host}:{port} ...")
        run_dashboard(config, host=host, port=port, debug=args.debug)
        return 0
    except Exception as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1


def main() -> int:
    """
    Main CLI entry point.

    Returns:
        Exit code
    """
    parser = argparse.ArgumentParser(
        description='proxywatch - live proxy connection table',
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    subparsers = parser.add_subparsers(dest='command', help='Command to execute')

    # Watch command
    watch_parser = subparsers.add_parser('watch', help='Show live connections')
    watch_parser.add_argument('--config', default='config/config.yaml', help='Configuration file path')
    watch_parser.add_argument('--source', choices=['websocket', 'jsonl'], help='Stream source (overrides config)')
    watch_parser.add_argument('--keep-closed', action='store_true', help='Keep closed connections')
    watch_parser.add_argument('--sort', choices=SORT_CHOICES, help='Sort column (ascending)')
    watch_parser.set_defaults(func=cmd_watch)

    # Replay command
    replay_parser = subparsers.add_parser('replay', help='Replay a recorded JSONL stream')
    replay_parser.add_argument('--config', default='config/config.yaml', help='Configuration file path')
    replay_parser.add_argument('--file', required=True, help='JSONL recording, one snapshot per line')
    replay_parser.add_argument('--keep-closed', action='store_true', help='Keep closed connections')
    replay_parser.add_argument('--sort', choices=SORT_CHOICES, help='Sort column (ascending)')
    replay_parser.set_defaults(func=cmd_replay)

    # Close-all command
    close_parser = subparsers.add_parser('close-all', help='Close all connections')
    close_parser.add_argument('--config', default='config/config.yaml', help='Configuration file path')
    close_parser.add_argument('--yes', action='store_true', help='Skip confirmation')
    close_parser.set_defaults(func=cmd_close_all)

    # Dashboard command
    dash_parser = subparsers.add_parser('dashboard', help='Run the web dashboard')
    dash_parser.add_argument('--config', default='config/config.yaml', help='Configuration file path')
    dash_parser.add_argument('--host', help='Host to bind (overrides config)')
    dash_parser.add_argument('--port', type=int, help='Port to bind (overrides config)')
    dash_parser.add_argument('--debug', action='store_true', help='Enable debug mode')
    dash_parser.set_defaults(func=cmd_dashboard)

    # Parse arguments
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    # Execute command
    return args.func(args)


if __name__ == '__main__':
    sys.exit(main())
