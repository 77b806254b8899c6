"""
Command-line entry point for the DocFiscal client credentials.

Inspects, refreshes, stores and clears the persisted token pair. Useful for
scripting and for diagnosing authentication problems without the full client.
"""

import sys
import argparse
import asyncio
import logging
import json
from datetime import timedelta
from typing import Optional

from shared.exceptions import ConfigurationError
from shared.logging_config import LogFormat, LogLevel, mask_token, setup_logging
from shared.models import TokenPair
from docfiscal_client.config import ClientConfiguration
from docfiscal_client.auth.token_manager import TokenLifecycleManager

logger = logging.getLogger(__name__)


EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_CONFIG_ERROR = 2
EXIT_INTERRUPTED = 130


def parse_arguments(argv: Optional[list] = None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="docfiscal-auth",
        description="DocFiscal client credential manager",
        epilog="""
Examples:
  %(prog)s --status                 # Show stored credential status
  %(prog)s --status --json          # Same, as JSON
  %(prog)s --token                  # Print a valid access token (refreshing if needed)
  %(prog)s --refresh                # Force a token refresh
  %(prog)s --logout                 # Clear stored credentials
  %(prog)s --store --access-token A --refresh-token R --expires-in 3600

Exit Codes:
  0   - Success
  1   - No valid credentials or operation failed
  2   - Configuration error
  130 - Cancelled by user (Ctrl+C)
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    # Operation modes (mutually exclusive)
    operation_group = parser.add_mutually_exclusive_group(required=True)
    operation_group.add_argument("--status", action="store_true",
                                 help="Show stored credential status and exit")
    operation_group.add_argument("--token", action="store_true",
                                 help="Print a valid access token and exit")
    operation_group.add_argument("--refresh", action="store_true",
                                 help="Force a token refresh and exit")
    operation_group.add_argument("--logout", action="store_true",
                                 help="Clear stored credentials and exit")
    operation_group.add_argument("--store", action="store_true",
                                 help="Store a token pair issued elsewhere and exit")

    # Token pair for --store
    store_group = parser.add_argument_group('Store')
    store_group.add_argument("--access-token", type=str, metavar="TOKEN",
                             help="Access token to store")
    store_group.add_argument("--refresh-token", type=str, metavar="TOKEN",
                             help="Refresh token to store")
    store_group.add_argument("--expires-in", type=int, metavar="SECONDS", default=3600,
                             help="Access token lifetime in seconds (default: 3600)")

    # Configuration options
    config_group = parser.add_argument_group('Configuration')
    config_group.add_argument("--config", type=str, metavar="FILE",
                              help="Path to configuration file")
    config_group.add_argument("--server-url", type=str, metavar="URL",
                              help="Override server URL")

    # Output options
    output_group = parser.add_argument_group('Output')
    output_group.add_argument("--json", action="store_true",
                              help="Output in JSON format")
    output_group.add_argument("--verbose", "-v", action="store_true",
                              help="Enable verbose output")
    output_group.add_argument("--log-file", type=str, metavar="FILE",
                              help="Log to file instead of console")

    args = parser.parse_args(argv)

    if args.store and not (args.access_token and args.refresh_token):
        parser.error("--store requires --access-token and --refresh-token")

    if (args.access_token or args.refresh_token) and not args.store:
        parser.error("--access-token and --refresh-token can only be used with --store")

    if args.expires_in < 0:
        parser.error("--expires-in must not be negative")

    return args


def configure_logging(args, config: ClientConfiguration) -> None:
    """Configure logging based on command line arguments and configuration."""
    if args.verbose:
        log_level = LogLevel.DEBUG
    elif args.json:
        # Keep stdout clean for JSON output
        log_level = LogLevel.ERROR
    else:
        level_name = config.get_log_level()
        log_level = LogLevel[level_name] if level_name in LogLevel.__members__ else LogLevel.WARNING

    log_file = args.log_file or config.get_log_file()

    setup_logging(
        log_level=log_level,
        log_format=LogFormat(config.get_log_format()),
        log_file=log_file,
        max_file_size=config.get_log_max_size(),
        backup_count=config.get_log_backup_count(),
        enable_console=log_file is None,
        enable_audit=args.verbose
    )


def load_configuration(args) -> ClientConfiguration:
    """
    Build and validate the configuration for this invocation.

    Raises:
        ConfigurationError: If a value is invalid
    """
    config = ClientConfiguration(args.config)
    if args.server_url:
        config.set_override('server.url', args.server_url)
    config.validate()
    return config


def _output(args, payload: dict, text: str, error: bool = False) -> None:
    if args.json:
        print(json.dumps(payload))
    else:
        print(text, file=sys.stderr if error else sys.stdout)


async def handle_status_command(args, manager: TokenLifecycleManager) -> int:
    """Show stored credential status without refreshing."""
    tokens = manager.get_stored_tokens()

    if tokens is None:
        _output(args, {'authenticated': False}, "Status: NOT AUTHENTICATED")
        return EXIT_FAILURE

    expired = manager.expiry_policy.is_expired(tokens.expires_at)
    needs_refresh = manager.expiry_policy.needs_refresh(tokens.expires_at)

    payload = {
        'authenticated': True,
        'expired': expired,
        'needs_refresh': needs_refresh,
        'tokens': tokens.to_dict(mask=True),
    }

    if expired:
        state = "EXPIRED"
    elif needs_refresh:
        state = "EXPIRING"
    else:
        state = "VALID"

    text = "\n".join([
        f"Status: {state}",
        f"Access Token: {mask_token(tokens.access_token)}",
        f"Expires At: {tokens.expires_at.isoformat()}",
    ])
    _output(args, payload, text)
    return EXIT_SUCCESS


async def handle_token_command(args, manager: TokenLifecycleManager) -> int:
    """Print a valid access token, refreshing if needed."""
    token = await manager.get_valid_token()
    if token is None:
        _output(args, {'access_token': None}, "No valid credentials, please log in again", error=True)
        return EXIT_FAILURE

    # The token itself is the requested output
    _output(args, {'access_token': token}, token)
    return EXIT_SUCCESS


async def handle_refresh_command(args, manager: TokenLifecycleManager) -> int:
    """Force a token refresh."""
    result = await manager.refresh_token()

    if result.success:
        _output(
            args,
            {'success': True, 'expires_at': result.tokens.expires_at.isoformat()},
            f"Token refreshed, expires at {result.tokens.expires_at.isoformat()}"
        )
        return EXIT_SUCCESS

    reason = result.reason.value if result.reason else None
    _output(
        args,
        {'success': False, 'reason': reason, 'error': result.error},
        f"Token refresh failed ({reason}): {result.error}",
        error=True
    )
    return EXIT_FAILURE


async def handle_logout_command(args, manager: TokenLifecycleManager) -> int:
    """Clear stored credentials."""
    manager.clear_tokens()
    _output(args, {'success': True}, "Credentials cleared")
    return EXIT_SUCCESS


async def handle_store_command(args, manager: TokenLifecycleManager) -> int:
    """Store a token pair issued by login or an external exchange."""
    try:
        tokens = TokenPair(
            access_token=args.access_token,
            refresh_token=args.refresh_token,
            expires_at=manager.expiry_policy.now() + timedelta(seconds=args.expires_in)
        )
    except ValueError as e:
        _output(args, {'success': False, 'error': str(e)}, f"Error: {e}", error=True)
        return EXIT_FAILURE

    if not manager.store_tokens(tokens):
        _output(args, {'success': False, 'error': 'storage unavailable'},
                "Error: credentials could not be stored", error=True)
        return EXIT_FAILURE

    _output(args, {'success': True, 'expires_at': tokens.expires_at.isoformat()},
            f"Credentials stored, expires at {tokens.expires_at.isoformat()}")
    return EXIT_SUCCESS


async def run_command(args, config: ClientConfiguration) -> int:
    """Run the selected operation with a manager built from configuration."""
    async with TokenLifecycleManager.from_config(config) as manager:
        if args.status:
            return await handle_status_command(args, manager)
        if args.token:
            return await handle_token_command(args, manager)
        if args.refresh:
            return await handle_refresh_command(args, manager)
        if args.logout:
            return await handle_logout_command(args, manager)
        return await handle_store_command(args, manager)


def main(argv: Optional[list] = None) -> int:
    """Main entry point for docfiscal-auth."""
    args = parse_arguments(argv)

    try:
        config = load_configuration(args)
    except ConfigurationError as e:
        print(f"Configuration error: {e.message}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    configure_logging(args, config)

    try:
        return asyncio.run(run_command(args, config))
    except ConfigurationError as e:
        print(f"Configuration error: {e.message}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        return EXIT_INTERRUPTED
    except Exception as e:
        print(f"Fatal error: {str(e)}", file=sys.stderr)
        logger.exception("Fatal error in main")
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
