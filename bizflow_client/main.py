"""
Command-line entry point for the BizFlow API client.

Provides login/logout, tenant selection and raw authenticated requests for
scripting and troubleshooting against a BizFlow server.
"""

import sys
import json
import asyncio
import argparse
import getpass
import logging
from typing import Any, Dict, List, Optional

from bizflow_shared.exceptions import ApiError, BizflowError, TokenExpiredError
from bizflow_shared.logging_config import LogLevel, setup_logging

from . import __version__
from .api_client import BizflowAPIClient
from .auth.token_storage import SecureTokenStorage
from .config import ClientConfiguration

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_API_ERROR = 1
EXIT_SESSION_EXPIRED = 2
EXIT_INTERRUPTED = 130


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="bizflow-client",
        description="BizFlow API client",
        epilog="""
Examples:
  %(prog)s login --email owner@example.com
  %(prog)s tenant set 42
  %(prog)s request GET /api/customers --query page=2 --query search=acme
  %(prog)s request POST /api/customers --data '{"name": "Acme"}'
  %(prog)s logout

Exit Codes:
  0   - Success
  1   - Request failed
  2   - Session expired, log in again
  130 - Cancelled by user (Ctrl+C)
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    config_group = parser.add_argument_group('Configuration')
    config_group.add_argument("--config", type=str, metavar="FILE",
                              help="Configuration file path")
    config_group.add_argument("--server-url", type=str, metavar="URL",
                              help="Server URL (overrides config)")

    output_group = parser.add_argument_group('Output')
    output_group.add_argument("--json", action="store_true",
                              help="Output results in JSON format")
    output_group.add_argument("--verbose", "-v", action="store_true",
                              help="Enable verbose output")
    output_group.add_argument("--quiet", "-q", action="store_true",
                              help="Suppress non-essential output")

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.required = True

    login_parser = subparsers.add_parser("login", help="Log in and store the session")
    login_parser.add_argument("--email", required=True, help="Account email")
    login_parser.add_argument("--password", help="Account password (prompted when omitted)")

    subparsers.add_parser("logout", help="End the session and clear stored tokens")

    tenant_parser = subparsers.add_parser("tenant", help="Show or change the active tenant")
    tenant_sub = tenant_parser.add_subparsers(dest="tenant_command", metavar="ACTION")
    tenant_sub.required = True
    tenant_sub.add_parser("show", help="Show the active tenant")
    tenant_set = tenant_sub.add_parser("set", help="Switch to another tenant")
    tenant_set.add_argument("tenant_id", help="Tenant identifier")
    tenant_sub.add_parser("clear", help="Forget the active tenant locally")

    request_parser = subparsers.add_parser("request", help="Send an authenticated API request")
    request_parser.add_argument("method", type=str.upper,
                                choices=["GET", "POST", "PUT", "PATCH", "DELETE"])
    request_parser.add_argument("path", help="API path, e.g. /api/customers")
    request_parser.add_argument("--data", type=str, metavar="JSON", help="JSON request body")
    request_parser.add_argument("--query", action="append", default=[], metavar="KEY=VALUE",
                                help="Query parameter (repeatable)")

    return parser.parse_args(argv)


def configure_logging(args: argparse.Namespace, config: ClientConfiguration) -> None:
    """Configure logging based on configuration and command line arguments."""
    if args.verbose:
        log_level = LogLevel.DEBUG
    elif args.quiet or args.json:
        log_level = LogLevel.ERROR
    else:
        log_level = config.get_log_level()

    setup_logging(
        log_level=log_level,
        log_format=config.get_log_format(),
        log_file=config.get_log_file(),
        audit_file=config.get_audit_file()
    )


def parse_query(pairs: List[str]) -> Dict[str, Any]:
    """Turn repeated KEY=VALUE arguments into a query mapping."""
    query: Dict[str, Any] = {}
    for pair in pairs:
        if '=' not in pair:
            raise ValueError(f"Query parameter must be KEY=VALUE: {pair}")
        key, value = pair.split('=', 1)
        if key in query:
            existing = query[key]
            query[key] = existing + [value] if isinstance(existing, list) else [existing, value]
        else:
            query[key] = value
    return query


def output(args: argparse.Namespace, data: Any, message: Optional[str] = None) -> None:
    if args.json:
        print(json.dumps(data, indent=2, default=str))
    elif message is not None:
        if not args.quiet:
            print(message)
    elif isinstance(data, (dict, list)):
        print(json.dumps(data, indent=2, default=str))
    elif data is not None:
        print(data)


async def run_command(args: argparse.Namespace, config: ClientConfiguration) -> int:
    """Execute the selected command and return the exit code."""
    storage = SecureTokenStorage(
        service_name=config.get_storage_service_name(),
        storage_path=config.get_storage_path()
    )

    async with BizflowAPIClient.from_config(config, credential_store=storage) as client:
        if args.command == "login":
            password = args.password or getpass.getpass("Password: ")
            await client.login(args.email, password)
            tenant_id = await storage.get_tenant_id()
            output(args, {'authenticated': True, 'tenant_id': tenant_id},
                   f"Logged in as {args.email}" + (f" (tenant {tenant_id})" if tenant_id else ""))

        elif args.command == "logout":
            await client.logout()
            output(args, {'authenticated': False}, "Logged out")

        elif args.command == "tenant":
            if args.tenant_command == "show":
                tenant_id = await storage.get_tenant_id()
                output(args, {'tenant_id': tenant_id}, tenant_id or "No active tenant")
            elif args.tenant_command == "set":
                await client.switch_tenant(args.tenant_id)
                output(args, {'tenant_id': args.tenant_id}, f"Active tenant: {args.tenant_id}")
            else:
                await storage.clear_tenant_id()
                output(args, {'tenant_id': None}, "Active tenant cleared")

        elif args.command == "request":
            body = json.loads(args.data) if args.data else None
            response = await client.request(args.method, args.path, body=body, query=parse_query(args.query))
            output(args, {'status': response.status_code, 'data': response.data}
                   if args.json else response.data)

    return EXIT_SUCCESS


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the client."""
    args = parse_arguments(argv)

    try:
        config = ClientConfiguration(args.config)
        if args.server_url:
            config.set_override('server_url', args.server_url)
        configure_logging(args, config)

        return asyncio.run(run_command(args, config))

    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        return EXIT_INTERRUPTED
    except TokenExpiredError as e:
        print(f"Error: {e.user_message}", file=sys.stderr)
        return EXIT_SESSION_EXPIRED
    except BizflowError as e:
        if args.json:
            print(json.dumps(e.to_dict(), indent=2, default=str))
        else:
            print(f"Error: {e.message}", file=sys.stderr)
            if isinstance(e, ApiError) and e.field_errors:
                for field_name, messages in e.field_errors.items():
                    print(f"  {field_name}: {'; '.join(messages)}", file=sys.stderr)
        return EXIT_API_ERROR
    except ValueError as e:
        # Bad --data JSON or --query argument
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_API_ERROR


if __name__ == "__main__":
    sys.exit(main())
