"""Command-line interface for the connect gateway and its console."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Sequence

import anyio

from gateway.config import load_settings
from gateway.console import (
    DEFAULT_GATEWAY_URL,
    ConsoleClient,
    GatewayRequestError,
    connect_links,
    generate_user_id,
    normalize_user_id,
    summarize_accounts,
)
from gateway.workflows import CHANNELS_TO_SHEET, CONTACT_FORM

logger = logging.getLogger("connectgateway.main")

KNOWN_COMMANDS = {"serve", "user", "token", "accounts", "proxy", "channels", "send", "sheets", "workflow"}


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Connect gateway utilities")
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    console_parent = argparse.ArgumentParser(add_help=False)
    console_parent.add_argument(
        "--gateway-url",
        default=os.getenv("GATEWAY_URL", DEFAULT_GATEWAY_URL),
        help=f"Base URL of a running gateway API (default: {DEFAULT_GATEWAY_URL})",
    )

    user_parent = argparse.ArgumentParser(add_help=False)
    user_parent.add_argument("--user", required=True, help="External user ID the account belongs to")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP gateway")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Bind address for the API")
    serve_parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port for the API (default: PORT or 3001)",
    )
    serve_parser.add_argument(
        "--config",
        default=None,
        help="Path to a YAML configuration file (default: GATEWAY_CONFIG)",
    )

    user_parser = subparsers.add_parser("user", help="Generate or validate an external user ID")
    user_parser.add_argument("--custom", default=None, help="Use this ID instead of a random one")

    token_parser = subparsers.add_parser("token", parents=[console_parent], help="Issue a connect token")
    token_parser.add_argument("user_id")

    accounts_parser = subparsers.add_parser("accounts", parents=[console_parent], help="List connected accounts")
    accounts_parser.add_argument("user_id")

    proxy_parser = subparsers.add_parser(
        "proxy", parents=[console_parent, user_parent], help="Call an API as a connected account"
    )
    proxy_parser.add_argument("account_id")
    proxy_parser.add_argument("endpoint")
    proxy_parser.add_argument("--method", default="GET")
    proxy_parser.add_argument("--data", default=None, help="JSON request data")

    channels_parser = subparsers.add_parser(
        "channels", parents=[console_parent, user_parent], help="List messaging channels"
    )
    channels_parser.add_argument("account_id")

    send_parser = subparsers.add_parser(
        "send", parents=[console_parent, user_parent], help="Send a message to a channel"
    )
    send_parser.add_argument("account_id")
    send_parser.add_argument("channel")
    send_parser.add_argument("text")

    sheets_parser = subparsers.add_parser(
        "sheets", parents=[console_parent, user_parent], help="Manage spreadsheets"
    )
    sheets_parser.add_argument("action", choices=["list", "create", "append", "read"])
    sheets_parser.add_argument("account_id")
    sheets_parser.add_argument("--spreadsheet", default=None, help="Spreadsheet ID for append/read")
    sheets_parser.add_argument("--title", default=None, help="Title for create")
    sheets_parser.add_argument("--values", nargs="*", default=None, help="Row values for append")

    workflow_parser = subparsers.add_parser(
        "workflow", parents=[console_parent, user_parent], help="Run a canned workflow"
    )
    workflow_parser.add_argument("name", choices=[CHANNELS_TO_SHEET, CONTACT_FORM])
    workflow_parser.add_argument(
        "--no-compensate",
        dest="compensate",
        action="store_false",
        help="Leave created resources in place when a later step fails",
    )
    workflow_parser.add_argument("--channel", default=None, help="Channel for the contact form workflow")

    args_list = list(argv) if argv is not None else sys.argv[1:]

    if not args_list:
        args_list = ["serve"]
    else:
        first = args_list[0]
        if first in ("-h", "--help"):
            return parser.parse_args(args_list)
        if first not in KNOWN_COMMANDS:
            if any(flag in args_list for flag in ("-h", "--help")):
                return parser.parse_args(args_list)
            args_list = ["serve", *args_list]

    return parser.parse_args(args_list)


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _serve(*, host: str, port: int | None, config: str | None) -> None:
    from gateway.api import create_app
    import uvicorn

    settings = load_settings(Path(config).expanduser() if config else None)
    bind_port = port or settings.port
    logger.info("Starting connect gateway on http://%s:%s", host, bind_port)
    logger.info("Environment: %s", settings.environment)
    logger.info("Project ID: %s", settings.project_id)

    app = create_app(settings=settings)
    uvicorn.run(app, host=host, port=bind_port, log_level="info")


async def _run_console(args: argparse.Namespace) -> int:
    async with ConsoleClient(args.gateway_url) as console:
        if args.command == "token":
            token = await console.create_connect_token(args.user_id)
            _print_json({"token": token, "links": connect_links(token)})
        elif args.command == "accounts":
            accounts = await console.get_accounts(args.user_id)
            _print_json({"summary": summarize_accounts(accounts), "accounts": accounts})
        elif args.command == "proxy":
            data = json.loads(args.data) if args.data else None
            _print_json(
                await console.request(
                    args.account_id,
                    args.endpoint,
                    external_user_id=args.user,
                    method=args.method,
                    data=data,
                )
            )
        elif args.command == "channels":
            channels = await console.list_channels(args.account_id, args.user)
            for channel in channels:
                print(f"{channel.get('id', '?'):<12}  #{channel.get('name', '')}")
            print(f"{len(channels)} channel(s) available.")
        elif args.command == "send":
            result = await console.send_message(args.account_id, args.user, args.channel, args.text)
            print(f"Message sent to {result.get('channel', args.channel)} (ts {result.get('ts')}).")
        elif args.command == "sheets":
            return await _run_sheets(console, args)
        elif args.command == "workflow":
            report = await console.run_workflow(
                args.name,
                args.user,
                compensate=args.compensate if args.name == CHANNELS_TO_SHEET else None,
                channel=args.channel if args.name == CONTACT_FORM else None,
            )
            _print_json(report)
            return 0 if report.get("status") == "completed" else 1
    return 0


async def _run_sheets(console: ConsoleClient, args: argparse.Namespace) -> int:
    if args.action == "list":
        for sheet in await console.list_spreadsheets(args.account_id, args.user):
            print(f"{sheet.get('id', '?')}  {sheet.get('name', '')}  {sheet.get('createdTime', '')}")
        return 0
    if args.action == "create":
        spreadsheet_id = await console.create_spreadsheet(args.account_id, args.user, args.title or "")
        print(f"Spreadsheet created: {spreadsheet_id}")
        return 0
    if not args.spreadsheet:
        print("--spreadsheet is required for append and read.", file=sys.stderr)
        return 2
    if args.action == "append":
        await console.append_row(args.account_id, args.user, args.spreadsheet, args.values or [])
        print("Row added successfully.")
        return 0
    values = await console.read_values(args.account_id, args.user, args.spreadsheet)
    print(f"Sheet contains {len(values)} row(s) of data.")
    for row in values:
        print("\t".join(str(cell) for cell in row))
    return 0


def _run_async(command: Callable[[], Awaitable[int]]) -> int:
    try:
        return anyio.run(command)
    except (GatewayRequestError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for CLI usage."""

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    args = _parse_args(argv)

    if args.command == "serve":
        _serve(host=args.host, port=args.port, config=args.config)
        return 0
    if args.command == "user":
        try:
            user_id = normalize_user_id(args.custom) if args.custom is not None else generate_user_id()
        except ValueError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return 1
        print(user_id)
        return 0

    return _run_async(lambda: _run_console(args))


if __name__ == "__main__":
    sys.exit(main())
