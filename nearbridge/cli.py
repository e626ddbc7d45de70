#!/usr/bin/env python3
"""
NEARBRIDGE CLI

Operator commands around the transfer client. The client itself is a
library driven by a host; the CLI covers what an operator does by hand.

Usage:
    nearbridge [--config FILE] <command> [subcommand] [options]

Commands:
    config      Show, read or validate configuration
    transfer    Inspect a persisted transfer
    amount      Convert a human amount to minor units
    redirect    Read or feed a file-backed wallet redirect channel
"""

from __future__ import annotations

import argparse
import json
import sys
from enum import Enum
from typing import Any, List, Optional

import yaml

from nearbridge import __version__
from nearbridge.config import ConfigError, get_config_manager
from nearbridge.observability import BridgeComponent, configure_logging, get_logger
from nearbridge.redirect import FileRedirectChannel, RedirectChannelError
from nearbridge.transfer import Transfer, TransferDecodeError, format_minor_units, to_minor_units

logger = get_logger("cli", BridgeComponent.CLI)


class OutputFormat(Enum):
    """Output format options."""
    JSON = "json"
    YAML = "yaml"
    TEXT = "text"


class CLIError(Exception):
    """CLI error with exit code."""
    def __init__(self, message: str, exit_code: int = 1):
        super().__init__(message)
        self.exit_code = exit_code


def format_output(data: Any, fmt: OutputFormat = OutputFormat.JSON) -> str:
    """Format data for output."""
    if fmt == OutputFormat.JSON:
        return json.dumps(data, indent=2, default=str)
    elif fmt == OutputFormat.YAML:
        return yaml.safe_dump(data, default_flow_style=False)
    elif isinstance(data, dict):
        return "\n".join(f"{k}: {v}" for k, v in data.items())
    return str(data)


class BridgeCLI:
    """Main CLI application."""

    def __init__(self):
        self.parser = argparse.ArgumentParser(
            prog="nearbridge",
            description="NEAR rainbow bridge ETH transfer client",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.parser.add_argument(
            "--version", "-V",
            action="version",
            version=f"nearbridge {__version__}",
        )
        self.parser.add_argument(
            "--format", "-f",
            choices=["json", "yaml", "text"],
            default="json",
            help="Output format (default: json)",
        )
        self.parser.add_argument(
            "--config", "-c",
            help="YAML configuration file to load before running the command",
        )
        self.parser.add_argument(
            "--quiet", "-q",
            action="store_true",
            help="Suppress error output",
        )

        self.subparsers = self.parser.add_subparsers(dest="command", help="Commands")
        self._register_commands()

    def _register_commands(self) -> None:
        self._register_config_commands()
        self._register_transfer_commands()
        self._register_amount_command()
        self._register_redirect_commands()

    def _register_config_commands(self) -> None:
        config = self.subparsers.add_parser("config", help="Configuration management")
        config_sub = config.add_subparsers(dest="subcommand")

        get = config_sub.add_parser("get", help="Get configuration value")
        get.add_argument("path", help="Dotted path, e.g. transfer.relay_margin")

        config_sub.add_parser("show", help="Show all configuration")
        config_sub.add_parser("validate", help="Validate configuration")

    def _register_transfer_commands(self) -> None:
        transfer = self.subparsers.add_parser("transfer", help="Persisted transfers")
        transfer_sub = transfer.add_subparsers(dest="subcommand")

        inspect = transfer_sub.add_parser("inspect", help="Validate and summarize a transfer JSON file")
        inspect.add_argument("file", help="Path to the transfer JSON, '-' for stdin")

    def _register_amount_command(self) -> None:
        amount = self.subparsers.add_parser("amount", help="Convert an amount to minor units")
        amount.add_argument("value", help="Human amount, e.g. 1.5")
        amount.add_argument("--decimals", "-d", type=int, default=None, help="Token precision (default: configured)")

    def _register_redirect_commands(self) -> None:
        redirect = self.subparsers.add_parser("redirect", help="Wallet redirect channel")
        redirect_sub = redirect.add_subparsers(dest="subcommand")

        show = redirect_sub.add_parser("show", help="Show the channel slot")
        show.add_argument("channel", help="Path of the channel file")

        absorb = redirect_sub.add_parser("absorb", help="Record the parameters of a wallet callback URL")
        absorb.add_argument("channel", help="Path of the channel file")
        absorb.add_argument("url", help="Callback URL the wallet returned to")

        clear = redirect_sub.add_parser("clear", help="Empty the channel slot")
        clear.add_argument("channel", help="Path of the channel file")

    def run(self, args: Optional[List[str]] = None) -> int:
        """Run the CLI."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 0

        try:
            if parsed.config:
                get_config_manager().load_from_file(parsed.config)
            observability = get_config_manager().config.observability
            configure_logging(observability.log_level.get(), observability.structured_logs.get())

            fmt = OutputFormat(parsed.format)
            result = self._dispatch(parsed)

            if result is not None:
                print(format_output(result, fmt))

            return 0

        except CLIError as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return e.exit_code

        except ConfigError as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return 2

        except Exception as e:
            logger.error("Command failed", error_code="CLI_UNHANDLED", command=parsed.command, error=str(e))
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return 1

    def _dispatch(self, args: argparse.Namespace) -> Any:
        """Dispatch command to handler."""
        cmd = args.command
        subcmd = getattr(args, "subcommand", None)

        handler_name = f"_handle_{cmd}_{subcmd}" if subcmd else f"_handle_{cmd}"
        handler = getattr(self, handler_name, None)

        if handler is None:
            raise CLIError(f"Unknown command: {cmd} {subcmd or ''}".strip())

        return handler(args)

    # Config handlers
    def _handle_config_get(self, args: argparse.Namespace) -> Any:
        mgr = get_config_manager()
        value = mgr.get(args.path)
        if hasattr(value, "__dataclass_fields__"):
            raise CLIError(f"{args.path} is a section, not a value", exit_code=2)
        return {"path": args.path, "value": value}

    def _handle_config_show(self, args: argparse.Namespace) -> Any:
        return get_config_manager().config.to_dict()

    def _handle_config_validate(self, args: argparse.Namespace) -> Any:
        errors = get_config_manager().validate()
        if errors:
            raise CLIError("Invalid configuration:\n  " + "\n  ".join(errors), exit_code=3)
        return {"valid": True, "errors": []}

    # Transfer handlers
    def _handle_transfer_inspect(self, args: argparse.Namespace) -> Any:
        try:
            if args.file == "-":
                text = sys.stdin.read()
            else:
                with open(args.file) as f:
                    text = f.read()
        except OSError as e:
            raise CLIError(f"Cannot read {args.file}: {e}", exit_code=2) from e

        try:
            transfer = Transfer.from_json(text)
        except TransferDecodeError as e:
            raise CLIError(str(e), exit_code=3) from e

        return {
            "id": transfer.id,
            "status": transfer.status.value,
            "completedStep": transfer.completed_step.value,
            "amount": format_minor_units(transfer.amount, transfer.decimals),
            "token": transfer.source_token_name,
            "sender": transfer.sender,
            "recipient": transfer.recipient,
            "confirmations": f"{transfer.completed_confirmations}/{transfer.needed_confirmations}",
            "lockHashes": list(transfer.lock_hashes),
            "mintHashes": list(transfer.mint_hashes),
            "errors": list(transfer.errors),
        }

    # Amount handler
    def _handle_amount(self, args: argparse.Namespace) -> Any:
        decimals = args.decimals
        if decimals is None:
            decimals = get_config_manager().config.transfer.decimals.get()
        try:
            minor = to_minor_units(args.value, decimals)
        except ValueError as e:
            raise CLIError(str(e), exit_code=2) from e
        return {"amount": args.value, "decimals": decimals, "minorUnits": minor}

    # Redirect handlers
    def _handle_redirect_show(self, args: argparse.Namespace) -> Any:
        message = self._channel(args).receive()
        if message is None:
            return {"empty": True}
        return {
            "empty": False,
            "minting": message.correlation_id,
            "transactionHashes": list(message.transaction_hashes),
            "errorCode": message.error_code,
        }

    def _handle_redirect_absorb(self, args: argparse.Namespace) -> Any:
        channel = self._channel(args)
        try:
            channel.absorb_url(args.url)
        except RedirectChannelError as e:
            raise CLIError(str(e), exit_code=2) from e
        return self._handle_redirect_show(args)

    def _handle_redirect_clear(self, args: argparse.Namespace) -> Any:
        try:
            self._channel(args).clear()
        except RedirectChannelError as e:
            raise CLIError(str(e), exit_code=2) from e
        return {"empty": True}

    def _channel(self, args: argparse.Namespace) -> FileRedirectChannel:
        return FileRedirectChannel(args.channel)


def main() -> int:
    """CLI entry point."""
    cli = BridgeCLI()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
