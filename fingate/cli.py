#!/usr/bin/env python3
"""
fingate CLI

Command-line access to the FIN message engine.

Usage:
    fingate <command> [subcommand] [options]

Commands:
    assemble    Validate a payload file and render the FIN message
    validate    Validate a payload file without rendering
    parse       Parse a received FIN message
    chk         Recompute and check the CHK trailer of a FIN message
    report      Parse a network trailer report
    config      Configuration management
"""

from __future__ import annotations

import argparse
import json
import sys
from enum import Enum
from pathlib import Path
from typing import Any, List, Optional

import yaml

from fingate import __version__
from fingate.core import load_mapping, normalize_newlines


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
        return yaml.safe_dump(json.loads(json.dumps(data, default=str)), default_flow_style=False)
    elif isinstance(data, dict):
        # text: a rendered message or readable view wins over the full record
        for key in ("fin_message", "normalized_text"):
            if data.get(key):
                return str(data[key])
        return "\n".join(f"{k}: {v}" for k, v in data.items())
    return str(data)


def _read_text(path: str) -> str:
    p = Path(path)
    if not p.is_file():
        raise CLIError(f"File not found: {path}", exit_code=2)
    return p.read_text(encoding="utf-8")


def _read_bytes(path: str) -> bytes:
    p = Path(path)
    if not p.is_file():
        raise CLIError(f"File not found: {path}", exit_code=2)
    return p.read_bytes()


class GatewayCLI:
    """Main CLI application."""

    def __init__(self):
        self.parser = argparse.ArgumentParser(
            prog="fingate",
            description="FIN message engine",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.parser.add_argument(
            "--version", "-V",
            action="version",
            version=f"fingate {__version__}",
        )
        self.parser.add_argument(
            "--format", "-f",
            choices=["json", "yaml", "text"],
            default="json",
            help="Output format (default: json)",
        )
        self.parser.add_argument(
            "--config", "-c",
            help="Configuration file loaded on top of the defaults",
        )
        self.parser.add_argument(
            "--quiet", "-q",
            action="store_true",
            help="Suppress non-essential output",
        )

        self.subparsers = self.parser.add_subparsers(dest="command", help="Commands")
        self._register_commands()

    def _register_commands(self) -> None:
        """Register all command groups."""
        self._register_message_commands()
        self._register_config_commands()

    def _register_message_commands(self) -> None:
        # assemble
        assemble = self.subparsers.add_parser("assemble", help="Render a payload file as FIN")
        assemble.add_argument("file", help="Payload file (YAML or JSON)")
        assemble.add_argument("--release", action="store_true",
                              help="Assign session, sequence and UETR as at release")
        assemble.add_argument("--counter-file", help="JSON file persisting session/sequence counters")

        # validate
        validate = self.subparsers.add_parser("validate", help="Validate a payload file")
        validate.add_argument("file", help="Payload file (YAML or JSON)")

        # parse
        parse = self.subparsers.add_parser("parse", help="Parse a received FIN message")
        parse.add_argument("file", help="Raw FIN text file")

        # chk
        chk = self.subparsers.add_parser("chk", help="Check the CHK trailer of a FIN message")
        chk.add_argument("file", help="FIN text file")

        # report
        report = self.subparsers.add_parser("report", help="Parse a network trailer report")
        report.add_argument("file", help="Report text file")

    def _register_config_commands(self) -> None:
        """Register config subcommands."""
        config = self.subparsers.add_parser("config", help="Configuration management")
        config_sub = config.add_subparsers(dest="subcommand")

        # config get
        get = config_sub.add_parser("get", help="Get configuration value")
        get.add_argument("path", help="Config path (e.g., originator.sender_bic)")

        # config show
        config_sub.add_parser("show", help="Show all configuration")

        # config validate
        config_sub.add_parser("validate", help="Validate configuration")

        # config schema
        config_sub.add_parser("schema", help="Export configuration schema")

    def run(self, args: Optional[List[str]] = None) -> int:
        """Run the CLI."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 0

        try:
            fmt = OutputFormat(parsed.format)
            self._setup(parsed)
            result = self._dispatch(parsed)

            if result is not None:
                print(format_output(result, fmt))

            if isinstance(result, dict) and result.get("valid") is False:
                return 3
            return 0

        except CLIError as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return e.exit_code

        except Exception as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return 1

    def _setup(self, args: argparse.Namespace) -> None:
        from fingate.config import ConfigError, get_config_manager
        from fingate.observability import configure_from_config

        if args.config:
            try:
                get_config_manager().load_from_file(args.config)
            except ConfigError as e:
                raise CLIError(str(e), exit_code=2)
        configure_from_config()

    def _dispatch(self, args: argparse.Namespace) -> Any:
        """Dispatch command to handler."""
        cmd = args.command
        subcmd = getattr(args, "subcommand", None)

        handler_name = f"_handle_{cmd}_{subcmd}" if subcmd else f"_handle_{cmd}"
        handler = getattr(self, handler_name, None)

        if handler is None:
            raise CLIError(f"Unknown command: {cmd} {subcmd or ''}")

        return handler(args)

    # Message handlers
    def _assembler(self, counter_file: Optional[str] = None) -> Any:
        from fingate.assembler import MessageAssembler
        from fingate.autofields import SequenceCounter

        return MessageAssembler.from_config(counter=SequenceCounter(counter_file))

    def _load_payload(self, path: str) -> Any:
        from fingate.payloads import PayloadError, payload_from_dict

        try:
            data = load_mapping(Path(path))
        except FileNotFoundError:
            raise CLIError(f"File not found: {path}", exit_code=2)
        except (ValueError, yaml.YAMLError) as e:
            raise CLIError(f"Cannot read {path}: {e}", exit_code=2)
        if not isinstance(data, dict):
            raise CLIError(f"{path} does not contain a mapping", exit_code=2)
        try:
            return payload_from_dict(data)
        except PayloadError as e:
            return {"valid": False, "errors": [err.to_dict() for err in e.errors]}

    def _handle_assemble(self, args: argparse.Namespace) -> Any:
        loaded = self._load_payload(args.file)
        if isinstance(loaded, dict):
            return loaded
        payload, header = loaded
        result = self._assembler(args.counter_file).assemble(payload, header, with_auto_fields=args.release)
        return result.to_dict()

    def _handle_validate(self, args: argparse.Namespace) -> Any:
        loaded = self._load_payload(args.file)
        if isinstance(loaded, dict):
            return loaded
        payload, header = loaded
        errors = self._assembler().validate(payload, header)
        return {"valid": not errors, "errors": [e.to_dict() for e in errors]}

    def _handle_parse(self, args: argparse.Namespace) -> Any:
        from fingate.inbound import InboundError, IncomingMessageService, IngestSource

        service = IncomingMessageService.from_config()
        try:
            message = service.ingest(_read_bytes(args.file), IngestSource.FILE)
        except InboundError as e:
            raise CLIError(str(e), exit_code=3)
        data = message.to_dict()
        del data["audit_log"]
        data["tags"] = data.pop("normalized_json")
        return data

    def _handle_chk(self, args: argparse.Namespace) -> Any:
        from fingate.autofields import generate_chk
        from fingate.config import get_originator
        from fingate.inbound import CHK_FIELD

        text = normalize_newlines(_read_text(args.file)).strip()
        idx = text.find("{5:")
        if idx < 0:
            raise CLIError("No {5: trailer block found", exit_code=3)
        body = text[:idx]
        found = CHK_FIELD.search(text, idx)
        originator = get_originator()
        expected = generate_chk(
            body,
            key=originator.chk_key,
            length=len(found.group(1)) if found else originator.chk_length,
        )
        received = found.group(1).upper() if found else None
        return {"valid": received == expected, "chk": received, "expected": expected}

    def _handle_report(self, args: argparse.Namespace) -> Any:
        from fingate.network_report import parse_network_report

        return parse_network_report(_read_text(args.file)).to_dict()

    # Config handlers
    def _handle_config_get(self, args: argparse.Namespace) -> Any:
        from fingate.config import ConfigError, get_config_manager
        mgr = get_config_manager()
        try:
            return {"path": args.path, "value": mgr.get(args.path)}
        except ConfigError as e:
            raise CLIError(str(e), exit_code=2)

    def _handle_config_show(self, args: argparse.Namespace) -> Any:
        from fingate.config import get_config_manager
        mgr = get_config_manager()
        return mgr.config.to_dict()

    def _handle_config_validate(self, args: argparse.Namespace) -> Any:
        from fingate.config import get_config_manager
        mgr = get_config_manager()
        errors = mgr.validate()
        return {"valid": len(errors) == 0, "errors": errors}

    def _handle_config_schema(self, args: argparse.Namespace) -> Any:
        from fingate.config import get_config_manager
        mgr = get_config_manager()
        return mgr.export_schema()


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    cli = GatewayCLI()
    return cli.run(argv)


if __name__ == "__main__":
    sys.exit(main())
