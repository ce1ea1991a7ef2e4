"""
USB Gatekeeper Command Line Interface.

Provides commands for managing USB Gatekeeper:
- list-devices: Show connected devices and their state
- allow / block: Override the decision for one device
- list-rules / add-rule / remove-rule: Manage the rule file
- run: Run the daemon in the foreground
- check: Check configuration and environment
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, NoReturn

from gatekeeper import __version__
from gatekeeper.config import GatekeeperConfig, load_config, validate_config
from gatekeeper.core.engine import AuthorizationEngine, TrackedDevice
from gatekeeper.daemon import build_store, setup_logging
from gatekeeper.errors import EXIT_OK, EXIT_USAGE, ConfigError, GatekeeperError
from gatekeeper.interceptor.linux import (
    check_environment,
    get_platform_authorizer,
    get_platform_event_source,
    require_privileges,
)
from gatekeeper.policy.models import Rule
from gatekeeper.policy.parser import validate_rules


class GatekeeperArgumentParser(argparse.ArgumentParser):
    """Argument parser reporting usage errors with EXIT_USAGE instead of 2."""

    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        self.exit(EXIT_USAGE, f"{self.prog}: error: {message}\n")


def _json_flag(parser: argparse.ArgumentParser) -> None:
    # Accept --json after the subcommand too without clobbering the global flag
    parser.add_argument(
        "--json",
        action="store_true",
        default=argparse.SUPPRESS,
        help="Output in JSON format",
    )


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = GatekeeperArgumentParser(
        prog="usb-gatekeeper",
        description="USB device authorization control",
    )
    parser.add_argument(
        "-V", "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-c", "--config",
        metavar="FILE",
        help="Path to configuration file",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output in JSON format",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # list-devices command
    list_parser = subparsers.add_parser(
        "list-devices",
        help="List connected devices (never changes their state)",
    )
    _json_flag(list_parser)
    list_parser.set_defaults(func=cmd_list_devices)

    # allow / block commands
    for name, verb in (("allow", "Allow"), ("block", "Block")):
        override_parser = subparsers.add_parser(name, help=f"{verb} a connected device")
        override_parser.add_argument(
            "device",
            help="Device key (vid:pid:serial@port) as shown by list-devices",
        )
        override_parser.add_argument(
            "--permanent",
            action="store_true",
            help="Also save a rule for this device ahead of all other rules",
        )
        _json_flag(override_parser)
        override_parser.set_defaults(func=cmd_override, action=name)

    # list-rules command
    rules_parser = subparsers.add_parser("list-rules", help="List rules in evaluation order")
    _json_flag(rules_parser)
    rules_parser.set_defaults(func=cmd_list_rules)

    # add-rule command
    add_parser = subparsers.add_parser("add-rule", help="Append a rule")
    add_parser.add_argument(
        "pattern",
        help="'*' or comma separated field=value terms "
             "(vid, pid, serial, port, name, interface_class)",
    )
    add_parser.add_argument("action", choices=["allow", "block"], help="Rule action")
    _json_flag(add_parser)
    add_parser.set_defaults(func=cmd_add_rule)

    # remove-rule command
    remove_parser = subparsers.add_parser("remove-rule", help="Remove a rule by id")
    remove_parser.add_argument("rule_id", type=int, help="Rule id")
    _json_flag(remove_parser)
    remove_parser.set_defaults(func=cmd_remove_rule)

    # run command
    run_parser = subparsers.add_parser("run", help="Run the daemon in the foreground")
    run_parser.set_defaults(func=cmd_run)

    # check command
    check_parser = subparsers.add_parser("check", help="Check configuration and environment")
    _json_flag(check_parser)
    check_parser.set_defaults(func=cmd_check)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return EXIT_OK

    if args.command != "run":
        setup_logging("debug" if args.verbose else "warning")

    try:
        return args.func(args)
    except GatekeeperError as e:
        report_error(e, args)
        return e.exit_code
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USAGE


def report_error(error: GatekeeperError, args: argparse.Namespace) -> None:
    """Print an error with its kind and identity."""
    if getattr(args, "json", False):
        print(json.dumps({"error": error.to_dict()}, indent=2, default=str), file=sys.stderr)
    else:
        print(f"Error ({error.kind}): {error}", file=sys.stderr)


def output(data: Any, args: argparse.Namespace) -> None:
    """Output data in requested format."""
    if getattr(args, "json", False):
        print(json.dumps(data, indent=2, default=str))
    elif isinstance(data, dict):
        for key, value in data.items():
            print(f"{key}: {value}")
    else:
        print(data)


def get_config(args: argparse.Namespace) -> GatekeeperConfig:
    """Load and validate configuration."""
    config = load_config(args.config)
    errors = validate_config(config)
    if errors:
        raise ConfigError("; ".join(errors))
    return config


def get_engine(config: GatekeeperConfig) -> AuthorizationEngine:
    """Create an engine tracking the devices present right now."""
    source = get_platform_event_source(config.interceptor)
    engine = AuthorizationEngine(
        store=build_store(config),
        authorizer=get_platform_authorizer(config.interceptor),
        source=source,
        max_concurrent=config.engine.max_concurrent,
    )
    engine.observe(source.enumerate())
    return engine


def format_rule(rule: Rule) -> str:
    origin = "temporary" if rule.temporary else rule.created_at.strftime("%Y-%m-%d %H:%M:%S")
    return f"{rule.id:<6} {rule.action.value:<7} {str(rule.pattern):<50} {origin}"


def cmd_list_devices(args: argparse.Namespace) -> int:
    """List connected devices with their state and the rule that would apply."""
    config = get_config(args)
    engine = get_engine(config)
    records = engine.list_devices()

    rows = []
    for record in records:
        decision = engine.store.evaluate(record.descriptor)
        rows.append((record, decision))

    if getattr(args, "json", False):
        output([
            {**record.to_dict(), "policy": decision.to_dict()}
            for record, decision in rows
        ], args)
        return EXIT_OK

    print(f"Connected USB Devices ({len(rows)})")
    print("=" * 100)
    if not rows:
        print("No devices found.")
        return EXIT_OK

    print(f"{'Device':<36} {'Name':<30} {'State':<9} {'Policy':<7} {'Rule':<8}")
    print("-" * 100)
    for record, decision in rows:
        name = (record.descriptor.name or "Unknown")[:30]
        print(
            f"{str(record.key):<36} "
            f"{name:<30} "
            f"{record.state.value:<9} "
            f"{decision.action.value:<7} "
            f"{decision.matched!s:<8}"
        )
    return EXIT_OK


def cmd_override(args: argparse.Namespace) -> int:
    """Allow or block one device."""
    config = get_config(args)
    require_privileges(config.daemon.require_root)
    engine = get_engine(config)

    record: TrackedDevice = asyncio.run(
        engine.manual_override(args.device, args.action, permanent=args.permanent)
    )

    if getattr(args, "json", False):
        output(record.to_dict(), args)
    else:
        print(f"Device {record.key}: {record.state.value}")
        if args.permanent:
            print(f"Saved rule: {args.action} {record.key}")
    return EXIT_OK


def cmd_list_rules(args: argparse.Namespace) -> int:
    """List rules in evaluation order."""
    config = get_config(args)
    store = build_store(config)
    rules = store.list_rules()

    if getattr(args, "json", False):
        output({
            "version": store.version,
            "default_action": store.evaluator.default_action.value,
            "rules": [rule.to_dict() for rule in rules],
        }, args)
        return EXIT_OK

    print(f"Rules ({len(rules)}), default action: {store.evaluator.default_action.value}")
    print("=" * 90)
    if not rules:
        print("No rules defined.")
    else:
        print(f"{'ID':<6} {'Action':<7} {'Pattern':<50} {'Created'}")
        print("-" * 90)
        for rule in rules:
            print(format_rule(rule))

    warnings = validate_rules(rules)
    if warnings:
        print("\nWarnings:")
        for w in warnings:
            print(f"  - {w}")
    return EXIT_OK


def cmd_add_rule(args: argparse.Namespace) -> int:
    """Append a rule to the rule file."""
    config = get_config(args)
    require_privileges(config.daemon.require_root)
    store = build_store(config)

    rule_id = store.add_rule(args.pattern, args.action)
    rule = store.get_rule(rule_id)

    if getattr(args, "json", False):
        output(rule.to_dict(), args)
    else:
        print(f"Rule {rule.id} added: {rule.action.value} {rule.pattern}")
    return EXIT_OK


def cmd_remove_rule(args: argparse.Namespace) -> int:
    """Remove a rule from the rule file."""
    config = get_config(args)
    require_privileges(config.daemon.require_root)
    store = build_store(config)

    rule = store.remove_rule(args.rule_id)

    if getattr(args, "json", False):
        output(rule.to_dict(), args)
    else:
        print(f"Rule {rule.id} removed: {rule.action.value} {rule.pattern}")
    return EXIT_OK


def cmd_run(args: argparse.Namespace) -> int:
    """Run the daemon in the foreground."""
    from gatekeeper.daemon import main as daemon_main

    daemon_args = []
    if args.config:
        daemon_args.extend(["-c", args.config])
    if args.verbose:
        daemon_args.append("-v")

    return daemon_main(daemon_args)


def cmd_check(args: argparse.Namespace) -> int:
    """Check configuration, rule file and host environment."""
    config = load_config(args.config)
    problems = validate_config(config)
    warnings: list[str] = []

    if not problems:
        try:
            store = build_store(config)
        except GatekeeperError as e:
            problems.append(str(e))
        else:
            warnings.extend(validate_rules(store.list_rules()))

    problems.extend(check_environment(config.interceptor))

    result = {
        "version": __version__,
        "config_file": args.config or "default",
        "rules_file": config.policy.rules_file,
        "rules_file_exists": Path(config.policy.rules_file).exists(),
        "default_action": config.policy.default_action,
        "problems": problems,
        "warnings": warnings,
        "ok": not problems,
    }

    if getattr(args, "json", False):
        output(result, args)
    else:
        print("USB Gatekeeper Check")
        print("=" * 50)
        print(f"Version:        {result['version']}")
        print(f"Config:         {result['config_file']}")
        print(f"Rules file:     {result['rules_file']}"
              f"{'' if result['rules_file_exists'] else ' (not created yet)'}")
        print(f"Default action: {result['default_action']}")
        for problem in problems:
            print(f"  ERROR: {problem}")
        for warning in warnings:
            print(f"  WARNING: {warning}")
        print("OK" if not problems else f"{len(problems)} problem(s) found")

    return EXIT_OK if not problems else EXIT_USAGE


if __name__ == "__main__":
    sys.exit(main())
