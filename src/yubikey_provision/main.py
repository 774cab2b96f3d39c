from __future__ import annotations

import argparse
import logging
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

from . import preflight
from .config import GNUPGHOME_VAR, ProvisionConfig, default_environ, setup_all_configs
from .orchestrator import Orchestrator
from .prompts import Prompts
from .secret_handler import DEFAULT_PASSPHRASE_BYTES, new_passphrase
from .types import Identity, KeyType

console = Console()
err_console = Console(stderr=True)


def get_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="yubikey-provision",
        description="Generate an OpenPGP key and provision it onto YubiKey tokens",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=None,
        help="Directory for public key files (default: current directory)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Log each engine step",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    generate_parser = subparsers.add_parser(
        "generate-key", help="Generate a certify-only primary key with an encryption subkey"
    )
    generate_parser.add_argument("--name", required=True, help="Display name for the user ID")
    generate_parser.add_argument("--email", required=True, help="Email address for the user ID")
    generate_parser.add_argument(
        "--key-type",
        choices=[k.value for k in KeyType],
        default=KeyType.ED25519.value,
        help="Key algorithm (default: ed25519)",
    )

    provision_parser = subparsers.add_parser(
        "provision", help="Reset a token and copy an existing key onto it (DESTRUCTIVE)"
    )
    provision_parser.add_argument("--key-id", required=True, help="Fingerprint of the key")
    provision_parser.add_argument(
        "--serial", required=True, help="Serial number of the connected token"
    )
    provision_parser.add_argument(
        "--force", action="store_true", help="Skip the reset confirmation prompt"
    )

    subparsers.add_parser("change-pin", help="Change the user PIN of the connected token")
    subparsers.add_parser("change-admin-pin", help="Change the Admin PIN of the connected token")

    check_parser = subparsers.add_parser("check", help="Verify the local environment")
    check_parser.add_argument(
        "--card", action="store_true", help="Also require what card operations need"
    )

    passphrase_parser = subparsers.add_parser("passphrase", help="Print a new random passphrase")
    passphrase_parser.add_argument(
        "--bytes",
        type=int,
        default=DEFAULT_PASSPHRASE_BYTES,
        help=f"Random bytes, a multiple of 3 (default: {DEFAULT_PASSPHRASE_BYTES})",
    )

    subparsers.add_parser(
        "setup-config", help=f"Write the GnuPG profile into ${GNUPGHOME_VAR}"
    )

    return parser


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def cmd_generate_key(orchestrator: Orchestrator, args: argparse.Namespace, prompts: Prompts) -> int:
    """Generate a new key pair."""
    identity = Identity(display_name=args.name, email_address=args.email)
    result = orchestrator.generate_key(identity, KeyType(args.key_type))

    if result.is_err():
        prompts.show_error(result.unwrap_err())
        return 1

    prompts.show_success(f"Key {result.unwrap().primary_key_id} generated")
    return 0


def cmd_provision(orchestrator: Orchestrator, args: argparse.Namespace, prompts: Prompts) -> int:
    """Provision the connected token with an existing key."""
    result = orchestrator.provision_card(args.key_id, args.serial, force=args.force)

    if result.is_err():
        prompts.show_error(result.unwrap_err())
        return 1

    prompts.show_success(f"Token {args.serial} provisioned with {args.key_id}")
    return 0


def cmd_change_pin(orchestrator: Orchestrator, prompts: Prompts, admin: bool = False) -> int:
    result = orchestrator.change_admin_pin() if admin else orchestrator.change_pin()

    if result.is_err():
        prompts.show_error(result.unwrap_err())
        return 1

    return 0


def cmd_check(config: ProvisionConfig, args: argparse.Namespace, prompts: Prompts) -> int:
    """Report every preflight check."""
    report = preflight.run_checks(config, card_operation=args.card)
    prompts.show_preflight(report)

    if not report.all_passed:
        prompts.console.print(
            f"[red]{len(report.critical_failures)} critical check(s) failed[/red]"
        )
        return 1

    for warning in report.warnings:
        prompts.show_warning(f"{warning.name}: {warning.message}")
    return 0


def cmd_passphrase(args: argparse.Namespace) -> int:
    try:
        passphrase = new_passphrase(args.bytes)
    except ValueError as e:
        err_console.print(f"[red]Error:[/red] {e}")
        return 1

    # Plain stdout so the value can be captured by the shell
    console.print(passphrase.get(), markup=False, highlight=False)
    passphrase.clear()
    return 0


def cmd_setup_config(config: ProvisionConfig) -> int:
    """Write the GnuPG profile used for provisioning."""
    if config.gnupghome is None:
        console.print(f"[red]Configuration setup failed: {GNUPGHOME_VAR} is not set[/red]")
        return 1

    console.print(f"Writing GnuPG profile into {config.gnupghome}...")
    result = setup_all_configs(config.gnupghome, backup_existing=True)

    if result.is_err():
        console.print(f"[red]Configuration setup failed: {result.unwrap_err()}[/red]")
        return 1

    console.print("[green]Configuration files created:[/green]")
    for name, path in result.unwrap().items():
        console.print(f"  {name}: {path}")

    return 0


def run(args: list[str]) -> int:
    """Main entry point."""
    parser = get_parser()
    ns = parser.parse_args(args)

    if not ns.command:
        parser.print_help()
        return 1

    configure_logging(ns.verbose)

    if ns.command == "passphrase":
        return cmd_passphrase(ns)

    config = ProvisionConfig.from_environ(default_environ(), ns.output_dir)
    prompts = Prompts(console)

    if ns.command == "check":
        return cmd_check(config, ns, prompts)
    elif ns.command == "setup-config":
        return cmd_setup_config(config)

    orchestrator = Orchestrator(config, prompts=prompts)
    try:
        if ns.command == "generate-key":
            return cmd_generate_key(orchestrator, ns, prompts)
        elif ns.command == "provision":
            return cmd_provision(orchestrator, ns, prompts)
        elif ns.command == "change-pin":
            return cmd_change_pin(orchestrator, prompts)
        elif ns.command == "change-admin-pin":
            return cmd_change_pin(orchestrator, prompts, admin=True)
    finally:
        orchestrator.close()

    parser.print_help()
    return 1
