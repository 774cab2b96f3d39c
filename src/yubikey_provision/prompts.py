from __future__ import annotations

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from .errors import ProvisionError
from .preflight import PreflightReport
from .types import CardStatus, Identity, KeyPair


class Prompts:
    def __init__(self, console: Console | None = None) -> None:
        self._console = console or Console()

    @property
    def console(self) -> Console:
        return self._console

    def confirm_destructive(self, serial: str, operation: str) -> bool:
        """Confirm a destructive token operation by having the operator type its serial."""
        self._console.print()
        self._console.print(
            Panel(
                f"[bold red]DESTRUCTIVE OPERATION[/bold red]\n\n"
                f"This will {operation} on token [bold]{serial}[/bold]\n\n"
                f"[yellow]ALL OPENPGP KEYS ON THIS TOKEN WILL BE PERMANENTLY LOST![/yellow]\n\n"
                f"To confirm, type the serial number: [bold cyan]{serial}[/bold cyan]",
                border_style="red",
                title="Confirmation Required",
            )
        )

        user_input = Prompt.ask("Type serial number to confirm")

        if user_input.strip() == serial:
            self._console.print("[green]Confirmed.[/green]")
            return True

        self._console.print(f"[red]Input '{user_input}' does not match '{serial}'. Aborting.[/red]")
        return False

    def show_step(self, step_number: int, total_steps: int, description: str) -> None:
        self._console.print(
            f"[bold cyan][Step {step_number}/{total_steps}][/bold cyan] {description}"
        )

    def show_success(self, message: str) -> None:
        self._console.print(f"[green]✓[/green] {message}")

    def show_warning(self, message: str) -> None:
        self._console.print(f"[yellow]![/yellow] {message}")

    def show_error(self, error: Exception) -> None:
        self._console.print()
        self._console.print(f"[bold red]✗[/bold red] {error}")

        if isinstance(error, ProvisionError) and error.recovery_hints:
            hints = "\n".join(f"{i}. {hint}" for i, hint in enumerate(error.recovery_hints, 1))
            self._console.print()
            self._console.print(Panel(hints, title="Recovery", border_style="yellow"))

    def show_pin_dialog_notice(self, kind: str) -> None:
        self._console.print(
            f"[yellow]Enter the current and the new {kind} PIN in the PIN entry dialog.[/yellow]"
        )

    def show_key_info(self, key_pair: KeyPair, identity: Identity, artifact: str) -> None:
        table = Table(title="Generated Key")
        table.add_column("Property", style="cyan")
        table.add_column("Value")

        table.add_row("Fingerprint", key_pair.primary_key_id)
        table.add_row("Encryption subkey", key_pair.subkey_id)
        table.add_row("Algorithm", key_pair.algorithm.value)
        table.add_row("Identity", identity.user_id)
        table.add_row("Public key", artifact)

        self._console.print(table)

    def show_card_status(self, status: CardStatus) -> None:
        table = Table(title=f"Token {status.serial}")
        table.add_column("Slot", style="cyan")
        table.add_column("Key")
        table.add_column("Touch")

        slots = [
            ("Signature", status.signature_key, "sig"),
            ("Encryption", status.encryption_key, "enc"),
            ("Authentication", status.authentication_key, "aut"),
        ]
        policies = {slot.value: policy.value for slot, policy in status.touch_policies.items()}
        for label, fingerprint, slot in slots:
            table.add_row(label, fingerprint or "[dim]empty[/dim]", policies.get(slot, "-"))

        self._console.print(table)
        self._console.print(
            f"PIN retries: {status.pin_retries}, Admin PIN retries: {status.admin_pin_retries}"
        )

    def show_preflight(self, report: PreflightReport) -> None:
        table = Table(title=f"Preflight ({report.system})")
        table.add_column("Check", style="cyan")
        table.add_column("Status")
        table.add_column("Details")

        for check in report.checks:
            if check.passed:
                status = "[green]OK[/green]"
            elif check.critical:
                status = "[red]FAIL[/red]"
            else:
                status = "[yellow]WARN[/yellow]"
            details = check.message
            if not check.passed and check.fix_hint:
                details += f"\n[dim]{check.fix_hint}[/dim]"
            table.add_row(check.name, status, details)

        self._console.print(table)


class MockPrompts(Prompts):
    """Mock prompts for testing - returns pre-configured values."""

    def __init__(self, confirmations: bool = True) -> None:
        super().__init__(Console(quiet=True))
        self._confirmations = confirmations
        self.destructive_requests: list[tuple[str, str]] = []

    def confirm_destructive(self, serial: str, operation: str) -> bool:
        self.destructive_requests.append((serial, operation))
        return self._confirmations
