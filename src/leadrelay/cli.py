"""leadrelay CLI - credential administration and ad-hoc CRM calls."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import Settings
from .errors import ConfigurationError, LeadRelayError, ReauthorizationRequiredError
from .services import Services, build_services

T = TypeVar("T")

app = typer.Typer(
    name="leadrelay",
    help="Relay form submissions into CRM leads - credential admin and API tools",
    no_args_is_help=True,
)
console = Console()

auth_app = typer.Typer(help="Credential commands")
app.add_typer(auth_app, name="auth")


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override LEADRELAY_LOG_LEVEL"),
):
    """Configure logging for every command."""
    level = (log_level or Settings().log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _run(action: Callable[[Services], Awaitable[T]]) -> T:
    """Build services, run ``action`` and translate leadrelay errors into exit code 1."""

    async def runner() -> T:
        services = build_services()
        try:
            return await action(services)
        finally:
            await services.aclose()

    try:
        return asyncio.run(runner())
    except ReauthorizationRequiredError as e:
        console.print(Panel(f"[red]{e}[/red]\n\nReinstall the app or run [bold]leadrelay auth url <domain>[/bold].",
                            title="Re-authorization required"))
        raise typer.Exit(1)
    except LeadRelayError as e:
        console.print(f"[red]{e.__class__.__name__}:[/red] {e}")
        raise typer.Exit(1)


# ============================================================================
# Auth Commands
# ============================================================================


@auth_app.command("status")
def auth_status():
    """Show the stored credential (secrets are never printed)."""

    async def action(services: Services) -> dict[str, Any]:
        return services.manager.get_token_status()

    status = _run(action)

    if not status["has_token"]:
        console.print(Panel(f"[yellow]{status['message']}[/yellow]", title="Credential Status"))
        return

    table = Table(title="Credential Status")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")

    for key in ("method", "installation_id", "domain", "scope", "endpoint", "expires_at",
                "seconds_remaining", "has_refresh_token", "status", "updated_at"):
        value = status.get(key)
        table.add_row(key, "-" if value is None else str(value))
    table.add_row("is_expired", "[red]yes[/red]" if status["is_expired"] else "no")

    console.print(table)


def _require_oauth_app(settings: Settings) -> None:
    if not settings.oauth_configured:
        raise ConfigurationError(
            "OAuth app is not configured. Set LEADRELAY_CLIENT_ID and LEADRELAY_CLIENT_SECRET."
        )


def _portal_domain(domain: Optional[str], settings: Settings) -> str:
    portal = domain or settings.domain
    if not portal:
        raise ConfigurationError("No portal domain given. Pass DOMAIN or set LEADRELAY_DOMAIN.")
    return portal


@auth_app.command("url")
def auth_url(
    domain: Optional[str] = typer.Argument(None, help="Portal domain, e.g. mycompany.bitrix24.com"),
    state: Optional[str] = typer.Option(None, help="CSRF state (random if omitted)"),
):
    """Print the consent URL for the authorization-code flow."""

    async def action(services: Services) -> str:
        _require_oauth_app(services.settings)
        return services.acquirer.authorization_url(_portal_domain(domain, services.settings), state=state)

    console.print(_run(action))


@auth_app.command("exchange")
def auth_exchange(
    code: str = typer.Argument(..., help="Authorization code from the OAuth callback"),
    domain: Optional[str] = typer.Argument(None, help="Portal domain from the OAuth callback"),
):
    """Exchange an authorization code and store the credential."""

    async def action(services: Services):
        _require_oauth_app(services.settings)
        return await services.acquirer.exchange_code(code, _portal_domain(domain, services.settings))

    record = _run(action)
    console.print(f"[green]Stored {record.acquisition_method.value} credential for {record.domain}[/green]")


@auth_app.command("install")
def auth_install(
    payload_file: Path = typer.Argument(..., exists=True, readable=True, help="JSON install payload"),
):
    """Store a credential from a captured install callback payload."""
    try:
        form = json.loads(payload_file.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        console.print(f"[red]Install payload is not valid JSON: {e} ({payload_file})[/red]")
        raise typer.Exit(2)
    if not isinstance(form, dict):
        console.print(f"[red]Install payload must be a JSON object ({payload_file})[/red]")
        raise typer.Exit(2)

    async def action(services: Services):
        return services.acquirer.from_install_request(form)

    record = _run(action)
    console.print(
        f"[green]Stored {record.acquisition_method.value} credential "
        f"for installation {record.installation_id}[/green]"
    )


@auth_app.command("refresh")
def auth_refresh():
    """Force a refresh of the stored credential."""

    async def action(services: Services):
        _require_oauth_app(services.settings)
        return await services.manager.force_refresh()

    record = _run(action)
    console.print(f"[green]Refreshed; expires at {record.expires_at.isoformat() if record.expires_at else 'never'}[/green]")


@auth_app.command("clear")
def auth_clear(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Delete the stored credential, forcing re-authorization."""
    if not yes:
        typer.confirm("Delete the stored credential?", abort=True)

    async def action(services: Services) -> bool:
        return services.manager.clear_credentials()

    removed = _run(action)
    console.print("[green]Credential cleared[/green]" if removed else "[dim]Nothing to clear[/dim]")


# ============================================================================
# API Commands
# ============================================================================


@app.command("call")
def call(
    method: str = typer.Argument(..., help="REST method, e.g. crm.lead.list"),
    params: str = typer.Option("{}", "--params", "-p", help="JSON object of parameters"),
):
    """Call a CRM REST method with the stored credential."""
    try:
        parsed = json.loads(params)
    except json.JSONDecodeError as e:
        console.print(f"[red]--params is not valid JSON: {e}[/red]")
        raise typer.Exit(2)

    async def action(services: Services) -> dict[str, Any]:
        return await services.crm.call(method, parsed)

    console.print_json(data=_run(action))


@app.command("test")
def test_connection():
    """Check the credential by fetching the current user."""

    async def action(services: Services) -> dict[str, Any]:
        return await services.crm.leads.current_user()

    user = _run(action)
    name = " ".join(filter(None, [user.get("NAME"), user.get("LAST_NAME")])) or user.get("ID")
    console.print(f"[green]Connection OK[/green] - authenticated as {name}")


@app.command()
def version():
    """Show version information."""
    from . import __version__

    console.print(f"leadrelay v{__version__}")


if __name__ == "__main__":
    app()
