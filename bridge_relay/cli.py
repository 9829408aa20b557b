"""
CLI entry point for the bridge relay.
"""

import asyncio
import json
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv

from .config import Settings, get_settings
from .errors import BridgeError
from .log import configure_logging
from .models import BridgeStatus, record_key
from .store import FieldStore

app = typer.Typer(
    name="bridge-relay",
    help="Cross-chain USDC bridge relay (Circle CCTP)",
    add_completion=False,
)


def _load_settings(config_path: Optional[Path]) -> Settings:
    if config_path:
        return Settings(_env_file=config_path)
    return get_settings()


def _require_database(settings: Settings) -> str:
    if not settings.database_url:
        typer.echo("DATABASE_URL is not configured", err=True)
        raise typer.Exit(code=1)
    return settings.database_url


@app.command()
def serve() -> None:
    """
    Run the HTTP API.
    """
    from .main import run

    run()


@app.command()
def status(
    bridge_id: str = typer.Argument(..., help="Bridge id returned by /bridge/initiate"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to .env file"),
) -> None:
    """
    Print a bridge record.
    """
    settings = _load_settings(config_path)
    store = FieldStore(_require_database(settings))
    try:
        data = store.get(record_key(bridge_id))
    finally:
        store.close()

    if data is None:
        typer.echo(f"Bridge not found: {bridge_id}", err=True)
        raise typer.Exit(code=1)

    typer.echo(json.dumps({"id": bridge_id, **data}, indent=2, sort_keys=True))


@app.command("retry-mint")
def retry_mint(
    bridge_id: str = typer.Argument(..., help="Failed bridge to finish"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to .env file"),
) -> None:
    """
    Re-poll the attestation and mint for a failed bridge, in the foreground.
    """
    from .service import BridgeService

    configure_logging(json_logs=False)
    settings = _load_settings(config_path)
    _require_database(settings)

    async def _retry() -> int:
        service = BridgeService.from_settings(settings)
        try:
            if service.orchestrator is None:
                typer.echo("RELAYER_PRIVATE_KEY is not configured", err=True)
                return 1
            try:
                record = await service.orchestrator.retry_mint(bridge_id)
            except BridgeError as e:
                typer.echo(f"✗ {e}", err=True)
                return 1
        finally:
            await service.shutdown()

        if record.status is BridgeStatus.COMPLETED:
            typer.echo(f"✓ Minted: {record.receive_message_tx}")
            return 0
        typer.echo(f"✗ Failed: {record.error}")
        return 1

    code = asyncio.run(_retry())
    raise typer.Exit(code=code)


@app.command("purge-expired")
def purge_expired(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to .env file"),
) -> None:
    """
    Delete bridge records past their retention window.
    """
    configure_logging(json_logs=False)
    settings = _load_settings(config_path)
    store = FieldStore(_require_database(settings))
    try:
        count = store.purge_expired()
    finally:
        store.close()
    typer.echo(f"Purged {count} expired keys")


@app.command()
def version() -> None:
    """Show the relay version."""
    from bridge_relay import __version__
    typer.echo(f"bridge-relay v{__version__}")


def main() -> None:
    """Main entry point."""
    load_dotenv()
    app()


if __name__ == "__main__":
    main()
