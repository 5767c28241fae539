from __future__ import annotations

import json
from typing import Optional

import typer
import uvicorn
from dotenv import load_dotenv

from burstpilot.core.config import Settings

app = typer.Typer(add_completion=False)


def _load_env() -> None:
    load_dotenv()


def _setup_logging(settings: Settings) -> None:
    """Configure centralized logging to both stdout and log files."""
    from burstpilot.core.logging_config import setup_logging

    setup_logging(log_dir=settings.log_dir, log_level=settings.log_level)


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Bind host (default: BURSTPILOT_HOST)"),
    port: Optional[int] = typer.Option(None, help="Bind port (default: BURSTPILOT_PORT)"),
) -> None:
    """Run the Telegram supervisor and its HTTP control surface."""
    _load_env()
    settings = Settings.from_env()

    problems = settings.validate()
    if problems:
        for problem in problems:
            typer.secho(f"❌ {problem}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    _setup_logging(settings)
    uvicorn.run(
        "burstpilot.core.gateway:create_app",
        host=host or settings.host,
        port=port or settings.port,
        factory=True,
    )


@app.command()
def version() -> None:
    from burstpilot import __version__

    typer.echo(__version__)


@app.command()
def state() -> None:
    """Print the persisted supervisor state."""
    _load_env()
    settings = Settings.from_env()

    from burstpilot.core.state import SupervisorState

    # Read the file directly: loading through StateStore would rewrite it
    try:
        with open(settings.state_file, "r", encoding="utf-8") as f:
            current = SupervisorState.from_dict(json.load(f))
    except FileNotFoundError:
        typer.echo(f"No state file at {settings.state_file}")
        raise typer.Exit()
    typer.echo(json.dumps(current.to_dict(), indent=2))


if __name__ == "__main__":
    app()
