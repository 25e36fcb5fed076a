from __future__ import annotations

import asyncio
from typing import Optional

import typer
from dotenv import load_dotenv

app = typer.Typer(add_completion=False)


def _load_env() -> None:
    load_dotenv()


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Bind host (default: TASKD_HOST)"),
    port: Optional[int] = typer.Option(None, help="Host protocol port (default: TASKD_RPC_PORT)"),
    control_port: Optional[int] = typer.Option(None, help="Control API port, 0 disables (default: TASKD_CONTROL_PORT)"),
) -> None:
    """Run the task daemon until interrupted."""
    _load_env()

    from taskd.core.config import Settings
    from taskd.core.logging_config import setup_logging
    from taskd.daemon import Daemon

    settings = Settings.from_env()
    if host is not None:
        settings.host = host
    if port is not None:
        settings.port = port
    if control_port is not None:
        settings.control_port = control_port

    setup_logging(log_dir=settings.log_dir, log_level=settings.log_level, clear_on_launch=settings.clear_logs_on_launch)
    asyncio.run(Daemon(settings).run())


@app.command()
def version() -> None:
    from taskd import __version__

    typer.echo(__version__)


if __name__ == "__main__":
    app()
