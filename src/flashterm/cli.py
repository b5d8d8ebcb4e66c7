"""CLI for the flashterm command."""

from pathlib import Path
from typing import Optional

import typer

from .engine import EngineConfig


app = typer.Typer(
    help="Multi-tab shell with persistent local and SSH sessions",
    add_completion=False,
)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    shell: Optional[str] = typer.Option(None, "--shell", "-s", help="Interpreter for local tabs"),
    flush_interval: Optional[float] = typer.Option(
        None, "--flush-interval", help="Minimum seconds between output flushes per tab"
    ),
    connect_timeout: Optional[float] = typer.Option(
        None, "--connect-timeout", help="SSH handshake timeout in seconds"
    ),
    data_dir: Optional[Path] = typer.Option(None, "--data-dir", help="Where macros are stored"),
    log_file: Optional[Path] = typer.Option(None, "--log-file", help="Mirror the engine log to a file"),
):
    """
    Start Flash Terminal.

    Every tab keeps one shell alive between commands; `ssh user@host`
    switches a tab to a remote shell until `exit`.

    Examples:
        # Default shell
        flashterm

        # Use zsh and keep macros elsewhere
        flashterm --shell /bin/zsh --data-dir ~/.flashterm
    """
    try:
        config = EngineConfig.from_env(
            shell=shell,
            flush_interval=flush_interval,
            connect_timeout=connect_timeout,
            data_dir=data_dir,
            log_file=log_file,
        )
    except ValueError as exc:
        typer.echo(f"Invalid configuration: {exc}", err=True)
        raise typer.Exit(code=2)

    from .tui.app import FlashTermApp

    FlashTermApp(config=config).run()


if __name__ == "__main__":
    app()
