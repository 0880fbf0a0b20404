"""
Root Typer application for tig-spine.
"""

from __future__ import annotations

import typer
from typer import Typer

from tigspine import __version__

app = Typer(
    name="tigspine",
    help="tig-spine — unattended provisioning of a Telegraf / InfluxDB / Grafana stack.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"tig-spine {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """tig-spine CLI — provision the stack and inspect its configuration."""


@app.command("provision")
def provision(
    log_level: str | None = typer.Option(None, "--log-level", "-l", help="DEBUG, INFO, SUCCESS, WARNING or ERROR."),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Do not echo log lines to stdout."),
) -> None:
    """Run all provisioning steps against this host."""
    from tigspine.cli.utils import console, status_style
    from tigspine.provision.bootstrap import run_provisioning
    from tigspine.provision.results import EXIT_CONFIG, EXIT_OK

    overrides: dict[str, object] = {}
    if log_level:
        overrides["log_level"] = log_level
    if quiet:
        overrides["echo"] = False

    code = run_provisioning(settings_overrides=overrides)
    if code == EXIT_OK:
        console.print(f"[{status_style('SUCCESS')}]Provisioning finished (exit {code})[/]")
    elif code == EXIT_CONFIG:
        console.print(f"[{status_style('FAILED')}]Configuration invalid; no step was attempted[/]")
    else:
        console.print(f"[{status_style('FAILED')}]Provisioning failed (exit {code})[/]")
    raise typer.Exit(code)


# ── Sub-command registration ─────────────────────────────────────────────

from tigspine.cli.config import app as config_app  # noqa: E402

app.add_typer(config_app, name="config", help="Configuration inspection.")
