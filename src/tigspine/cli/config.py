"""
CLI: ``tigspine config`` — inspect the Configuration Set a run would use.
"""

from __future__ import annotations

import json

import typer

from tigspine.cli.utils import console, err_console, render_table
from tigspine.core.errors import ConfigurationError, SecretGenerationError
from tigspine.provision.config import ENV_MAP, StackConfig
from tigspine.provision.results import EXIT_CONFIG, EXIT_FAILED

app = typer.Typer(no_args_is_help=True)


@app.command("show")
def show_config(
    format: str = typer.Option("table", "--format", "-f", help="Output format: table, json"),
) -> None:
    """Resolve the configuration from the environment. Passwords are masked."""
    try:
        config = StackConfig.from_env()
    except ConfigurationError as e:
        err_console.print(f"[red]Configuration Error:[/red] {e.message}")
        for key, message in e.problems:
            err_console.print(f"  • {key}: {message}")
        raise typer.Exit(EXIT_CONFIG) from e
    except SecretGenerationError as e:
        err_console.print(f"[red]Secret generation failed:[/red] {e.message}")
        raise typer.Exit(EXIT_FAILED) from e

    data = config.describe()
    if format == "json":
        console.print_json(json.dumps(data))
        return

    rows = [(name, value) for name, value in data.items()]
    for name, source in config.password_provenance.items():
        rows.append((f"{name} source", source))
    console.print(render_table(rows, title="TIG Stack Configuration"))


@app.command("keys")
def list_keys() -> None:
    """List every environment key the resolver reads, in precedence order."""
    rows = [(field, ", ".join(keys)) for field, keys in ENV_MAP.items()]
    console.print(render_table(rows, title="Recognised environment keys"))
