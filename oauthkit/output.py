"""Output formatters for the oauthkit CLI (human-readable or JSON)."""

import json
import sys
from typing import Any

import click

from .errors import ProviderResponseError


def format_json(data: Any) -> str:
    """Wrap data in the success envelope."""
    return json.dumps({"success": True, "data": data}, indent=2, default=str)


def format_error_json(
    error: Exception,
    error_type: str | None = None,
    help_text: str | None = None,
) -> str:
    """Format an error as JSON.

    Provider response bodies are left out on purpose: they may hold tokens.
    """
    payload: dict[str, Any] = {
        "type": error_type or type(error).__name__,
        "message": str(error),
        "help": help_text or "",
    }
    if isinstance(error, ProviderResponseError):
        payload["status"] = error.status
    return json.dumps({"success": False, "error": payload}, indent=2)


class OutputHandler:
    """Handles output formatting based on mode (JSON or human)."""

    def __init__(self, json_mode: bool = False):
        self.json_mode = json_mode

    def success(self, data: Any, human_message: str | None = None) -> None:
        """Output success response."""
        if self.json_mode:
            click.echo(format_json(data))
        elif human_message:
            click.echo(human_message)
        else:
            click.echo(json.dumps(data, indent=2, default=str))

    def error(
        self,
        error: Exception,
        error_type: str | None = None,
        help_text: str | None = None,
    ) -> None:
        """Output error response and exit with status 1."""
        if self.json_mode:
            click.echo(format_error_json(error, error_type, help_text))
        else:
            click.secho(f"Error: {error}", fg="red", err=True)
            if help_text:
                click.echo(f"\n{help_text}", err=True)
        sys.exit(1)

    def fields(self, data: dict[str, Any], title: str | None = None) -> None:
        """Output key/value pairs (human mode aligns them, JSON mode dumps the dict)."""
        if self.json_mode:
            click.echo(format_json(data))
            return

        if title:
            click.secho(title, bold=True)
        width = max((len(k) for k in data), default=0)
        for key, value in data.items():
            click.secho(f"  {key.ljust(width)}  ", fg="cyan", nl=False)
            click.echo("-" if value is None else str(value))

    def table(self, headers: list[str], rows: list[list[str]]) -> None:
        """Output a table (human mode only, JSON mode outputs raw data)."""
        if self.json_mode:
            click.echo(format_json([dict(zip(headers, row)) for row in rows]))
            return

        widths = [len(h) for h in headers]
        for row in rows:
            for i, cell in enumerate(row):
                widths[i] = max(widths[i], len(str(cell)))

        header_line = "  ".join(h.ljust(widths[i]) for i, h in enumerate(headers))
        click.secho(header_line, bold=True)
        click.echo("-" * len(header_line))

        for row in rows:
            click.echo("  ".join(str(c).ljust(widths[i]) for i, c in enumerate(row)))
