"""Output formatting for the command line: human-readable text or JSON."""

import json
import sys
from typing import Any

import click

from .errors import (
    AuthorizationError,
    CallbackTimeoutError,
    FlowExpiredError,
    InvalidStateError,
    NotInteractiveError,
    PopupBlockedError,
    TokenExchangeError,
    TokenStoreError,
)

# Help shown with errors the user can do something about
ERROR_HELP: list[tuple[type[Exception], str]] = [
    (InvalidStateError, "The authorization response did not match a pending request. Run 'integrate authorize' again."),
    (FlowExpiredError, "Authorization must be completed within 5 minutes. Run 'integrate authorize' again."),
    (CallbackTimeoutError, "No response arrived from the browser. Use --timeout to wait longer."),
    (PopupBlockedError, "The browser could not be opened. Open the printed URL manually."),
    (NotInteractiveError, "Authorization needs a browser. Run this command on a machine with a desktop session."),
    (TokenExchangeError, "Check that oauthApiBase points at a running OAuth backend."),
    (TokenStoreError, "Stored data could not be written. Run 'integrate logout' to reset local storage."),
    (AuthorizationError, "The provider refused access. Re-authorize with the required scopes."),
]


def help_for_error(error: Exception) -> str | None:
    """Return recovery advice for an error, if there is any."""
    for error_type, text in ERROR_HELP:
        if isinstance(error, error_type):
            return text
    return None


def format_json(data: Any) -> str:
    """Format data as a JSON success envelope."""
    return json.dumps({"success": True, "data": data}, indent=2, default=str)


def format_error_json(error: Exception, help_text: str | None = None) -> str:
    """Format an error as a JSON failure envelope."""
    return json.dumps(
        {
            "success": False,
            "error": {
                "type": type(error).__name__,
                "message": str(error),
                "help": help_text or "",
            },
        },
        indent=2,
    )


class OutputHandler:
    """Writes results in the selected mode (JSON or human)."""

    def __init__(self, json_mode: bool = False):
        self.json_mode = json_mode

    def success(self, data: Any, human_message: str | None = None) -> None:
        """Output a successful result."""
        if self.json_mode:
            click.echo(format_json(data))
        elif human_message:
            click.echo(human_message)
        else:
            click.echo(json.dumps(data, indent=2, default=str))

    def error(self, error: Exception, help_text: str | None = None) -> None:
        """Output an error and exit with status 1."""
        help_text = help_text or help_for_error(error)

        if self.json_mode:
            click.echo(format_error_json(error, help_text))
        else:
            click.secho(f"Error: {error}", fg="red", err=True)
            if help_text:
                click.echo(f"\n{help_text}", err=True)
        sys.exit(1)

    def table(self, headers: list[str], rows: list[list[str]]) -> None:
        """Output a table (JSON mode outputs a list of row objects)."""
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
