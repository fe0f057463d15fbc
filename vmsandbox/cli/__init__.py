"""CLI application setup using Typer.

Provides the command-line interface for vmsandbox operations.
"""

from vmsandbox.cli.main import app

__all__ = ["app"]
