"""Command-line interface for the writer engine."""

from franz_wizard.cli.main import cli, main

__all__ = ["cli", "main"]
