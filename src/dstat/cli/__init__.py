"""dstat command-line interface."""

from dstat.cli.app import app, main

__all__ = ["app", "main"]
