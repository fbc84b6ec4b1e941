"""
CLI layer for billspine.

Provides a Typer application whose commands delegate to ``billspine.core``.
This package handles only terminal transport: argument parsing, service
wiring and coloured output.

Entry point::

    billspine --help
"""

from billspine.cli.app import app

__all__ = ["app"]
