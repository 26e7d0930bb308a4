"""
CLI layer for runspine.

A Typer application whose commands delegate to the orchestration layer
(``runspine.orchestration``).  This package handles only terminal
transport: argument parsing, coloured output and table formatting.

Entry point::

    runspine --help
"""

from runspine.cli.app import app

__all__ = ["app"]
