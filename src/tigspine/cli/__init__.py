"""
CLI layer for tig-spine.

The boot payload itself needs no arguments (``tigspine-provision``). This
Typer application is for operators re-running or inspecting a host by hand.

Entry point::

    tigspine --help
"""

from tigspine.cli.app import app

__all__ = ["app"]
