"""
CLI layer for spine-jobs.

Provides a Typer application with sub-commands that delegate to
:class:`spine_jobs.JobQueue`.  All queue logic lives in the library;
this package handles only terminal transport: argument parsing,
coloured output, and table formatting.

Entry point::

    spine-jobs --help
"""

from spine_jobs.cli.app import app

__all__ = ["app"]
