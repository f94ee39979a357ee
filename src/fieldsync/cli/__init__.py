"""Command-line interface for fieldsync.

This module provides the main CLI entry point and assembles all commands.

Commands:
- serve: Run the HTTP server
- import: Import a package file
- status: Show a package and its conflicts
- approve: Approve staged records
- commit: Commit approved records to production
- cancel: Cancel a package
- vocab: Vocabulary management
- server: Maintenance jobs
"""

from __future__ import annotations

import logging

import click

from fieldsync.cli.packages import approve, cancel, commit, import_cmd, status
from fieldsync.cli.server import serve, server
from fieldsync.cli.vocab import vocab


@click.group()
@click.version_option()
@click.option("--verbose", "-v", is_flag=True, help="Show pipeline log messages.")
def cli(verbose: bool) -> None:
    """fieldsync - import pipeline for offline field survey packages."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


# Server
cli.add_command(serve)
cli.add_command(server)

# Package commands
cli.add_command(import_cmd)
cli.add_command(status)
cli.add_command(approve)
cli.add_command(commit)
cli.add_command(cancel)

# Vocabulary commands
cli.add_command(vocab)


def main() -> None:
    cli()
