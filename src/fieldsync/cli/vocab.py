"""Vocabulary commands for fieldsync CLI.

Commands:
- vocab import: Load vocabularies from an export file
- vocab list: Show the server's vocabulary versions
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from fieldsync.cli.config import db_path_option, open_database


@click.group()
def vocab() -> None:
    """Vocabulary management commands."""


@vocab.command("import")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@db_path_option
def import_vocab(file: Path, db_path: str | None) -> None:
    """Create or update vocabularies from a JSON export.

    Entries without a version become 1.0.0 when new, or get their MINOR
    version bumped when the vocabulary already exists.
    """
    from fieldsync.server.pipeline.vocabulary import import_vocabulary_export

    try:
        payload = json.loads(file.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        click.echo(f"Error: {file} is not valid JSON: {e}", err=True)
        sys.exit(1)

    db = open_database(db_path, must_exist=False)
    try:
        try:
            messages = import_vocabulary_export(db, payload)
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        for message in messages:
            click.echo(message)
        click.echo(f"Imported {len(messages)} vocabularies.")
    finally:
        db.close()


@vocab.command("list")
@db_path_option
def list_vocab(db_path: str | None) -> None:
    """List vocabularies and their current versions."""
    db = open_database(db_path)
    try:
        vocabularies = db.list_vocabularies()
        if not vocabularies:
            click.echo("No vocabularies.")
            return
        for vocabulary in vocabularies:
            click.echo(f"{vocabulary.name:<30} v{vocabulary.version:<10} {len(vocabulary.values)} values")
    finally:
        db.close()
