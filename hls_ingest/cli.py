#!/usr/bin/env python3
"""hlsrun: command line entry point for the HLS ingest pipeline."""
from pathlib import Path

import click

from hls_ingest.errors import CatalogError, ConfigError
from hls_ingest.key_utils import derive_identity
from hls_ingest.log_utils import setup_logging
from hls_ingest.pipeline import build_pipeline
from hls_ingest.producers import read_url_file
from hls_ingest.settings import IDENTITY_MODES, load_settings
from hls_ingest.transcode import check_ffmpeg

EXIT_FAILED_ITEMS = 1
EXIT_FATAL = 2


def _load(ctx: click.Context, **overrides):
    try:
        return load_settings(ctx.obj.get("config"), **overrides)
    except ConfigError as e:
        click.secho(f"Configuration error: {e}", fg="red", err=True)
        ctx.exit(EXIT_FATAL)


def _connect(ctx: click.Context, settings):
    pipeline, store = build_pipeline(settings)
    try:
        store.check_connection()
    except CatalogError as e:
        click.secho(f"Catalog unavailable: {e}", fg="red", err=True)
        ctx.exit(EXIT_FATAL)
    return pipeline, store


def _close(ctx: click.Context, store) -> None:
    try:
        store.close()
    except CatalogError as e:
        click.secho(f"Error closing catalog: {e}", fg="red", err=True)
        ctx.exit(EXIT_FATAL)


@click.group()
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False, path_type=Path),
              default=None, help="YAML settings file. Environment variables override it.")
@click.pass_context
def cli(ctx, config_path):
    """HLS ingest CLI entry point (hlsrun)"""
    ctx.ensure_object(dict)
    ctx.obj["config"] = config_path


@cli.command()
@click.option("--urls-file", type=click.Path(exists=True, dir_okay=False, path_type=Path), default=None,
              help="Process URLs from a text file (one per line) instead of the catalog backlog.")
@click.option("--limit", type=int, default=0, help="Stop after this many items (0 = no limit).")
@click.option("--workers", type=int, default=None, help="Concurrent per-item pipelines. Overrides settings.")
@click.option("--dry-run", is_flag=True, help="Derive identities and check the catalog, but fetch nothing.")
@click.pass_context
def run(ctx, urls_file, limit, workers, dry_run):
    """Drain the backlog: fetch, transcode, upload and record every unprocessed item."""
    settings = _load(ctx, workers=workers)
    log_path = setup_logging(settings.log_dir, settings.log_level)
    click.echo(f"Logging to {log_path}")

    if not dry_run and not check_ffmpeg(settings.ffmpeg_path):
        click.secho(f"Warning: {settings.ffmpeg_path} not found; every item will fail at transcoding.",
                    fg="yellow", err=True)

    pipeline, store = _connect(ctx, settings)
    items = read_url_file(urls_file) if urls_file else store.iter_unprocessed()
    try:
        summary = pipeline.run(items, limit=limit, dry_run=dry_run)
    except CatalogError as e:
        click.secho(f"Catalog error while reading the backlog: {e}", fg="red", err=True)
        ctx.exit(EXIT_FATAL)
    finally:
        _close(ctx, store)

    colour = "red" if summary.failed else "green"
    click.secho(f"Succeeded: {summary.succeeded}  Failed: {summary.failed}  Skipped: {summary.skipped}", fg=colour)
    ctx.exit(EXIT_FAILED_ITEMS if summary.failed else 0)


@cli.command()
@click.argument("urls_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def enqueue(ctx, urls_file):
    """Add the URLs in URLS_FILE to the catalog backlog (existing entries are left alone)."""
    settings = _load(ctx)
    setup_logging(None, settings.log_level)
    _, store = _connect(ctx, settings)
    added = skipped = 0
    try:
        for item in read_url_file(urls_file):
            if store.enqueue(item):
                added += 1
            else:
                skipped += 1
    finally:
        _close(ctx, store)
    click.secho(f"Queued {added} new item(s), {skipped} already present.", fg="green")


@cli.command()
@click.argument("urls", nargs=-1, required=True)
@click.option("--mode", type=click.Choice(IDENTITY_MODES), default="sanitized", show_default=True)
def derive(urls, mode):
    """Print the identity each URL maps to."""
    for url in urls:
        click.echo(f"{derive_identity(url, mode)}\t{url}")


@cli.command()
@click.argument("url_or_identity")
@click.pass_context
def status(ctx, url_or_identity):
    """Show the catalog record for a URL or an identity."""
    settings = _load(ctx)
    identity = url_or_identity
    if "://" in url_or_identity:
        identity = derive_identity(url_or_identity, settings.identity_mode)
    _, store = _connect(ctx, settings)
    try:
        record = store.get_record(identity)
    finally:
        _close(ctx, store)
    if record is None:
        click.echo(f"{identity}: not processed")
        ctx.exit(EXIT_FAILED_ITEMS)
    click.echo(f"{identity}: processed at {record.get('processed_at')}")
    click.echo(f"  playlist: {record.get('public_playlist_url')}")
    click.echo(f"  source:   {record.get('source_url')}")


@cli.command("init-tables")
@click.pass_context
def init_tables(ctx):
    """Create the DynamoDB tables if they do not exist."""
    settings = _load(ctx)
    setup_logging(None, settings.log_level)
    _, store = build_pipeline(settings)
    try:
        store.init_tables()
    except CatalogError as e:
        click.secho(f"Could not create tables: {e}", fg="red", err=True)
        ctx.exit(EXIT_FATAL)
    click.secho("Tables ready.", fg="green")


if __name__ == "__main__":
    cli()
