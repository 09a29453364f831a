"""
Media Ingest — CLI Entry Point

Usage:
    media-ingest ingest URL --category image [--mime image/jpeg] [--name photo.jpg]
    media-ingest ingest --message-file message.json --message-id 3EB0C767
    media-ingest sniff FILE
    media-ingest serve [--host 127.0.0.1] [--port 5080]
    media-ingest config-status [--json]
"""

from __future__ import annotations

# Load .env file FIRST, before any other imports that might read env vars
from pathlib import Path
from dotenv import load_dotenv

_env_file = Path.cwd() / ".env"
if _env_file.exists():
    load_dotenv(_env_file)

import json
import uuid
from typing import Optional

import click

from .config import config_status as check_settings
from .config import get_settings
from .logging_config import setup_logging
from .models import MediaCategory, MediaReference

CATEGORY_CHOICES = [c.value for c in MediaCategory]


@click.group()
@click.option("--log-level", default=None, help="DEBUG, INFO, WARNING, ERROR (default: $LOG_LEVEL or INFO)")
@click.option("--log-format", type=click.Choice(["text", "json"]), default=None, help="Log output format")
@click.pass_context
def cli(ctx: click.Context, log_level: Optional[str], log_format: Optional[str]) -> None:
    """Media Ingest — fetch, verify, optimize and store chat attachments."""
    ctx.ensure_object(dict)
    setup_logging(log_level, log_format)


@cli.command()
@click.argument("url", required=False)
@click.option("--category", type=click.Choice(CATEGORY_CHOICES), help="Declared media category")
@click.option("--mime", "mime_type", default=None, help="Declared MIME type")
@click.option("--name", "file_name", default=None, help="Original file name")
@click.option("--message-id", default=None, help="Message id (random if omitted)")
@click.option("--context", "context_json", default=None, help="Decryption context as JSON")
@click.option("--message-file", type=click.Path(exists=True, dir_okay=False, path_type=Path),
              help="Raw protocol message (JSON) to ingest instead of URL")
@click.pass_context
def ingest(
    ctx: click.Context,
    url: Optional[str],
    category: Optional[str],
    mime_type: Optional[str],
    file_name: Optional[str],
    message_id: Optional[str],
    context_json: Optional[str],
    message_file: Optional[Path],
) -> None:
    """Ingest one attachment and print its stable URL."""
    from .pipeline import IngestionPipeline

    message_id = message_id or uuid.uuid4().hex[:16].upper()

    if message_file is not None:
        try:
            message = json.loads(message_file.read_text(encoding="utf-8"))
        except ValueError as e:
            raise click.BadParameter(f"Invalid JSON: {e}", param_hint="--message-file")
        ref = MediaReference.from_message(message_id, message)
        if ref is None:
            raise click.ClickException("Message carries no downloadable media")
    else:
        if not url or not category:
            raise click.UsageError("URL and --category are required without --message-file")
        context = None
        if context_json:
            try:
                context = json.loads(context_json)
            except ValueError as e:
                raise click.BadParameter(f"Invalid JSON: {e}", param_hint="--context")
        ref = MediaReference(
            message_id=message_id,
            remote_url=url,
            declared_category=category,
            declared_mime_type=mime_type,
            original_file_name=file_name,
            decryption_context=context,
        )

    pipeline = IngestionPipeline.from_settings(get_settings())
    try:
        public_url = pipeline.ingest(ref)
    finally:
        pipeline.close()

    if public_url is None:
        click.secho(f"✗ Ingestion failed for {ref.message_id} (see log)", fg="red", err=True)
        ctx.exit(1)

    click.echo(public_url)


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--category", type=click.Choice(CATEGORY_CHOICES), default=None,
              help="Also run the security gate and transform guard for this category")
@click.option("--mime", "mime_type", default=None, help="Declared MIME type for the security gate")
def sniff(path: Path, category: Optional[str], mime_type: Optional[str]) -> None:
    """Show what a file really is."""
    from .errors import IngestError
    from .security import authorize
    from .sniff import sniff as sniff_bytes
    from .transform import decide

    data = path.read_bytes()
    detected = sniff_bytes(data)

    click.echo(f"File:       {path}")
    click.echo(f"Size:       {len(data):,} bytes")
    if detected is None:
        click.secho("Detected:   unknown", fg="yellow")
    else:
        click.echo(f"Detected:   {detected.mime} (.{detected.extension})")
        if detected.is_dangerous:
            click.secho("            ⚠ active content", fg="red", bold=True)

    if category is None:
        return

    try:
        stored_as = authorize(detected, mime_type, category)
        click.secho(f"Gate:       ✓ allowed, stored as {stored_as}", fg="green")
        decision = decide(data, MediaCategory.parse(category), detected)
    except IngestError as e:
        click.secho(f"Gate:       ✗ {e.code}: {e}", fg="red")
        raise SystemExit(1)

    if decision.source_format:
        click.echo(f"Format:     {decision.source_format} {decision.width}x{decision.height}, "
                   f"{decision.frame_count} frame(s)")
    if decision.is_animated_multi_frame:
        click.echo("Transform:  pass-through (animated)")
    elif decision.should_optimize:
        click.echo("Transform:  optimize")
    else:
        click.echo("Transform:  pass-through")


@cli.command()
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", default=5080, type=int, help="Port")
@click.option("--debug", is_flag=True, help="Flask debug mode")
def serve(host: str, port: int, debug: bool) -> None:
    """Run the media proxy server."""
    from .proxy import run_server

    run_server(host=host, port=port, debug=debug, settings=get_settings())


@cli.command("config-status")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def config_status(ctx: click.Context, as_json: bool) -> None:
    """Show the effective configuration (secrets masked)."""
    settings = get_settings()
    ok, problems = check_settings(settings)

    if as_json:
        click.echo(json.dumps({
            "ok": ok,
            "problems": problems,
            "settings": settings.redacted(),
        }, indent=2))
    else:
        click.echo("\n📋 Media Ingest Configuration\n")
        for name, value in settings.redacted().items():
            click.echo(f"  {name:<24} {value}")
        click.echo()
        if ok:
            click.secho("✓ Configuration OK", fg="green")
        else:
            for problem in problems:
                click.secho(f"  ✗ {problem}", fg="red")

    if not ok:
        ctx.exit(1)


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
