"""
Mathscan CLI
Command-line interface for batch exercise recognition.
"""

import json
import logging
import sys
from pathlib import Path

import click

from .config import settings


@click.group()
@click.version_option(version="0.1.0")
@click.option("--verbose", "-v", is_flag=True, help="Show pipeline logs")
def cli(verbose: bool):
    """Mathscan - turn photos of math exercises into structured exercises"""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@cli.command()
@click.argument("paths", nargs=-1, required=True, type=click.Path(exists=True, path_type=Path))
@click.option("--recursive", "-r", is_flag=True, help="Scan directories recursively")
@click.option(
    "--revise-text/--exact",
    default=lambda: settings.revise_text,
    help="Let the model correct spelling and grammar",
)
@click.option(
    "--bold-keywords/--no-bold-keywords",
    default=lambda: settings.bold_keywords,
    help="Bold the detected keywords in the content",
)
@click.option(
    "--hints/--no-hints",
    default=lambda: settings.suggest_hints,
    help="Append a hint to each question",
)
@click.option("--concurrency", "-c", type=click.IntRange(min=1), default=None, help="Parallel requests")
@click.option(
    "--auto-start/--confirm",
    default=lambda: settings.auto_analyze_images,
    help="Start analyzing without asking",
)
@click.option("--output", "-o", type=click.Path(dir_okay=False, path_type=Path), help="Write results as JSON")
def analyze(
    paths,
    recursive: bool,
    revise_text: bool,
    bold_keywords: bool,
    hints: bool,
    concurrency,
    auto_start: bool,
    output,
):
    """Analyze exercise images."""
    from .models import AnalysisOptions, TaskStatus
    from .recognition import CredentialError, RecognitionClient
    from .session import BatchRunError, BatchSession, InvalidImageError

    client = RecognitionClient()
    session = BatchSession(client, concurrency_limit=concurrency)

    for path in paths:
        if path.is_dir():
            session.add_directory(path, recursive=recursive)
            continue
        try:
            session.add_file(path)
        except InvalidImageError as e:
            click.echo(f"⚠️  Skipping {path.name}: {e}", err=True)

    pending = session.pending_count
    if pending == 0:
        click.echo("No images to analyze")
        return

    click.echo(f"Found {pending} images to analyze")
    if not auto_start and not click.confirm(f"Analyze {pending} images?", default=True):
        return

    options = AnalysisOptions(
        revise_text=revise_text,
        bold_keywords=bold_keywords,
        suggest_hints=hints,
    )

    try:
        total = session.start(options)
    except CredentialError as e:
        click.echo(f"❌ {e}", err=True)
        click.echo("Set GEMINI_API_KEY or check it with 'mathscan verify-key'", err=True)
        sys.exit(1)

    failed_run = None
    with click.progressbar(length=total, label="Analyzing") as bar:
        shown = 0
        try:
            while not session.wait(timeout=0.2):
                completed = session.progress().completed
                bar.update(completed - shown)
                shown = completed
            bar.update(session.progress().completed - shown)
        except KeyboardInterrupt:
            click.echo("\nStopping after the images in flight finish...")
            session.cancel()
        except BatchRunError as e:
            failed_run = e

    try:
        session.wait()
    except BatchRunError as e:
        failed_run = e

    snapshots = session.snapshots()
    click.echo("")
    for snapshot in snapshots:
        name = snapshot.filename or snapshot.id[:13]
        if snapshot.status == TaskStatus.SUCCESS:
            result = snapshot.result
            click.echo(f"✅ {name}: {result.title} (difficulty {result.difficulty})")
        elif snapshot.status == TaskStatus.ERROR:
            click.echo(f"❌ {name}: {snapshot.error}")
        else:
            click.echo(f"⏸  {name}: not analyzed")

    progress = session.progress()
    click.echo(f"\n{progress.completed}/{progress.total} analyzed ({progress.percent}%)")

    if output:
        output.write_text(
            json.dumps([s.model_dump(mode="json") for s in snapshots], indent=2, ensure_ascii=False),
            encoding="utf-8",
        )
        click.echo(f"Results written to {output}")

    client.close()
    session.close()

    if failed_run is not None:
        click.echo(f"❌ {failed_run}", err=True)
        sys.exit(1)


@cli.command("verify-key")
@click.option("--key", default=None, help="API key to check (default: GEMINI_API_KEY)")
def verify_key(key):
    """Check that the recognition service accepts an API key."""
    from .recognition import RecognitionClient

    with RecognitionClient() as client:
        valid = client.verify_credential(key)

    if valid:
        click.echo("✅ API key is valid")
    else:
        click.echo("❌ API key is missing or invalid")
        sys.exit(1)


@cli.command()
@click.argument("source", type=click.File("r", encoding="utf-8"), default="-")
def normalize(source):
    """Normalize exercise content from a file or stdin."""
    from .normalizer import normalize_content

    click.echo(normalize_content(source.read()))


def main():
    cli()


if __name__ == "__main__":
    main()
