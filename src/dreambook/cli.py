"""Command line interface for Dreambook."""

import asyncio
import sys
from pathlib import Path
from typing import List

import click
from dotenv import find_dotenv, load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from dreambook.character_analysis import CharacterAnalyzer
from dreambook.context import PipelineContext, get_default_context
from dreambook.error_handling import SequenceValidationError
from dreambook.image_store import LocalImageStore
from dreambook.models import GenerationRequest, ProgressKind, SequenceResult
from dreambook.orchestrator import SequenceOrchestrator
from dreambook.progress import ProgressChannel
from dreambook.providers import ProviderFactory
from dreambook.rules import GlobalRulesProvider
from dreambook.services.sequence_store import InMemorySequenceStore
from dreambook.styles import InMemoryStyleResolver
from dreambook.synthesis import ImageSynthesisClient
from dreambook.utils import format_file_size, read_image_file, sniff_image_type

console = Console()

_KIND_COLOURS = {
    ProgressKind.INFO: "cyan",
    ProgressKind.WARNING: "yellow",
    ProgressKind.ERROR: "red",
}


def build_cli_orchestrator(context: PipelineContext) -> SequenceOrchestrator:
    """Orchestrator for in-process runs: built-in styles, local images, in-memory records."""
    synthesis = ImageSynthesisClient(
        ProviderFactory.create_chain(context),
        LocalImageStore(context.storage_dir, Path(context.storage_dir).resolve().as_uri()),
        timeout=context.provider_timeout,
        download_timeout=context.download_timeout,
        placeholder_url=context.error_placeholder_url,
    )
    return SequenceOrchestrator(
        context,
        InMemoryStyleResolver(),
        CharacterAnalyzer.from_context(context),
        synthesis,
        InMemorySequenceStore(),
        GlobalRulesProvider(refresh_interval=context.rules_refresh_interval),
    )


def _load_photo(photo: str) -> tuple[bytes, str | None]:
    try:
        data = read_image_file(Path(photo))
    except ValueError as e:
        raise click.ClickException(str(e))
    console.print(f"[dim]Reference photo: {photo} ({format_file_size(len(data))})[/dim]")
    return data, sniff_image_type(data)


def _print_validation_error(error: SequenceValidationError) -> None:
    console.print("[red]The request is not valid:[/red]")
    for detail in error.details:
        console.print(f"  [red]- {detail.field}: {detail.message}[/red]")


def _print_result(result: SequenceResult) -> None:
    table = Table(title=f"Dream sequence {result.id}")
    table.add_column("#", justify="right")
    table.add_column("Status")
    table.add_column("Image")

    table.add_row("character", "placeholder" if result.character_image.is_placeholder else "ok", result.character_image.url)
    for scene in result.scenes:
        status = "[green]ok[/green]" if not scene.image.is_placeholder else "[yellow]placeholder[/yellow]"
        table.add_row(str(scene.sequence_number), status, scene.image.url)

    console.print(table)


async def _run_generation(orchestrator: SequenceOrchestrator, request: GenerationRequest) -> SequenceResult | None:
    prepared = orchestrator.validate(request)
    channel = ProgressChannel(orchestrator.context.progress_queue_size).open()
    task = asyncio.create_task(orchestrator.run(prepared, channel))

    async for event in channel.events():
        colour = _KIND_COLOURS.get(event.kind, "white")
        console.print(f"[{colour}]{event.percent:>3}%[/{colour}] {event.message}")

    return await task


@click.group()
def cli():
    """Dreambook - Generate illustrated dream sequences from a reference photo."""
    load_dotenv(find_dotenv(usecwd=True))


@cli.command()
@click.option('--host', default='127.0.0.1', help='Host to bind to (default: 127.0.0.1)')
@click.option('--port', default=8000, type=int, help='Port to bind to (default: 8000)')
@click.option('--reload', is_flag=True, help='Enable auto-reload for development')
def serve(host: str, port: int, reload: bool):
    """Start the Dreambook API server."""
    from dreambook.web.app import run_server

    console.print(Panel.fit(
        f"[bold blue]Starting Dreambook[/bold blue]\n\n"
        f"[cyan]- API: http://{host}:{port}/api[/cyan]\n"
        f"[cyan]- Health: http://{host}:{port}/health[/cyan]",
        title="Server",
        border_style="blue"
    ))
    try:
        run_server(host=host, port=port, reload=reload)
    except KeyboardInterrupt:
        console.print("\n[yellow]Server stopped.[/yellow]")


@cli.command()
def styles():
    """List the available styles."""
    table = Table(title="Styles")
    table.add_column("Key", style="cyan")
    table.add_column("Name")
    table.add_column("Description", style="dim")

    for style in InMemoryStyleResolver().list_styles():
        table.add_row(style.key, style.display_name, style.description)

    console.print(table)


@cli.command()
@click.argument('photo', type=click.Path(exists=True, dir_okay=False))
@click.option('--style', 'style_key', required=True, help='Style key (see `dreambook styles`)')
@click.option('--subject', 'subject_label', required=True, help='Name of the main character')
def preview(photo: str, style_key: str, subject_label: str):
    """Generate only the character image for PHOTO."""
    data, content_type = _load_photo(photo)
    orchestrator = build_cli_orchestrator(get_default_context())
    request = GenerationRequest(
        subject_label=subject_label,
        style_key=style_key,
        reference_image=data,
        reference_content_type=content_type,
    )

    try:
        result = asyncio.run(orchestrator.generate_character(request))
    except SequenceValidationError as e:
        _print_validation_error(e)
        sys.exit(2)

    if result.character_image.is_placeholder:
        console.print("[yellow]The character image could not be generated.[/yellow]")
    else:
        console.print(f"[green]Character image: {result.character_image.url}[/green]")
    console.print(Panel(result.character_prompt, title="Character prompt", border_style="cyan"))
    if result.character_description:
        console.print(Panel(result.character_description, title="Character description", border_style="dim"))


@cli.command()
@click.argument('photo', type=click.Path(exists=True, dir_okay=False))
@click.option('--style', 'style_key', required=True, help='Style key (see `dreambook styles`)')
@click.option('--subject', 'subject_label', required=True, help='Name of the main character')
@click.option('--scene', 'scenes', multiple=True, help='Scene description (repeat for more scenes)')
@click.option('--dreamer', default=None, help='Who had the dream')
@click.option('--character-prompt', default=None, help='Character prompt returned by `preview`')
def generate(photo: str, style_key: str, subject_label: str, scenes: List[str], dreamer: str | None, character_prompt: str | None):
    """Generate a full dream sequence for PHOTO."""
    data, content_type = _load_photo(photo)
    orchestrator = build_cli_orchestrator(get_default_context())
    request = GenerationRequest(
        subject_label=subject_label,
        dreamer=dreamer,
        style_key=style_key,
        reference_image=data,
        reference_content_type=content_type,
        scenes=list(scenes),
        character_prompt=character_prompt,
    )

    try:
        result = asyncio.run(_run_generation(orchestrator, request))
    except SequenceValidationError as e:
        _print_validation_error(e)
        sys.exit(2)

    if result is None:
        console.print("[red]The dream sequence could not be completed.[/red]")
        sys.exit(1)

    _print_result(result)


def main():
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
