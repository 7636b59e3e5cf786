"""Command-line interface for the shot grid generator."""

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from .config import get_config
from .errors import GridshotError
from .models.script import ASPECT_RATIOS, AnalysisOptions, AppModel, GridArity, VisualScript
from .models.session import GenerationResult, TileState
from .utils.image_utils import ImagePayload, save_payload


def timestamped_filename(base_name: str, extension: str = "png") -> str:
    """Generate a filename with timestamp to avoid overwrites.

    Args:
        base_name: Base name for the file (e.g., 'composite')
        extension: File extension without dot (default: 'png')

    Returns:
        Filename like 'composite_20240201_143052.png'
    """
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return f"{base_name}_{timestamp}.{extension}"


console = Console()


def parse_tile_selection(value: str, tile_count: int) -> Optional[list[int]]:
    """Parse an --upscale value into zero-based tile indices.

    ``all`` selects every tile, ``none`` selects nothing and returns None,
    and a comma list such as ``1,3`` selects tiles by 1-based number.
    """
    value = value.strip().lower()
    if value == "none":
        return None
    if value == "all":
        return list(range(tile_count))

    indices = []
    for item in value.split(","):
        item = item.strip()
        if not item:
            continue
        try:
            number = int(item)
        except ValueError:
            raise click.BadParameter(f"'{item}' is not a tile number")
        if not 1 <= number <= tile_count:
            raise click.BadParameter(f"Tile {number} out of range (1-{tile_count})")
        if number - 1 not in indices:
            indices.append(number - 1)
    return indices


def print_script(script: VisualScript) -> None:
    """Show a visual script as a table."""
    table = Table(title=f"Visual script ({script.grid_arity.value})")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    for field in ("subject", "appearance", "physique", "background", "style"):
        table.add_row(field, getattr(script, field))
    for i, shot in enumerate(script.shots):
        table.add_row(f"shot {i + 1}", shot)
    console.print(table)
    if len(script.shots) != script.tile_count:
        console.print(
            f"[yellow]Warning:[/yellow] {len(script.shots)} shots for {script.tile_count} tiles; "
            "the list will be trimmed or padded at render time."
        )


def save_result(result: GenerationResult, output_dir: Path) -> list[Path]:
    """Write the composite, every tile, a contact sheet and the script of a result."""
    from .services.slicer_service import assemble_tiles

    output_dir.mkdir(parents=True, exist_ok=True)
    composite_name = timestamped_filename("composite", result.composite_image.extension)
    saved = [save_payload(result.composite_image, output_dir / composite_name)]

    for i, tile in enumerate(result.tiles):
        suffix = "_2k" if i in result.upscaled_tile_indices else ""
        name = timestamped_filename(f"shot_{i + 1}{suffix}", tile.extension)
        saved.append(save_payload(tile, output_dir / name))

    if result.tile_count > 1:
        sheet = assemble_tiles([tile.to_image() for tile in result.tiles], result.grid_arity)
        sheet_path = output_dir / timestamped_filename("contact_sheet")
        sheet.save(sheet_path)
        saved.append(sheet_path)

    if result.script is not None:
        script_path = output_dir / "script.yaml"
        result.script.to_yaml(script_path)
        saved.append(script_path)
    return saved


def print_tile_states(result: GenerationResult) -> None:
    table = Table(title=f"Generation {result.id}")
    table.add_column("Shot", justify="right")
    table.add_column("State")
    table.add_column("Note", style="dim")
    colors = {
        TileState.DONE: "green",
        TileState.FAILED: "red",
        TileState.UPSCALING: "yellow",
        TileState.QUEUED: "white",
    }
    for i in range(result.tile_count):
        state = result.tile_state(i)
        table.add_row(
            str(i + 1),
            f"[{colors[state]}]{state.value}[/{colors[state]}]",
            result.tile_errors.get(i, ""),
        )
    console.print(table)


def _output_dir(output: Optional[str]) -> Path:
    if output:
        return Path(output)
    config = get_config()
    config.ensure_directories()
    return config.output_dir


def _make_controller(**kwargs):
    from .services.pipeline_service import PipelineController

    return PipelineController(config=get_config(), **kwargs)


async def _upscale_selection(controller, result: GenerationResult, indices: list[int], progress, task):
    if not indices:
        return result

    def on_change(ctrl):
        progress.update(task, description=ctrl.status_text or "Upscaling...")

    controller.register_listener(on_change)
    try:
        if len(indices) == result.tile_count:
            return await controller.upscale_all(result.id)
        await asyncio.gather(*(controller.upscale_tile(result.id, i) for i in indices))
        return controller.session.get(result.id)
    finally:
        controller.unregister_listener(on_change)


@click.group()
@click.version_option(version="0.1.0")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
def main(verbose: bool):
    """Gridshot - turn a portrait and a composition reference into a shot grid."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )


@main.command()
@click.argument("character", type=click.Path(exists=True, dir_okay=False))
@click.argument("reference", type=click.Path(exists=True, dir_okay=False))
@click.option("--output", "-o", type=click.Path(), default="script.yaml", help="Where to write the script")
@click.option("--api-key", envvar="GOOGLE_API_KEY", help="Google API key")
@click.option("--clone-style/--no-clone-style", default=True, help="Copy the reference's photographic style")
@click.option("--clone-hair/--no-clone-hair", default=False, help="Copy the reference's hairstyle")
@click.option("--clone-expression/--no-clone-expression", default=True, help="Copy the reference's expressions")
def analyze(
    character: str,
    reference: str,
    output: str,
    api_key: Optional[str],
    clone_style: bool,
    clone_hair: bool,
    clone_expression: bool,
):
    """Analyze a portrait and a reference into an editable script."""
    controller = _make_controller(review_before_render=True)
    options = AnalysisOptions(
        clone_style=clone_style,
        clone_hair=clone_hair,
        clone_expression=clone_expression,
    )

    with console.status("Analyzing portrait and reference composition..."):
        try:
            script = asyncio.run(
                controller.analyze(
                    ImagePayload.from_path(character),
                    ImagePayload.from_path(reference),
                    api_key=api_key,
                    options=options,
                )
            )
        except GridshotError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise SystemExit(1)

    print_script(script)
    script.to_yaml(Path(output))
    console.print(f"[green]Saved:[/green] {output}")
    console.print(f"\n[dim]Edit the script, then run 'gridshot render {output} {character}'.[/dim]")


@main.command()
@click.argument("script_path", type=click.Path(exists=True, dir_okay=False))
@click.argument("character", type=click.Path(exists=True, dir_okay=False))
@click.option("--output", "-o", type=click.Path(), help="Output directory")
@click.option("--api-key", envvar="GOOGLE_API_KEY", help="Google API key")
@click.option("--model", "-m", type=click.Choice(["pro", "flash"]), default="pro", help="Image model")
@click.option("--ratio", "-r", type=click.Choice(ASPECT_RATIOS), default="1:1", help="Aspect ratio")
@click.option("--upscale", "-u", default="none", help="Tiles to upscale: all, none, or e.g. 1,3")
def render(
    script_path: str,
    character: str,
    output: Optional[str],
    api_key: Optional[str],
    model: str,
    ratio: str,
    upscale: str,
):
    """Render a (reviewed) script into a composite and slice it."""
    script = VisualScript.from_yaml(Path(script_path))
    print_script(script)
    controller = _make_controller(auto_upscale=False)
    output_dir = _output_dir(output)
    indices = parse_tile_selection(upscale, script.tile_count)

    async def work(progress, task):
        result = await controller.execute(
            script,
            model=AppModel.from_name(model),
            aspect_ratio=ratio,
            character_image=ImagePayload.from_path(character),
            api_key=api_key,
        )
        progress.update(task, description=f"[green]Sliced into {result.tile_count} tiles")
        return await _upscale_selection(controller, result, indices or [], progress, task)

    result = _run_with_progress(work, f"Rendering {script.grid_arity.label.lower()}...")
    _finish(result, output_dir)


@main.command()
@click.argument("character", type=click.Path(exists=True, dir_okay=False))
@click.argument("reference", type=click.Path(exists=True, dir_okay=False))
@click.option("--output", "-o", type=click.Path(), help="Output directory")
@click.option("--api-key", envvar="GOOGLE_API_KEY", help="Google API key")
@click.option("--model", "-m", type=click.Choice(["pro", "flash"]), default="pro", help="Image model")
@click.option("--ratio", "-r", type=click.Choice(ASPECT_RATIOS), default="1:1", help="Aspect ratio")
@click.option("--auto-upscale/--manual", default=None, help="Upscale every tile after slicing")
@click.option("--clone-style/--no-clone-style", default=True, help="Copy the reference's photographic style")
@click.option("--clone-hair/--no-clone-hair", default=False, help="Copy the reference's hairstyle")
@click.option("--clone-expression/--no-clone-expression", default=True, help="Copy the reference's expressions")
def generate(
    character: str,
    reference: str,
    output: Optional[str],
    api_key: Optional[str],
    model: str,
    ratio: str,
    auto_upscale: Optional[bool],
    clone_style: bool,
    clone_hair: bool,
    clone_expression: bool,
):
    """Analyze, render, slice and (optionally) upscale in one go."""
    controller = _make_controller(review_before_render=False, auto_upscale=auto_upscale)
    output_dir = _output_dir(output)
    options = AnalysisOptions(
        clone_style=clone_style,
        clone_hair=clone_hair,
        clone_expression=clone_expression,
    )

    async def work(progress, task):
        def on_change(ctrl):
            if ctrl.status_text:
                progress.update(task, description=ctrl.status_text)

        controller.register_listener(on_change)
        return await controller.run(
            ImagePayload.from_path(character),
            ImagePayload.from_path(reference),
            api_key=api_key,
            options=options,
            model=AppModel.from_name(model),
            aspect_ratio=ratio,
        )

    result = _run_with_progress(work, "Starting...")
    _finish(result, output_dir)


@main.command(name="slice")
@click.argument("image_path", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--arity", "-a",
    type=click.Choice([a.value for a in GridArity]),
    default=GridArity.GRID_3X3.value,
    help="Grid layout of the image",
)
@click.option("--output", "-o", type=click.Path(), help="Output directory")
def slice_command(image_path: str, arity: str, output: Optional[str]):
    """Slice an existing composite into its shots."""
    from .services.slicer_service import slice_payload

    output_dir = _output_dir(output)
    source = Path(image_path)

    try:
        tiles = asyncio.run(slice_payload(ImagePayload.from_path(source), GridArity(arity)))
    except GridshotError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise SystemExit(1)

    for i, tile in enumerate(tiles):
        path = save_payload(tile, output_dir / f"{source.stem}_shot_{i + 1}.{tile.extension}")
        console.print(f"[green]Saved:[/green] {path}")


def _run_with_progress(work, description: str) -> GenerationResult:
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
    ) as progress:
        task = progress.add_task(description, total=None)
        try:
            return asyncio.run(work(progress, task))
        except GridshotError as e:
            progress.update(task, description=f"[red]{e}")
            console.print(f"[red]Error:[/red] {e}")
            raise SystemExit(1)


def _finish(result: Optional[GenerationResult], output_dir: Path) -> None:
    if result is None:
        console.print("[yellow]Paused for review; nothing rendered.[/yellow]")
        return
    print_tile_states(result)
    for path in save_result(result, output_dir):
        console.print(f"[green]Saved:[/green] {path}")


if __name__ == "__main__":
    main()
