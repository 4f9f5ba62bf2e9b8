"""CLI for ocifetch."""

import logging
from pathlib import Path
from typing import List, Optional, Tuple

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TextColumn,
    TransferSpeedColumn,
)

from .client import Client
from .constants import DOCKER_HUB_REGISTRY
from .errors import OciFetchError
from .manifest import BlobDescriptor
from .progress import RichProgressSink
from .render import unpack_files
from .utils import humanize_size

app = typer.Typer(help="""\
Fetch images from Docker/OCI v2 registries: probe registries, list tags,
inspect manifests, download blobs with resume, and render image filesystems.""")

console = Console()


def parse_reference(ref: str) -> Tuple[str, str, str]:
    """Split an image reference into (registry, repository, tag-or-digest).

    "alpine" -> ("registry-1.docker.io", "library/alpine", "latest")
    "localhost:5000/app@sha256:..." -> ("localhost:5000", "app", "sha256:...")
    """
    remainder, _, digest = ref.partition("@")
    first, sep, rest = remainder.partition("/")
    if sep and ("." in first or ":" in first or first == "localhost"):
        registry, path = first, rest
    else:
        registry, path = DOCKER_HUB_REGISTRY, remainder

    name, tag = path, "latest"
    last = path.rsplit("/", 1)[-1]
    if ":" in last:
        name, tag = path.rsplit(":", 1)
    if not name:
        raise typer.BadParameter(f"Invalid image reference: {ref}")
    if registry == DOCKER_HUB_REGISTRY and "/" not in name:
        name = f"library/{name}"
    return registry, name, digest or tag


def _client(ctx: typer.Context, registry: str) -> Client:
    opts = ctx.obj or {}
    return Client.from_config(
        opts.get("config"),
        registry=registry,
        insecure=opts.get("insecure"),
    )


def _fail(message: str) -> None:
    console.print(f"[red]✗[/red] {message}")
    raise typer.Exit(1)


def _progress() -> Progress:
    return Progress(
        TextColumn("[bold blue]{task.description}"),
        BarColumn(),
        DownloadColumn(),
        TransferSpeedColumn(),
        console=console,
        transient=True,
    )


@app.callback()
def callback(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
    insecure: Optional[bool] = typer.Option(
        None, "--insecure/--secure", help="Force plain HTTP (default: auto for localhost)"
    ),
    config: Optional[Path] = typer.Option(None, "--config", help="Path to config.yaml"),
):
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        )
    ctx.obj = {"insecure": insecure, "config": config}


@app.command()
def check(
    ctx: typer.Context,
    registry: str = typer.Argument(..., help="Registry host[:port] or URL"),
):
    """Check that a registry speaks the v2 API."""
    try:
        supported, authorized = _client(ctx, registry).is_v2_supported_and_authorized()
    except OciFetchError as e:
        _fail(f"Probe failed: {e}")

    if not supported:
        _fail(f"{registry} does not support the v2 API")
    console.print(f"[green]✓[/green] {registry} supports the v2 API")
    if not authorized:
        console.print("[yellow]Authentication required for this registry[/yellow]")


@app.command()
def tags(
    ctx: typer.Context,
    ref: str = typer.Argument(..., help="Repository (e.g. ghcr.io/org/app)"),
    page_size: Optional[int] = typer.Option(None, "--page-size", help="Tags per request"),
):
    """List the tags of a repository."""
    registry, name, _ = parse_reference(ref)
    try:
        found = _client(ctx, registry).list_tags(name, page_size)
    except OciFetchError as e:
        _fail(f"Listing tags failed: {e}")

    if not found:
        console.print("[dim]No tags[/dim]")
    for tag in found:
        console.print(tag)


@app.command()
def manifest(
    ctx: typer.Context,
    ref: str = typer.Argument(..., help="Image reference"),
    os_name: str = typer.Option("linux", "--os", help="Platform OS"),
    arch: str = typer.Option("amd64", "--arch", help="Platform architecture"),
):
    """Print the image manifest for a platform."""
    registry, name, reference = parse_reference(ref)
    try:
        data, digest = _client(ctx, registry).resolve_image_manifest(
            name, reference, os=os_name, architecture=arch
        )
    except OciFetchError as e:
        _fail(f"Fetching manifest failed: {e}")

    console.print(f"[dim]Digest: {digest}[/dim]")
    console.print_json(data=data)


@app.command()
def blob(
    ctx: typer.Context,
    ref: str = typer.Argument(..., help="Repository (e.g. ghcr.io/org/app)"),
    digest: str = typer.Argument(..., help="Blob digest"),
    out: Optional[Path] = typer.Option(None, "--out", "-o", help="Target directory (default: cache)"),
    size: Optional[int] = typer.Option(None, "--size", help="Expected size, enables resume"),
):
    """Download one blob, resuming a partial download when --size is known."""
    registry, name, _ = parse_reference(ref)
    client = _client(ctx, registry)
    try:
        with _progress() as progress:
            task = progress.add_task(digest[:19], total=size)
            path = client.get_blob_to_file(
                name, digest, size,
                progress=RichProgressSink(progress, task),
                target_dir=out.absolute() if out else None,
            )
    except (OciFetchError, OSError) as e:
        _fail(f"Download failed: {e}")

    console.print(f"[green]✓[/green] Downloaded {humanize_size(path.stat().st_size)} to {path}")


@app.command()
def pull(
    ctx: typer.Context,
    ref: str = typer.Argument(..., help="Image reference"),
    dest: Path = typer.Argument(..., help="Directory to render the image into"),
    cache: Optional[Path] = typer.Option(None, "--cache", help="Blob cache directory"),
    os_name: str = typer.Option("linux", "--os", help="Platform OS"),
    arch: str = typer.Option("amd64", "--arch", help="Platform architecture"),
):
    """Download an image's layers and render its filesystem into DEST."""
    registry, name, reference = parse_reference(ref)
    client = _client(ctx, registry)
    dest = dest.absolute()
    dest.mkdir(parents=True, exist_ok=True)

    try:
        with _progress() as progress:
            def progress_factory(layer: BlobDescriptor) -> RichProgressSink:
                task = progress.add_task(layer.digest[:19], total=layer.size)
                return RichProgressSink(progress, task)

            digest = client.pull(
                name, reference, dest,
                os=os_name, architecture=arch,
                cache_dir=cache.absolute() if cache else None,
                progress_factory=progress_factory,
            )
    except (OciFetchError, OSError) as e:
        _fail(f"Pull failed: {e}")

    console.print(f"[green]✓[/green] Rendered {ref} into {dest}")
    console.print(f"[dim]Digest: {digest}[/dim]")


@app.command()
def unpack(
    dest: Path = typer.Argument(..., help="Existing directory to render into"),
    layers: List[Path] = typer.Argument(..., help="Gzipped tar layers, base layer first"),
):
    """Render local layer files into DEST."""
    try:
        unpack_files(layers, dest.absolute())
    except OciFetchError as e:
        _fail(f"Unpack failed: {e}")
    console.print(f"[green]✓[/green] Applied {len(layers)} layer(s) to {dest}")


def main():
    """Entry point for CLI."""
    app()


if __name__ == "__main__":
    main()
