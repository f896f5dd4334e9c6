"""Operator CLI for inspecting what the sync layer sees."""

from __future__ import annotations

import asyncio
import json
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table
from rich.tree import Tree

from common.logging import configure_logging

from .clients import MediaApiClient
from .errors import MediaSyncError
from .jobs import JobRecord
from .models import EntityType
from .poller import JobPoller
from .scenes import total_shot_count, total_variation_count
from .store import MediaStore
from .urls import MISSING_URL

console = Console()
app = typer.Typer(help="Inspect entity references, scene trees and generation jobs.")

_STATUS_STYLES = {
    "queued": "dim",
    "running": "cyan",
    "awaiting_input": "yellow",
    "completed": "green",
    "failed": "red",
}


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", "--log-level", help="Log level for library output."),
) -> None:
    configure_logging(level=log_level, log_format="console")


def _client(base_url: Optional[str]) -> MediaApiClient:
    try:
        return MediaApiClient(base_url=base_url)
    except MediaSyncError as exc:
        console.print(f"[red]{exc}")
        raise typer.Exit(code=2) from exc


@app.command()
def refs(
    entity_type: EntityType = typer.Argument(..., help="character, location or asset"),
    entity_ids: List[str] = typer.Argument(..., help="One or more entity ids"),
    scope: str = typer.Option(..., "--scope", "-s", help="Screenplay/project id"),
    base_url: Optional[str] = typer.Option(None, "--base-url", help="Override MEDIA_API_BASE"),
    urls: bool = typer.Option(False, "--urls", help="Also resolve display URLs"),
) -> None:
    """Print the reference collection bound to each entity."""

    async def _run() -> None:
        store = MediaStore.from_client(_client(base_url), scope)
        result = await store.references(entity_type, entity_ids)
        if result.error:
            console.print(f"[yellow]Showing cached data: {result.error}")
        resolved = {}
        if urls:
            every = [ref for group in result.data.values() for ref in group]
            resolved = (await store.display_urls(every)).data

        table = Table(show_edge=False, header_style="bold cyan")
        table.add_column("Entity")
        table.add_column("Category")
        table.add_column("Storage key", overflow="fold")
        table.add_column("Thumbnail", overflow="fold")
        if urls:
            table.add_column("URL", overflow="fold")
        for entity_id, group in result.data.items():
            if not group:
                table.add_row(entity_id, "[dim]-", "[dim]no references", "")
                continue
            for ref in group:
                row = [entity_id, ref.category.value, ref.storage_key, ref.thumbnail_key or ""]
                if urls:
                    row.append(resolved.get(ref.display_key, MISSING_URL) or "[red]unresolved")
                table.add_row(*row)
        console.print(table)

    asyncio.run(_run())


@app.command()
def scenes(
    scope: str = typer.Option(..., "--scope", "-s", help="Screenplay/project id"),
    base_url: Optional[str] = typer.Option(None, "--base-url", help="Override MEDIA_API_BASE"),
) -> None:
    """Print the scene -> shot -> variation tree."""

    async def _run() -> None:
        store = MediaStore.from_client(_client(base_url), scope)
        result = await store.scene_tree()
        if result.error:
            console.print(f"[yellow]Showing cached data: {result.error}")
        if not result.scenes:
            console.print("[yellow]No scene media found.")
            return
        root = Tree(
            f"[bold]{scope}[/bold] "
            f"[dim]({total_shot_count(result.scenes)} shots, "
            f"{total_variation_count(result.scenes)} variations)[/dim]"
        )
        for scene in result.scenes:
            scene_node = root.add(f"[bold cyan]{scene.heading}[/bold cyan]")
            for shot in scene.shots:
                shot_node = scene_node.add(f"Shot {shot.number}")
                for variation in shot.variations:
                    marker = "[green]*[/green] " if variation.is_current else "  "
                    parts = []
                    if variation.primary is not None:
                        parts.append("frame")
                    if variation.secondary is not None:
                        parts.append("video")
                    shot_node.add(f"{marker}{variation.timestamp or '[dim]no timestamp'} ({'+'.join(parts)})")
        console.print(root)

    asyncio.run(_run())


def _render_jobs(jobs: List[JobRecord]) -> Table:
    table = Table(show_edge=False, header_style="bold cyan")
    table.add_column("Job")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Created")
    table.add_column("Error", overflow="fold")
    for job in jobs:
        style = _STATUS_STYLES.get(job.status.value, "")
        table.add_row(
            job.job_id,
            job.job_type or "-",
            f"[{style}]{job.status.value}" if style else job.status.value,
            f"{job.progress:.0f}%",
            job.created_at or "-",
            job.error or "",
        )
    return table


@app.command()
def jobs(
    scope: str = typer.Option(..., "--scope", "-s", help="Screenplay/project id"),
    base_url: Optional[str] = typer.Option(None, "--base-url", help="Override MEDIA_API_BASE"),
    watch: bool = typer.Option(False, "--watch", "-w", help="Keep polling until every job is terminal"),
    as_json: bool = typer.Option(False, "--json", help="Print raw job records as JSON"),
) -> None:
    """List generation jobs, optionally polling until they finish."""

    async def _run() -> None:
        poller = JobPoller(_client(base_url), scope)
        if watch:
            try:
                await poller.run(stop_when_idle=True)
            except asyncio.CancelledError:
                poller.stop()
                raise
        else:
            await poller.poll_once()
        if poller.last_error:
            console.print(f"[yellow]Job listing failed: {poller.last_error}")
        if as_json:
            console.print_json(json.dumps([job.dump_wire() for job in poller.jobs]))
            return
        if not poller.jobs:
            console.print("[dim]No jobs.")
            return
        console.print(_render_jobs(poller.jobs))
        for completion in poller.completions:
            if completion.failed_items:
                console.print(
                    f"[yellow]{completion.job.job_id}: {completion.outcome.value} "
                    f"({len(completion.failed_items)} failed items)"
                )

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        console.print("[dim]Interrupted.")


if __name__ == "__main__":  # pragma: no cover
    app()
