"""CLI commands for contipipe using Typer and Rich.

Operator commands for inspecting continuity sessions:
- init-db: Create the session table
- list: List sessions in a table
- status: Show a session and its shots
- resolve-mode: Show how a model degrades a requested continuity mode
- render-proxy: Render a parallax view from an image and its depth map
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from contipipe.config import get_settings
from contipipe.db import build_engine, build_session_factory, init_database, shutdown
from contipipe.schemas.continuity import CONTINUITY_MODES, CameraPose, Session
from contipipe.services.provider_capabilities import ProviderCapabilityAdapter, resolve_continuity_mode
from contipipe.services.scene_proxy import render_parallax_png
from contipipe.services.session_store import SessionStore

app = typer.Typer(name="contipipe", help="Multi-shot video continuity engine")
console = Console()


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    configure_logging(verbose)


@app.command(name="init-db")
def init_db():
    """Create the session table in the configured database."""
    asyncio.run(_init_db_async())


async def _init_db_async():
    settings = get_settings()
    engine = build_engine(settings.storage.database_url)
    try:
        await init_database(engine)
    finally:
        await shutdown(engine)
    console.print(f"[green]✓[/green] Database ready: {settings.storage.database_url}")


@app.command(name="list")
def list_sessions(
    user: Optional[str] = typer.Option(None, "--user", "-u", help="Only sessions owned by this user"),
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum sessions to show"),
):
    """List continuity sessions."""
    asyncio.run(_list_async(user, limit))


async def _list_async(user: Optional[str], limit: int):
    settings = get_settings()
    engine = build_engine(settings.storage.database_url)
    try:
        await init_database(engine)
        store = SessionStore(build_session_factory(engine))
        sessions = await store.find_by_user(user) if user else await store.list_all(limit)
    finally:
        await shutdown(engine)

    if not sessions:
        console.print("[yellow]No sessions found[/yellow]")
        return

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("User")
    table.add_column("Shots", justify="right")
    table.add_column("Version", justify="right")
    table.add_column("Updated")

    for session in sessions[:limit]:
        name = session.name if len(session.name) <= 40 else session.name[:37] + "..."
        table.add_row(
            session.id,
            name,
            session.user_id,
            str(len(session.shots)),
            str(session.version),
            session.updated_at.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(table)


@app.command()
def status(
    session_id: str = typer.Argument(..., help="Session ID"),
):
    """Show a session, its settings and its shots."""
    asyncio.run(_status_async(session_id))


async def _status_async(session_id: str):
    settings = get_settings()
    engine = build_engine(settings.storage.database_url)
    try:
        await init_database(engine)
        store = SessionStore(build_session_factory(engine))
        session = await store.get(session_id)
    finally:
        await shutdown(engine)

    if session is None:
        console.print(f"[red]Error:[/red] Session not found: {session_id}")
        raise typer.Exit(code=1)

    console.print(_session_panel(session))
    if session.shots:
        console.print(_shot_table(session))


def _session_panel(session: Session) -> Panel:
    defaults = session.default_settings
    reference = session.primary_style_reference
    info_lines = [
        f"[bold]ID:[/bold] {session.id}",
        f"[bold]Name:[/bold] {session.name}",
        f"[bold]User:[/bold] {session.user_id}",
        f"[bold]Status:[/bold] {session.status}",
        f"[bold]Version:[/bold] {session.version}",
        f"[bold]Style Reference:[/bold] {reference.frame_url} ({reference.aspect_ratio})",
        f"[bold]Mode:[/bold] {defaults.generation_mode} / {defaults.default_continuity_mode}",
        f"[bold]Model:[/bold] {defaults.default_model}",
        f"[bold]Thresholds:[/bold] style {defaults.quality_thresholds.style}, "
        f"identity {defaults.quality_thresholds.identity}",
    ]
    if session.scene_proxy:
        proxy = session.scene_proxy
        line = f"[bold]Scene Proxy:[/bold] {proxy.status}"
        if proxy.error:
            line += f" [red]({proxy.error})[/red]"
        info_lines.append(line)
    if session.description:
        info_lines.append(f"[bold]Description:[/bold] {session.description}")

    return Panel("\n".join(info_lines), title="[bold]Session Status[/bold]", border_style="blue")


def _shot_table(session: Session) -> Table:
    table = Table(show_header=True, header_style="bold blue")
    table.add_column("#", justify="right")
    table.add_column("Shot", style="dim")
    table.add_column("Status")
    table.add_column("Mechanism")
    table.add_column("Style", justify="right")
    table.add_column("Identity", justify="right")
    table.add_column("Retries", justify="right")
    table.add_column("Prompt")

    for shot in session.shots:
        color = _get_status_color(shot.status)
        prompt = shot.user_prompt if len(shot.user_prompt) <= 40 else shot.user_prompt[:37] + "..."
        table.add_row(
            str(shot.sequence_index),
            shot.id,
            f"[{color}]{shot.status}[/{color}]",
            shot.continuity_mechanism_used,
            _fmt(shot.style_score),
            _fmt(shot.identity_score),
            str(shot.retry_count),
            prompt,
        )
    return table


@app.command(name="resolve-mode")
def resolve_mode(
    model_id: str = typer.Argument(..., help="Video model ID"),
    mode: str = typer.Option("frame-bridge", "--mode", "-m", help="Requested continuity mode"),
    has_frame_bridge: bool = typer.Option(
        True, "--bridge/--no-bridge", help="Whether the previous shot has a bridge frame"
    ),
):
    """Show how a model resolves a requested continuity mode."""
    if mode not in CONTINUITY_MODES:
        console.print(f"[red]Error:[/red] Invalid continuity mode: {mode}")
        console.print(f"Allowed: {', '.join(CONTINUITY_MODES)}")
        raise typer.Exit(code=1)

    adapter = ProviderCapabilityAdapter()
    provider, caps = adapter.capabilities_for_model(model_id)
    effective = resolve_continuity_mode(mode, caps, has_frame_bridge)
    strategy = adapter.get_continuity_strategy(provider, effective, model_id)

    info_lines = [
        f"[bold]Model:[/bold] {model_id}",
        f"[bold]Provider:[/bold] {provider}",
        f"[bold]Start Image:[/bold] {caps.supports_start_image}",
        f"[bold]Native Style Reference:[/bold] {caps.supports_native_style_reference}",
        f"[bold]Seed Persistence:[/bold] {caps.supports_seed_persistence}",
        f"[bold]Requested:[/bold] {mode}",
        f"[bold]Effective:[/bold] {effective}",
        f"[bold]Strategy:[/bold] {strategy.type}",
    ]
    console.print(Panel("\n".join(info_lines), title="[bold]Continuity Mode[/bold]", border_style="blue"))


@app.command(name="render-proxy")
def render_proxy(
    image: Path = typer.Argument(..., exists=True, dir_okay=False, help="Reference frame image"),
    depth: Path = typer.Argument(..., exists=True, dir_okay=False, help="Grayscale depth map"),
    output: Path = typer.Option(Path("proxy_render.png"), "--output", "-o", help="Output PNG path"),
    yaw: float = typer.Option(0.0, "--yaw", help="Camera yaw in degrees"),
    pitch: float = typer.Option(0.0, "--pitch", help="Camera pitch in degrees"),
    scale: Optional[float] = typer.Option(None, "--scale", help="Parallax scale (default from config)"),
):
    """Render a parallax view of a reference frame through its depth map."""
    parallax_scale = scale if scale is not None else get_settings().continuity.parallax_scale
    try:
        rendered = render_parallax_png(
            image.read_bytes(),
            depth.read_bytes(),
            CameraPose(yaw=yaw, pitch=pitch),
            parallax_scale,
        )
    except Exception as e:
        console.print(f"[red]✗ Render failed:[/red] {str(e)}")
        raise typer.Exit(code=1)

    output.write_bytes(rendered)
    console.print(f"[green]✓[/green] Rendered view written to {output}")


def _fmt(score: Optional[float]) -> str:
    return "-" if score is None else f"{score:.3f}"


def _get_status_color(status: str) -> str:
    """Get Rich color for a shot status."""
    if status == "completed":
        return "green"
    elif status == "failed":
        return "red"
    elif status in ["generating-keyframe", "generating-video"]:
        return "yellow"
    elif status == "draft":
        return "dim"
    else:
        return "white"
