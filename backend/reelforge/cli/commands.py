"""CLI commands for reelforge using Typer and Rich.

Commands:
- generate: Create a project and run its pipeline
- resume: Resume a failed or suspended job
- status: Show detailed job information
- events: Show a job's event log
- list: List all projects in a table
- watchdog: Reconcile pending clip generations once or on an interval
- serve: Run the API server (webhook receiver included)
"""

import asyncio
import uuid
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from sqlalchemy import select

from reelforge import configure_logging, validate_dependencies
from reelforge.config import settings
from reelforge.db import async_session, init_database
from reelforge.db.models import ArtifactType, Job, PipelineRun, Project
from reelforge.db.repository import ArtifactRepository, EventLog, JobRepository, project_view
from reelforge.orchestrator.pipeline import PipelineOutcome, run_pipeline
from reelforge.orchestrator.state import PIPELINE_STAGES, can_resume
from reelforge.orchestrator.watchdog import sweep_pending_clips
from reelforge.services.providers.registry import VIDEO_PROVIDERS
from reelforge.workers.tasks import run_pipeline_background, watchdog_loop

app = typer.Typer(name="reelforge", help="Resumable short-form video generation pipeline")
console = Console()


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level"),
):
    if verbose:
        settings.logging.level = "DEBUG"
    configure_logging()


def _check_dependencies() -> None:
    # Fail-fast dependency validation
    try:
        validate_dependencies()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {str(e)}")
        raise typer.Exit(code=1)


def _parse_uuid(value: str, label: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        console.print(f"[red]Error:[/red] Invalid {label} UUID: {value}")
        raise typer.Exit(code=1)


@app.command()
def generate(
    topic: str = typer.Argument(..., help="Topic or brief for the video"),
    duration: int = typer.Option(30, "--duration", "-d", help="Target video duration in seconds"),
    language: str = typer.Option("en", "--language", "-l", help="Narration language"),
    style: str = typer.Option("cinematic", "--style", "-s", help="Visual style"),
    aspect_ratio: str = typer.Option("9:16", "--aspect-ratio", "-a", help="Video aspect ratio"),
    video_provider: Optional[str] = typer.Option(
        None, "--video-provider", help="Video provider (defaults to providers.video)"
    ),
):
    """Generate a new video from a topic.

    Creates a project and job, then runs script, scene planning, voiceover,
    clip generation and assembly.
    """
    _check_dependencies()

    if duration <= 0:
        console.print(f"[red]Error:[/red] duration must be positive, got {duration}")
        raise typer.Exit(code=1)
    if video_provider is not None and video_provider not in VIDEO_PROVIDERS:
        console.print(f"[red]Error:[/red] Invalid video provider: {video_provider}")
        console.print(f"Allowed: {', '.join(sorted(VIDEO_PROVIDERS))}")
        raise typer.Exit(code=1)

    asyncio.run(_generate_async(topic, duration, language, style, aspect_ratio, video_provider))


async def _generate_async(
    topic: str, duration: int, language: str, style: str, aspect_ratio: str,
    video_provider: Optional[str],
):
    """Async implementation of generate command."""
    await init_database()

    async with async_session() as session:
        project = Project(
            topic=topic,
            duration=duration,
            language=language,
            style=style,
            aspect_ratio=aspect_ratio,
            video_provider=video_provider,
        )
        session.add(project)
        await session.flush()
        job = Job(project_id=project.id)
        session.add(job)
        await session.commit()

        console.print(f"[green]Created project:[/green] {project.id}")
        console.print(f"[green]Job:[/green] {job.id}")
        console.print()

        await _run_with_status(session, project.id, job.id, None, "Starting pipeline...")


async def _run_with_status(
    session, project_id: uuid.UUID, job_id: uuid.UUID, resume_step: Optional[str], label: str
):
    try:
        with console.status(f"[bold green]{label}") as status:
            def callback_wrapper(msg: str):
                status.update(f"[bold green]{msg}")

            outcome = await run_pipeline(
                session, project_id, job_id, resume_step, progress_callback=callback_wrapper
            )

    except KeyboardInterrupt:
        console.print()
        console.print("[yellow]Pipeline interrupted. You can resume this job later with:[/yellow]")
        console.print(f"  reelforge resume {job_id}")
        raise typer.Exit(code=130)

    except Exception as e:
        console.print()
        console.print(f"[red]✗ Pipeline failed:[/red] {str(e)}")
        console.print(f"[yellow]You can retry with:[/yellow] reelforge resume {job_id}")
        raise typer.Exit(code=1)

    if outcome == PipelineOutcome.SUSPENDED:
        console.print("[yellow]Clip generation is waiting on provider callbacks.[/yellow]")
        console.print("Keep `reelforge serve` running to receive them, then check with:")
        console.print(f"  reelforge status {job_id}")
        return
    if outcome == PipelineOutcome.SKIPPED:
        console.print("[green]Job already complete![/green]")
    else:
        console.print(f"[green]✓[/green] Video generation complete!")

    final = await ArtifactRepository(session).get_stage_artifact(job_id, ArtifactType.FINAL_VIDEO)
    if final is not None:
        console.print(f"[green]Output:[/green] {final.file_url}")


@app.command()
def resume(
    job_id: str = typer.Argument(..., help="Job UUID to resume"),
    from_step: Optional[str] = typer.Option(
        None,
        "--from-step",
        help=f"Stage to restart at ({', '.join(s.value for s in PIPELINE_STAGES)})",
    ),
):
    """Resume a failed or suspended job.

    Continues at the job's current step unless --from-step is given.
    """
    _check_dependencies()
    asyncio.run(_resume_async(job_id, from_step))


async def _resume_async(job_id_str: str, from_step: Optional[str]):
    """Async implementation of resume command."""
    job_uuid = _parse_uuid(job_id_str, "job")
    await init_database()

    async with async_session() as session:
        job = await JobRepository(session).get(job_uuid)
        if not job:
            console.print(f"[red]Error:[/red] Job not found: {job_uuid}")
            raise typer.Exit(code=1)

        if not can_resume(job.status):
            console.print("[green]Job already complete![/green]")
            return

        console.print(f"[yellow]Resuming job:[/yellow] {job.id}")
        console.print(f"[yellow]Current status:[/yellow] {job.status} at {job.current_step}")
        console.print()

        await _run_with_status(session, job.project_id, job.id, from_step, "Resuming pipeline...")


@app.command()
def status(
    job_id: str = typer.Argument(..., help="Job UUID"),
):
    """Show detailed job status and information."""
    asyncio.run(_status_async(job_id))


async def _status_async(job_id_str: str):
    """Async implementation of status command."""
    job_uuid = _parse_uuid(job_id_str, "job")
    await init_database()

    async with async_session() as session:
        job = await JobRepository(session).get(job_uuid)
        if not job:
            console.print(f"[red]Error:[/red] Job not found: {job_uuid}")
            raise typer.Exit(code=1)
        project = await session.get(Project, job.project_id)
        artifacts = ArtifactRepository(session)

        run_result = await session.execute(
            select(PipelineRun)
            .where(PipelineRun.job_id == job.id)
            .order_by(PipelineRun.started_at.desc())
            .limit(1)
        )
        latest_run = run_result.scalar_one_or_none()

        status_color = _get_status_color(job.status)
        topic_display = project.topic if len(project.topic) <= 80 else project.topic[:77] + "..."

        info_lines = [
            f"[bold]Job:[/bold] {job.id}",
            f"[bold]Project:[/bold] {project.id}",
            f"[bold]Topic:[/bold] {topic_display}",
            f"[bold]Status:[/bold] [{status_color}]{job.status}[/{status_color}]",
            f"[bold]Step:[/bold] {job.current_step}",
            f"[bold]Progress:[/bold] {job.progress}%",
            f"[bold]Duration:[/bold] {project.duration}s ({project.aspect_ratio}, {project.style})",
            f"[bold]Clips:[/bold] {await artifacts.count_clips(job.id)} completed, "
            f"{await artifacts.count_pending(job.id)} pending",
            f"[bold]Created:[/bold] {job.created_at.strftime('%Y-%m-%d %H:%M:%S')}",
        ]

        final = await artifacts.get_stage_artifact(job.id, ArtifactType.FINAL_VIDEO)
        if final is not None:
            info_lines.append(f"[bold]Output:[/bold] [green]{final.file_url}[/green]")

        if job.status == "failed" and job.error_message:
            info_lines.append(f"[bold]Error:[/bold] [red]{job.error_message}[/red]")

        if latest_run and latest_run.total_duration_seconds:
            duration = latest_run.total_duration_seconds
            if duration < 60:
                duration_str = f"{duration:.1f}s"
            else:
                mins = int(duration // 60)
                secs = duration % 60
                duration_str = f"{mins}m {secs:.1f}s"
            info_lines.append(
                f"[bold]Last Run:[/bold] {latest_run.outcome or 'running'} in {duration_str}"
            )

        panel = Panel(
            "\n".join(info_lines),
            title="[bold]Job Status[/bold]",
            border_style="blue",
        )
        console.print(panel)


@app.command()
def events(
    job_id: str = typer.Argument(..., help="Job UUID"),
    limit: int = typer.Option(50, "--limit", "-n", help="Show only the last N events"),
):
    """Show a job's step event log."""
    asyncio.run(_events_async(job_id, limit))


async def _events_async(job_id_str: str, limit: int):
    job_uuid = _parse_uuid(job_id_str, "job")
    await init_database()

    async with async_session() as session:
        events = await EventLog(session).list_for_job(job_uuid)

    if not events:
        console.print("[yellow]No events found[/yellow]")
        return

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("Time", style="dim")
    table.add_column("Step")
    table.add_column("Event")
    table.add_column("%", justify="right")
    table.add_column("Message")

    level_colors = {"error": "red", "warning": "yellow", "success": "green"}
    for event in events[-limit:]:
        color = level_colors.get(event.level, "white")
        table.add_row(
            event.timestamp.strftime("%H:%M:%S"),
            event.step,
            f"[{color}]{event.event_type}[/{color}]",
            "" if event.progress is None else str(event.progress),
            event.message,
        )

    console.print(table)


@app.command(name="list")
def list_projects():
    """List all video generation projects."""
    asyncio.run(_list_async())


async def _list_async():
    """Async implementation of list command."""
    await init_database()

    async with async_session() as session:
        result = await session.execute(select(Project.id).order_by(Project.created_at.desc()))
        views = [await project_view(session, pid) for pid in result.scalars().all()]

    if not views:
        console.print("[yellow]No projects found[/yellow]")
        return

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("Project", style="dim")
    table.add_column("Job", style="dim")
    table.add_column("Topic")
    table.add_column("Status")
    table.add_column("Step")
    table.add_column("Created")

    for view in views:
        project = view.project
        topic_display = project.topic if len(project.topic) <= 50 else project.topic[:47] + "..."
        status_color = _get_status_color(view.status)
        table.add_row(
            str(project.id)[:8] + "...",
            str(view.job.id)[:8] + "..." if view.job else "-",
            topic_display,
            f"[{status_color}]{view.status}[/{status_color}]",
            view.current_step,
            project.created_at.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(table)


@app.command()
def watchdog(
    loop: bool = typer.Option(False, "--loop", help="Keep sweeping on an interval"),
    interval: Optional[float] = typer.Option(
        None, "--interval", "-i", help="Seconds between sweeps (defaults to pipeline.watchdog_interval_seconds)"
    ),
):
    """Reconcile pending clip generations whose callback never arrived."""
    asyncio.run(_watchdog_async(loop, interval))


async def _watchdog_async(loop: bool, interval: Optional[float]):
    await init_database()

    if loop:
        await watchdog_loop(interval)
        return

    resumes: list[tuple[uuid.UUID, uuid.UUID, str]] = []

    def collect(project_id: uuid.UUID, job_id: uuid.UUID, step: str) -> None:
        resumes.append((project_id, job_id, step))

    async with async_session() as session:
        summary = await sweep_pending_clips(session, resumer=collect)

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("Checked", justify="right")
    table.add_column("Timed out", justify="right")
    table.add_column("Completed", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("In progress", justify="right")
    table.add_row(
        str(summary.checked),
        str(summary.timed_out),
        str(summary.completed),
        str(summary.failed),
        str(summary.in_progress),
    )
    console.print(table)
    for error in summary.errors:
        console.print(f"[red]Error:[/red] {error}")

    for project_id, job_id, step in resumes:
        console.print(f"[yellow]Resuming job {job_id} at {step}[/yellow]")
        await run_pipeline_background(project_id, job_id, step)


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Bind port"),
):
    """Run the API server, including the provider callback endpoint."""
    import uvicorn

    _check_dependencies()
    uvicorn.run(
        "reelforge.api.app:app",
        host=host or settings.server.host,
        port=port or settings.server.port,
        reload=False,
        log_level=settings.logging.level.lower(),
    )


def _get_status_color(status: str) -> str:
    """Get Rich color for a job status.

    Color coding:
    - completed: green
    - failed: red
    - running: yellow
    - pending: dim
    """
    if status == "completed":
        return "green"
    elif status == "failed":
        return "red"
    elif status == "running":
        return "yellow"
    elif status == "pending":
        return "dim"
    else:
        return "white"
