"""Command-line interface for jobcapture."""
import asyncio
import logging
import sys
from typing import Optional
import click
from rich.console import Console
from rich.table import Table

from .config import Config
from .database import Database
from .fetchers import FetchOrchestrator
from .models import Failure, FetchResult, NeedsVerification, StillBlocked, Success

console = Console()


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="[%(levelname)s] %(name)s: %(message)s",
    )


@click.group()
@click.option('--env-file', default=None, help='Path to a .env file')
@click.pass_context
def cli(ctx: click.Context, env_file: Optional[str]):
    """jobcapture - capture job postings through a supervised browser."""
    ctx.obj = Config(env_file)
    configure_logging(ctx.obj.get('LOG_LEVEL', 'INFO'))


async def run_analysis(orchestrator: FetchOrchestrator, url: str) -> FetchResult:
    """Fetch a job page, pausing for the operator whenever verification is needed."""
    result = await orchestrator.fetch_job_page(url)
    while isinstance(result, (NeedsVerification, StillBlocked)):
        console.print(f"[yellow]{result.message}[/yellow]")
        if isinstance(result, StillBlocked):
            console.print(f"[yellow]{result.attempts_left} attempts left[/yellow]")
        confirmed = await asyncio.to_thread(
            click.confirm, "Continue once verification is complete?", default=True
        )
        if not confirmed:
            return Failure("Verification abandoned by operator", "verification_abandoned")
        result = await orchestrator.continue_after_verification(result.handle)
    return result


async def _analyze(config: Config, url: str, save: bool) -> FetchResult:
    repository = Database(config.get_database_url()) if save else None
    async with FetchOrchestrator.from_config(config, repository) as orchestrator:
        return await run_analysis(orchestrator, url)


def print_result(result: FetchResult) -> None:
    if isinstance(result, Success):
        posting = result.posting
        title = "Job Posting (cached)" if result.cached else "Job Posting"
        table = Table(title=title, show_header=False)
        table.add_column("Field", style="cyan")
        table.add_column("Value", style="green")
        table.add_row("Title", posting.title)
        table.add_row("Company", posting.company)
        table.add_row("Location", posting.location or "-")
        table.add_row("Salary", posting.salary_range or "-")
        table.add_row("Experience", posting.experience_required or "-")
        table.add_row("Education", posting.education_required or "-")
        table.add_row("URL", posting.source_url)
        if posting.id:
            table.add_row("ID", posting.id)
        console.print(table)
        console.print("\n[bold]Description[/bold]")
        console.print(posting.raw_description)
        return

    console.print(f"[red]Failed ({result.error_code}): {result.reason}[/red]")
    if result.retry_after is not None:
        console.print(f"[yellow]Retry after {result.retry_after:.0f}s[/yellow]")
    elif result.retryable:
        console.print("[yellow]This error is retryable[/yellow]")


@cli.command()
@click.argument('url')
@click.option('--save/--no-save', default=True, help='Store the extracted posting')
@click.pass_obj
def analyze(config: Config, url: str, save: bool):
    """Fetch a job page and extract the posting."""
    result = asyncio.run(_analyze(config, url, save))
    print_result(result)
    if not isinstance(result, Success):
        sys.exit(1)


@cli.command(name='config')
@click.pass_obj
def show_config(config: Config):
    """Show the effective configuration."""
    table = Table(title="Configuration")
    table.add_column("Section", style="cyan")
    table.add_column("Setting", style="green")
    table.add_column("Value", style="blue")
    for section, values in config.get_all_config().items():
        if isinstance(values, dict):
            for key, value in values.items():
                table.add_row(section, key, str(value))
        else:
            table.add_row(section, "", str(values))
    console.print(table)
