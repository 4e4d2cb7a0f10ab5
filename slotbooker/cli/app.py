"""
Main CLI application using Typer.
"""

import asyncio
import logging
from pathlib import Path
from typing import Annotated, Optional

import pendulum
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from ..adapters.mock_calendar_client import MockCalendarClient
from ..adapters.storage import InMemoryStorage
from ..config import AppConfig, get_default_config_path
from ..domain.exceptions import SchedulingError
from ..domain.models import CalendarProvider, RecurrencePattern, RecurringBookingRequest, TimeInterval
from ..domain.recurrence import RecurrenceExpander
from ..engine import SchedulingEngine, build_engine

app = typer.Typer(
    name="slotbooker",
    help="Check availability and preview booking series for listings",
    add_completion=False
)

console = Console()

ConfigOption = Annotated[
    Optional[Path],
    typer.Option("--config", "-c", help="Path to config file. Defaults to ./config.yaml"),
]
DataOption = Annotated[
    Path,
    typer.Option("--data", help="YAML file with listings, bookings, blocked times and calendar connections"),
]
MockCalendarOption = Annotated[
    Optional[Path],
    typer.Option("--mock-calendar", help="JSON file with external calendar events; skips real providers"),
]
VerboseOption = Annotated[bool, typer.Option("--verbose", "-v", help="Show debug logging")]


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=False, show_path=False)],
        force=True,
    )


def _load_config(config_file: Optional[Path]) -> AppConfig:
    """Load an explicit config file, else ./config.yaml if present, else defaults."""
    if config_file is not None:
        return AppConfig.load_from_yaml(config_file)

    default_path = get_default_config_path()
    if default_path.exists():
        return AppConfig.load_from_yaml(default_path)
    return AppConfig()


def _build_engine(config: AppConfig, data_file: Path, mock_calendar: Optional[Path]) -> SchedulingEngine:
    storage = InMemoryStorage.load_from_yaml(data_file)

    clients = None
    if mock_calendar is not None:
        mock_client = MockCalendarClient(data_file=mock_calendar)
        clients = {provider: mock_client for provider in CalendarProvider}

    return build_engine(config, storage, clients=clients)


async def _with_listing(engine: SchedulingEngine, listing_id: str, operation):
    result = await operation
    listing = await engine.resolver.load_listing(listing_id)
    return listing, result


def _slot_table(title: str, slots, timezone: str) -> Table:
    table = Table(title=title)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Start")
    table.add_column("End")
    table.add_column("Minutes", justify="right")

    for index, slot in enumerate(slots, 1):
        local = slot.in_timezone(timezone)
        table.add_row(
            str(index),
            local.start.format("YYYY-MM-DD HH:mm"),
            local.end.format("HH:mm"),
            str(local.duration_minutes()),
        )
    return table


def _print_degraded(result) -> None:
    if result.degraded:
        console.print(
            "[yellow]⚠ Some calendars could not be read: "
            f"{', '.join(result.failed_connection_ids)}[/yellow]"
        )


@app.command()
def slots(
    listing_id: Annotated[str, typer.Argument(help="Listing to check")],
    day: Annotated[str, typer.Argument(help="Date (YYYY-MM-DD)")],
    data_file: DataOption = Path("data.yaml"),
    config_file: ConfigOption = None,
    duration: Annotated[Optional[int], typer.Option("--duration", "-d", help="Slot length in minutes")] = None,
    mock_calendar: MockCalendarOption = None,
    verbose: VerboseOption = False,
):
    """
    Show free slots for a listing on one day.

    Examples:

        slotbooker slots studio-1 2025-03-10 --data data.yaml

        slotbooker slots studio-1 2025-03-10 --duration 90 --mock-calendar events.json
    """
    _configure_logging(verbose)

    try:
        config = _load_config(config_file)
        engine = _build_engine(config, data_file, mock_calendar)

        listing, result = asyncio.run(_with_listing(engine, listing_id, engine.get_available_slots(listing_id, day, duration)))

        console.print()
        _print_degraded(result)
        if not result.slots:
            console.print(f"[yellow]⚠ No free slots for {listing_id} on {day}.[/yellow]\n")
            return

        console.print(_slot_table(f"{listing.title or listing_id} on {day}", result.slots, listing.timezone))
        console.print()

    except (FileNotFoundError, SchedulingError, ValueError) as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)


@app.command()
def calendar(
    listing_id: Annotated[str, typer.Argument(help="Listing to check")],
    start: Annotated[str, typer.Option("--start", help="First date (YYYY-MM-DD)")],
    end: Annotated[str, typer.Option("--end", help="Last date (YYYY-MM-DD), inclusive")],
    data_file: DataOption = Path("data.yaml"),
    config_file: ConfigOption = None,
    duration: Annotated[Optional[int], typer.Option("--duration", "-d", help="Slot length in minutes")] = None,
    mock_calendar: MockCalendarOption = None,
    verbose: VerboseOption = False,
):
    """
    Show how many slots are free on each day of a date range.
    """
    _configure_logging(verbose)

    try:
        config = _load_config(config_file)
        engine = _build_engine(config, data_file, mock_calendar)

        listing, results = asyncio.run(
            _with_listing(engine, listing_id, engine.get_availability_calendar(listing_id, start, end, duration))
        )

        table = Table(title=f"Availability for {listing_id}")
        table.add_column("Date")
        table.add_column("Weekday")
        table.add_column("Free slots", justify="right")
        table.add_column("First")
        table.add_column("Note")

        for day, result in results.items():
            first = result.slots[0].in_timezone(listing.timezone).start.format("HH:mm") if result.slots else "-"
            note = "degraded" if result.degraded else ""
            table.add_row(day.to_date_string(), day.format("dddd"), str(len(result.slots)), first, note)

        console.print()
        console.print(table)
        console.print()

    except (FileNotFoundError, SchedulingError, ValueError) as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)


@app.command()
def recurrence(
    start: Annotated[str, typer.Argument(help="First occurrence (YYYY-MM-DDTHH:mm)")],
    pattern: Annotated[RecurrencePattern, typer.Option("--pattern", "-p", help="Repeat pattern")] = RecurrencePattern.WEEKLY,
    count: Annotated[Optional[int], typer.Option("--count", "-n", help="Number of occurrences")] = None,
    until: Annotated[Optional[str], typer.Option("--until", help="Last date (YYYY-MM-DD); wins over --count")] = None,
    duration: Annotated[Optional[int], typer.Option("--duration", "-d", help="Length in minutes")] = None,
    config_file: ConfigOption = None,
):
    """
    Preview the occurrences of a recurring booking.
    """
    try:
        config = _load_config(config_file)
        tz = config.timezone

        first_start = pendulum.parse(start, tz=tz)
        minutes = duration if duration is not None else config.defaults.duration_minutes
        end_date = pendulum.parse(until).date() if until else None
        if end_date is None and count is None:
            count = 4

        request = RecurringBookingRequest(base_pattern=pattern, end_date=end_date, occurrence_count=count)
        expander = RecurrenceExpander(max_occurrences=config.defaults.max_recurring_occurrences)
        occurrences = expander.expand_booking(TimeInterval.from_duration(first_start, minutes, timezone=tz), request)

        console.print()
        console.print(_slot_table(f"{pattern.value.capitalize()} series", occurrences, tz))
        console.print()

    except (FileNotFoundError, SchedulingError, ValueError) as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)


@app.command()
def version():
    """
    Show version information.
    """
    from .. import __version__
    console.print(f"\n[bold cyan]slotbooker[/bold cyan] version [bold]{__version__}[/bold]\n")


if __name__ == "__main__":
    app()
