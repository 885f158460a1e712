"""
kmtrack CLI Interactive Terminal

A fast, lightweight REPL for logging business trips without the web client.
Slash commands drive the same managers the server uses; Rich library for
formatted output.

Run with:
    python interfaces/cli/terminal.py --user <user_id>

Or as a module:
    python -m interfaces.cli.terminal --user <user_id>
"""

import argparse
import asyncio
import logging
import shlex
from datetime import date
from functools import partial
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from api.export import ExportManager
from core.config import get_config
from core.errors import BackendOperationFailure, DuplicateFavorite
from core.event_logger import EventLogger
from tests.self_test import SelfTest
from tools.maps.adapter import GoogleMapsAdapter
from tools.maps.distance import DistanceResolver, FallbackEstimator
from tools.maps.loader import MapsLoader
from tools.mileage.address_book import AddressBook
from tools.mileage.distance_service import SHORT_TRIP_ERROR, DistanceService
from tools.mileage.reports import PERIODS, build_report
from tools.mileage.trip_log import TripLogManager


# ---------------------------------------------------------------------------
# Warnings only, so log lines do not interleave with the prompt
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.WARNING,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("kmtrack.cli")


# ---------------------------------------------------------------------------
# KmTrackTerminal
# ---------------------------------------------------------------------------

class KmTrackTerminal:
    """Interactive REPL for kmtrack, mirroring the server's subsystem init.

    Provides a ``kmtrack>`` prompt.  Every command acts on the trips and
    addresses of ``user_id``.
    """

    def __init__(self, user_id: str, config=None, console: Console | None = None):
        self.user_id = user_id
        self.config = config or get_config()
        self.console = console or Console()

        # Managers, built in the same order as the server builds them
        self.event_logger = EventLogger(max_events=self.config.events.max_events)
        self.trip_log = TripLogManager(db_path=self.config.database.db_path)
        self.address_book = AddressBook(db_path=self.config.database.db_path)
        self.exporter = ExportManager(self.trip_log, self.address_book)

        self.adapter = GoogleMapsAdapter(
            api_key=self.config.maps.api_key,
            base_url=self.config.maps.base_url,
            timeout=self.config.maps.request_timeout,
            country=self.config.maps.country,
            probe_query=self.config.maps.probe_query,
        )
        self.maps_loader = MapsLoader(
            self.adapter,
            public_origin=self.config.server.public_origin,
            rearm_after_failure=self.config.maps.rearm_after_failure,
        )
        self.distance_service = DistanceService(
            resolver=DistanceResolver(self.maps_loader, self.adapter),
            estimator=FallbackEstimator(latency=self.config.maps.fallback_latency),
            has_api_key=self.config.has_maps_key,
            primary_retry_seconds=self.config.maps.primary_retry_seconds,
            event_logger=self.event_logger,
        )
        self._unsubscribe = self.address_book.subscribe(self._on_home_changed)

    # -----------------------------------------------------------------------
    # Entry point
    # -----------------------------------------------------------------------

    async def run(self):
        """Run the REPL, then shut down cleanly."""
        self._print_banner()
        try:
            await self._repl_loop()
        except (SystemExit, KeyboardInterrupt):
            pass
        finally:
            await self._shutdown()

    # -----------------------------------------------------------------------
    # REPL loop
    # -----------------------------------------------------------------------

    async def _repl_loop(self):
        """Async input loop, reads stdin via executor to stay non-blocking."""
        loop = asyncio.get_running_loop()

        while True:
            try:
                line = await loop.run_in_executor(None, partial(input, "kmtrack> "))
            except KeyboardInterrupt:
                self.console.print("\n[dim]Use /quit to exit.[/dim]")
                continue
            except EOFError:
                break

            line = line.strip()
            if not line:
                continue
            if not line.startswith("/"):
                self.console.print("[dim]Commands start with / (try /help)[/dim]")
                continue
            await self.dispatch_command(line)

    # -----------------------------------------------------------------------
    # Slash command dispatch
    # -----------------------------------------------------------------------

    async def dispatch_command(self, line: str):
        """Look up and await the handler for one input line."""
        parts = line.split(maxsplit=1)
        cmd = parts[0].lower()
        arg = parts[1] if len(parts) > 1 else ""

        handlers = {
            "/trips": self._cmd_trips,
            "/add": self._cmd_add,
            "/delete": self._cmd_delete,
            "/report": self._cmd_report,
            "/favorites": self._cmd_favorites,
            "/fav": self._cmd_fav,
            "/home": self._cmd_home,
            "/export": self._cmd_export,
            "/status": self._cmd_status,
            "/test": self._cmd_test,
            "/help": self._cmd_help,
            "/quit": self._cmd_quit,
            "/exit": self._cmd_quit,
        }

        handler = handlers.get(cmd)
        if handler is None:
            self.console.print(f"[red]Unknown command: {cmd}[/red]  (try /help)")
            return

        try:
            await handler(arg)
        except BackendOperationFailure as e:
            self.event_logger.error("backend", str(e), user_id=self.user_id, operation=e.operation)
            self.console.print(f"[red]{e}[/red]")
        except Exception as e:
            logger.exception("Command %s failed", cmd)
            self.console.print(f"[red]{cmd} failed: {type(e).__name__}: {e}[/red]")

    # -----------------------------------------------------------------------
    # Slash command implementations
    # -----------------------------------------------------------------------

    async def _cmd_trips(self, arg: str):
        """/trips [n]: Most recent trips."""
        limit = int(arg) if arg.strip().isdigit() else 20
        trips = self.trip_log.list_trips(self.user_id, limit=limit)
        if not trips:
            self.console.print("[dim]No trips recorded yet.[/dim]")
            return

        table = Table(title="Trips")
        table.add_column("ID", style="dim")
        table.add_column("Date")
        table.add_column("From")
        table.add_column("To")
        table.add_column("KM", justify="right")
        table.add_column("Duration")
        table.add_column("Purpose")
        for t in trips:
            km = f"{t.km:.1f}" + (" [yellow]~[/yellow]" if t.estimated else "")
            table.add_row(t.short_id, t.date, t.start_address[:30], t.end_address[:30],
                          km, t.duration, t.purpose[:30])
        self.console.print(table)

    async def _cmd_add(self, arg: str):
        """/add "<from>" "<to>" [date] [purpose...]: Log a trip.

        ``home`` as the start address uses the saved home address.
        """
        try:
            parts = shlex.split(arg)
        except ValueError as e:
            self.console.print(f"[red]{e}[/red]")
            return
        if len(parts) < 2:
            self.console.print('[red]Usage: /add "<from>" "<to>" [YYYY-MM-DD] [purpose][/red]')
            return

        start, end, rest = parts[0], parts[1], parts[2:]
        if start.lower() == "home":
            home = self.address_book.get_home_address(self.user_id)
            if not home:
                self.console.print("[red]No home address saved (see /home)[/red]")
                return
            start = home

        trip_date = date.today().isoformat()
        if rest and len(rest[0]) == 10 and rest[0][4] == "-":
            trip_date, rest = rest[0], rest[1:]

        with self.console.status("[bold cyan]Calculating distance...[/bold cyan]"):
            outcome = await self.distance_service.calculate(start, end, user_id=self.user_id)
        result = outcome.result
        if result.distance_km <= 0:
            self.console.print(f"[red]{SHORT_TRIP_ERROR}[/red]")
            return

        try:
            trip = self.trip_log.add_trip(
                self.user_id, trip_date, start, end, result.distance_km,
                duration=result.duration, purpose=" ".join(rest), estimated=result.estimated,
            )
        except ValueError as e:
            self.console.print(f"[red]{e}[/red]")
            return

        self.event_logger.info("trip", f"Trip {trip.short_id} added: {trip.km} km",
                               user_id=self.user_id, estimated=trip.estimated)
        self.console.print(f"[green]Trip {trip.short_id} saved:[/green] {trip.km:.1f} km, {trip.duration}")
        if outcome.warning:
            self.console.print(f"[yellow]{outcome.warning}[/yellow]")
        if self.distance_service.api_error:
            self.console.print(f"[dim]{self.distance_service.api_error}[/dim]")

    async def _cmd_delete(self, arg: str):
        """/delete <trip id or prefix>"""
        key = arg.strip()
        if not key:
            self.console.print("[red]Usage: /delete <trip id>[/red]")
            return
        matches = [t for t in self.trip_log.list_trips(self.user_id) if t.trip_id.startswith(key)]
        if len(matches) != 1:
            self.console.print(f"[red]{'No' if not matches else 'Ambiguous'} trip matching '{key}'[/red]")
            return
        if self.trip_log.delete_trip(self.user_id, matches[0].trip_id):
            self.event_logger.info("trip", f"Trip {matches[0].short_id} deleted", user_id=self.user_id)
            self.console.print(f"[green]Trip {matches[0].short_id} deleted.[/green]")

    async def _cmd_report(self, arg: str):
        """/report [all|this-month|custom <from> <to>]"""
        parts = arg.split()
        period = parts[0] if parts else "all"
        date_from = parts[1] if len(parts) > 1 else None
        date_to = parts[2] if len(parts) > 2 else None
        try:
            report = build_report(self.trip_log.list_trips(self.user_id), period, date_from, date_to)
        except ValueError as e:
            self.console.print(f"[red]{e}[/red]  (periods: {', '.join(PERIODS)})")
            return

        lines = [
            f"[italic]{report.description}[/italic]",
            "",
            f"Trips: [bold]{report.total_trips}[/bold]    "
            f"Distance: [bold]{report.total_km:.1f} km[/bold]",
        ]
        self.console.print(Panel("\n".join(lines), title="Report", border_style="cyan"))

        monthly = report.monthly_breakdown()
        if monthly:
            table = Table(title="By month")
            table.add_column("Month")
            table.add_column("Trips", justify="right")
            table.add_column("KM", justify="right")
            for month, bucket in monthly.items():
                table.add_row(month, str(bucket["trips"]), f"{bucket['km']:.1f}")
            self.console.print(table)

    async def _cmd_favorites(self, _arg: str):
        """/favorites: Saved addresses."""
        favorites = self.address_book.list_favorites(self.user_id)
        if not favorites:
            self.console.print("[dim]No favorites saved.[/dim]")
            return
        table = Table(title="Favorites")
        table.add_column("ID", style="dim")
        table.add_column("Label", style="bold")
        table.add_column("Address")
        for f in favorites:
            table.add_row(f.favorite_id[:8], f.label, f.address)
        self.console.print(table)

    async def _cmd_fav(self, arg: str):
        """/fav "<address>" [label]: Save a favorite."""
        try:
            parts = shlex.split(arg)
        except ValueError as e:
            self.console.print(f"[red]{e}[/red]")
            return
        if not parts:
            self.console.print('[red]Usage: /fav "<address>" [label][/red]')
            return
        try:
            favorite = self.address_book.add_favorite(self.user_id, parts[0], " ".join(parts[1:]))
        except (ValueError, DuplicateFavorite) as e:
            self.console.print(f"[yellow]{e}[/yellow]")
            return
        self.event_logger.info("favorite", f"Favorite saved: {favorite.label}", user_id=self.user_id)
        self.console.print(f"[green]Saved '{favorite.label}'.[/green]")

    async def _cmd_home(self, arg: str):
        """/home [address]: Show or set the home address."""
        address = arg.strip()
        if not address:
            home = self.address_book.get_home_address(self.user_id)
            self.console.print(home or "[dim]No home address saved.[/dim]")
            return
        try:
            self.address_book.set_home_address(self.user_id, address)
        except ValueError as e:
            self.console.print(f"[red]{e}[/red]")
            return
        self.event_logger.info("home", "Home address updated", user_id=self.user_id)

    def _on_home_changed(self, user_id: str, address: str):
        if user_id == self.user_id:
            self.console.print(f"[green]Home address set:[/green] {address}")

    async def _cmd_export(self, arg: str):
        """/export [csv [period from to] | backup]: Write a file to the cwd."""
        parts = arg.split()
        kind = parts[0].lower() if parts else "csv"
        if kind == "backup":
            data, filename = self.exporter.backup(self.user_id)
        elif kind == "csv":
            period = parts[1] if len(parts) > 1 else "all"
            try:
                data, filename, _count = self.exporter.report_csv(
                    self.user_id, period,
                    parts[2] if len(parts) > 2 else "",
                    parts[3] if len(parts) > 3 else "",
                )
            except ValueError as e:
                self.console.print(f"[red]{e}[/red]")
                return
        else:
            self.console.print("[red]Usage: /export [csv [period from to] | backup][/red]")
            return
        Path(filename).write_bytes(data)
        self.event_logger.info("export", f"Exported {filename}", user_id=self.user_id)
        self.console.print(f"[green]Wrote {filename}[/green] ({len(data)} bytes)")

    async def _cmd_status(self, _arg: str):
        """/status: Trip totals and maps state."""
        status = self.trip_log.get_status(self.user_id)
        maps = self.distance_service.to_dict()
        lines = [
            f"User: [bold]{self.user_id}[/bold]",
            f"Trips: {status['total_trips']}  ({status['km_this_month']:.1f} km this month, "
            f"{status['total_km']:.1f} km total, {status['estimated_trips']} estimated)",
            f"Maps: {'Google Maps' if maps['has_api_key'] else 'estimated distances'}"
            f"  |  Loader: {self.maps_loader.state}",
        ]
        if maps["api_error"]:
            lines.append(f"[yellow]{maps['api_error']}[/yellow]")
        self.console.print(Panel("\n".join(lines), title="kmtrack Status", border_style="cyan"))

    async def _cmd_test(self, _arg: str):
        """Health checks against this terminal's own managers."""
        self.console.print("[dim]Running self-tests...[/dim]")
        tester = SelfTest(
            config=self.config,
            event_logger=self.event_logger,
            trip_log=self.trip_log,
            address_book=self.address_book,
        )
        results = await tester.run_all()

        table = Table(title=f"Self-Test Results ({results['passed']}/{results['total']} passed)")
        table.add_column("Test", style="bold")
        table.add_column("Result")
        table.add_column("Message")
        table.add_column("Time", justify="right")
        for r in results["results"]:
            style = "green" if r["passed"] else "red"
            icon = "PASS" if r["passed"] else "FAIL"
            table.add_row(r["name"], f"[{style}]{icon}[/{style}]", r["message"][:80],
                          f"{r['duration_ms']:.0f}ms")
        self.console.print(table)

    async def _cmd_help(self, _arg: str):
        """List the commands."""
        table = Table(title="Commands")
        table.add_column("Command", style="bold cyan")
        table.add_column("Description")

        commands = [
            ("/trips [n]", "Show the n most recent trips (default 20)"),
            ('/add "<from>" "<to>" [date] [purpose]', "Log a trip; 'home' as <from> uses the home address"),
            ("/delete <id>", "Delete a trip by id or id prefix"),
            ("/report [period] [from] [to]", "Totals for all, this-month or custom"),
            ("/favorites", "List saved addresses"),
            ('/fav "<address>" [label]', "Save an address as a favorite"),
            ("/home [address]", "Show or set the home address"),
            ("/export [csv|backup]", "Write a CSV report or JSON backup to the current directory"),
            ("/status", "Trip totals and maps state"),
            ("/test", "Run the health checks"),
            ("/help", "This list"),
            ("/quit, /exit", "Leave kmtrack"),
        ]
        for cmd, desc in commands:
            table.add_row(cmd, desc)
        self.console.print(table)

    async def _cmd_quit(self, _arg: str):
        """Leave the prompt."""
        raise SystemExit

    # -----------------------------------------------------------------------
    # Startup banner
    # -----------------------------------------------------------------------

    def _print_banner(self):
        status = self.trip_log.get_status(self.user_id)
        mode = "Google Maps" if self.config.has_maps_key else "estimated distances (no API key)"
        lines = [
            "[bold]kmtrack — business kilometre tracker[/bold]",
            "",
            f"User: {self.user_id}  |  Trips: {status['total_trips']}  |  Distances: {mode}",
            "",
            "[dim]Type /help for commands.[/dim]",
        ]
        self.console.print(Panel("\n".join(lines), border_style="bright_blue", padding=(1, 2)))

    # -----------------------------------------------------------------------
    # Shutdown
    # -----------------------------------------------------------------------

    async def _shutdown(self):
        """Close the maps client and both databases."""
        self._unsubscribe()
        await self.adapter.close()
        self.trip_log.close()
        self.address_book.close()
        self.console.print("[dim]Goodbye.[/dim]")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

async def main(argv: list[str] | None = None):
    """Launch the kmtrack CLI terminal."""
    parser = argparse.ArgumentParser(description="kmtrack interactive terminal")
    parser.add_argument("--user", default="local", help="User id to act as (default: local)")
    args = parser.parse_args(argv)
    terminal = KmTrackTerminal(user_id=args.user)
    await terminal.run()


if __name__ == "__main__":
    asyncio.run(main())
