"""Main orchestration module for proxywatch."""

import asyncio
import logging
import signal
import sys
import time
from pathlib import Path
from typing import List, Optional

from colorama import Fore, Style, init as colorama_init

from .utils.config import Config
from .features.connection_store import ConnectionStore, Totals
from .features.sorting import Column, SortEngine, SortState
from .features.traffic import format_traffic
from .features.view import ConnectionRow, ConnectionsView
from .stream.feed import ConnectionFeed
from .stream.reader import JsonlStreamReader, StreamAcquisitionError, open_stream_reader


# Initialize colorama for cross-platform colored output
colorama_init(autoreset=True)

logger = logging.getLogger(__name__)

# Terminal widths in characters
COLUMN_WIDTHS = [
    (Column.HOST, 26),
    (Column.NETWORK, 8),
    (Column.TYPE, 12),
    (Column.CHAINS, 20),
    (Column.RULE, 14),
    (Column.SPEED, 24),
    (Column.UPLOAD, 10),
    (Column.DOWNLOAD, 10),
    (Column.TIME, 16),
]


def _fit(text: str, width: int) -> str:
    if len(text) > width:
        return text[:width - 1] + '…'
    return text.ljust(width)


def render_table(rows: List[ConnectionRow], totals: Totals, sort_state: SortState,
                 retain_closed: bool, max_rows: Optional[int] = None, color: bool = True) -> str:
    """
    Render the connection table as text.

    Completed rows are dimmed when color is enabled.
    """
    lines = [
        f"Connections ({len(rows)})  "
        f"Total: ↑ {format_traffic(totals.upload_total)} ↓ {format_traffic(totals.download_total)}  "
        f"Keep closed: {'on' if retain_closed else 'off'}"
    ]

    header = ' '.join(
        _fit(column.value.capitalize() + sort_state.indicator(column), width)
        for column, width in COLUMN_WIDTHS
    )
    lines.append(f"{Style.BRIGHT}{header}" if color else header)

    shown = rows if max_rows is None else rows[:max_rows]
    for row in shown:
        line = ' '.join(_fit(getattr(row, column.value), width) for column, width in COLUMN_WIDTHS)
        if color and row.completed:
            line = f"{Style.DIM}{line}{Style.RESET_ALL}"
        lines.append(line)

    if len(shown) < len(rows):
        lines.append(f"... {len(rows) - len(shown)} more")

    return '\n'.join(lines)


class ConnectionsMain:
    """
    Main proxywatch orchestrator.

    Subscribes to the connection stream, feeds the store and redraws the
    table on an interval until stopped.
    """

    def __init__(self, config: Config, keep_closed: Optional[bool] = None,
                 sort_column: Optional[str] = None):
        """
        Initialize components.

        Args:
            config: Configuration object
            keep_closed: Override connections.keep_closed
            sort_column: Override connections.default_sort
        """
        self.config = config
        self.stop_event: Optional[asyncio.Event] = None

        # Setup logging
        self._setup_logging()

        store = ConnectionStore(
            retain_closed=config.keep_closed if keep_closed is None else keep_closed
        )
        self.view = ConnectionsView(
            store=store,
            sort_engine=SortEngine(sort_column or config.default_sort)
        )

        self.start_time: Optional[float] = None

    def _setup_logging(self) -> None:
        """Setup logging configuration."""
        # Ensure log directory exists
        Path('logs').mkdir(exist_ok=True)

        # The table owns stdout, so console logging is limited to warnings
        console = logging.StreamHandler(sys.stderr)
        console.setLevel(logging.WARNING)

        logging.basicConfig(
            level=logging.INFO,
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            handlers=[
                logging.FileHandler('logs/system.log'),
                console
            ]
        )

    def run(self) -> int:
        """Run the live table. Returns an exit code."""
        logger.info("Starting proxywatch...")
        self.start_time = time.time()
        try:
            return asyncio.run(self._run(lambda: open_stream_reader(self.config), live=True))
        except KeyboardInterrupt:
            return 0
        finally:
            self._print_final_stats()

    def replay(self, path: str) -> int:
        """Feed a recorded stream through the store and print the final table."""
        self.start_time = time.time()

        async def factory():
            reader = JsonlStreamReader(path, buffer_length=self.config.stream_buffer_length)
            return await reader.connect()

        code = asyncio.run(self._run(factory, live=False))
        if code == 0:
            print(self.render())
        return code

    def render(self, color: bool = True) -> str:
        return render_table(
            self.view.current_rows(),
            self.view.totals(),
            self.view.sort_state,
            self.view.retain_closed,
            max_rows=self.config.max_rows,
            color=color
        )

    def stop(self) -> None:
        """Request shutdown."""
        if self.stop_event is not None:
            self.stop_event.set()

    async def _run(self, reader_factory, live: bool) -> int:
        self.stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self.stop)
            except (NotImplementedError, RuntimeError):
                # Not supported on this platform/thread
                pass

        try:
            async with ConnectionFeed(self.view, reader_factory) as feed:
                pump = asyncio.create_task(feed.run())
                stopper = asyncio.create_task(self.stop_event.wait())
                tasks = {pump, stopper}
                if live:
                    tasks.add(asyncio.create_task(self._render_loop()))

                await asyncio.wait({pump, stopper}, return_when=asyncio.FIRST_COMPLETED)

                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)

                if feed.state == 'failed':
                    print(f"{Fore.RED}ERROR: Connection stream failed: {feed.error}", file=sys.stderr)
                    return 1

        except StreamAcquisitionError as e:
            logger.error(f"Cannot open connection stream: {e}")
            print(f"{Fore.RED}ERROR: {e}", file=sys.stderr)
            return 1

        return 0

    async def _render_loop(self) -> None:
        """Redraw the table every refresh interval."""
        while True:
            # Clear screen and home the cursor
            print('\033[2J\033[H' + self.render())
            await asyncio.sleep(self.config.refresh_seconds)

    def _print_final_stats(self) -> None:
        """Print final statistics on shutdown."""
        stats = self.view.store.get_stats()
        runtime = time.time() - self.start_time if self.start_time else 0

        print("\n" + "="*60)
        print("FINAL STATISTICS")
        print("="*60)
        print(f"Runtime: {runtime:.1f} seconds")
        print(f"Connections seen: {stats['total_connections_seen']}")
        print(f"Connections closed: {stats['total_connections_closed']}")
        print(f"Active connections: {stats['active_connections_count']}")
        print(f"Malformed records skipped: {stats['malformed_records']}")
        print(f"Counter regressions: {stats['counter_regressions']}")
        print("="*60 + "\n")
