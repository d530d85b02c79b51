"""Display projection of the connection store."""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from .connection_models import Connection, describe_host, describe_rule
from .connection_store import ConnectionStore, Totals
from .sorting import Column, SortEngine, SortState, base_order
from .traffic import format_speed, format_traffic


logger = logging.getLogger(__name__)

CHAIN_SEPARATOR = ' --> '

# (upper bound in seconds, singular label, unit seconds, plural template)
_RELATIVE_THRESHOLDS = [
    (45, 'a few seconds', 1, None),
    (90, 'a minute', 60, None),
    (45 * 60, None, 60, '{} minutes'),
    (90 * 60, 'an hour', 3600, None),
    (22 * 3600, None, 3600, '{} hours'),
    (36 * 3600, 'a day', 86400, None),
    (26 * 86400, None, 86400, '{} days'),
    (46 * 86400, 'a month', 30 * 86400, None),
    (320 * 86400, None, 30 * 86400, '{} months'),
    (548 * 86400, 'a year', 365 * 86400, None),
]


def from_now(start: datetime, now: Optional[datetime] = None) -> str:
    """
    English relative time, e.g. '5 minutes ago'.

    Start times in the future (clock skew) read as 'a few seconds ago'.
    """
    now = now or datetime.now(timezone.utc)
    seconds = max(0.0, (now - start).total_seconds())

    for bound, singular, unit, plural in _RELATIVE_THRESHOLDS:
        if seconds < bound:
            if singular:
                return f"{singular} ago"
            return f"{plural.format(round(seconds / unit))} ago"

    return f"{round(seconds / (365 * 86400))} years ago"


@dataclass(frozen=True)
class ConnectionRow:
    """Display-ready connection; every field but completed is a string."""
    id: str
    host: str
    network: str
    type: str
    chains: str
    rule: str
    speed: str
    upload: str
    download: str
    time: str
    completed: bool

    def to_dict(self) -> Dict:
        """Convert to dictionary representation."""
        return asdict(self)


class ViewProjector:
    """Maps connection records into display rows without touching the store."""

    def project_one(self, conn: Connection, now: Optional[datetime] = None) -> ConnectionRow:
        return ConnectionRow(
            id=conn.id,
            host=describe_host(conn.metadata),
            network=conn.metadata.network.upper(),
            type=conn.metadata.type,
            chains=CHAIN_SEPARATOR.join(reversed(conn.chains)),
            rule=describe_rule(conn.rule, conn.rule_payload),
            speed=format_speed(conn.speed.upload, conn.speed.download),
            upload=format_traffic(conn.upload),
            download=format_traffic(conn.download),
            time=from_now(conn.start_datetime, now),
            completed=bool(conn.completed)
        )

    def project(self, connections: Iterable[Connection], now: Optional[datetime] = None) -> List[ConnectionRow]:
        """Project connections in the given order."""
        return [self.project_one(conn, now) for conn in connections]


class ConnectionsView:
    """
    Read and mutation surface of the connection table.

    Mutations: feed, toggle_retention, set_sort.
    Reads: current_rows, totals.
    Rows are memoised until the store or the sort changes.
    """

    def __init__(self, store: Optional[ConnectionStore] = None,
                 sort_engine: Optional[SortEngine] = None,
                 projector: Optional[ViewProjector] = None):
        self.store = store if store is not None else ConnectionStore()
        self.sort_engine = sort_engine if sort_engine is not None else SortEngine()
        self.projector = projector if projector is not None else ViewProjector()

        self._cache_key: Optional[Tuple[int, int]] = None
        self._cached_rows: List[ConnectionRow] = []

    # ── mutations ─────────────────────────────
    def feed(self, snapshots: Iterable[Any]) -> None:
        self.store.feed(snapshots)

    def toggle_retention(self) -> bool:
        return self.store.toggle_retention()

    def set_retention(self, retain_closed: bool) -> bool:
        return self.store.set_retention(retain_closed)

    def set_sort(self, column: Union[str, Column]) -> SortState:
        return self.sort_engine.select(column)

    # ── reads ─────────────────────────────────
    @property
    def retain_closed(self) -> bool:
        return self.store.retain_closed

    @property
    def sort_state(self) -> SortState:
        return self.sort_engine.state

    def totals(self) -> Totals:
        return self.store.totals.snapshot()

    def current_rows(self, now: Optional[datetime] = None) -> List[ConnectionRow]:
        """
        Get the ordered, formatted rows.

        Passing an explicit now bypasses the memoised rows.
        """
        key = (self.store.version, self.sort_engine.version)
        if now is None and key == self._cache_key:
            return list(self._cached_rows)

        ordered = base_order(self.store.connections())
        rows = self.sort_engine.order_rows(self.projector.project(ordered, now))

        if now is None:
            self._cache_key = key
            self._cached_rows = rows
        return list(rows)
