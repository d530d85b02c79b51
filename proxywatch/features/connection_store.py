"""Connection reconciliation and retention."""

import logging
from dataclasses import replace
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Set

from .connection_models import (
    Connection, MalformedConnectionError, MalformedSnapshotError, Snapshot, Speed,
    coerce_snapshot
)


logger = logging.getLogger(__name__)


class Totals(NamedTuple):
    """Read-only view of the global traffic counters."""
    upload_total: int
    download_total: int


class TrafficTotals:
    """
    Process-wide cumulative totals.

    Values are overwritten from every snapshot, never summed from the
    individual connections.
    """

    def __init__(self):
        self._upload_total = 0
        self._download_total = 0

    def update(self, upload_total: int, download_total: int) -> None:
        """Overwrite both totals."""
        self._upload_total = upload_total
        self._download_total = download_total

    def snapshot(self) -> Totals:
        """Get the current totals."""
        return Totals(self._upload_total, self._download_total)


class ConnectionStore:
    """
    Authoritative keyed set of proxy connections.

    Consumes ordered batches of snapshots, derives per-tick speed from the
    cumulative counters, marks connections completed on their first absence
    and applies the keep-closed retention policy.
    """

    def __init__(self, retain_closed: bool = False, totals: Optional[TrafficTotals] = None):
        """
        Initialize connection store.

        Args:
            retain_closed: Keep completed connections until retention is disabled
            totals: Aggregator receiving the snapshot totals
        """
        self.retain_closed = retain_closed
        self.totals = totals if totals is not None else TrafficTotals()

        self._connections: Dict[str, Connection] = {}
        self._version = 0

        # Statistics
        self._stats = {
            'total_connections_seen': 0,
            'total_connections_closed': 0,
            'total_connections_purged': 0,
            'malformed_records': 0,
            'malformed_snapshots': 0,
            'counter_regressions': 0
        }

    @property
    def version(self) -> int:
        """Incremented on every processed feed or retention change."""
        return self._version

    def feed(self, snapshots: Iterable[Any]) -> None:
        """
        Reconcile a batch of snapshots, strictly in order.

        Args:
            snapshots: Snapshot objects or their wire dicts
        """
        for item in snapshots:
            try:
                snapshot = coerce_snapshot(item)
            except MalformedSnapshotError as e:
                self._stats['malformed_snapshots'] += 1
                logger.warning(f"Dropping malformed snapshot: {e}")
                continue

            self._apply_snapshot(snapshot)
            if not self.retain_closed:
                self._purge_completed()

        self._version += 1

    def _apply_snapshot(self, snapshot: Snapshot) -> None:
        """Apply a single tick to the store."""
        self.totals.update(snapshot.upload_total, snapshot.download_total)

        present: Set[str] = set()
        for record in snapshot.connections:
            try:
                incoming = record.copy() if isinstance(record, Connection) else Connection.from_dict(record)
            except MalformedConnectionError as e:
                self._stats['malformed_records'] += 1
                logger.debug(f"Skipping malformed connection record: {e}")
                # A known id with a bad record is still alive; keep its stored record
                conn_id = record.get('id') if isinstance(record, dict) else None
                if isinstance(conn_id, str) and conn_id:
                    present.add(conn_id)
                continue

            present.add(incoming.id)
            self._upsert(incoming)

        # First absence completes the connection
        for conn_id, conn in self._connections.items():
            if conn_id not in present and not conn.completed:
                conn.completed = True
                conn.speed = Speed()
                self._stats['total_connections_closed'] += 1

    def _upsert(self, incoming: Connection) -> None:
        existing = self._connections.get(incoming.id)

        if existing is None:
            incoming.speed = Speed()
            incoming.completed = False
            self._connections[incoming.id] = incoming
            self._stats['total_connections_seen'] += 1
            return

        if existing.completed:
            # Reappearing completed ids are left untouched
            logger.debug(f"Ignoring reappearance of completed connection {incoming.id}")
            return

        delta_upload = incoming.upload - existing.upload
        delta_download = incoming.download - existing.download
        if delta_upload < 0 or delta_download < 0:
            self._stats['counter_regressions'] += 1
            logger.debug(f"Counter regression on connection {incoming.id}, clamping speed")

        self._connections[incoming.id] = replace(
            incoming,
            start=existing.start,
            start_datetime=existing.start_datetime,
            speed=Speed(upload=max(0, delta_upload), download=max(0, delta_download)),
            completed=False
        )

    def _purge_completed(self) -> int:
        completed = [conn_id for conn_id, conn in self._connections.items() if conn.completed]
        for conn_id in completed:
            del self._connections[conn_id]
        self._stats['total_connections_purged'] += len(completed)
        return len(completed)

    def toggle_retention(self) -> bool:
        """
        Flip the keep-closed flag.

        Turning retention off purges completed connections immediately.

        Returns:
            The new flag value
        """
        return self.set_retention(not self.retain_closed)

    def set_retention(self, retain_closed: bool) -> bool:
        """Set the keep-closed flag, purging completed entries when disabled."""
        self.retain_closed = bool(retain_closed)
        if not self.retain_closed:
            purged = self._purge_completed()
            if purged:
                logger.info(f"Purged {purged} closed connections")
        self._version += 1
        return self.retain_closed

    def connections(self) -> List[Connection]:
        """Get copies of all stored connections."""
        return [conn.copy() for conn in self._connections.values()]

    def get(self, conn_id: str) -> Optional[Connection]:
        """Get a copy of one connection, or None if unknown."""
        conn = self._connections.get(conn_id)
        return conn.copy() if conn else None

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, conn_id: object) -> bool:
        return conn_id in self._connections

    def get_stats(self) -> Dict:
        """Get connection store statistics."""
        stats = self._stats.copy()
        closed = sum(1 for conn in self._connections.values() if conn.completed)
        stats['active_connections_count'] = len(self._connections) - closed
        stats['closed_connections_count'] = closed
        return stats
