"""Deterministic ordering of the connection table."""

import locale
import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence, Union

from .connection_models import Connection
from .traffic import parse_traffic


logger = logging.getLogger(__name__)


class Column(str, Enum):
    """Columns of the connection table."""
    HOST = 'host'
    NETWORK = 'network'
    TYPE = 'type'
    CHAINS = 'chains'
    RULE = 'rule'
    SPEED = 'speed'
    UPLOAD = 'upload'
    DOWNLOAD = 'download'
    TIME = 'time'


SORTABLE_COLUMNS = frozenset({
    Column.HOST, Column.NETWORK, Column.TYPE, Column.RULE, Column.UPLOAD, Column.DOWNLOAD
})

# Compared by decoded byte value instead of display string
BYTE_COLUMNS = frozenset({Column.UPLOAD, Column.DOWNLOAD})


def to_column(value: Union[str, Column, None]) -> Optional[Column]:
    """Resolve a column name, or None if it is not a table column."""
    if value is None or isinstance(value, Column):
        return value
    try:
        return Column(str(value).lower())
    except ValueError:
        return None


@dataclass(frozen=True)
class SortState:
    """Active user sort; column None means no user sort."""
    column: Optional[Column] = None
    ascending: bool = True

    def indicator(self, column: Column) -> str:
        """Header arrow for a column."""
        if self.column != column:
            return ''
        return ' ↑' if self.ascending else ' ↓'


def base_order(connections: Sequence[Connection]) -> List[Connection]:
    """
    Default ordering: active before completed, then ascending start, then id.
    """
    return sorted(
        connections,
        key=lambda c: (c.completed, c.start_datetime, c.id)
    )


class SortEngine:
    """
    Two-layer ordering: fixed base order plus an optional user column sort.

    Selecting the same column cycles ascending -> descending -> none;
    selecting another sortable column starts over ascending.
    """

    def __init__(self, column: Union[str, Column, None] = None, ascending: bool = True):
        self._state = SortState()
        self._version = 0

        initial = to_column(column)
        if initial in SORTABLE_COLUMNS:
            self._state = SortState(initial, ascending)

    @property
    def state(self) -> SortState:
        return self._state

    @property
    def version(self) -> int:
        """Incremented on every effective sort change."""
        return self._version

    def select(self, column: Union[str, Column]) -> SortState:
        """
        Apply a header selection.

        Unknown or non-sortable columns are ignored.

        Returns:
            The resulting sort state
        """
        col = to_column(column)
        if col not in SORTABLE_COLUMNS:
            logger.debug(f"Ignoring sort request for column {column!r}")
            return self._state

        if col == self._state.column:
            if self._state.ascending:
                self._state = SortState(col, False)
            else:
                self._state = SortState()
        else:
            self._state = SortState(col, True)

        self._version += 1
        return self._state

    set_sort = select

    def reset(self) -> None:
        """Clear the user sort."""
        if self._state.column is not None:
            self._state = SortState()
            self._version += 1

    def order_rows(self, rows: Sequence) -> List:
        """
        Apply the user sort to projected rows already in base order.

        The sort is stable, so ties keep their base order.
        """
        column = self._state.column
        if column is None:
            return list(rows)

        if column in BYTE_COLUMNS:
            key = lambda row: parse_traffic(getattr(row, column.value))
        else:
            key = lambda row: locale.strxfrm(getattr(row, column.value))

        return sorted(rows, key=key, reverse=not self._state.ascending)

