"""Connection and snapshot models for proxy connection telemetry."""

import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


# Nanosecond precision timestamps are trimmed to microseconds before parsing
_FRACTION_RE = re.compile(r'(\.\d{6})\d+')

RULE_SET = 'RuleSet'


class MalformedConnectionError(ValueError):
    """Raised when a connection record is missing required fields."""


class MalformedSnapshotError(ValueError):
    """Raised when a snapshot is missing its global totals."""


def parse_start(value: str) -> datetime:
    """
    Parse an ISO-8601 start timestamp.

    Accepts a trailing 'Z' and fractional seconds longer than microseconds.
    Naive timestamps are treated as UTC.
    """
    text = _FRACTION_RE.sub(r'\1', value.strip())
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _require(data: Dict[str, Any], key: str, types, where: str) -> Any:
    if key not in data or data[key] is None:
        raise MalformedConnectionError(f"Missing {where}{key}")
    value = data[key]
    # bool is an int subclass but never a valid counter or port
    if isinstance(value, bool) or not isinstance(value, types):
        raise MalformedConnectionError(f"Invalid type for {where}{key}: {type(value).__name__}")
    return value


@dataclass(frozen=True)
class ConnectionMetadata:
    """Destination and transport details of a proxied flow."""
    network: str  # tcp, udp
    type: str  # HTTP, HTTPS, Socks5, Redir, ...
    destination_port: str
    host: str = ''
    destination_ip: str = ''
    source_ip: str = ''
    source_port: str = ''

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> 'ConnectionMetadata':
        """Create metadata from its wire representation."""
        if not isinstance(data, dict):
            raise MalformedConnectionError("metadata must be an object")

        port = _require(data, 'destinationPort', (str, int), 'metadata.')
        return ConnectionMetadata(
            network=_require(data, 'network', str, 'metadata.'),
            type=_require(data, 'type', str, 'metadata.'),
            destination_port=str(port),
            host=data.get('host') or '',
            destination_ip=data.get('destinationIP') or '',
            source_ip=data.get('sourceIP') or '',
            source_port=str(data.get('sourcePort') or '')
        )

    def to_dict(self) -> Dict:
        """Convert to wire representation."""
        return {
            'network': self.network,
            'type': self.type,
            'host': self.host,
            'destinationIP': self.destination_ip,
            'destinationPort': self.destination_port,
            'sourceIP': self.source_ip,
            'sourcePort': self.source_port
        }


@dataclass(frozen=True)
class Speed:
    """Instantaneous rate between the two most recent snapshots."""
    upload: int = 0
    download: int = 0


@dataclass
class Connection:
    """
    One proxy-routed network flow.

    Counters are cumulative as of the latest snapshot. Speed is never read
    from the wire; the store derives it from consecutive counters.
    """
    id: str
    metadata: ConnectionMetadata
    start: str  # ISO-8601 as received
    start_datetime: datetime
    upload: int = 0
    download: int = 0
    chains: List[str] = field(default_factory=list)
    rule: str = ''
    rule_payload: str = ''
    speed: Speed = field(default_factory=Speed)
    completed: bool = False

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> 'Connection':
        """
        Create a Connection from a wire record.

        Raises:
            MalformedConnectionError: If a required field is missing or invalid
        """
        if not isinstance(data, dict):
            raise MalformedConnectionError("connection record must be an object")

        conn_id = _require(data, 'id', str, '')
        if not conn_id:
            raise MalformedConnectionError("Empty connection id")

        start = _require(data, 'start', str, '')
        try:
            start_datetime = parse_start(start)
        except ValueError as e:
            raise MalformedConnectionError(f"Invalid start timestamp {start!r}: {e}") from e

        chains = data.get('chains') or []
        if not isinstance(chains, list):
            raise MalformedConnectionError("chains must be a list")

        return Connection(
            id=conn_id,
            metadata=ConnectionMetadata.from_dict(data.get('metadata')),
            start=start,
            start_datetime=start_datetime,
            upload=_require(data, 'upload', (int, float), ''),
            download=_require(data, 'download', (int, float), ''),
            chains=[str(c) for c in chains],
            rule=data.get('rule') or '',
            rule_payload=data.get('rulePayload') or ''
        )

    def copy(self) -> 'Connection':
        """Return a detached copy safe to hand to readers."""
        return replace(self, chains=list(self.chains))

    def to_dict(self) -> Dict:
        """Convert to dictionary representation."""
        return {
            'id': self.id,
            'metadata': self.metadata.to_dict(),
            'chains': list(self.chains),
            'rule': self.rule,
            'rulePayload': self.rule_payload,
            'start': self.start,
            'upload': self.upload,
            'download': self.download,
            'speed': {'upload': self.speed.upload, 'download': self.speed.download},
            'completed': self.completed
        }


@dataclass
class Snapshot:
    """
    One telemetry tick.

    `connections` holds the raw records so that a malformed record can be
    dropped individually during reconciliation.
    """
    upload_total: int
    download_total: int
    connections: List[Dict[str, Any]] = field(default_factory=list)

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> 'Snapshot':
        """
        Create a Snapshot from its wire representation.

        Raises:
            MalformedSnapshotError: If totals are missing or invalid
        """
        if not isinstance(data, dict):
            raise MalformedSnapshotError("snapshot must be an object")

        totals = []
        for key in ('uploadTotal', 'downloadTotal'):
            value = data.get(key)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise MalformedSnapshotError(f"Missing or invalid {key}")
            totals.append(value)

        connections = data.get('connections') or []
        if not isinstance(connections, list):
            raise MalformedSnapshotError("connections must be a list")

        return Snapshot(
            upload_total=totals[0],
            download_total=totals[1],
            connections=connections
        )

    def to_dict(self) -> Dict:
        """Convert to wire representation."""
        return {
            'uploadTotal': self.upload_total,
            'downloadTotal': self.download_total,
            'connections': self.connections
        }


def coerce_snapshot(item: Any) -> Snapshot:
    """Accept either a Snapshot or its wire dict."""
    if isinstance(item, Snapshot):
        return item
    return Snapshot.from_dict(item)


def describe_host(metadata: ConnectionMetadata) -> str:
    """Host (or destination IP) with destination port."""
    return f"{metadata.host or metadata.destination_ip}:{metadata.destination_port}"


def describe_rule(rule: str, rule_payload: Optional[str]) -> str:
    """Rule label, with the payload only for rule sets."""
    if rule == RULE_SET:
        return f"{rule}({rule_payload})"
    return rule
