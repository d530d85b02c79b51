"""Tests for connection reconciliation, speed and retention."""

import pytest

from proxywatch.features.connection_models import (
    Connection, MalformedConnectionError, MalformedSnapshotError, Snapshot
)
from proxywatch.features.connection_store import ConnectionStore, TrafficTotals


def make_record(conn_id, upload=0, download=0, start='2024-01-01T00:00:00Z', **overrides):
    """Build a wire connection record."""
    record = {
        'id': conn_id,
        'metadata': {
            'network': 'tcp',
            'type': 'HTTP',
            'host': f'{conn_id}.example.com',
            'destinationIP': '93.184.216.34',
            'destinationPort': '443',
            'sourceIP': '127.0.0.1',
            'sourcePort': '52000'
        },
        'chains': ['Proxy', 'Select'],
        'rule': 'Match',
        'rulePayload': '',
        'start': start,
        'upload': upload,
        'download': download
    }
    record.update(overrides)
    return record


def make_snapshot(*records, upload_total=0, download_total=0):
    """Build a wire snapshot."""
    return {
        'uploadTotal': upload_total,
        'downloadTotal': download_total,
        'connections': list(records)
    }


class TestConnectionModels:
    """Test wire parsing of connections and snapshots."""

    def test_from_dict(self):
        """Test that wire keys map onto the model."""
        conn = Connection.from_dict(make_record('a', upload=10, download=20, rule='RuleSet', rulePayload='ads'))
        assert conn.id == 'a'
        assert conn.metadata.destination_ip == '93.184.216.34'
        assert conn.metadata.destination_port == '443'
        assert conn.rule_payload == 'ads'
        assert conn.upload == 10
        assert conn.download == 20
        assert conn.completed is False

    def test_nanosecond_start(self):
        """Test that nanosecond timestamps with offsets parse."""
        conn = Connection.from_dict(make_record('a', start='2024-01-01T08:00:00.123456789+08:00'))
        assert conn.start_datetime.microsecond == 123456
        assert conn.start_datetime.utcoffset().total_seconds() == 8 * 3600

    def test_missing_fields_rejected(self):
        """Test that required fields are enforced."""
        record = make_record('a')
        del record['upload']
        with pytest.raises(MalformedConnectionError):
            Connection.from_dict(record)

        with pytest.raises(MalformedConnectionError):
            Connection.from_dict(make_record('a', metadata={'network': 'tcp'}))

        with pytest.raises(MalformedConnectionError):
            Connection.from_dict(make_record('a', start='not a date'))

        with pytest.raises(MalformedConnectionError):
            Connection.from_dict(make_record('a', download='12'))

    def test_snapshot_requires_totals(self):
        """Test that snapshots without totals are rejected."""
        with pytest.raises(MalformedSnapshotError):
            Snapshot.from_dict({'connections': []})

        snapshot = Snapshot.from_dict({'uploadTotal': 1, 'downloadTotal': 2, 'connections': None})
        assert snapshot.connections == []


class TestSpeed:
    """Test speed derived from cumulative counters."""

    def test_first_appearance_zero_speed(self):
        """Test that a new connection starts with zero speed."""
        store = ConnectionStore()
        store.feed([make_snapshot(make_record('a', upload=500, download=900))])

        conn = store.get('a')
        assert conn.speed.upload == 0
        assert conn.speed.download == 0

    def test_speed_is_delta_between_ticks(self):
        """Test that speed equals the counter delta of consecutive ticks."""
        store = ConnectionStore()
        counters = [(100, 1000), (300, 1500), (300, 4000)]

        previous = None
        for upload, download in counters:
            store.feed([make_snapshot(make_record('a', upload=upload, download=download))])
            conn = store.get('a')
            if previous is None:
                assert (conn.speed.upload, conn.speed.download) == (0, 0)
            else:
                assert conn.speed.upload == upload - previous[0]
                assert conn.speed.download == download - previous[1]
            previous = (upload, download)

    def test_batch_processed_in_order(self):
        """Test that snapshots within one batch are applied sequentially."""
        store = ConnectionStore()
        store.feed([
            make_snapshot(make_record('a', upload=100)),
            make_snapshot(make_record('a', upload=250)),
        ])
        assert store.get('a').speed.upload == 150
        assert store.get('a').upload == 250

    def test_counter_regression_clamped(self):
        """Test that a decreasing counter yields zero speed, not completion."""
        store = ConnectionStore()
        store.feed([make_snapshot(make_record('a', upload=1000, download=1000))])
        store.feed([make_snapshot(make_record('a', upload=400, download=1200))])

        conn = store.get('a')
        assert conn.speed.upload == 0
        assert conn.speed.download == 200
        assert conn.upload == 400
        assert conn.completed is False
        assert store.get_stats()['counter_regressions'] == 1

    def test_start_is_immutable(self):
        """Test that later ticks do not change the start timestamp."""
        store = ConnectionStore()
        store.feed([make_snapshot(make_record('a', start='2024-01-01T00:00:00Z'))])
        store.feed([make_snapshot(make_record('a', start='2024-06-01T00:00:00Z'))])
        assert store.get('a').start == '2024-01-01T00:00:00Z'


class TestCompletion:
    """Test completion and retention of closed connections."""

    def test_absent_id_completed_with_retention(self):
        """Test that the first absence marks a connection completed."""
        store = ConnectionStore(retain_closed=True)
        store.feed([make_snapshot(make_record('a', upload=10), make_record('b'))])
        store.feed([make_snapshot(make_record('a', upload=50), make_record('b'))])
        store.feed([make_snapshot(make_record('b'))])

        conn = store.get('a')
        assert conn.completed is True
        assert conn.speed.upload == 0
        assert conn.speed.download == 0
        assert store.get('b').completed is False

    def test_completed_stays_completed(self):
        """Test that completed never reverts, even when the id reappears."""
        store = ConnectionStore(retain_closed=True)
        store.feed([make_snapshot(make_record('a', upload=10))])
        store.feed([make_snapshot()])
        store.feed([make_snapshot(make_record('a', upload=999))])
        store.feed([make_snapshot()])

        conn = store.get('a')
        assert conn.completed is True
        assert conn.upload == 10

    def test_no_retention_removes_completed(self):
        """Test that completed connections do not outlive the feed that completed them."""
        store = ConnectionStore(retain_closed=False)
        store.feed([make_snapshot(make_record('a'), make_record('b'))])
        store.feed([make_snapshot(make_record('b'))])

        assert 'a' not in store
        assert 'b' in store
        assert all(not c.completed for c in store.connections())

    def test_toggle_off_purges_immediately(self):
        """Test that disabling retention purges without waiting for a feed."""
        store = ConnectionStore(retain_closed=True)
        store.feed([make_snapshot(make_record('a'), make_record('b'))])
        store.feed([make_snapshot(make_record('b'))])
        assert store.get('a').completed is True

        version = store.version
        assert store.toggle_retention() is False
        assert 'a' not in store
        assert 'b' in store
        assert store.version == version + 1

    def test_toggle_on_keeps_future_closures(self):
        """Test that enabling retention keeps connections closed afterwards."""
        store = ConnectionStore(retain_closed=False)
        store.feed([make_snapshot(make_record('a'))])
        assert store.toggle_retention() is True

        store.feed([make_snapshot()])
        assert store.get('a').completed is True

    def test_empty_connections_completes_everything(self):
        """Test a snapshot with null connections."""
        store = ConnectionStore(retain_closed=True)
        store.feed([make_snapshot(make_record('a'))])
        store.feed([{'uploadTotal': 0, 'downloadTotal': 0, 'connections': None}])
        assert store.get('a').completed is True


class TestPartialFailure:
    """Test tolerance of malformed input."""

    def test_malformed_record_skipped(self):
        """Test that a bad record does not affect the rest of the tick."""
        store = ConnectionStore()
        bad = make_record('bad')
        del bad['metadata']
        store.feed([make_snapshot(make_record('a'), bad, 'garbage', make_record('b'))])

        assert 'a' in store
        assert 'b' in store
        assert 'bad' not in store
        assert store.get_stats()['malformed_records'] == 2

    def test_malformed_snapshot_skipped(self):
        """Test that other snapshots of the batch still apply."""
        store = ConnectionStore()
        store.feed([
            {'connections': [make_record('x')]},
            make_snapshot(make_record('a'), upload_total=7, download_total=8),
        ])
        assert 'x' not in store
        assert 'a' in store
        assert store.totals.snapshot() == (7, 8)
        assert store.get_stats()['malformed_snapshots'] == 1

    def create_broken_record(self, conn_id):
        """Create a record for a known id that fails to parse."""
        record = make_record(conn_id, upload=99)
        del record['metadata']
        return record

    def test_malformed_record_keeps_known_connection_open(self):
        """Test that a bad record for a live id neither closes nor updates it."""
        store = ConnectionStore(retain_closed=True)
        store.feed([make_snapshot(make_record('a', upload=10))])
        store.feed([make_snapshot(self.create_broken_record('a'))])

        conn = store.get('a')
        assert conn.completed is False
        assert conn.upload == 10
        assert store.get_stats()['total_connections_closed'] == 0

        store.feed([make_snapshot(make_record('a', upload=30))])
        conn = store.get('a')
        assert conn.completed is False
        assert conn.upload == 30
        assert conn.speed.upload == 20

    def test_malformed_record_keeps_speed_without_retention(self):
        """Test that a bad record for a live id does not purge and reset it."""
        store = ConnectionStore(retain_closed=False)
        store.feed([make_snapshot(make_record('a', upload=10))])
        store.feed([make_snapshot(self.create_broken_record('a'))])
        assert 'a' in store

        store.feed([make_snapshot(make_record('a', upload=30))])
        assert store.get('a').speed.upload == 20
        stats = store.get_stats()
        assert stats['total_connections_seen'] == 1
        assert stats['total_connections_purged'] == 0

    def test_malformed_record_for_unknown_id_not_added(self):
        """Test that a bad record for a new id does not create it."""
        store = ConnectionStore(retain_closed=True)
        store.feed([make_snapshot(self.create_broken_record('new'))])
        assert 'new' not in store
        assert len(store) == 0

    def test_empty_batch(self):
        """Test that an empty batch is harmless."""
        store = ConnectionStore()
        store.feed([])
        assert len(store) == 0


class TestTotals:
    """Test global totals sourced from snapshots."""

    def test_totals_overwritten(self):
        """Test that totals come from the latest snapshot, not a sum."""
        totals = TrafficTotals()
        store = ConnectionStore(totals=totals)
        store.feed([
            make_snapshot(make_record('a', upload=10), upload_total=100, download_total=200),
            make_snapshot(make_record('a', upload=20), upload_total=150, download_total=260),
        ])
        assert totals.snapshot().upload_total == 150
        assert totals.snapshot().download_total == 260

    def test_initial_totals(self):
        assert TrafficTotals().snapshot() == (0, 0)


class TestReadIsolation:
    """Test that readers cannot mutate the store."""

    def test_connections_are_copies(self):
        store = ConnectionStore()
        store.feed([make_snapshot(make_record('a', upload=10))])

        copy = store.connections()[0]
        copy.upload = 0
        copy.completed = True
        copy.chains.append('Injected')

        conn = store.get('a')
        assert conn.upload == 10
        assert conn.completed is False
        assert conn.chains == ['Proxy', 'Select']

    def test_stats(self):
        store = ConnectionStore(retain_closed=True)
        store.feed([make_snapshot(make_record('a'), make_record('b'))])
        store.feed([make_snapshot(make_record('b'))])

        stats = store.get_stats()
        assert stats['total_connections_seen'] == 2
        assert stats['total_connections_closed'] == 1
        assert stats['active_connections_count'] == 1
        assert stats['closed_connections_count'] == 1
