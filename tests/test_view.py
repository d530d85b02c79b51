"""Tests for display projection and the connections view."""

from datetime import datetime, timedelta, timezone

from proxywatch.features.connection_models import Connection
from proxywatch.features.view import ConnectionsView, ViewProjector, from_now
from proxywatch.main import render_table

from test_connection_store import make_record, make_snapshot


START = datetime(2024, 1, 1, tzinfo=timezone.utc)


class TestFromNow:
    """Test relative time labels."""

    def test_thresholds(self):
        assert from_now(START, START + timedelta(seconds=10)) == 'a few seconds ago'
        assert from_now(START, START + timedelta(seconds=60)) == 'a minute ago'
        assert from_now(START, START + timedelta(minutes=5)) == '5 minutes ago'
        assert from_now(START, START + timedelta(minutes=70)) == 'an hour ago'
        assert from_now(START, START + timedelta(hours=3)) == '3 hours ago'
        assert from_now(START, START + timedelta(days=4)) == '4 days ago'
        assert from_now(START, START + timedelta(days=3 * 365)) == '3 years ago'

    def test_future_start(self):
        """Test that clock skew does not produce negative labels."""
        assert from_now(START, START - timedelta(minutes=5)) == 'a few seconds ago'


class TestViewProjector:
    """Test row projection."""

    def test_projection(self):
        """Test formatting of every column."""
        conn = Connection.from_dict(make_record(
            'a', upload=2048, download=100,
            chains=['DIRECT', 'Group', 'Select'],
            rule='RuleSet', rulePayload='streaming'
        ))
        row = ViewProjector().project_one(conn, now=START + timedelta(minutes=5))

        assert row.id == 'a'
        assert row.host == 'a.example.com:443'
        assert row.network == 'TCP'
        assert row.type == 'HTTP'
        assert row.chains == 'Select --> Group --> DIRECT'
        assert row.rule == 'RuleSet(streaming)'
        assert row.upload == '2.00 KB'
        assert row.download == '100 B'
        assert row.speed == '-'
        assert row.time == '5 minutes ago'
        assert row.completed is False

    def test_host_falls_back_to_destination_ip(self):
        record = make_record('a')
        record['metadata']['host'] = ''
        row = ViewProjector().project_one(Connection.from_dict(record), now=START)
        assert row.host == '93.184.216.34:443'

    def test_payload_only_for_rule_sets(self):
        conn = Connection.from_dict(make_record('a', rule='DomainSuffix', rulePayload='example.com'))
        assert ViewProjector().project_one(conn, now=START).rule == 'DomainSuffix'

    def test_projection_does_not_mutate(self):
        conn = Connection.from_dict(make_record('a', chains=['A', 'B']))
        ViewProjector().project([conn], now=START)
        assert conn.chains == ['A', 'B']


class TestConnectionsView:
    """Test the read and mutation surface."""

    def test_speed_column(self):
        view = ConnectionsView()
        view.feed([make_snapshot(make_record('a', upload=100, download=100))])
        view.feed([make_snapshot(make_record('a', upload=1124, download=100))])
        assert view.current_rows()[0].speed == '↑ 1.00 KB/s'

    def test_rows_memoised_until_change(self):
        """Test that rows are recomputed only after a mutation."""
        view = ConnectionsView()
        view.feed([make_snapshot(make_record('a'))])

        first = view.current_rows()
        assert view.current_rows() == first
        assert view._cache_key == (view.store.version, view.sort_engine.version)

        view.feed([make_snapshot(make_record('a'), make_record('b'))])
        assert len(view.current_rows()) == 2

        view.set_sort('host')
        assert view._cache_key != (view.store.version, view.sort_engine.version)
        view.current_rows()
        assert view._cache_key == (view.store.version, view.sort_engine.version)

    def test_totals(self):
        view = ConnectionsView()
        view.feed([make_snapshot(upload_total=1024, download_total=2048)])
        assert view.totals() == (1024, 2048)

    def test_retention_surface(self):
        view = ConnectionsView()
        assert view.retain_closed is False
        view.toggle_retention()
        view.feed([make_snapshot(make_record('a'))])
        view.feed([make_snapshot()])
        assert view.current_rows()[0].completed is True

        view.toggle_retention()
        assert view.current_rows() == []


class TestRenderTable:
    """Test terminal rendering."""

    def test_render_plain(self):
        view = ConnectionsView()
        view.feed([make_snapshot(make_record('a', upload=9), upload_total=1024, download_total=0)])
        view.set_sort('upload')

        text = render_table(view.current_rows(), view.totals(), view.sort_state,
                            view.retain_closed, color=False)
        lines = text.splitlines()
        assert 'Connections (1)' in lines[0]
        assert '1.00 KB' in lines[0]
        assert 'Upload ↑' in lines[1]
        assert 'a.example.com:443' in lines[2]

    def test_render_truncates_rows(self):
        view = ConnectionsView()
        view.feed([make_snapshot(make_record('a'), make_record('b'), make_record('c'))])
        text = render_table(view.current_rows(), view.totals(), view.sort_state,
                            view.retain_closed, max_rows=2, color=False)
        assert text.splitlines()[-1] == '... 1 more'
