"""
Flask-based dashboard for proxywatch.

Serves the live connection table over HTTP. A background thread runs the
stream subscription; requests read the view between feeds under a shared
lock.

JSON endpoints:
/api/connections - Ordered, formatted rows plus sort/retention state.
/api/totals - Global upload/download totals.
/api/status - Stream state and store statistics.
/api/sort/<column> - Header selection (POST).
/api/retention/toggle - Keep-closed toggle (POST).
/api/connections/close - Terminate all connections (POST).

The root route / serves a minimal HTML table polling the API.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Dict, Optional

from flask import Flask, jsonify, render_template_string

# Local imports
from ..api.controller import ClashController
from ..features.connection_store import ConnectionStore
from ..features.sorting import SortEngine
from ..features.traffic import format_traffic
from ..features.view import ConnectionsView
from ..main import COLUMN_WIDTHS
from ..stream.feed import ConnectionFeed
from ..stream.reader import StreamAcquisitionError, open_stream_reader


logger = logging.getLogger(__name__)


INDEX_HTML = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <title>proxywatch</title>
    <style>
        body { font-family: monospace; background: #111; color: #ddd; margin: 1em; }
        table { border-collapse: collapse; width: 100%; }
        th, td { padding: 2px 8px; text-align: left; white-space: nowrap; }
        th { cursor: pointer; border-bottom: 1px solid #555; }
        tr.completed td { color: #666; }
        button { margin-left: 1em; }
    </style>
</head>
<body>
    <div>
        <span id="totals"></span>
        <label><input type="checkbox" id="keep-closed"> Keep closed</label>
        <button id="close-all">Close all</button>
        <span id="status"></span>
    </div>
    <table>
        <thead><tr id="header"></tr></thead>
        <tbody id="rows"></tbody>
    </table>
    <script>
        const columns = {{ columns|tojson }};

        async function post(url) {
            const res = await fetch(url, { method: 'POST' });
            return res.json();
        }

        async function refresh() {
            const data = await (await fetch('/api/connections')).json();
            const totals = await (await fetch('/api/totals')).json();
            document.getElementById('totals').textContent =
                `Total: ↑ ${totals.upload} ↓ ${totals.download}`;
            document.getElementById('keep-closed').checked = data.retain_closed;

            const header = document.getElementById('header');
            header.innerHTML = '';
            for (const column of columns) {
                const th = document.createElement('th');
                let label = column;
                if (data.sort.column === column) label += data.sort.ascending ? ' ↑' : ' ↓';
                th.textContent = label;
                th.onclick = async () => { await post(`/api/sort/${column}`); refresh(); };
                header.appendChild(th);
            }

            const body = document.getElementById('rows');
            body.innerHTML = '';
            for (const row of data.rows) {
                const tr = document.createElement('tr');
                if (row.completed) tr.className = 'completed';
                for (const column of columns) {
                    const td = document.createElement('td');
                    td.textContent = row[column];
                    tr.appendChild(td);
                }
                body.appendChild(tr);
            }
        }

        document.getElementById('keep-closed').onchange = async () => {
            await post('/api/retention/toggle');
            refresh();
        };
        document.getElementById('close-all').onclick = async () => {
            if (!confirm('Close all connections?')) return;
            const result = await post('/api/connections/close');
            document.getElementById('status').textContent = result.ok ? '' : `Close all failed: ${result.error}`;
        };

        refresh();
        setInterval(refresh, 1000);
    </script>
</body>
</html>
"""


def create_app(view: ConnectionsView, controller: Optional[ClashController] = None,
               lock: Optional[threading.Lock] = None,
               status: Optional[Dict[str, Any]] = None) -> Flask:
    """
    Create and configure the Flask dashboard application.

    Args:
        view: Connection view shared with the feed thread
        controller: Client used for the close-all command
        lock: Lock held by the feed while a batch is applied
        status: Mutable feed status shared with the feed thread
    """
    lock = lock or threading.Lock()
    status = status if status is not None else {'state': 'idle', 'error': None}

    app = Flask(__name__)

    @app.route('/')
    def index():
        """Serve the connection table page."""
        return render_template_string(INDEX_HTML, columns=[column.value for column, _ in COLUMN_WIDTHS])

    @app.route('/api/connections')
    def api_connections() -> Any:
        """Return the ordered rows."""
        with lock:
            rows = view.current_rows()
            sort_state = view.sort_state
            retain_closed = view.retain_closed
        return jsonify({
            'rows': [row.to_dict() for row in rows],
            'sort': {
                'column': sort_state.column.value if sort_state.column else None,
                'ascending': sort_state.ascending
            },
            'retain_closed': retain_closed
        })

    @app.route('/api/totals')
    def api_totals() -> Any:
        """Return global totals, raw and formatted."""
        with lock:
            totals = view.totals()
        return jsonify({
            'upload_total': totals.upload_total,
            'download_total': totals.download_total,
            'upload': format_traffic(totals.upload_total),
            'download': format_traffic(totals.download_total)
        })

    @app.route('/api/status')
    def api_status() -> Any:
        """Return stream state and store statistics."""
        with lock:
            stats = view.store.get_stats()
        return jsonify({
            'state': status.get('state'),
            'error': status.get('error'),
            'stats': stats
        })

    @app.route('/api/sort/<column>', methods=['POST'])
    def api_sort(column: str) -> Any:
        """Apply a header selection."""
        with lock:
            state = view.set_sort(column)
        return jsonify({
            'column': state.column.value if state.column else None,
            'ascending': state.ascending
        })

    @app.route('/api/retention/toggle', methods=['POST'])
    def api_toggle_retention() -> Any:
        """Flip the keep-closed flag."""
        with lock:
            retain_closed = view.toggle_retention()
        return jsonify({'retain_closed': retain_closed})

    @app.route('/api/connections/close', methods=['POST'])
    def api_close_all() -> Any:
        """Request termination of every connection."""
        if controller is None:
            return jsonify({'requested': False, 'ok': False, 'error': 'No controller configured'}), 503
        result = controller.close_all_connections()
        return jsonify({'requested': result.requested, 'ok': result.ok, 'error': result.error}), (200 if result.ok else 502)

    return app


def _run_feed(config, view: ConnectionsView, lock: threading.Lock, status: Dict[str, Any]) -> None:
    """Feed thread body: subscribe and pump until the stream ends."""

    async def pump() -> None:
        feed = ConnectionFeed(view, lambda: open_stream_reader(config), lock=lock)
        try:
            async with feed:
                status['state'] = feed.state
                await feed.run()
        except StreamAcquisitionError as e:
            logger.error(f"Dashboard feed could not start: {e}")
        status['state'] = feed.state
        status['error'] = str(feed.error) if feed.error else None

    asyncio.run(pump())


def run_dashboard(config, host: str = '127.0.0.1', port: int = 5000, debug: bool = False) -> None:
    """Run the dashboard server."""
    view = ConnectionsView(
        store=ConnectionStore(retain_closed=config.keep_closed),
        sort_engine=SortEngine(config.default_sort)
    )
    controller = ClashController(
        base_url=config.controller_base_url,
        secret=config.controller_secret,
        timeout_seconds=config.controller_timeout_seconds
    )
    lock = threading.Lock()
    status: Dict[str, Any] = {'state': 'idle', 'error': None}

    feed_thread = threading.Thread(target=_run_feed, args=(config, view, lock, status), daemon=True)
    feed_thread.start()

    app = create_app(view, controller=controller, lock=lock, status=status)
    print(f"proxywatch dashboard on http://{host}:{port}")
    # The reloader would start a second feed thread
    app.run(host=host, port=port, debug=debug, use_reloader=False)
