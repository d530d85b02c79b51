#!/usr/bin/env python3
"""
Record a live connection stream to JSONL for later replay.

Each snapshot received from the /connections websocket is written as one
line, so the file can be fed back with `proxywatch replay --file ...` or
the jsonl stream source.

Prints START/END timestamps (local timezone) and the number of snapshots.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from datetime import datetime
from pathlib import Path

from proxywatch.stream.reader import DATA_EVENT, StreamAcquisitionError, WebSocketStreamReader


async def record(url: str, token: str | None, out: Path, duration: float) -> int:
    out.parent.mkdir(parents=True, exist_ok=True)
    count = 0

    reader = await WebSocketStreamReader(url, token=token).connect()
    try:
        with open(out, "w", encoding="utf-8") as f:
            def write_batch(batch):
                nonlocal count
                for snapshot in batch:
                    f.write(json.dumps(snapshot) + "\n")
                    count += 1

            subscription = reader.subscribe(DATA_EVENT, write_batch)
            try:
                await asyncio.wait_for(reader.run(), timeout=duration)
            except asyncio.TimeoutError:
                pass
            finally:
                subscription.dispose()
    finally:
        await reader.destroy()

    return count


def main() -> int:
    ap = argparse.ArgumentParser(description="Record a connection stream to JSONL")
    ap.add_argument("--url", default="ws://127.0.0.1:9090/connections", help="Websocket URL")
    ap.add_argument("--token", help="API secret")
    ap.add_argument("--out", default="data/connections.jsonl", help="Output JSONL path")
    ap.add_argument("--duration", type=float, default=30.0, help="Duration in seconds")
    args = ap.parse_args()

    start_ts = datetime.now().astimezone()
    print(f"[record_stream] START {start_ts.isoformat()}")

    try:
        count = asyncio.run(record(args.url, args.token, Path(args.out), args.duration))
    except StreamAcquisitionError as e:
        print(f"[record_stream] ERROR {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\n[record_stream] interrupted")
        return 0

    end_ts = datetime.now().astimezone()
    print(f"[record_stream] END   {end_ts.isoformat()}")
    print(f"[record_stream] {count} snapshots -> {args.out}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
