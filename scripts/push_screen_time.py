"""Push one day's Mac screen time to the habitlog server.

Reads app-usage intervals from knowledgeC.db, sums the minutes that fall on
the given local day and POSTs them to /screen-time.
"""

import argparse
import json
import logging
import os
import sys
from datetime import datetime, timedelta
from pathlib import Path

import requests
from dotenv import load_dotenv

from habitlog.device_usage import (
    DEFAULT_DB_PATH,
    UsageReadError,
    aggregate_by_stream,
    local_day_bounds,
    parse_stream_names,
    read_usage_rows,
    total_minutes,
)

log = logging.getLogger("push_screen_time")
ROOT = Path(__file__).resolve().parent.parent


def _yesterday() -> str:
    return (datetime.now() - timedelta(days=1)).date().isoformat()


def build_payload(day: str, db_path: Path, streams: list[str], source: str) -> dict:
    start, end = local_day_bounds(day)
    rows = read_usage_rows(db_path, start, end, streams)
    for stream, seconds in sorted(aggregate_by_stream(rows, start, end).items(), key=lambda x: -x[1]):
        log.info("  %s: %d min", stream, round(seconds / 60))
    return {"date": day, "total_minutes": total_minutes(rows, start, end), "source": source}


def main() -> None:
    load_dotenv(dotenv_path=ROOT / ".env", override=False)
    parser = argparse.ArgumentParser(description="Push daily screen time from knowledgeC.db")
    parser.add_argument("--date", default=os.getenv("SCREEN_TIME_DATE") or _yesterday())
    parser.add_argument("--db", default=os.getenv("KNOWLEDGE_DB_PATH") or str(DEFAULT_DB_PATH))
    parser.add_argument("--streams", default=os.getenv("SCREEN_TIME_STREAMS", ""))
    parser.add_argument("--source", default=os.getenv("SCREEN_TIME_SOURCE", "mac-db"))
    parser.add_argument("--base-url", default=os.getenv("HABITLOG_BASE_URL", "http://127.0.0.1:3000"))
    parser.add_argument("--key", default=os.getenv("SCREEN_TIME_KEY", ""))
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(message)s")

    try:
        payload = build_payload(args.date, Path(args.db), parse_stream_names(args.streams), args.source)
    except UsageReadError as exc:
        log.error("%s", exc)
        sys.exit(1)

    if args.dry_run:
        print(json.dumps(payload, indent=2))
        return
    if not args.key:
        log.error("SCREEN_TIME_KEY (or --key) is required")
        sys.exit(1)

    url = f"{args.base_url.rstrip('/')}/screen-time"
    resp = requests.post(url, params={"key": args.key}, json=payload, timeout=20)
    if not resp.ok:
        log.error("POST failed (%s): %s", resp.status_code, resp.text)
        sys.exit(1)
    print(resp.status_code, resp.text)


if __name__ == "__main__":
    main()
