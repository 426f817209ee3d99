"""
Loki Push Sender
================

Purpose
 - Send test push payloads (snappy-compressed protobuf PushRequest, exactly
   what Promtail sends to Loki) to the notifier's push endpoint
 - Validate routing and Telegram formatting end to end without a log shipper

Usage
 - Single line from the command line:
     python scripts/loki_push_sender.py http://localhost:7777/loki/api/v1/push \
       --labels '{container_name="auth-service", level="error"}' \
       --line 'fatal: disk full'

 - Streams from a file:
     python scripts/loki_push_sender.py http://localhost:7777/loki/api/v1/push \
       --file demo_streams.json

 - Dry run (print the streams and payload size, don't send):
     python scripts/loki_push_sender.py http://localhost:7777/loki/api/v1/push --file demo_streams.json --dry-run

Input File Schema
 - JSON array of streams:
     [{"labels": "{container_name=\"web\", host=\"node-1\"}", "lines": ["error: boom", "all good"]}]
"""

import argparse
import json
import sys
import time
from typing import Any, List

import requests

from loki_notifier.decoder import encode_push_request
from loki_notifier.models import Entry, Stream


def get_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description=(
            "Loki Push Sender: build a Loki push payload and POST it to the notifier.\n"
            "Streams come from --file (JSON array) or from --labels/--line."
        )
    )
    parser.add_argument("url", help="Push endpoint URL, e.g. http://localhost:7777/loki/api/v1/push")
    parser.add_argument("--file", help="Path to JSON file containing streams")
    parser.add_argument("--labels", default='{container_name="loki-push-sender"}',
                        help="Label string for --line entries")
    parser.add_argument("--line", action="append", default=[], help="Log line to send (repeatable)")
    parser.add_argument("--timeout", type=float, default=10.0, help="HTTP timeout in seconds (default: 10)")
    parser.add_argument("--insecure", action="store_true", help="Skip TLS certificate verification")
    parser.add_argument("--dry-run", action="store_true", help="Print streams instead of sending")
    return parser.parse_args(argv)


def _entries(lines: List[str]) -> tuple:
    now_ns = time.time_ns()
    return tuple(Entry(line=line, timestamp_ns=now_ns + i) for i, line in enumerate(lines))


def load_streams(path: str) -> List[Stream]:
    with open(path, "r", encoding="utf-8") as f:
        data: Any = json.load(f)

    if not isinstance(data, list):
        raise ValueError("stream file must contain a JSON array")

    streams = []
    for item in data:
        if not isinstance(item, dict) or "labels" not in item:
            raise ValueError(f"invalid stream object: {item!r}")
        streams.append(Stream(labels=str(item["labels"]), entries=_entries([str(x) for x in item.get("lines", [])])))
    return streams


def main(argv=None) -> int:
    args = get_args(argv)

    if args.file:
        streams = load_streams(args.file)
    elif args.line:
        streams = [Stream(labels=args.labels, entries=_entries(args.line))]
    else:
        print("Nothing to send: use --file or --line", file=sys.stderr)
        return 2

    body = encode_push_request(streams)

    if args.dry_run:
        for stream in streams:
            print(f"[DRY-RUN] {stream.labels}")
            for entry in stream.entries:
                print(f"    {entry.timestamp_ns} {entry.line}")
        print(f"[DRY-RUN] payload: {len(body)} bytes (snappy)")
        return 0

    try:
        response = requests.post(
            args.url,
            data=body,
            headers={"Content-Type": "application/x-protobuf"},
            timeout=args.timeout,
            verify=not args.insecure,
        )
    except requests.exceptions.RequestException as e:
        print(f"Request failed: {e}", file=sys.stderr)
        return 1

    print(f"{response.status_code} {response.text.strip()}")
    return 0 if response.ok else 1


if __name__ == "__main__":
    sys.exit(main())
