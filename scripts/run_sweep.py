#!/usr/bin/env python3
"""
Script to run a Circa sweep by hand, either against the database directly
or through a running server with --url.
"""
import argparse
import json
import sys
from pathlib import Path

import httpx

sys.path.insert(0, str(Path(__file__).parent.parent))

from circa.configs import CIRCA_HTTP_HEADERS
from circa.core import db
from circa.core.api import CirculationAPI

SWEEPS = ('overdue', 'reminders')


def run_local(kind):
    db.init()
    api = CirculationAPI()
    try:
        if kind == 'overdue':
            report = api.run_overdue_sweep(manual=True)
        else:
            report = api.run_reminder_sweep(manual=True)
        return report.model_dump(mode='json')
    finally:
        api.release()


def run_remote(kind, url, timeout=120):
    with httpx.Client() as client:
        response = client.post(
            f"{url.rstrip('/')}/v1/api/sweeps/{kind}",
            headers=CIRCA_HTTP_HEADERS,
            timeout=timeout
        )
        response.raise_for_status()
        return response.json()


def main():
    parser = argparse.ArgumentParser(
        description="Run a Circa overdue or reminder sweep now"
    )
    parser.add_argument(
        "kind",
        choices=SWEEPS,
        help="Which sweep to run"
    )
    parser.add_argument(
        "--url",
        type=str,
        default=None,
        help="Base url of a running Circa server (e.g. http://localhost:8080)"
    )

    args = parser.parse_args()

    try:
        report = run_remote(args.kind, args.url) if args.url else run_local(args.kind)
    except httpx.HTTPError as e:
        print(f"Error: sweep request failed: {e}")
        sys.exit(1)

    print(json.dumps(report, indent=2))
    if report.get('skipped'):
        print("Sweep skipped: another run was still in progress.")
    sys.exit(1 if report.get('failures') else 0)


if __name__ == "__main__":
    main()
