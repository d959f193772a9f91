"""Example client that posts a page-view beacon batch and reads active users."""
from __future__ import annotations

import argparse
import os
import uuid
from datetime import datetime, timezone
from typing import Dict, List

import requests


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Send sample page-view beacons")
    parser.add_argument(
        "--api-url",
        default=os.environ.get("ANALYTICS_API_URL", "http://127.0.0.1:8000"),
        help="Analytics API base URL (default: %(default)s or ANALYTICS_API_URL)",
    )
    parser.add_argument(
        "--tracking-id",
        default=os.environ.get("ANALYTICS_TRACKING_ID"),
        help="Tracking id of the website the beacons belong to (ANALYTICS_TRACKING_ID)",
    )
    parser.add_argument("--website-id", default=os.environ.get("ANALYTICS_WEBSITE_ID"))
    parser.add_argument(
        "--token",
        default=os.environ.get("ANALYTICS_JWT_TOKEN"),
        help="Bearer token for the active-users query (ANALYTICS_JWT_TOKEN)",
    )
    args = parser.parse_args()
    if not args.tracking_id:
        parser.error("A tracking id must be supplied via --tracking-id or ANALYTICS_TRACKING_ID")
    return args


def build_beacon_batch(tracking_id: str, session_id: str, paths: List[str]) -> List[Dict]:
    timestamp = datetime.now(timezone.utc).isoformat()
    return [
        {
            "tracking_id": tracking_id,
            "session_id": session_id,
            "event_type": "page_view",
            "event_payload": {
                "page": {"url": f"https://example.com{path}", "pathname": path, "title": path.strip("/") or "Home"},
                "device": {
                    "user_agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_0)",
                    "device_type": "desktop",
                    "os_name": "macOS",
                    "browser_name": "Chrome",
                },
                "referrer": "https://news.example.org/",
                "timestamp": timestamp,
            },
        }
        for path in paths
    ]


def main() -> None:
    args = parse_args()
    batch = build_beacon_batch(args.tracking_id, uuid.uuid4().hex, ["/", "/pricing", "/docs"])
    response = requests.post(f"{args.api_url}/api/track", json=batch, timeout=10)
    response.raise_for_status()
    print("Beacons stored:", response.json())

    if args.website_id and args.token:
        active = requests.get(
            f"{args.api_url}/api/analytics/active",
            params={"websiteId": args.website_id, "minutes": 5},
            headers={"Authorization": f"Bearer {args.token}"},
            timeout=10,
        )
        active.raise_for_status()
        print("Active users:", active.json())


if __name__ == "__main__":
    main()
