#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import sys
import urllib.error
import urllib.request
from pathlib import Path
from typing import Any

JOB_NAMES = ("deadline-alerts", "recommendation-reminders", "goal-completion", "at-risk")


def _load_dotenv(path: Path) -> None:
    if not path.is_file():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key or key in os.environ:
            continue
        parsed = value.strip()
        if parsed and (parsed[0] == parsed[-1]) and parsed[0] in {'"', "'"}:
            parsed = parsed[1:-1]
        os.environ[key] = parsed


def _resolve_api_base_url(explicit_value: str | None) -> str:
    if explicit_value:
        candidate = explicit_value.strip()
    else:
        candidate = os.getenv("ALERTS_PUBLIC_API_URL", "").strip() or "http://localhost:8000"
    if candidate.endswith("/api/v1/alerts"):
        return candidate
    return f"{candidate.rstrip('/')}/api/v1/alerts"


def _trigger(method: str, url: str, *, secret: str, timeout: int) -> tuple[int, dict[str, Any]]:
    request = urllib.request.Request(
        url,
        data=b"" if method == "POST" else None,
        headers={"Accept": "application/json", "Authorization": f"Bearer {secret}"},
        method=method,
    )
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            return response.status, json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")
        try:
            body = json.loads(detail)
        except ValueError:
            body = {"detail": detail}
        return exc.code, body


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run one scholarship alert job through the scheduler trigger endpoint."
    )
    parser.add_argument("job", choices=JOB_NAMES, help="Job to run.")
    parser.add_argument(
        "--api-base-url",
        default=None,
        help=(
            "Backend base URL. Accepts either host root (e.g. http://localhost:8000) "
            "or full alerts prefix (e.g. http://localhost:8000/api/v1/alerts)."
        ),
    )
    parser.add_argument(
        "--manual",
        action="store_true",
        help="Record the run as a manual re-run (POST) instead of a scheduled run (GET).",
    )
    parser.add_argument(
        "--timeout",
        type=int,
        default=300,
        help="Seconds to wait for the job to finish (default: 300).",
    )
    return parser.parse_args()


def main() -> int:
    root_dir = Path(__file__).resolve().parents[1]
    _load_dotenv(root_dir / ".env")
    args = parse_args()

    secret = os.getenv("CRON_SECRET", "").strip()
    if not secret:
        raise SystemExit("CRON_SECRET is required (set .env or environment)")

    api_base_url = _resolve_api_base_url(args.api_base_url)
    method = "POST" if args.manual else "GET"
    status_code, body = _trigger(
        method,
        f"{api_base_url}/internal/jobs/{args.job}",
        secret=secret,
        timeout=args.timeout,
    )
    print(json.dumps({"status": status_code, "body": body}, indent=2))

    if status_code == 401:
        print("trigger rejected: check CRON_SECRET", file=sys.stderr)
        return 2
    if status_code != 200 or not body.get("success"):
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
