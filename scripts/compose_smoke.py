#!/usr/bin/env python3
"""Probe a running relay: health endpoints, then the document listing."""

from __future__ import annotations

import json
import os
import sys

from urllib.error import URLError
from urllib.request import urlopen


def fetch(url: str) -> dict:
    with urlopen(url, timeout=5) as response:
        return json.loads(response.read().decode("utf-8"))


def main() -> int:
    base_url = os.getenv("RAGRELAY_API_URL", "http://localhost:8081").rstrip("/")
    try:
        health = fetch(f"{base_url}/healthz")
        print("/healthz:", health)
        print("/livez:", fetch(f"{base_url}/livez"))
        documents = fetch(f"{base_url}/api/files")["documents"]
    except (URLError, ValueError, KeyError) as exc:
        print(f"Smoke check failed: {exc}", file=sys.stderr)
        return 1
    if health.get("status") != "ok":
        print(f"Relay reports unhealthy status: {health}", file=sys.stderr)
        return 1
    print(f"{len(documents)} document(s) loaded, {health.get('active_sessions', 0)} active session(s).")
    print("Smoke check passed.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
