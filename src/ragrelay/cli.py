"""Command line entrypoint for the relay server."""

from __future__ import annotations

import argparse
import sys
from typing import Sequence

import uvicorn

from ragrelay.api.app import create_app
from ragrelay.config import get_settings
from ragrelay.errors import ConfigurationError
from ragrelay.metrics.observability import configure_logging, get_logger


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the RAG realtime relay server.")
    parser.add_argument("--host", type=str, default=None, help="Interface to bind (defaults to settings)")
    parser.add_argument("--port", type=int, default=None, help="Port to listen on (defaults to settings)")
    parser.add_argument("--log-level", type=str, default=None, help="Log level, e.g. INFO or DEBUG")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    settings = get_settings()
    overrides = {
        key: value
        for key, value in (("host", args.host), ("port", args.port), ("log_level", args.log_level))
        if value is not None
    }
    if overrides:
        settings = settings.model_copy(update=overrides)

    configure_logging(settings.log_level)
    logger = get_logger("cli")
    try:
        settings.require_credentials()
    except ConfigurationError as exc:
        print(str(exc), file=sys.stderr)
        return 1

    app = create_app(settings=settings)
    logger.info("relay.starting", host=settings.host, port=settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    sys.exit(main())
