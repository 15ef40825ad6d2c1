from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import Any

import structlog

from watchtower.config import RequestValidationError
from watchtower.handler import handle
from watchtower.metrics import MetricsSubmissionError

logger = structlog.get_logger(__name__)


def configure_logging(level_name: str) -> None:
    level = getattr(logging, str(level_name).upper(), logging.INFO)
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )
    # Status API keys travel in request headers; keep transport chatter out of the log.
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def load_event(path: str) -> Any:
    if path == "-":
        return json.load(sys.stdin)
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Watchtower uptime prober")
    parser.add_argument(
        "--event",
        default="-",
        help="Path to the JSON invocation payload ('-' reads stdin)",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (INFO, WARNING, ...)",
    )
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    try:
        event = load_event(args.event)
    except (OSError, ValueError) as exc:
        logger.error("event_unreadable", path=args.event, error=f"{type(exc).__name__}: {exc}")
        return 2

    try:
        result = asyncio.run(handle(event))
    except RequestValidationError as exc:
        logger.error("invalid_event", error=str(exc))
        return 2
    except MetricsSubmissionError as exc:
        logger.error("metrics_submission_failed", error=str(exc))
        return 1

    print(json.dumps(result, ensure_ascii=False, default=str))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
