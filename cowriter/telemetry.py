"""Logging for the cowriter service.

Everything goes through the ``cowriter`` logger. Each editor request ends in
one JSON line describing who asked, which endpoint ran, against which
configuration and model, and how it ended. Prompt and completion text never
reach the log.
"""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger("cowriter")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"

# Outcomes that mean the service, not the caller, failed.
SERVER_FAILURES = frozenset({"provider_error", "unexpected_error"})


def setup_logging(log_file: str, level: int = logging.INFO) -> None:
    """Attach a console handler and an append-only file handler.

    Calling it again (e.g. on a second app startup in one process) leaves
    the existing handlers in place.
    """
    logger.setLevel(level)
    if logger.handlers:
        return

    log_path = Path(log_file)
    os.makedirs(log_path.parent, exist_ok=True)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    for handler in (logging.StreamHandler(), logging.FileHandler(log_path, mode="a")):
        handler.setLevel(level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)


def log_request(
    *,
    user_id: str,
    action: str,
    outcome: str,
    configuration: Optional[str] = None,
    model: Optional[str] = None,
    usage: Optional[Dict[str, Any]] = None,
    error: Optional[str] = None,
    request_id: Optional[str] = None
) -> None:
    """Emit the summary line for one editor request.

    ``outcome`` is a short label such as "success", "rate_limited",
    "validation_error" or "provider_error". Successful requests log at INFO,
    rejected ones at WARNING and server-side failures at ERROR. Empty
    optional fields are left out of the line.
    """
    record: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "request_id": request_id,
        "user_id": user_id,
        "action": action,
        "outcome": outcome,
    }
    extras = {
        "configuration": configuration,
        "model": model,
        "usage": usage,
        "error": error,
    }
    record.update((key, value) for key, value in extras.items() if value)

    if outcome == "success":
        level = logging.INFO
    elif outcome in SERVER_FAILURES:
        level = logging.ERROR
    else:
        level = logging.WARNING
    logger.log(level, json.dumps(record))
