from __future__ import annotations

import json
import logging
from typing import Any

api_logger = logging.getLogger("socialauth.api")
oauth_logger = logging.getLogger("socialauth.oauth")
worker_logger = logging.getLogger("socialauth.worker")


def log_json(logger: logging.Logger, event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    if not logger.isEnabledFor(level):
        return
    payload = {"event": event, **fields}
    logger.log(level, json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str))
