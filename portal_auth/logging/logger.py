from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Mapping

logger = logging.getLogger("portal_auth.security")


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"portal_auth.{name}")


def log_security_event(
    action: str,
    outcome: str,
    reason: str | None = None,
    metadata: Mapping[str, Any] | None = None,
) -> None:
    entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "action": action,
        "outcome": outcome,
        "reason": reason,
        "metadata": dict(metadata) if metadata else {},
    }
    logger.info(json.dumps(entry, default=str))
