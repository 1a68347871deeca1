from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from typing import Any


def configure_logging(environ: Mapping[str, str] | None = None) -> None:
    env = os.environ if environ is None else environ
    level = str(env.get("LOG_LEVEL", "INFO")).strip().upper() or "INFO"
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _json_safe(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, dict):
        return {str(key): _json_safe(val) for key, val in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_json_safe(item) for item in value]
    return str(value)


def log_event(
    logger: logging.Logger,
    event: str,
    *,
    level: int = logging.INFO,
    **fields: Any,
) -> None:
    """Emit one structured guard event as a single JSON line."""
    if not logger.isEnabledFor(level):
        return
    payload = {"event": event, **{key: _json_safe(val) for key, val in fields.items()}}
    logger.log(level, json.dumps(payload, sort_keys=True, ensure_ascii=False))
