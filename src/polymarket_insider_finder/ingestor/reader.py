"""JSON-lines input reader for trade, resolution and observation batches."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

from polymarket_insider_finder.errors import ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def read_jsonl(path: Path, parse: Callable[[dict[str, Any]], T]) -> tuple[list[T], int]:
    """Parse every non-blank line of ``path`` with ``parse``.

    Malformed lines are logged and skipped.

    Returns:
        The parsed events and the number of rejected lines.
    """
    events: list[T] = []
    rejected = 0
    with path.open(encoding="utf-8") as fh:
        for lineno, line in enumerate(fh, start=1):
            raw = line.strip()
            if not raw:
                continue
            try:
                payload = json.loads(raw)
                if not isinstance(payload, dict):
                    raise ValidationError("expected a JSON object")
                events.append(parse(payload))
            except (json.JSONDecodeError, ValidationError) as e:
                rejected += 1
                logger.warning("%s:%d rejected: %s", path.name, lineno, e)
    logger.info("Read %d events from %s (%d rejected)", len(events), path, rejected)
    return events, rejected
