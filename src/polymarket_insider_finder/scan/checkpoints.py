"""Per-shard scan cursors kept in Redis.

A cursor is the ``(timestamp, trade_id)`` sort key of the last trade whose
shard finished committing. Cursors only move forward.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime

from redis.asyncio import Redis

logger = logging.getLogger(__name__)

DEFAULT_KEY_PREFIX = "insider_finder:checkpoint:"


@dataclass(frozen=True, order=True)
class ShardCursor:
    timestamp: datetime
    trade_id: str

    @property
    def sort_key(self) -> tuple[datetime, str]:
        return (self.timestamp, self.trade_id)

    def covers(self, sort_key: tuple[datetime, str]) -> bool:
        """True if a trade with ``sort_key`` is at or before this cursor."""
        return sort_key <= self.sort_key

    def to_json(self) -> str:
        return json.dumps({"timestamp": self.timestamp.isoformat(), "trade_id": self.trade_id})

    @classmethod
    def from_json(cls, raw: str | bytes) -> ShardCursor:
        data = json.loads(raw if isinstance(raw, str) else raw.decode())
        return cls(timestamp=datetime.fromisoformat(data["timestamp"]), trade_id=str(data["trade_id"]))


class CheckpointStore:
    """Reads and advances shard cursors.

    Checkpoints are an optimization: Redis failures are logged and treated
    as "no cursor", which only costs reprocessing of idempotent work.
    """

    def __init__(self, redis: Redis, *, key_prefix: str = DEFAULT_KEY_PREFIX) -> None:
        self._redis = redis
        self._key_prefix = key_prefix

    def _key(self, shard: int) -> str:
        return f"{self._key_prefix}{shard}"

    async def get(self, shard: int) -> ShardCursor | None:
        try:
            raw = await self._redis.get(self._key(shard))
            if raw is None:
                return None
            return ShardCursor.from_json(raw)
        except Exception as e:
            logger.warning("Failed to read checkpoint for shard %d: %s", shard, e)
            return None

    async def get_all(self, shard_count: int) -> dict[int, ShardCursor]:
        cursors: dict[int, ShardCursor] = {}
        for shard in range(shard_count):
            cursor = await self.get(shard)
            if cursor is not None:
                cursors[shard] = cursor
        return cursors

    async def advance(self, shard: int, cursor: ShardCursor) -> bool:
        """Move the shard's cursor forward to ``cursor``.

        Returns:
            True if the stored cursor changed.
        """
        current = await self.get(shard)
        if current is not None and current.sort_key >= cursor.sort_key:
            return False
        try:
            await self._redis.set(self._key(shard), cursor.to_json())
        except Exception as e:
            logger.warning("Failed to write checkpoint for shard %d: %s", shard, e)
            return False
        logger.debug("Shard %d checkpoint -> %s / %s", shard, cursor.timestamp.isoformat(), cursor.trade_id)
        return True

    async def clear(self, shard_count: int) -> int:
        """Delete every shard cursor; returns the number of keys removed."""
        keys = [self._key(shard) for shard in range(shard_count)]
        deleted = await self._redis.delete(*keys)
        return int(deleted)
