"""Batch scan layer - sharded, resumable processing of trade batches."""

from polymarket_insider_finder.scan.checkpoints import CheckpointStore, ShardCursor
from polymarket_insider_finder.scan.progress import ProgressLine, default_progress_enabled
from polymarket_insider_finder.scan.runner import ScanConfig, ScanRunner, ScanSummary, shard_for

__all__ = [
    "CheckpointStore",
    "ProgressLine",
    "ScanConfig",
    "ScanRunner",
    "ScanSummary",
    "ShardCursor",
    "default_progress_enabled",
    "shard_for",
]
