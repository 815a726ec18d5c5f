"""
Data Ingestion Module
"""
from .batch_loader import BatchLoader, ReplayResult
from .stream_consumer import StreamConsumer, ConsumerConfig

__all__ = [
    "BatchLoader",
    "ReplayResult",
    "StreamConsumer",
    "ConsumerConfig",
]
