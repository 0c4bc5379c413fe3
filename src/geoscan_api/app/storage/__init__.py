"""Storage backends for accounts, ledger entries, tasks, and runs."""

from .base import PipelineStorage, StorageTransaction
from .memory import InMemoryStorage
from .postgres import PostgresStorage

__all__ = [
    "InMemoryStorage",
    "PipelineStorage",
    "PostgresStorage",
    "StorageTransaction",
]
