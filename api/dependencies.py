"""
Shared FastAPI dependencies
"""

from functools import lru_cache
from ingestion.checkpoint import CheckpointStore
from ingestion.checkpoint_backends import build_checkpoint_backend


@lru_cache
def get_checkpoint_store() -> CheckpointStore:
    """Process-wide checkpoint store on the configured backend"""
    return CheckpointStore(build_checkpoint_backend())
