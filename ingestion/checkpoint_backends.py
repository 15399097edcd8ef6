"""
Persistence backends for processing checkpoints.

The checkpoint store only needs a key-value boundary:
    put(key, value), list(prefix), delete(prefix)
Keys are "<job_id>/<checkpoint_id>"; values are JSON-ready dicts.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import orjson
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from core.config import settings
from core.database import create_session_maker, get_engine
from models.base import Base
from models.checkpoint import CheckpointEntry

logger = logging.getLogger(__name__)


class CheckpointBackend(ABC):
    """Key-value persistence boundary for checkpoints"""

    @abstractmethod
    async def put(self, key: str, value: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def list(self, prefix: str) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def delete(self, prefix: str) -> int:
        """Delete every entry whose key starts with prefix; returns count."""
        pass


class FileCheckpointBackend(CheckpointBackend):
    """
    One JSON file per checkpoint under `{root}/{job_id}/{checkpoint_id}.json`.

    Writes go to a temp file first and are renamed into place, so a reader
    never observes a partially written checkpoint.
    """

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)

    async def put(self, key: str, value: Dict[str, Any]) -> None:
        await asyncio.to_thread(self._put_sync, key, value)

    async def list(self, prefix: str) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._list_sync, prefix)

    async def delete(self, prefix: str) -> int:
        return await asyncio.to_thread(self._delete_sync, prefix)

    def _path_for(self, key: str) -> Path:
        path = (self.root / f"{key}.json").resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"Checkpoint key escapes storage root: {key}")
        return path

    def _key_for(self, path: Path) -> str:
        return path.relative_to(self.root).with_suffix("").as_posix()

    def _put_sync(self, key: str, value: Dict[str, Any]) -> None:
        path = self._path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)

        temp_path = path.with_suffix(".tmp")
        try:
            temp_path.write_bytes(orjson.dumps(value, option=orjson.OPT_INDENT_2))
            temp_path.replace(path)
        except BaseException:
            temp_path.unlink(missing_ok=True)
            raise

    def _matching(self, prefix: str) -> List[Path]:
        if not self.root.exists():
            return []
        return [
            path for path in sorted(self.root.rglob("*.json"))
            if self._key_for(path).startswith(prefix)
        ]

    def _list_sync(self, prefix: str) -> List[Dict[str, Any]]:
        values = []
        for path in self._matching(prefix):
            try:
                values.append(orjson.loads(path.read_bytes()))
            except (OSError, orjson.JSONDecodeError) as e:
                logger.warning(f"Skipping unreadable checkpoint file {path}: {e}")
        return values

    def _delete_sync(self, prefix: str) -> int:
        removed = 0
        for path in self._matching(prefix):
            path.unlink(missing_ok=True)
            removed += 1
            parent = path.parent
            if parent != self.root and not any(parent.iterdir()):
                parent.rmdir()
        return removed


class SQLAlchemyCheckpointBackend(CheckpointBackend):
    """Checkpoint rows in the `processing_checkpoints` table"""

    def __init__(self, session_maker: async_sessionmaker):
        self.session_maker = session_maker

    async def put(self, key: str, value: Dict[str, Any]) -> None:
        async with self.session_maker() as session:
            await session.merge(CheckpointEntry(
                key=key,
                job_id=str(value.get("job_id", key.split("/", 1)[0])),
                payload=value
            ))
            await session.commit()

    async def list(self, prefix: str) -> List[Dict[str, Any]]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(CheckpointEntry)
                .where(CheckpointEntry.key.startswith(prefix, autoescape=True))
                .order_by(CheckpointEntry.key)
            )
            return [row.payload for row in result.scalars().all()]

    async def delete(self, prefix: str) -> int:
        async with self.session_maker() as session:
            result = await session.execute(
                delete(CheckpointEntry).where(CheckpointEntry.key.startswith(prefix, autoescape=True))
            )
            await session.commit()
            return result.rowcount or 0


async def create_checkpoint_tables(engine: AsyncEngine):
    """Create the checkpoint table if it does not exist"""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def build_checkpoint_backend(backend_name: Optional[str] = None) -> Optional[CheckpointBackend]:
    """Backend selected by CHECKPOINT_BACKEND: file, database or memory (None)."""
    name = (backend_name or settings.CHECKPOINT_BACKEND).lower()

    if name == "file":
        return FileCheckpointBackend(settings.CHECKPOINT_DIR)
    if name == "database":
        return SQLAlchemyCheckpointBackend(create_session_maker(get_engine()))
    if name == "memory":
        return None
    raise ValueError(f"Unknown checkpoint backend: {name}")
