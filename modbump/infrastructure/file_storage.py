import asyncio
import logging
import os
from pathlib import Path
from typing import List, Sequence

from pydantic import TypeAdapter, ValidationError

from modbump.domain.exceptions import StorageException
from modbump.domain.models import Repository

logger = logging.getLogger(__name__)

FILE_MODE = 0o600
SNAPSHOT = TypeAdapter(List[Repository])


class FileStorage:
    """
    Keeps the snapshot of repositories with open pull requests in a local JSON file.
    """

    def __init__(self, filename: str):
        self.path = Path(filename)

    async def load(self) -> List[Repository]:
        return await asyncio.to_thread(self._load)

    async def save(self, repos: Sequence[Repository]) -> None:
        await asyncio.to_thread(self._save, list(repos))

    async def close(self) -> None:
        pass

    def _load(self) -> List[Repository]:
        if not self.path.is_file():
            return []

        try:
            return SNAPSHOT.validate_json(self.path.read_bytes())
        except (OSError, ValidationError) as e:
            raise StorageException(f"unable to load from storage {self.path}: {e}") from e

    def _save(self, repos: List[Repository]) -> None:
        data = SNAPSHOT.dump_json(repos, indent=4)
        tmp_path = self.path.with_name(f"{self.path.name}.tmp")

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_bytes(data)
            os.chmod(tmp_path, FILE_MODE)
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise StorageException(f"unable to save to storage {self.path}: {e}") from e

        logger.debug(f"Wrote {len(repos)} repositories to {self.path}.")
