from typing import Dict, List, Sequence

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.dialects.postgresql import insert, JSONB
from sqlalchemy import Table, Column, String, Integer, DateTime, MetaData, delete, select, text

from modbump.domain.exceptions import StorageException
from modbump.domain.models import Repository

# SQLAlchemy core Table definition
metadata = MetaData()
repos_table = Table(
    'modbump_repositories', metadata,
    Column('key', String, primary_key=True),
    Column('position', Integer, nullable=False),
    Column('name', String, nullable=False),
    Column('parent', String, nullable=False),
    Column('pull_request_id', Integer, nullable=False),
    Column('payload', JSONB, nullable=False),
    Column('saved_at', DateTime(timezone=True), server_default=text('NOW()')),
)

class PostgresStorage:
    """
    Storage backend keeping the repository snapshot in a PostgreSQL table.
    Each save replaces the snapshot: listed repositories are upserted and all others deleted.
    """

    def __init__(self, db_url: str):
        self.engine = create_async_engine(db_url, echo=False)

    async def load(self) -> List[Repository]:
        """
        Reads the snapshot in the order it was saved, creating the table on first use.
        """
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(metadata.create_all)
                result = await conn.execute(select(repos_table.c.payload).order_by(repos_table.c.position))
                payloads = result.scalars().all()
        except SQLAlchemyError as e:
            raise StorageException(f"unable to load from storage: {e}") from e

        try:
            return [Repository.model_validate(payload) for payload in payloads]
        except ValidationError as e:
            raise StorageException(f"unable to load from storage: {e}") from e

    async def save(self, repos: Sequence[Repository]) -> None:
        """
        Replaces the stored snapshot with the given repositories in a single transaction.

        Args:
            repos (Sequence[Repository]): Repositories to remember, in order.
        """
        rows: Dict[str, Dict] = {}
        for position, repo in enumerate(repos):
            rows[repo.key] = {
                'key': repo.key,
                'position': position,
                'name': repo.name,
                'parent': repo.parent,
                'pull_request_id': repo.pull_request_id,
                'payload': repo.model_dump(mode='json'),
            }

        try:
            async with self.engine.begin() as conn:
                await conn.execute(delete(repos_table).where(repos_table.c.key.not_in(list(rows))))

                if not rows:
                    return  # Nothing left to remember

                stmt = insert(repos_table).values(list(rows.values()))
                upsert_stmt = stmt.on_conflict_do_update(
                    index_elements=['key'],
                    set_={
                        'position': stmt.excluded.position,
                        'pull_request_id': stmt.excluded.pull_request_id,
                        'payload': stmt.excluded.payload,
                        'saved_at': text('NOW()'),
                    },
                )
                await conn.execute(upsert_stmt)
        except SQLAlchemyError as e:
            raise StorageException(f"unable to save to storage: {e}") from e

    async def close(self) -> None:
        """Releases the pooled connections."""
        await self.engine.dispose()
