# repositories/cache_repo.py
from typing import Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ablib.models.orm.cache_entry import CacheEntryORM


class CacheEntryRepository:
    """Raw string key/value access to the local cache table."""

    def __init__(self, db: Session):
        self.db = db

    def get_value(self, key: str) -> Optional[str]:
        entry = self.db.get(CacheEntryORM, key)
        return entry.value if entry is not None else None

    def exists(self, key: str) -> bool:
        stmt = select(func.count()).select_from(CacheEntryORM).where(CacheEntryORM.key == key)
        return self.db.scalar(stmt) > 0

    def total_size(self, exclude_key: Optional[str] = None) -> int:
        """Sum of stored value lengths, optionally ignoring one key."""
        stmt = select(func.coalesce(func.sum(func.length(CacheEntryORM.value)), 0))
        if exclude_key is not None:
            stmt = stmt.where(CacheEntryORM.key != exclude_key)
        return int(self.db.scalar(stmt))

    def put(self, key: str, value: str) -> None:
        try:
            self.db.merge(CacheEntryORM(key=key, value=value))
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise

    def delete(self, key: str) -> None:
        try:
            self.db.execute(delete(CacheEntryORM).where(CacheEntryORM.key == key))
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise

    def delete_all(self) -> None:
        try:
            self.db.execute(delete(CacheEntryORM))
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
