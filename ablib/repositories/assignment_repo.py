# repositories/assignment_repo.py
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ablib.models.orm.assignment import UserVariantORM


class AssignmentRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_assignment(self, user_id: str, experiment_key: str) -> Optional[UserVariantORM]:
        """Retrieves the persistent assignment for a user in a specific experiment."""
        return (
            self.db.query(UserVariantORM)
            .filter(
                UserVariantORM.user_id == user_id,
                UserVariantORM.experiment_key == experiment_key,
            )
            .one_or_none()
        )

    def get_assignments_for_user(self, user_id: str) -> list[UserVariantORM]:
        """Retrieves every assignment held by a user."""
        stmt = (
            select(UserVariantORM)
            .where(UserVariantORM.user_id == user_id)
            .order_by(UserVariantORM.experiment_key)
        )

        return list(self.db.scalars(stmt).all())

    def upsert_assignment(self, user_id: str, experiment_key: str, variant: str) -> UserVariantORM:
        """
        Creates or overwrites the assignment for (user_id, experiment_key).
        The composite primary key makes the last writer win.
        """
        try:
            db_assignment = self.db.merge(
                UserVariantORM(
                    user_id=user_id,
                    experiment_key=experiment_key,
                    variant=variant,
                    updated_at=datetime.utcnow(),
                )
            )
            self.db.commit()
            self.db.refresh(db_assignment)

            return db_assignment

        except SQLAlchemyError:
            self.db.rollback()
            raise
