from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ablib.models.orm.user import UserORM


class UserRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_user(self, user_id: str) -> Optional[UserORM]:
        return self.db.get(UserORM, user_id)

    def upsert_user(self, user_id: str, email: str) -> UserORM:
        try:
            db_user = self.db.merge(UserORM(id=user_id, email=email))
            self.db.commit()
            self.db.refresh(db_user)

            return db_user

        except SQLAlchemyError:
            self.db.rollback()
            raise
