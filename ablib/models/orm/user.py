from sqlalchemy import Column, String

from .base import Base


class UserORM(Base):
    __tablename__ = "ab_users"

    id = Column(String, primary_key=True, index=True)
    email = Column(String, nullable=False, default="")
