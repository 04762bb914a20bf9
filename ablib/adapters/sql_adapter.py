import asyncio
from typing import Callable, Optional, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ablib.adapters.base import RemoteStorageAdapter
from ablib.core.db import create_db_engine, create_session_factory
from ablib.core.errors import AdapterError
from ablib.models.orm.assignment import UserVariantORM
from ablib.models.orm.experiment import ExperimentORM
from ablib.models.orm.user import UserORM
from ablib.models.schemas.assignment import UserVariant
from ablib.models.schemas.experiment import Experiment
from ablib.models.schemas.user import Identity
from ablib.repositories.assignment_repo import AssignmentRepository
from ablib.repositories.experiment_repo import ExperimentRepository
from ablib.repositories.user_repo import UserRepository

T = TypeVar("T")


class SqlRemoteAdapter(RemoteStorageAdapter):
    """
    Remote storage adapter over a SQL database (PostgreSQL in production,
    SQLite for local development). It offers no change notifications, so
    the update listener polls it.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @classmethod
    def from_url(cls, database_url: str) -> "SqlRemoteAdapter":
        """Connects to `database_url`, creating the remote tables if needed."""
        engine = create_db_engine(database_url)
        return cls(create_session_factory(engine, UserORM, ExperimentORM, UserVariantORM))

    async def _run(self, operation: str, fn: Callable[[Session], T]) -> T:
        def work() -> T:
            with self.session_factory() as db:
                return fn(db)

        try:
            # Blocking database I/O stays off the event loop
            return await asyncio.to_thread(work)
        except SQLAlchemyError as e:
            raise AdapterError(operation, str(e).splitlines()[0] if str(e) else None) from e

    async def get_user(self, user_id: str) -> Optional[Identity]:
        def fn(db: Session) -> Optional[Identity]:
            user_orm = UserRepository(db).get_user(user_id)
            return Identity.model_validate(user_orm.to_dict()) if user_orm else None

        return await self._run("get_user", fn)

    async def save_user(self, identity: Identity) -> Optional[Identity]:
        def fn(db: Session) -> Identity:
            user_orm = UserRepository(db).upsert_user(identity.id, identity.email)
            return Identity.model_validate(user_orm.to_dict())

        return await self._run("save_user", fn)

    async def get_experiments(self) -> list[Experiment]:
        def fn(db: Session) -> list[Experiment]:
            return [
                Experiment.model_validate(experiment_orm)
                for experiment_orm in ExperimentRepository(db).get_enabled_experiments()
            ]

        return await self._run("get_experiments", fn)

    async def upsert_experiment(self, experiment: Experiment) -> Experiment:
        def fn(db: Session) -> Experiment:
            return Experiment.model_validate(ExperimentRepository(db).upsert_experiment(experiment))

        return await self._run("upsert_experiment", fn)

    async def get_variants_by_user_id(self, user_id: str) -> Optional[list[UserVariant]]:
        def fn(db: Session) -> list[UserVariant]:
            return [
                UserVariant.model_validate(assignment)
                for assignment in AssignmentRepository(db).get_assignments_for_user(user_id)
            ]

        return await self._run("get_variants_by_user_id", fn)

    async def get_variant(self, user_id: str, experiment_key: str) -> Optional[UserVariant]:
        def fn(db: Session) -> Optional[UserVariant]:
            assignment = AssignmentRepository(db).get_assignment(user_id, experiment_key)
            return UserVariant.model_validate(assignment) if assignment else None

        return await self._run("get_variant", fn)

    async def save_variant(self, user_id: str, experiment_key: str, variant: str) -> None:
        def fn(db: Session) -> None:
            AssignmentRepository(db).upsert_assignment(user_id, experiment_key, variant)

        await self._run("save_variant", fn)
