from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ablib.models.orm.experiment import ExperimentORM
from ablib.models.schemas.experiment import Experiment


class ExperimentRepository:
    def __init__(self, db: Session):
        """Initializes the repository with a database session."""
        self.db = db

    def get_enabled_experiments(self) -> list[ExperimentORM]:
        """Fetches every enabled experiment, ordered by key."""
        stmt = (
            select(ExperimentORM)
            .where(ExperimentORM.enabled.is_(True))
            .order_by(ExperimentORM.key)
        )

        return list(self.db.scalars(stmt).all())

    def upsert_experiment(self, experiment_data: Experiment) -> ExperimentORM:
        """
        Creates or replaces an experiment definition.

        Args:
            experiment_data: The pydantic model holding the experiment definition.

        Returns:
            The persisted ExperimentORM object.
        """
        try:
            db_experiment = self.db.merge(ExperimentORM(**experiment_data.model_dump()))
            self.db.commit()
            self.db.refresh(db_experiment)

            return db_experiment

        except SQLAlchemyError:
            self.db.rollback()
            raise
