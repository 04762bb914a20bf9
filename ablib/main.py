from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Path, Query, status

from ablib.adapters.base import RemoteStorageAdapter
from ablib.adapters.sql_adapter import SqlRemoteAdapter
from ablib.client import ABTestingClient, get_client, initialize_library, shutdown_library
from ablib.core.auth import require_auth_token
from ablib.core.errors import (
    ABTestError,
    ExperimentNotFoundError,
    InitializationError,
    NetworkError,
    StorageError,
    StorageQuotaExceededError,
    UserIdMismatchError,
)
from ablib.core.logging import configure_logging
from ablib.core.settings import Settings, config_settings
from ablib.models.schemas.assignment import UserVariant, VariantResponseModel
from ablib.models.schemas.experiment import Experiment, ExperimentListResponseModel
from ablib.models.schemas.user import Identity


def _status_for(error: ABTestError) -> int:
    if isinstance(error, (InitializationError, UserIdMismatchError)):
        return status.HTTP_409_CONFLICT
    if isinstance(error, ExperimentNotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, StorageQuotaExceededError):
        return status.HTTP_507_INSUFFICIENT_STORAGE
    if isinstance(error, StorageError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if isinstance(error, NetworkError):
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def _http_error(error: ABTestError) -> HTTPException:
    return HTTPException(status_code=_status_for(error), detail=str(error))


def get_ab_client() -> ABTestingClient:
    return get_client()


def create_app(
    settings: Optional[Settings] = None, adapter: Optional[RemoteStorageAdapter] = None
) -> FastAPI:
    settings = settings or config_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.LOG_LEVEL)
        remote = adapter or SqlRemoteAdapter.from_url(settings.REMOTE_DATABASE_URL)
        unsubscribe = await initialize_library(remote, settings=settings)
        try:
            yield
        finally:
            unsubscribe()
            await shutdown_library()

    app = FastAPI(
        title="ablib",
        description="Deterministic, offline-first variant assignment",
        version="0.1.0",
        dependencies=[Depends(require_auth_token)],
        lifespan=lifespan,
    )
    app.state.settings = settings

    @app.post(
        "/users",
        response_model=list[UserVariant],
        status_code=status.HTTP_201_CREATED,
        summary="Initialize the local user",
    )
    async def post_users(identity: Identity, client: ABTestingClient = Depends(get_ab_client)):
        """
        Stores the identity and assigns it to every enabled experiment it
        has no variant for yet.
        """
        try:
            return await client.initialize_user(identity)
        except ABTestError as e:
            raise _http_error(e)

    @app.put("/users", status_code=status.HTTP_204_NO_CONTENT, summary="Update the local user")
    async def put_users(
        identity: Identity,
        reassign_variant: bool = Query(False, description="Re-bucket every experiment."),
        client: ABTestingClient = Depends(get_ab_client),
    ):
        try:
            await client.update_user(identity, reassign_variant=reassign_variant)
        except ABTestError as e:
            raise _http_error(e)

    @app.get(
        "/variants/{experiment_key}",
        response_model=VariantResponseModel,
        summary="Get the local user's variant",
    )
    async def get_variant(
        experiment_key: str = Path(..., description="The key of the experiment."),
        client: ABTestingClient = Depends(get_ab_client),
    ):
        try:
            variant = await client.get_variant(experiment_key)
        except ABTestError as e:
            raise _http_error(e)
        return VariantResponseModel(experiment_key=experiment_key, variant=variant)

    @app.get("/experiments", response_model=ExperimentListResponseModel)
    async def get_experiments(client: ABTestingClient = Depends(get_ab_client)):
        return ExperimentListResponseModel(experiments=client.ctx.registry.list())

    @app.get("/experiments/{experiment_key}", response_model=Experiment)
    async def get_experiment(experiment_key: str, client: ABTestingClient = Depends(get_ab_client)):
        try:
            return client.ctx.registry.get(experiment_key)
        except ExperimentNotFoundError as e:
            raise _http_error(e)

    @app.get("/sync", summary="Pending sync operations")
    async def get_sync(client: ABTestingClient = Depends(get_ab_client)):
        return {
            "pending": client.ctx.sync_queue.pending_count(),
            "online": client.ctx.connectivity.is_online,
        }

    @app.post("/sync/flush", summary="Deliver queued writes now")
    async def post_sync_flush(client: ABTestingClient = Depends(get_ab_client)):
        await client.flush()
        return {"pending": client.ctx.sync_queue.pending_count()}

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run("ablib.main:app", host="0.0.0.0", port=8000, reload=True)
