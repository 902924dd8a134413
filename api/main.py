from contextlib import asynccontextmanager

from fastapi import FastAPI

from core.config import PoolConfig
from core.logs import setup_logging
from core.pool import ResourcePool
from core.shutdown import ShutdownSignal
from provisioning import router as provisioning_router
from provisioning.service import EnvironmentBootstrapper


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    # Tests (and embedders) may hand in a pre-built pool.
    pool = getattr(app.state, "pool", None) or ResourcePool(PoolConfig.from_env())
    app.state.pool = pool

    bootstrapper = EnvironmentBootstrapper(pool)
    shutdown = ShutdownSignal()
    bootstrapper.register_shutdown_hooks(shutdown)
    app.state.shutdown = shutdown

    try:
        # ConnectivityError aborts startup.
        app.state.bootstrap_report = await bootstrapper.verify()
        yield
    finally:
        # Uvicorn owns SIGINT/SIGTERM here and ends the lifespan on either.
        shutdown.trigger("lifespan")
        await shutdown.wait()


app = FastAPI(lifespan=lifespan)

app.include_router(provisioning_router.router, tags=["database"])


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/")
def root() -> dict:
    return {"message": "pg-pool-bootstrap api"}
