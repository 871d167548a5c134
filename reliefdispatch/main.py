# reliefdispatch/main.py
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from reliefdispatch.core.config import settings
from reliefdispatch.deps import get_scheduler
from reliefdispatch.routers import dispatch as dispatch_router
from reliefdispatch.routers import operator as operator_router

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.use_mongo:
        from reliefdispatch.core.indexes import ensure_indexes
        from reliefdispatch.db import get_db
        await ensure_indexes(get_db())

    logger.info("%s starting (store=%s)", settings.app_name, "mongo" if settings.use_mongo else "memory")
    scheduler = get_scheduler()
    if settings.run_scheduler:
        await scheduler.start()

    yield

    await scheduler.stop()
    if settings.use_mongo:
        from reliefdispatch.db import get_client
        get_client().close()


app = FastAPI(lifespan=lifespan, title="ReliefDispatch API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(dispatch_router.router)    # /api/dispatch
app.include_router(operator_router.router)    # /api/operator


@app.get("/health")
def health():
    return {"ok": True, "queued": len(get_scheduler())}


def run():
    import uvicorn
    uvicorn.run("reliefdispatch.main:app", host=settings.host, port=settings.port)
