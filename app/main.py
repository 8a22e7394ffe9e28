from contextlib import asynccontextmanager
from fastapi import FastAPI

from app.core.config import get_settings
from app.core.clients import create_redis
from app.database import create_db_and_tables
from app.events.mutation_log import MutationLog
from app.routers import todos


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    await create_db_and_tables()
    redis = create_redis(settings)
    app.state.mutation_log = MutationLog(
        redis, settings.mutation_log_stream, settings.mutation_log_shards
    )
    yield
    await redis.aclose()


app = FastAPI(
    title="Todo API",
    description="Async todo API that publishes change events through a mutation log",
    swagger_ui_parameters={"displayRequestDuration": True},
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(todos.router)


@app.get("/")
async def root():
    return {
        "message": "Welcome to Todo API",
        "docs": "/docs",
        "version": "1.0.0",
    }


@app.get("/health")
async def health_check():
    return {"status": "healthy"}
