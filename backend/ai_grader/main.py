"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from ai_grader.config import settings
from ai_grader.database import engine, get_db
from ai_grader.models import Base

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables and sync credential rows on startup.

    No worker task is started: grading only runs inside /api/trigger-ai-worker.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    from ai_grader.services.grading_runtime import get_runtime
    runtime = app.dependency_overrides.get(get_runtime, get_runtime)()
    await runtime.pool.sync_credentials()

    yield

    await engine.dispose()


app = FastAPI(
    title="AI Grading Queue API",
    version="1.0.0",
    description="Queue, dispatch and monitor AI grading of exam answers.",
    lifespan=lifespan,
)

# CORS
origins = [o.strip() for o in settings.CORS_ORIGINS.split(",")]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    """Store connectivity failures are retryable by the caller."""
    logger.error(f"Database error on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=503,
        content={"error": "Grading store unavailable", "details": str(exc)[:500]},
    )


@app.get("/api/health")
async def health_check():
    """Verify API and database connectivity."""
    try:
        async for db in get_db():
            await db.execute(text("SELECT 1"))
            return {"status": "ok", "database": "connected"}
    except Exception as e:
        return {"status": "error", "database": str(e)}


# Register routers
from ai_grader.routes.ai_grader import router as ai_grader_router
from ai_grader.routes.monitor import router as monitor_router
app.include_router(ai_grader_router)
app.include_router(monitor_router)
