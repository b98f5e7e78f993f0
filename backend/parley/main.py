import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware
from sqlmodel import Session, text

from parley.core.config import settings
from parley.api.api_router import api_router
from parley.core.db import engine, init_db
from parley.core.errors import SchedulerError
from parley.core.tracing import setup_tracing

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logging.basicConfig(level=settings.LOG_LEVEL)
    setup_tracing("parley-scheduler")
    init_db()

    yield

    # Shutdown


app = FastAPI(
    title=settings.APP_NAME,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALL_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix=settings.API_PREFIX)


@app.exception_handler(SchedulerError)
async def scheduler_error_handler(request: Request, exc: SchedulerError):
    if exc.status_code >= 500:
        logger.error("Scheduler error", extra={"path": request.url.path, "error_code": exc.error_code, "error": exc.message})
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "error_code": exc.error_code})


@app.get("/healthz")
async def health_check():
    """Liveness: the process is up and the database answers."""
    health_status = {
        "status": "healthy",
        "services": {
            "postgres": "unknown",
        }
    }

    try:
        with Session(engine) as session:
            session.exec(text("SELECT 1"))
            health_status["services"]["postgres"] = "healthy"
    except Exception as e:
        health_status["services"]["postgres"] = f"unhealthy: {str(e)}"
        health_status["status"] = "degraded"

    return health_status
