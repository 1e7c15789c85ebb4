from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from escrowhouse.api.deps import get_escrow_engine
from escrowhouse.api.middleware import RequestLogMiddleware
from escrowhouse.api.v1.router import v1_router
from escrowhouse.common import events
from escrowhouse.common.exceptions import EscrowError, InvariantViolation
from escrowhouse.common.logging import get_logger, setup_logging
from escrowhouse.config import settings
from escrowhouse.core.engine import EscrowEngine
from escrowhouse.integrations import BaseIntegration, NotificationClient

logger = get_logger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    notifier = NotificationClient()
    events.subscribe(notifier)
    yield
    events.unsubscribe(notifier)


app = FastAPI(
    title="EscrowHouse API",
    description="Milestone escrow and dispute resolution engine",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS
origins = settings.ALLOWED_ORIGINS.split(",") if settings.ALLOWED_ORIGINS != "*" else ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLogMiddleware)


@app.exception_handler(EscrowError)
async def escrow_error_handler(request: Request, exc: EscrowError) -> JSONResponse:
    if isinstance(exc, InvariantViolation):
        logger.error("%s %s: %s", request.method, request.url.path, exc.message)
    else:
        logger.info("%s %s rejected: %s (%s)", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# API routes
app.include_router(v1_router, prefix="/api/v1")


@app.get("/health")
async def health_check(engine: EscrowEngine = Depends(get_escrow_engine)):
    collaborators = [engine.provider, engine.policy, engine.assigner]
    return {
        "status": "healthy",
        "service": "escrowhouse",
        "version": "1.0.0",
        "env": settings.APP_ENV,
        "integrations": {
            c.name: await c.status() for c in collaborators if isinstance(c, BaseIntegration)
        },
    }
