from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from pharmstock.core.config import settings
from pharmstock.core.exceptions import BaseCustomException, create_error_response
from pharmstock.api.v1.api import api_router
from pharmstock.infrastructure.database import close_db, init_db
from pharmstock.infrastructure.redis import close_redis_services, init_redis_services, redis_manager
from pharmstock.middleware.request_context import RequestContextMiddleware

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.AUTO_CREATE_TABLES:
        await init_db()
    if settings.REDIS_ENABLED:
        try:
            await init_redis_services(settings.REDIS_URL, settings.REQUISITION_CACHE_TTL)
        except Exception as e:
            # Requisition reads fall back to the database
            logger.warning(f"Redis unavailable, running without cache: {e}")
    yield
    await close_redis_services()
    await close_db()


app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Set all CORS enabled origins
if settings.BACKEND_CORS_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[str(origin) for origin in settings.BACKEND_CORS_ORIGINS],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.add_middleware(RequestContextMiddleware)


@app.exception_handler(BaseCustomException)
async def custom_exception_handler(request: Request, exc: BaseCustomException):
    request_id = getattr(request.state, "request_id", None)
    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(exc, request_id),
    )


app.include_router(api_router, prefix=settings.API_V1_STR)


@app.get("/health")
async def health_check():
    return {
        "status": "ok",
        "redis": await redis_manager.is_healthy() if redis_manager.is_connected else "disabled",
    }
