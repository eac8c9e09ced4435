import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.v1.api import api_router
from app.core.config import settings
from app.core.database import dispose_engine
from app.core.exceptions import AppException
from app.core.logging import configure_logging, correlation_id_ctx
from app.core.redis import redis_client

configure_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    gateway = settings.gateway_config()
    logger.info(
        f"{settings.APP_NAME} starting — env={settings.ENVIRONMENT}, "
        f"gateway={gateway.gateway_host}, method={gateway.method}, "
        f"capture={gateway.capture}, threedsecure={gateway.threedsecure}"
    )
    if not gateway.is_available:
        logger.warning("[mastercard] API credentials are not set, payments will fail")

    yield

    await redis_client.close()
    await dispose_engine()
    logger.info(f"{settings.APP_NAME} stopped")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def correlation_id_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
    token = correlation_id_ctx.set(request_id)
    try:
        response = await call_next(request)
    finally:
        correlation_id_ctx.reset(token)
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(AppException)
async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    logger.warning(
        f"{exc.error_code} on {request.method} {request.url.path}: {exc.message}"
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": exc.error_code,
            "message": exc.message,
            "details": exc.details,
        },
    )


app.include_router(api_router, prefix="/api/v1")


@app.get("/health", tags=["health"])
async def health():
    return {"status": "ok", "version": settings.APP_VERSION}
