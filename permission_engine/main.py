"""FastAPI main application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from permission_engine.core.config import settings
from permission_engine.core.middleware import setup_middleware
from permission_engine.core.exceptions import PermissionEngineError
from permission_engine.schemas.schemas import ApiResponse

from permission_engine.api.permissions import router as permissions_router
from permission_engine.api.roles import router as roles_router
from permission_engine.api.monitoring import router as monitoring_router

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("permission_engine")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("Starting %s (%s)", settings.APP_NAME, settings.APP_ENV)

    from permission_engine.services.cache_service import cache_backend
    if cache_backend.health_check():
        logger.info("Permission cache connected (%s)", settings.PERMISSION_CACHE_BACKEND)
    else:
        logger.warning("Permission cache not available; evaluations will hit the database")

    yield

    logger.info("Shutting down %s", settings.APP_NAME)


app = FastAPI(
    title="Hospital Permission Engine API",
    description="Hierarchical roles, permission evaluation, approvals and monitoring",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# Middleware
setup_middleware(app)


def _envelope(status_code: int, message: str, errors=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ApiResponse(success=False, message=message, errors=errors).model_dump(),
    )


@app.exception_handler(PermissionEngineError)
async def permission_engine_exception_handler(request: Request, exc: PermissionEngineError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return _envelope(exc.status_code, exc.message, exc.errors)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    response = _envelope(exc.status_code, str(exc.detail))
    if exc.headers:
        response.headers.update(exc.headers)
    return response


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(request: Request, exc: RequestValidationError):
    return _envelope(422, "Invalid request", {"fields": jsonable_errors(exc)})


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    return [
        {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg", "")}
        for err in exc.errors()
    ]


# Register routers
app.include_router(permissions_router)
app.include_router(roles_router)
app.include_router(monitoring_router)


@app.get("/")
async def root():
    return {
        "name": settings.APP_NAME,
        "version": "0.1.0",
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    """Quick health check endpoint."""
    return {"status": "ok"}
