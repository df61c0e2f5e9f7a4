"""HTTP middleware: CORS, request correlation and access logging."""

import logging
import time
import uuid

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from permission_engine.core.config import settings

logger = logging.getLogger("permission_engine.http")


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Tags each request with an id and logs its outcome.

    Denied admin calls (401/403) are logged at WARNING so repeated probing
    shows up next to the anomaly alerts.
    """

    async def dispatch(self, request: Request, call_next):
        request.state.request_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex
        started = time.perf_counter()

        response: Response = await call_next(request)

        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
        response.headers["X-Request-Id"] = request.state.request_id
        response.headers["X-Response-Time-Ms"] = str(elapsed_ms)

        level = logging.WARNING if response.status_code in (401, 403) else logging.INFO
        logger.log(
            level,
            "%s %s -> %s in %sms [%s]",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
            request.state.request_id,
        )
        return response


def setup_middleware(app: FastAPI) -> None:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["Authorization", "Content-Type", "X-Request-Id"],
    )
    app.add_middleware(RequestContextMiddleware)
