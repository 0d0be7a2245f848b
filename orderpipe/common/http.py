"""FastAPI wiring shared by every service: error rendering and request metrics."""

from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from orderpipe.common.config import settings
from orderpipe.common.errors import PipelineError, ValidationFailed
from orderpipe.common.logging import logger, trace_id_ctx
from orderpipe.common.metrics import http_request_duration_seconds, http_requests_total


async def pipeline_error_handler(_: Request, exc: PipelineError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.error("request failed error_code=%s error=%s", exc.error_code, exc.message)
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


async def validation_error_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
    details = [{"loc": list(err.get("loc", [])), "msg": err.get("msg")} for err in exc.errors()]
    return JSONResponse(status_code=400, content=ValidationFailed(details=details).to_dict())


async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log with traceback, answer with a generic body that echoes nothing internal."""

    logger.exception("unhandled error route=%s", request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "Internal server error", "error_code": "INTERNAL_ERROR"},
    )


def install_common(app: FastAPI) -> None:
    """Register error handlers and the request metrics/trace middleware."""

    app.add_exception_handler(PipelineError, pipeline_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Record request count and latency for every HTTP call."""

        trace_id_ctx.set(request.headers.get("x-trace-id") or str(uuid4()))
        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(
                service=settings.service_name,
                route=route,
                method=method,
            ).observe(elapsed)
            http_requests_total.labels(
                service=settings.service_name,
                route=route,
                method=method,
                status_code=str(status_code),
            ).inc()
