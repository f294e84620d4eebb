import time
import uuid

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, Response

logger = structlog.get_logger("clinicos.middleware")


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        tenant_slug = (request.headers.get("X-Tenant-Slug") or "").strip().lower() or None
        actor_id = (request.headers.get("X-Actor-Id") or "").strip() or None

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            tenant_slug=tenant_slug,
            actor_id=actor_id,
            path=request.url.path,
            method=request.method,
            app="clinicos",
        )

        start_time = time.perf_counter()

        try:
            response: Response = await call_next(request)
        except Exception as exc:
            process_time = (time.perf_counter() - start_time) * 1000
            logger.error(
                "http_request_failed",
                error=str(exc),
                duration_ms=round(process_time, 2),
            )
            return JSONResponse(
                status_code=500,
                content={"detail": "Internal Server Error", "request_id": request_id},
                headers={"X-Request-ID": request_id},
            )

        process_time = (time.perf_counter() - start_time) * 1000
        response.headers["X-Request-ID"] = request_id

        logger.info(
            "http_request",
            status=response.status_code,
            duration_ms=round(process_time, 2),
        )

        return response
