from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
import logging
import time
import uuid

logger = logging.getLogger("pharmstock.requests")


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Tag every request with an id and log how long it took"""

    EXCLUDED_ROUTES = [
        "/health",
        "/docs",
        "/redoc",
        "/openapi.json"
    ]

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        if any(request.url.path.startswith(route) for route in self.EXCLUDED_ROUTES):
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            return response

        start_time = time.time()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                f"{request.method} {request.url.path} failed after "
                f"{time.time() - start_time:.3f}s [request_id={request_id}]"
            )
            raise

        processing_time = time.time() - start_time
        log = logger.warning if response.status_code >= 400 else logger.info
        log(
            f"{request.method} {request.url.path} -> {response.status_code} "
            f"in {processing_time:.3f}s [request_id={request_id}]"
        )
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{processing_time:.3f}"
        return response
