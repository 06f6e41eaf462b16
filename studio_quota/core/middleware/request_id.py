import logging
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from studio_quota.core.logging import request_id_ctx_var, latency_bucket_ms

MAX_REQUEST_ID_LENGTH = 128

# Path parameters that identify whose allowance a request touched
IDENTITY_PARAMS = ("user_id", "session_id")


def _accept_request_id(incoming) -> bool:
    return bool(incoming) and len(incoming) <= MAX_REQUEST_ID_LENGTH and incoming.isprintable()


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Attach a request_id to each request and log completion with the quota identity."""

    def __init__(self, app, header_name: str = "x-request-id"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request, call_next):
        incoming = request.headers.get(self.header_name)
        rid = incoming if _accept_request_id(incoming) else str(uuid4())
        request.state.request_id = rid
        token = request_id_ctx_var.set(rid)

        start = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            request_id_ctx_var.reset(token)
        duration_ms = (time.perf_counter() - start) * 1000

        response.headers[self.header_name] = rid

        # Filled in by the router once the request has been matched
        params = request.scope.get("path_params") or {}
        extra = {
            "request_id": rid,
            "path": request.url.path,
            "method": request.method,
            "status": getattr(response, "status_code", None),
            "latency_bucket": latency_bucket_ms(duration_ms),
        }
        for name in IDENTITY_PARAMS:
            if params.get(name):
                extra[name] = params[name]

        logging.getLogger("studio_quota").info("request.complete", extra=extra)
        return response
