import logging
import time
from typing import Any, Dict

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

log = logging.getLogger("nightlife.requests")

SENSITIVE_HEADERS = {
    "authorization",
    "cookie",
    "x-api-key",
    "x-supabase-key",
    "x-square-hmacsha256-signature",
    "toast-signature",
}


def mask_headers(headers: Dict[str, str]) -> Dict[str, str]:
    out = {}
    for k, v in headers.items():
        if k.lower() in SENSITIVE_HEADERS:
            out[k] = "***masked***"
        else:
            out[k] = v
    return out


async def log_request_response(request: Request, response: Response, start_time: float) -> None:
    duration_ms = int((time.time() - start_time) * 1000)

    entry: Dict[str, Any] = {
        "method": request.method,
        "path": request.url.path,
        "status_code": response.status_code,
        "duration_ms": duration_ms,
        "client": request.client.host if request.client else None,
        "headers": mask_headers(dict(request.headers)),
    }

    log.info(entry)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start = time.time()
        response = await call_next(request)
        await log_request_response(request, response, start)
        return response
