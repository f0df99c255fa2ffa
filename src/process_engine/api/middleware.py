"""
API middleware
"""
import logging
import re
import time
import uuid
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware


logger = logging.getLogger(__name__)


_INSTANCE_PATH = re.compile(r"^/api/v1/instances/([^/]+)")


def instance_id_from_path(path: str) -> Optional[str]:
    match = _INSTANCE_PATH.match(path)
    return match.group(1) if match else None


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tags each request with an id and logs it with the instance it touches"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        request.state.request_id = request_id
        instance_id = instance_id_from_path(request.url.path)
        tag = f"request_id={request_id}" + (f" instance={instance_id}" if instance_id else "")

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception(f"{request.method} {request.url.path} raised [{tag}]")
            raise
        elapsed = time.perf_counter() - started

        response.headers["X-Request-ID"] = request_id
        level = logging.WARNING if response.status_code >= 400 else logging.INFO
        logger.log(level, f"{request.method} {request.url.path} -> {response.status_code} in {elapsed:.3f}s [{tag}]")
        return response
