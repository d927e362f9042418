import time
import logging
from uuid import uuid4

from fastapi import Request
from fastapi.responses import JSONResponse

from perfstat.config import settings

logger = logging.getLogger("perfstat.api")


async def add_request_id(request: Request, call_next):
    rid = request.headers.get("x-request-id") or uuid4().hex
    request.state.request_id = rid
    response = await call_next(request)
    response.headers["x-request-id"] = rid
    return response


def _body_limit(request: Request) -> tuple[int, str]:
    """Uploads get the upload cap; field-change and save payloads get the smaller JSON cap."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("multipart/"):
        return settings.security.max_upload_mb * 1024 * 1024, f"{settings.security.max_upload_mb}MB"
    return settings.security.max_json_kb * 1024, f"{settings.security.max_json_kb}KB"


async def enforce_body_size(request: Request, call_next):
    header_val = request.headers.get("content-length")
    if header_val and header_val.isdigit():
        limit_bytes, label = _body_limit(request)
        if int(header_val) > limit_bytes:
            logger.warning(
                "Request body too large",
                extra={"path": request.url.path, "content_length": int(header_val), "limit": label},
            )
            return JSONResponse(
                status_code=413,
                content={
                    "error": "request_too_large",
                    "detail": f"Max body size for this request is {label}",
                    "request_id": getattr(request.state, "request_id", None),
                },
            )
    return await call_next(request)


async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = None
    try:
        response = await call_next(request)
        return response
    finally:
        status = getattr(response, "status_code", None)
        level = logging.INFO if status is not None and status < 500 else logging.WARNING
        logger.log(
            level,
            "request",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status": status or "error",
                "duration_ms": round((time.perf_counter() - start) * 1000, 2),
                "request_id": getattr(request.state, "request_id", None),
                "user_id": request.headers.get("x-user-id"),
                "user_role": request.headers.get("x-user-role"),
            },
        )
