"""
Shared-secret authentication middleware for the worker.

/classification/* and /generation/* require a valid X-Worker-Secret header
matching WORKER_SHARED_SECRET. The web app attaches this header when it
forwards requests to the worker.
"""

import os
import secrets

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

PROTECTED_PREFIXES = ("/classification", "/generation")


class WorkerAuthMiddleware(BaseHTTPMiddleware):
    """Reject unauthenticated requests to pipeline endpoints."""

    async def dispatch(self, request: Request, call_next):
        if not request.url.path.startswith(PROTECTED_PREFIXES):
            return await call_next(request)

        worker_secret = os.environ.get("WORKER_SHARED_SECRET", "")
        if not worker_secret:
            # In development without the secret set, allow all traffic
            if os.environ.get("ENVIRONMENT", "development") == "development":
                return await call_next(request)
            return JSONResponse(
                status_code=500,
                content={"error_code": "AUTH_NOT_CONFIGURED", "message": "WORKER_SHARED_SECRET not configured"},
            )

        # Constant-time compare avoids timing attacks
        provided = request.headers.get("X-Worker-Secret", "")
        if not secrets.compare_digest(provided, worker_secret):
            return JSONResponse(
                status_code=401,
                content={"error_code": "UNAUTHORIZED", "message": "Invalid or missing worker secret"},
            )

        return await call_next(request)
