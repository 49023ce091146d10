from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.responses import FileResponse, JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

FRONTEND_INDEX = Path(__file__).resolve().parents[2] / "frontend" / "dist" / "index.html"


class ClinicError(Exception):
    """Base class for errors raised by the clinic services."""

    status_code = 500
    public_message = "Internal server error"


class BackupNotFoundError(ClinicError):
    status_code = 404

    def __init__(self, path):
        self.path = str(path)
        super().__init__(f"Backup file not found: {self.path}")

    @property
    def public_message(self) -> str:
        return str(self)


class RestoreError(ClinicError):
    """The restore did not complete; the live database may be unchanged or partially written."""

    public_message = "Restore failed"


class DatabaseInitError(ClinicError):
    """Migration or seeding failed while preparing the primary database."""


class PlatformError(ClinicError):
    """The database platform API answered with an error."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.upstream_status = status_code


class ProvisioningError(ClinicError):
    """A demo database could not be created, migrated or seeded."""


class RateLimitExceeded(ClinicError):
    status_code = 429
    public_message = "Rate limit exceeded. Try again later."

    def __init__(self, retry_after: int):
        super().__init__(f"rate limited, retry after {retry_after}s")
        self.retry_after = retry_after


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ClinicError)
    async def clinic_error_handler(request: Request, exc: ClinicError):
        headers = None
        if isinstance(exc, RateLimitExceeded):
            headers = {"Retry-After": str(exc.retry_after)}
        return JSONResponse({"error": exc.public_message}, status_code=exc.status_code, headers=headers)

    @app.exception_handler(404)
    async def not_found_handler(request: Request, exc: StarletteHTTPException):
        accept = request.headers.get("accept", "")
        detail = exc.detail if hasattr(exc, "detail") else "Not Found"
        if request.url.path.startswith(("/api/", "/demo/")) or "text/html" not in accept:
            return JSONResponse({"detail": detail}, status_code=404)
        if FRONTEND_INDEX.exists():
            # Let the SPA router render its own not-found page
            return FileResponse(FRONTEND_INDEX, status_code=404)
        return JSONResponse({"detail": detail}, status_code=404)
