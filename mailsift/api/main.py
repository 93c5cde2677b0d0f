"""
FastAPI backend for mailsift

Exposes sync, classification, feedback and reputation operations. The
MailPipeline is built once in the lifespan and kept in app.state.
"""
from contextlib import asynccontextmanager
from typing import Optional
import logging
import os
import re
import uuid

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from starlette.middleware.base import BaseHTTPMiddleware

from mailsift.api.routes import accounts, classification, emails, feedback, reputation, sync
from mailsift.core.config import Settings, configure_logging, get_settings
from mailsift.core.errors import AccountNotFoundError, CredentialError, EmailNotFoundError
from mailsift.core.pipeline import MailPipeline

logger = logging.getLogger(__name__)
error_logger = logging.getLogger("api.errors")

API_VERSION = "0.1.0"


SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}

# (pattern, replacement) applied in order to exception text before it is logged
_REDACTIONS = [
    (re.compile(r'(postgresql|postgres|mysql|sqlite)://[^:/]+:[^@]+@', re.IGNORECASE), r'\1://[USER]:[REDACTED]@'),
    (re.compile(r'(password|passwd|secret|token|key)["\']?\s*[=:]\s*["\']?[^"\'\s,;]+', re.IGNORECASE), r'\1=[REDACTED]'),
    (re.compile(r'Bearer\s+[A-Za-z0-9._~+/-]+=*'), 'Bearer [REDACTED]'),
    # Fernet keys
    (re.compile(r'[A-Za-z0-9_-]{43}='), '[REDACTED_KEY]'),
]


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers.update(SECURITY_HEADERS)
        return response


def _sanitize_error_message(message: str) -> str:
    """Scrub connection-string passwords, keys and tokens from an exception message."""
    for pattern, replacement in _REDACTIONS:
        message = pattern.sub(replacement, message)
    return message


def _install_exception_handlers(app: FastAPI):
    @app.exception_handler(AccountNotFoundError)
    async def account_not_found(request: Request, exc: AccountNotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(EmailNotFoundError)
    async def email_not_found(request: Request, exc: EmailNotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(CredentialError)
    async def credential_error(request: Request, exc: CredentialError):
        # Never echo vault details
        return JSONResponse(status_code=409, content={"detail": "Account credentials are unavailable"})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """
        Log the sanitized error with an id and return a generic message.
        """
        error_id = str(uuid.uuid4())
        error_logger.error(
            f"Error {error_id}: {type(exc).__name__}: {_sanitize_error_message(str(exc))}",
            extra={
                "error_id": error_id,
                "path": request.url.path,
                "method": request.method,
            }
        )
        return JSONResponse(
            status_code=500,
            content={
                "detail": "An internal error occurred",
                "error_id": error_id,
            }
        )


def create_app(settings: Optional[Settings] = None, pipeline: Optional[MailPipeline] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Defaults to get_settings()
        pipeline: Pre-built pipeline (tests); otherwise built in the lifespan
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = None
        if getattr(app.state, "pipeline", None) is None:
            owned = MailPipeline.from_settings(settings)
            owned.store.create_all()
            app.state.pipeline = owned
            logger.info("Pipeline initialized")
        try:
            yield
        finally:
            if owned is not None:
                owned.close()
                app.state.pipeline = None
                logger.info("Pipeline closed")

    app = FastAPI(
        title="mailsift API",
        description="Multi-account mail ingestion with adaptive classification",
        version=API_VERSION,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.pipeline = pipeline

    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-API-Key"],
        max_age=3600,
    )
    _install_exception_handlers(app)

    app.include_router(sync.router)
    app.include_router(classification.router)
    app.include_router(feedback.router)
    app.include_router(reputation.router)
    app.include_router(emails.router)
    app.include_router(accounts.router)

    @app.get("/health")
    def health_check():
        """Health check endpoint (no auth required)"""
        health = {"status": "healthy", "version": API_VERSION, "database": "unknown"}
        pipeline = getattr(app.state, "pipeline", None)
        if pipeline is None:
            health["status"] = "starting"
            return health
        try:
            with pipeline.store.session() as db:
                db.execute(text("SELECT 1"))
            health["database"] = "connected"
        except Exception as e:
            logger.warning(f"Health check database error: {type(e).__name__}")
            health["database"] = "disconnected"
            health["status"] = "degraded"
        return health

    return app


def main():
    import uvicorn

    settings = get_settings()
    configure_logging(settings)
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(create_app(settings), host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
