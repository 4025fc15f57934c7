"""
FairSign Engine - Main FastAPI Application
Signing, completion and finalization of documents.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from app.config import get_cors_origins, get_settings
from app.exceptions import (
    AppException,
    app_exception_handler,
    generic_exception_handler,
    http_exception_handler,
    validation_exception_handler,
)
from app.supabase_client import get_supabase_client
from app.utils.logging import RequestIdMiddleware, setup_logging

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    settings = get_settings()
    setup_logging(
        environment=settings.environment,
        level=logging.DEBUG if settings.debug else logging.INFO,
    )
    logger.info(f"Starting FairSign Engine v{VERSION} ({settings.environment})")
    yield
    await get_supabase_client().close()
    logger.info("Shutting down FairSign Engine")


app = FastAPI(
    title="FairSign Engine",
    description="""Document signing and completion service.

## Authentication

### 1. Signer access token
Signer endpoints under `/api/documents/{id}` take the signer's access token
in the `token` query parameter.

### 2. Admin Secret + User ID (Edge Function calls)
Owner endpoints under `/owner/v1` are called by Supabase Edge Functions with:
- `X-Admin-Secret`: Admin API secret for authentication
- `X-User-ID`: Owner's Supabase UUID
""",
    version=VERSION,
    lifespan=lifespan,
    openapi_tags=[
        {"name": "documents", "description": "Signer operations (token-based)"},
        {"name": "owner", "description": "Document owner operations"},
        {"name": "health", "description": "Health check endpoints"},
    ],
)


from app.routers import documents, owner

# Middleware
app.add_middleware(RequestIdMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Exception handlers
app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(ValidationError, validation_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)

# Routers
app.include_router(documents.router)
app.include_router(owner.router)


# Health check
@app.get("/health", tags=["health"])
async def health_check():
    """Health check endpoint for Cloud Run."""
    return {"status": "healthy", "version": VERSION}
