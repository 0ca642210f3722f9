"""
tvrelay - FastAPI Backend

Decrypts the BitTV channel playlist and proxies live streams with the
app's network identity.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from tvrelay.config import get_settings
from tvrelay.rate_limit import limiter
from tvrelay.services.playlist_source import get_playlist_client
from tvrelay.routers import drm, playlist, proxy

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    logger.info("Starting tvrelay backend...")

    client = get_playlist_client()
    if client.store is not None:
        await client.store.initialize()
        logger.info(f"Snapshot store initialized at {client.store.db_path}")

    yield

    logger.info("Shutting down tvrelay backend...")


# Create FastAPI app
settings = get_settings()
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="IPTV playlist decryption and impersonating stream proxy",
    lifespan=lifespan
)

# Add rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# CORS middleware; no credentials so preflights answer with a literal "*"
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Length", "Content-Range", "Accept-Ranges"],
)

# Include routers
app.include_router(playlist.router)
app.include_router(proxy.router)
app.include_router(drm.router)


@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": settings.app_version}


# Error handlers
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "tvrelay.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug
    )
