"""
chatweb - Main FastAPI Application
Streaming multi-room chat backed by pooled upstream API keys.
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import settings
from .database import AsyncSessionLocal, init_db, close_db
from .routers import (
    admin_router,
    auth_router,
    chat_router,
    files_router,
    rooms_router
)
from .services.cancellation import CancellationRegistry
from .services.chat_service import ChatService
from .services.chat_store import ChatStore
from .services.config_service import ConfigService
from .services.file_service import FileService
from .services.key_lease import KeyLeaseManager
from .utils.logger import setup_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    setup_logging()
    await init_db()
    os.makedirs(settings.UPLOAD_DIR, exist_ok=True)

    # process-wide state shared by all requests
    config_service = ConfigService(AsyncSessionLocal)
    registry = CancellationRegistry()
    app.state.config_service = config_service
    app.state.registry = registry
    app.state.file_service = FileService()
    app.state.chat_service = ChatService(
        store=ChatStore(AsyncSessionLocal),
        config_service=config_service,
        lease_manager=KeyLeaseManager(),
        registry=registry,
    )
    logger.info("%s %s started", settings.APP_NAME, settings.APP_VERSION)

    yield

    # Shutdown
    await close_db()


# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Streaming chat with web search augmentation and pooled upstream keys",
    lifespan=lifespan
)


# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Include routers
app.include_router(auth_router)
app.include_router(chat_router)
app.include_router(rooms_router)
app.include_router(files_router)
app.include_router(admin_router)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION
    }


@app.get("/api")
async def api_info():
    """API information endpoint."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "endpoints": {
            "auth": "/api/auth",
            "chat": "/api/chat",
            "rooms": "/api/rooms",
            "files": "/api/files",
            "admin": "/api/admin"
        }
    }
