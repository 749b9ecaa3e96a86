"""Main application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from yacht_locks.api.routes import router as api_router, set_service
from yacht_locks.config import settings
from yacht_locks.core.manager import LockService

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Global service instance
service: LockService | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    global service

    logger.info("Starting yacht lock service...")

    service = LockService(settings)
    await service.initialize()
    set_service(service)

    await service.start()

    logger.info("Application started successfully")

    yield

    # Shutdown
    logger.info("Shutting down yacht lock service...")
    if service:
        await service.stop()
    set_service(None)
    logger.info("Application shutdown complete")


app = FastAPI(
    title="Yacht Locks",
    description="Smart-lock command and state reconciliation for yacht doors",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount API routes
app.include_router(api_router, prefix="/api")


def main():
    """Run the application."""
    import uvicorn

    uvicorn.run(
        "yacht_locks.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )


if __name__ == "__main__":
    main()
