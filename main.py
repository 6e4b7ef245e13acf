"""
Math Tutor Backend - FastAPI Application

Main entry point for the Socratic math tutoring API: streamed text chat,
live voice sessions, practice quizzes and the shared whiteboard.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import get_settings, validate_required_settings
from database import get_db_manager
from shared.api import health
from tutor.api import chat, conversations, practice, transcription, tts, uploads, vision, voice, whiteboard
from tutor.api.dependencies import get_services

settings = get_settings()
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Validate configuration and the database on startup; release sessions on shutdown."""
    logger.info("Starting Math Tutor Backend...")
    validate_required_settings()

    db_manager = get_db_manager()
    db_manager.create_tables()
    if not db_manager.health_check():
        logger.warning("Database health check failed on startup")
    else:
        logger.info("Database connection healthy")

    yield

    logger.info("Shutting down: closing voice sessions and flushing whiteboards")
    await get_services().shutdown()
    db_manager.close()


# Initialize FastAPI app
app = FastAPI(
    title="Math Tutor Backend",
    description="Socratic math tutoring API with streamed chat, voice mode and practice quizzes",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router)
app.include_router(conversations.router)
app.include_router(chat.router)
app.include_router(practice.router)
app.include_router(whiteboard.router)
app.include_router(uploads.router)
app.include_router(voice.router)
app.include_router(transcription.router)
app.include_router(tts.router)
app.include_router(vision.router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True
    )
