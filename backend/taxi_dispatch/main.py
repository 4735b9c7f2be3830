"""Taxi Dispatch API"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from taxi_dispatch.core.config import get_settings
from taxi_dispatch.core.logging import configure_logging, logger
from taxi_dispatch.routers import dispatch, invitations, live, voice


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    settings = get_settings()
    configure_logging(settings.log_level)
    logger.info(
        "Taxi Dispatch API starting",
        version="0.1.0",
        llm_model=settings.llm_model,
        llm_audio_model=settings.llm_audio_model,
        app_mode=settings.normalized_app_mode(),
    )
    yield
    logger.info("Taxi Dispatch API shutting down")


app = FastAPI(
    title="Taxi Dispatch API",
    description="Ride dispatch with live ride/driver views and AI-assisted voice commands",
    version="0.1.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(dispatch.router)
app.include_router(live.router)
app.include_router(voice.router)
app.include_router(invitations.router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Taxi Dispatch API",
        "version": "0.1.0",
        "description": "Ride dispatch with AI-assisted voice commands",
        "endpoints": {
            "dispatch": "/dispatch",
            "live": "/dispatch/live",
            "voice": "/voice",
            "invitations": "/invitations",
        }
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
