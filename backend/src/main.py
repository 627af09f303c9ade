import os
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

from config import Settings
from db import supabase
from routers import shot_detection
from services.analysis_pipeline import AnalysisPipeline

load_dotenv()

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    pipeline: Optional[AnalysisPipeline] = None,
) -> FastAPI:
    """
    Build the API.

    Passing a pipeline skips the production wiring (Supabase + YOLO), which
    is how tests inject fakes.
    """
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Initialize resources on startup, cleanup on shutdown."""
        logger.info("Starting up Shot Detection API...")

        if app.state.pipeline is None:
            if supabase.init_supabase():
                app.state.pipeline = AnalysisPipeline.from_settings(
                    settings,
                    result_sink=supabase.save_shot_analysis,
                    failure_sink=supabase.record_failure,
                )
            else:
                app.state.pipeline = AnalysisPipeline.from_settings(settings)

        yield

        logger.info("Shutting down Shot Detection API...")

    app = FastAPI(
        title="Shot Detection API",
        description="Pickleball shot detection from video with YOLO pose estimation",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if os.getenv("NODE_ENV") != "production" else None,
        redoc_url="/redoc" if os.getenv("NODE_ENV") != "production" else None,
    )
    app.state.pipeline = pipeline
    app.state.settings = settings

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/api/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "service": "Shot Detection API"}

    app.include_router(shot_detection.router, prefix="/api", tags=["shot-detection"])

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
