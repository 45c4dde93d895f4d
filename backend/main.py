"""
Threat Modeler - FastAPI Backend
Main application entry point
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import uvicorn
import logging

from config import Settings, get_settings
from routes.analyses import router as analyses_router
from services.container import ServiceContainer

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def create_app(settings: Settings = None, container: ServiceContainer = None, start_workers: bool = True) -> FastAPI:
    """Build the app; tests pass their own container and skip the worker pool"""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events"""
        logger.info("Starting Threat Modeler API...")
        app.state.container = container or ServiceContainer.build(settings)
        if start_workers:
            app.state.container.worker_pool.start()

        yield

        logger.info("Shutting down Threat Modeler API...")
        if start_workers:
            app.state.container.worker_pool.stop()

    app = FastAPI(
        title="Threat Modeler API",
        description="STRIDE threat modeling from architecture diagrams",
        version="1.0.0",
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/api/health")
    async def health_check():
        """Detailed health check"""
        queue_status = app.state.container.analysis_service.get_queue_status()
        return {
            "status": "healthy",
            "service": "Threat Modeler API",
            "queue": queue_status,
        }

    app.include_router(analyses_router)
    return app


app = create_app()


if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run(
        "main:app",
        host=settings.backend_host,
        port=settings.backend_port,
        log_level="info"
    )
