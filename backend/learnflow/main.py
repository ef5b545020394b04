from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError
from contextlib import asynccontextmanager
from typing import Callable, Optional
from learnflow.core.config import Settings, settings
from learnflow.core.container import ServiceContainer
from learnflow.core.logging import setup_logging
from learnflow.core.exceptions import (
    LearnFlowException, learnflow_exception_handler, request_validation_exception_handler,
    sqlalchemy_exception_handler, general_exception_handler
)
from learnflow.db.init_db import init_db
from learnflow.db.session import SessionLocal
from learnflow.api.v1.api import api_router

# Set up logging
setup_logging()


def default_container_factory(app_settings: Settings) -> ServiceContainer:
    init_db()
    return ServiceContainer.from_settings(app_settings, SessionLocal)


def create_app(
    app_settings: Settings = settings,
    container_factory: Optional[Callable[[Settings], ServiceContainer]] = None,
) -> FastAPI:
    factory = container_factory or default_container_factory

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan management"""
        # Startup
        container = factory(app_settings)
        await container.start()
        app.state.container = container

        yield

        # Shutdown
        await container.stop()

    app = FastAPI(
        title=app_settings.PROJECT_NAME,
        description="Admission control and processing pipeline for YouTube learning material",
        version="1.0.0",
        openapi_url=f"{app_settings.API_V1_STR}/openapi.json",
        lifespan=lifespan
    )

    # Exception handlers
    app.add_exception_handler(LearnFlowException, learnflow_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_exception_handler)
    app.add_exception_handler(SQLAlchemyError, sqlalchemy_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[str(origin).rstrip("/") for origin in app_settings.BACKEND_CORS_ORIGINS],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset", "Retry-After"],
    )

    # Include API router
    app.include_router(api_router, prefix=app_settings.API_V1_STR)

    @app.get("/")
    async def root():
        return {"message": f"{app_settings.PROJECT_NAME} is running"}

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("learnflow.main:app", host="0.0.0.0", port=8000, reload=True)
