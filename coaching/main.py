from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from coaching.api.middleware import RequestContextMiddleware
from coaching.api.v1.billing.router import router as billing_router
from coaching.api.v1.enrollments.router import router as enrollments_router
from coaching.api.v1.subjects.router import router as subjects_router
from coaching.core.config import settings
from coaching.core.logging import get_logger, setup_logging

logger = get_logger(__name__)


def create_app() -> FastAPI:
    setup_logging(settings)

    app = FastAPI(title="Coaching Center Enrollment Service")

    # CORS: allow frontend to call this API
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestContextMiddleware)

    # Routers
    app.include_router(subjects_router)
    app.include_router(enrollments_router)
    app.include_router(billing_router)

    logger.info("Application created", environment=settings.environment)
    return app


app = create_app()
