from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from safee import __version__
from safee.api.errors import register_exception_handlers
from safee.api.routers import approvals, encryption, health
from safee.core.config import Settings, get_settings
from safee.core.logger import configure_logging


def create_app(settings: Settings = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)

    app = FastAPI(
        title=settings.app_name,
        description="Approval workflows and document encryption",
        version=__version__,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.debug else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    # Include routers
    app.include_router(health.router)
    app.include_router(approvals.router, prefix="/api")
    app.include_router(encryption.router, prefix="/api")

    @app.get("/")
    def root():
        return {
            "name": settings.app_name,
            "version": __version__,
            "docs": "/docs" if settings.debug else None,
        }

    return app


app = create_app()
