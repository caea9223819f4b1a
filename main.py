"""
Epic Notes API — application entry point.
"""

from __future__ import annotations

import logging
import sys

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.middleware import register_exception_handlers, register_middleware
from api.routes import router as api_router
from api.routes import uploads_router
from auth.routes import router as auth_router
from billing.routes import router as billing_router
from config.settings import config
from database.session import async_session_factory, init_db
from integrations.registry import ProviderRegistry
from integrations.routes import router as integrations_router
from notes.routes import router as notes_router
from onboarding.routes import router as onboarding_router
from onboarding.service import initialize_onboarding_steps
from organizations.routes import router as organizations_router

logging.basicConfig(
    level=logging.DEBUG if config.debug else logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
    stream=sys.stdout,
)
for _noisy in ("httpcore", "httpx", "botocore", "urllib3", "PIL"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    app = FastAPI(
        title=config.app_name,
        version="1.0.0",
        description="Multi-tenant notes with organizations, integrations and billing.",
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_middleware(app)
    register_exception_handlers(app)

    # Routes
    app.include_router(api_router, prefix="/api/v1")
    app.include_router(auth_router, prefix="/api/v1/auth")
    app.include_router(organizations_router, prefix="/api/v1/organizations")
    app.include_router(notes_router, prefix="/api/v1/notes")
    app.include_router(integrations_router, prefix="/api/v1/integrations")
    app.include_router(onboarding_router, prefix="/api/v1/onboarding")
    app.include_router(billing_router, prefix="/api/v1/billing")
    app.include_router(uploads_router, prefix="/api/v1/uploads")

    @app.on_event("startup")
    async def on_startup():
        logger.info("Creating database tables…")
        await init_db()

        async with async_session_factory() as session:
            await initialize_onboarding_steps(session)
            await session.commit()

        logger.info("Discovering integration providers…")
        ProviderRegistry().discover()

        logger.info("Application ready to accept requests.")

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=config.host,
        port=config.port,
        reload=config.debug,
        log_level="debug" if config.debug else "info",
    )
