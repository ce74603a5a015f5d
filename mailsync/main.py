from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from fastapi import FastAPI

from mailsync.api.routes import api_router, health_router
from mailsync.config import settings
from mailsync.db.database import close_db, init_models, session_factory
from mailsync.db.repositories import (
    AccountRepository,
    MessageRepository,
    SqlAlchemyAccountRepository,
    SqlAlchemyMessageRepository,
)
from mailsync.services.email_connectors import ConnectionManager
from mailsync.services.email_sync_service import EmailSyncService
from mailsync.services.message_materializer import MessageMaterializer
from mailsync.services.oauth_token_manager import OAuth2TokenManager
from mailsync.services.sync_scheduler import EmailSyncScheduler
from mailsync.utils.logging import get_logger, setup_logging
from mailsync.utils.metrics import PrometheusSyncMonitor

logger = get_logger("main")


@dataclass
class SyncServices:
    """Long-lived collaborators shared by the scheduler and the API."""
    accounts: AccountRepository
    messages: MessageRepository
    token_manager: OAuth2TokenManager
    sync_service: EmailSyncService
    scheduler: EmailSyncScheduler


def build_services(accounts: AccountRepository, messages: MessageRepository, config=None) -> SyncServices:
    config = config or settings
    monitor = PrometheusSyncMonitor()
    token_manager = OAuth2TokenManager(accounts, config=config, monitor=monitor)
    connections = ConnectionManager(token_manager, timeout_seconds=config.imap_timeout_seconds)
    sync_service = EmailSyncService(
        accounts,
        messages,
        connections,
        materializer=MessageMaterializer(config.attachments_dir),
        monitor=monitor,
        config=config,
    )
    scheduler = EmailSyncScheduler(sync_service, accounts, config=config)
    return SyncServices(accounts, messages, token_manager, sync_service, scheduler)


def create_app(services: Optional[SyncServices] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        services: Pre-built collaborators; when omitted they are created on
            startup on top of the configured database.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Starting {settings.app_name} v{settings.app_version}")
        owned = services is None
        if owned:
            await init_models()
            app.state.services = build_services(
                SqlAlchemyAccountRepository(session_factory),
                SqlAlchemyMessageRepository(session_factory),
            )
        else:
            app.state.services = services

        if settings.scheduler_enabled:
            await app.state.services.scheduler.start()

        try:
            yield
        finally:
            logger.info("Shutting down application...")
            await app.state.services.scheduler.shutdown()
            await app.state.services.token_manager.close()
            if owned:
                await close_db()
            logger.info("Application shutdown complete")

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Email account synchronization engine",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    app.include_router(health_router, tags=["health"])
    app.include_router(api_router)
    return app


setup_logging()
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "mailsync.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
