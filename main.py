"""
Workflow automation backend — credentials, OAuth2 and polling triggers.
Application entry point.
"""

from __future__ import annotations

import logging
import sys

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.middleware import register_middleware
from api.routes import router as api_router
from config.settings import config
from database.credential_store import CredentialStore
from database.encryption import TokenCipher
from database.session import async_session_factory, engine, init_models
from database.workflow_store import WorkflowStore
from oauth.coordinator import OAuth2Coordinator
from oauth.token_refresh import TokenRefreshManager
from triggers.calendar_source import CalendarEventSource, CalendarRouting
from triggers.dispatcher import HttpWorkflowDispatcher
from triggers.gmail_source import GmailHistorySource, GmailRouting
from triggers.polling import PollingTriggerEngine
from triggers.registry import RegistrationArena

logging.basicConfig(
    level=logging.DEBUG if config.debug else logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
    stream=sys.stdout,
)
for _noisy in ("httpcore", "httpx", "googleapiclient", "google_auth_httplib2", "urllib3"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


def build_services(app: FastAPI) -> None:
    """Wire stores, coordinator and polling engines onto ``app.state``."""
    credentials = CredentialStore(async_session_factory, TokenCipher(config.token_encryption_key))
    workflows = WorkflowStore(async_session_factory)
    registrations = RegistrationArena()

    coordinator = OAuth2Coordinator(credentials, registrations=registrations)
    dispatcher = HttpWorkflowDispatcher()
    refresher = TokenRefreshManager(coordinator)

    calendar = PollingTriggerEngine(
        credentials=credentials,
        workflows=workflows,
        registrations=registrations,
        source=CalendarEventSource(max_pages=config.poll_max_pages),
        routing=CalendarRouting(),
        refresher=refresher,
        dispatcher=dispatcher,
        name="Google Calendar",
    )
    gmail = PollingTriggerEngine(
        credentials=credentials,
        workflows=workflows,
        registrations=registrations,
        source=GmailHistorySource(
            max_pages=config.poll_max_pages, skip_header=config.gmail_skip_header
        ),
        routing=GmailRouting(),
        refresher=refresher,
        dispatcher=dispatcher,
        name="Gmail",
        cursor_field="history_cursor",
        poll_interval=config.gmail_poll_interval_seconds,
    )

    app.state.credentials = credentials
    app.state.registrations = registrations
    app.state.coordinator = coordinator
    app.state.dispatcher = dispatcher
    app.state.pollers = {"calendar": calendar, "gmail": gmail}


def create_app() -> FastAPI:
    app = FastAPI(
        title="Workflow Automation — Credentials & Triggers",
        version="1.0.0",
        description="OAuth2 credential management and polling trigger detection.",
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
    app.include_router(api_router, prefix="/api")
    build_services(app)

    @app.on_event("startup")
    async def on_startup():
        if config.database_create_tables:
            await init_models()
        if config.polling_enabled:
            app.state.pollers["calendar"].start()
        else:
            logger.info("Calendar polling disabled (POLLING_ENABLED=false)")
        if config.gmail_polling_enabled:
            app.state.pollers["gmail"].start()
        else:
            logger.info("Gmail polling disabled (GMAIL_POLLING_ENABLED=false)")
        logger.info("Application ready to accept requests.")

    @app.on_event("shutdown")
    async def on_shutdown():
        for poller in app.state.pollers.values():
            poller.stop()
        await app.state.coordinator.aclose()
        await app.state.dispatcher.aclose()
        await engine.dispose()
        logger.info("Shutdown complete.")

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
