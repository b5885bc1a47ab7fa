"""
Help-Desk Workflow Automation - Main Application
=================================================

Rule engine that reacts to ticket lifecycle events with automated actions.

Modules:
- Automation: rule management, event orchestration, time-based/SLA scan

Clean Architecture Layers:
- Interfaces: FastAPI controllers
- Application: Services, orchestrator, DTOs
- Domain: Entities, value objects, templates
- Infrastructure: Database, ticket/notification clients, scheduler
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

# Configuration and Core
from src.config import Settings, settings
from src.core import ApplicationException

# Infrastructure
from src.infrastructure.database import (
    close_database, create_tables, get_session_maker, init_database,
)

# Automation module
from src.automation.application import (
    ActionExecutor, AutomationOrchestrator, IAutomationConfigProvider,
    INotificationService, IRuleRepository, ITicketService,
    RuleService, RuleSnapshotCache,
)
from src.automation.infrastructure import (
    AutomationConfigManager, AutomationScheduler, HTTPNotificationService,
    HTTPTicketService, InMemoryRuleRepository, LifecycleEventBus,
    ResilientHTTPClient, SQLAlchemyRuleRepository, SlackClient,
)
from src.automation.interfaces import automation_router

# Shared
from src.shared.api.middleware import (
    CorrelationIDMiddleware,
    RequestLoggingMiddleware,
    application_exception_handler,
    global_exception_handler,
)
from src.shared.infrastructure.logging import get_logger, setup_logging

logger = get_logger(__name__)


def wire_automation(
    state,
    rule_repository: IRuleRepository,
    ticket_service: ITicketService,
    notification_service: INotificationService,
    config_provider: IAutomationConfigProvider,
    app_settings: Settings = settings
) -> None:
    """
    Build the automation services and store them in app state.

    Shared by the lifespan and by tests that supply their own collaborators.
    """
    rule_cache = RuleSnapshotCache(rule_repository, ttl_seconds=app_settings.rule_cache_ttl_seconds)
    executor = ActionExecutor(ticket_service, notification_service, config_provider)
    orchestrator = AutomationOrchestrator(
        rule_cache=rule_cache,
        rule_repository=rule_repository,
        ticket_service=ticket_service,
        executor=executor,
        config_provider=config_provider,
        scan_interval_seconds=app_settings.scan_interval_seconds,
        notification_service=notification_service
    )
    event_bus = LifecycleEventBus()
    event_bus.subscribe(orchestrator.handle_event)

    state.settings = app_settings
    state.rule_repository = rule_repository
    state.rule_cache = rule_cache
    state.rule_service = RuleService(rule_repository, rule_cache)
    state.orchestrator = orchestrator
    state.event_bus = event_bus


def _build_ticket_service(app_settings: Settings) -> HTTPTicketService:
    headers = {}
    if app_settings.ticket_service_token:
        headers["Authorization"] = f"Bearer {app_settings.ticket_service_token}"
    return HTTPTicketService(ResilientHTTPClient(
        "Ticket Service",
        app_settings.ticket_service_url,
        timeout=app_settings.http_timeout_seconds,
        headers=headers
    ))


def _build_notification_service(app_settings: Settings) -> HTTPNotificationService:
    client = None
    if app_settings.notification_service_url:
        client = ResilientHTTPClient(
            "Notification Service",
            app_settings.notification_service_url,
            timeout=app_settings.http_timeout_seconds
        )
    slack = None
    if app_settings.slack_webhook_url:
        slack = SlackClient(
            app_settings.slack_webhook_url,
            app_settings.slack_channel,
            ResilientHTTPClient("Slack", "", timeout=app_settings.http_timeout_seconds)
        )
    if client is None and slack is None:
        logger.warning("No notification channel configured - notification actions will fail")
    return HTTPNotificationService(client, slack)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    STARTUP:
    1. Setup structured logging
    2. Initialize the rule store (database or in-memory)
    3. Load automation configuration and start watching it
    4. Build ticket/notification clients and automation services
    5. Start the time-based/SLA scan scheduler

    SHUTDOWN:
    1. Stop scheduler and config watcher
    2. Drain in-flight event handlers
    3. Close HTTP clients and database connections
    """
    # === STARTUP ===
    setup_logging(settings.log_level, settings.environment)
    logger.info("Starting Automation Service", extra={
        "version": settings.app_version,
        "environment": settings.environment
    })

    if settings.rule_store_backend == "memory":
        logger.info("Using in-memory rule store")
        rule_repository: IRuleRepository = InMemoryRuleRepository()
    else:
        logger.info("Initializing database")
        init_database()
        # Create tables (for development - use Alembic in production)
        try:
            await create_tables()
        except Exception as e:
            logger.warning(f"Database not available - rule endpoints will return 503: {e}")
        rule_repository = SQLAlchemyRuleRepository(get_session_maker())

    logger.info("Loading automation configuration")
    config_manager = AutomationConfigManager(defaults={
        "max_event_depth": settings.max_event_depth,
        "action_timeout_seconds": settings.action_timeout_seconds,
    })
    config_manager.load(settings.automation_config_path)
    config_manager.start_watching()

    ticket_service = _build_ticket_service(settings)
    notification_service = _build_notification_service(settings)
    wire_automation(
        app.state, rule_repository, ticket_service,
        notification_service, config_manager
    )

    scheduler: Optional[AutomationScheduler] = None
    if settings.scan_interval_seconds > 0:
        orchestrator: AutomationOrchestrator = app.state.orchestrator

        async def automation_scan_job():
            """Background time-based/SLA scan."""
            try:
                await orchestrator.run_scan()
            except Exception as e:
                logger.error(f"Automation scan failed: {e}")

        scheduler = AutomationScheduler(interval_seconds=settings.scan_interval_seconds)
        await scheduler.start(automation_scan_job)
    app.state.scheduler = scheduler

    logger.info("Automation Service started successfully")

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Shutting down Automation Service")

    if scheduler:
        await scheduler.stop()
    config_manager.stop_watching()

    await app.state.event_bus.drain()
    await ticket_service.close()
    await notification_service.close()

    if settings.rule_store_backend != "memory":
        await close_database()

    logger.info("Automation Service shutdown complete")


def create_app(use_lifespan: bool = True) -> FastAPI:
    """Create the FastAPI application with middleware and routers."""
    application = FastAPI(
        title="Help-Desk Workflow Automation API",
        description="""
    ## Workflow Automation Engine

    Event-driven rules for the help-desk: when a ticket lifecycle event
    matches a rule's trigger and every condition holds, the rule's actions
    run against the ticket and notification services.

    **Endpoints:**
    - `GET/POST /automation/rules` - List and create rules
    - `GET/PUT/DELETE /automation/rules/{id}` - Manage a rule
    - `PATCH /automation/rules/{id}/toggle` - Activate/deactivate
    - `POST /automation/rules/{id}/test` - Dry run against a ticket
    - `GET /automation/rules/{id}/stats` - Execution statistics
    - `POST /automation/rules/bulk` - Bulk operations
    - `GET /automation/templates` - Built-in rule templates
    - `POST /automation/events` - Submit a lifecycle event
    - `POST /automation/scan` - Run the time-based/SLA scan now
    """,
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan if use_lifespan else None
    )

    # === CORS Middleware ===
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # === Custom Middleware (from shared) ===
    application.add_middleware(RequestLoggingMiddleware)
    application.add_middleware(CorrelationIDMiddleware)
    application.add_exception_handler(ApplicationException, application_exception_handler)
    application.add_exception_handler(Exception, global_exception_handler)

    # === Include Module Routers ===
    application.include_router(automation_router)
    application.add_api_route("/health", health_check, methods=["GET"], tags=["Health"])
    application.add_api_route("/", root, methods=["GET"], tags=["Root"])

    return application


async def health_check(request: Request):
    """
    Health check endpoint for load balancers and orchestrators.

    Reports rule store backend, scheduler state and pending event handlers.
    """
    state = request.app.state
    scheduler = getattr(state, "scheduler", None)
    event_bus = getattr(state, "event_bus", None)
    checks = {
        "rule_store": settings.rule_store_backend,
        "automation": "ready" if hasattr(state, "orchestrator") else "not_initialized",
        "scheduler": "running" if scheduler and scheduler.is_running else "stopped",
        "pending_events": event_bus.pending if event_bus else 0,
    }
    return {
        "status": "healthy" if checks["automation"] == "ready" else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "checks": checks
    }


async def root():
    """Root endpoint with API information."""
    return {
        "service": "Workflow Automation Service",
        "version": settings.app_version,
        "architecture": "Clean Architecture / Modular Monolith",
        "docs": "/docs",
        "health": "/health",
        "modules": {
            "automation": {"prefix": "/automation"}
        }
    }


app = create_app()


# === Development Entry Point ===

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "development",
        log_level="info"
    )
