"""
Deskflow - Main Application
============================

Help-desk automation and SLA engine.

Modules:
- Automation: rule engine, queued/inline dispatcher
- SLA: per-ticket first-response and resolution clocks

Clean Architecture Layers:
- Interfaces: FastAPI controllers
- Application: Services and DTOs
- Domain: Entities and value objects
- Infrastructure: Database, Redis queue, Slack, YAML config
"""

from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from deskflow.automation.application import (
    AutomationDispatcher,
    DispatcherStateHolder,
    RuleEngineService,
    make_job_handler,
)
from deskflow.automation.infrastructure import (
    QueueWorker,
    SQLAlchemyAutomationExecutionRepository,
    SQLAlchemyRuleRepository,
    SQLAlchemyTicketGateway,
)
from deskflow.automation.interfaces import automation_router
from deskflow.config import DispatcherState, settings
from deskflow.core import ApplicationException
from deskflow.infrastructure.database import close_database, create_tables, init_database
from deskflow.infrastructure.queue import BrokerConnection, RedisTaskQueue
from deskflow.shared.api.middleware import (
    CorrelationIDMiddleware,
    LoggingMiddleware,
    application_exception_handler,
    global_exception_handler,
)
from deskflow.shared.infrastructure.logging import get_logger, setup_logging
from deskflow.sla.application import SlaClockService, SlaSweepService
from deskflow.sla.infrastructure import (
    LoggingSlaNotifier,
    SLAConfigManager,
    SLAScheduler,
    SlackSlaNotifier,
    SQLAlchemySlaInstanceRepository,
)
from deskflow.sla.interfaces import sla_router

logger = get_logger(__name__)


def build_dispatcher(engine: RuleEngineService) -> AutomationDispatcher:
    """Dispatcher over the Redis queue, or inline-only when the queue is disabled."""
    state = DispatcherStateHolder()
    if not settings.automation_queue_enabled:
        return AutomationDispatcher(engine, state)

    queue = RedisTaskQueue(
        settings.redis_url,
        name=settings.automation_queue_name,
        keep_completed=settings.automation_keep_completed,
        keep_failed=settings.automation_keep_failed,
    )
    connection = BrokerConnection(
        queue,
        max_reconnects=settings.broker_reconnect_attempts,
        base_delay_ms=settings.broker_reconnect_base_ms,
        cap_delay_ms=settings.broker_reconnect_cap_ms,
    )
    worker = QueueWorker(
        connection,
        make_job_handler(engine),
        state,
        concurrency=settings.automation_worker_concurrency,
        backoff_ms=settings.automation_job_backoff_ms,
        poll_timeout=settings.automation_poll_timeout_seconds,
        stalled_after_ms=settings.automation_stalled_after_seconds * 1000,
    )
    return AutomationDispatcher(
        engine,
        state,
        connection=connection,
        worker=worker,
        max_attempts=settings.automation_job_attempts,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    STARTUP:
    1. Setup structured logging
    2. Initialize database and tables
    3. Load SLA configuration and start watching it
    4. Wire SLA clock, rule engine and dispatcher
    5. Start the dispatcher (connects to Redis or degrades)
    6. Start the SLA sweep scheduler

    SHUTDOWN runs the same steps in reverse.
    """
    setup_logging(settings.log_level, settings.environment)
    logger.info("Starting Deskflow", extra={
        "version": settings.app_version,
        "environment": settings.environment
    })

    init_database()
    await create_tables()

    config_manager = SLAConfigManager()
    config_manager.load(settings.sla_config_path)
    config_manager.start_watching()

    notifier = SlackSlaNotifier() if settings.slack_webhook_url else LoggingSlaNotifier()
    sla_repository = SQLAlchemySlaInstanceRepository()
    sla_clock = SlaClockService(sla_repository, config_manager, notifier)

    rule_engine = RuleEngineService(
        SQLAlchemyTicketGateway(),
        SQLAlchemyRuleRepository(),
        execution_repository=SQLAlchemyAutomationExecutionRepository(),
        sla_clock=sla_clock,
        sla_dedupe_window=timedelta(hours=settings.automation_sla_dedupe_hours),
    )
    dispatcher = build_dispatcher(rule_engine)
    await dispatcher.start()
    sla_clock.attach_dispatcher(dispatcher)

    sla_sweep = SlaSweepService(sla_clock, sla_repository, batch_size=settings.sla_sweep_batch_size)

    scheduler: Optional[SLAScheduler] = None
    if settings.sla_evaluation_interval > 0:
        scheduler = SLAScheduler(interval_seconds=settings.sla_evaluation_interval)
        await scheduler.start(sla_sweep.sweep)

    app.state.config_manager = config_manager
    app.state.sla_clock = sla_clock
    app.state.sla_sweep = sla_sweep
    app.state.rule_engine = rule_engine
    app.state.dispatcher = dispatcher
    app.state.scheduler = scheduler

    logger.info("Deskflow started", extra={"dispatcher_state": dispatcher.state.value})

    yield

    logger.info("Shutting down Deskflow")
    if scheduler is not None:
        await scheduler.stop()
    await dispatcher.stop()
    config_manager.stop_watching()
    await notifier.close()
    await close_database()
    logger.info("Deskflow shutdown complete")


def create_app(lifespan_handler=lifespan) -> FastAPI:
    """
    Build the FastAPI application.

    Tests pass ``lifespan_handler=None`` and populate ``app.state`` themselves.
    """
    application = FastAPI(
        title="Deskflow Automation & SLA API",
        description="""
    ## Help-desk automation and SLA engine

    ### Automation
    - `POST /automation/events` - Hand a ticket event to the rule engine
    - `POST /automation/rules/validate` - Strictly validate a rule definition
    - `POST /automation/rules/{id}/test` - Dry-run a rule against a ticket
    - `GET /automation/dispatcher` - Queue / inline dispatcher state

    ### SLA
    - `POST /sla/tickets/{id}/start` - Start a ticket's SLA clocks
    - `POST /sla/tickets/{id}/status` - Pause, resume or complete on status change
    - `POST /sla/tickets/{id}/first-response` - Record the first public reply
    - `POST /sla/tickets/{id}/priority` - Re-derive due dates
    - `GET /sla/tickets/{id}` - Current clock state
    - `POST /sla/sweep` - Fire pending at-risk / breach thresholds
    """,
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan_handler,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.add_middleware(LoggingMiddleware)
    application.add_middleware(CorrelationIDMiddleware)
    application.add_exception_handler(ApplicationException, application_exception_handler)
    application.add_exception_handler(Exception, global_exception_handler)

    application.include_router(automation_router)
    application.include_router(sla_router)

    @application.get("/health", tags=["Health"], responses={
        200: {
            "description": "Service is up",
            "content": {
                "application/json": {
                    "example": {
                        "status": "healthy",
                        "version": "1.0.0",
                        "environment": "development",
                        "checks": {
                            "dispatcher": "enabled",
                            "sla_scheduler": "running",
                            "sla_config": "3f9a1c0d7e21"
                        }
                    }
                }
            }
        }
    })
    async def health_check(request: Request):
        """
        Health check for load balancers and orchestrators.

        A degraded dispatcher still serves automation inline, so it is
        reported as ``degraded`` rather than unhealthy.
        """
        state = request.app.state
        dispatcher = getattr(state, "dispatcher", None)
        scheduler = getattr(state, "scheduler", None)
        config_manager = getattr(state, "config_manager", None)

        checks = {
            "dispatcher": dispatcher.state.value if dispatcher is not None else "not_started",
            "sla_scheduler": "running" if scheduler is not None and scheduler.is_running else "stopped",
            "sla_config": config_manager.version if config_manager is not None else "not_loaded",
        }
        degraded = dispatcher is not None and dispatcher.state is DispatcherState.DEGRADED

        return {
            "status": "degraded" if degraded else "healthy",
            "version": settings.app_version,
            "environment": settings.environment,
            "checks": checks
        }

    @application.get("/", tags=["Root"])
    async def root():
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": settings.app_version,
            "docs": "/docs",
            "health": "/health",
        }

    return application


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "deskflow.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
