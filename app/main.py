import asyncio
import logging
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI

from app.api.routes import tickets, workflows
from app.core.config import Settings, get_settings
from app.core.logging import configure_logging, init_tracer, shutdown_tracer
from app.services.postgres import PostgresPool
from app.tickets.errors import TicketServiceError
from app.tickets.numbering import TicketNumberAllocator
from app.tickets.repository import SystemSettingRepository, TicketRepository
from app.tickets.service import AutoClosePolicy, TicketService
from app.workflows.repository import WorkflowRepository

logger = logging.getLogger(__name__)


async def run_auto_close(service: TicketService, interval: float) -> None:
    """Periodically close tickets that stayed resolved past the configured age."""

    while True:
        try:
            report = await service.close_stale_resolved_tickets()
        except TicketServiceError:
            logger.exception("Auto-close run failed")
        else:
            if report.failed:
                logger.warning("Auto-close left %d tickets open", len(report.failed))
        await asyncio.sleep(interval)


async def build_ticket_service(pool: PostgresPool, settings: Settings) -> tuple[TicketService, WorkflowRepository]:
    connection_pool = await pool.get_pool()
    ticket_repository = TicketRepository(connection_pool)
    setting_repository = SystemSettingRepository(connection_pool)
    workflow_repository = WorkflowRepository(connection_pool)
    for repository in (ticket_repository, setting_repository, workflow_repository):
        await repository.ensure_schema()

    allocator = TicketNumberAllocator(
        setting_repository,
        ticket_repository,
        prefix=settings.ticket_number_prefix,
        counter_key=settings.ticket_counter_key,
        max_retries=settings.ticket_number_max_retries,
    )
    policy = AutoClosePolicy(
        enabled=settings.auto_close_enabled,
        days=settings.auto_close_days,
        actor_id=settings.auto_close_actor_id,
        actor_role=settings.auto_close_role,
    )
    service = TicketService(ticket_repository, workflow_repository, allocator, auto_close=policy)
    return service, workflow_repository


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - executed by framework
    settings = get_settings()
    app_logger = configure_logging(settings)
    tracer_provider = init_tracer(settings)

    app.state.logger = app_logger
    app.state.tracer_provider = tracer_provider
    postgres_pool = PostgresPool(
        dsn=settings.postgres_dsn,
        min_size=settings.postgres_pool_min_size,
        max_size=settings.postgres_pool_max_size,
    )
    app.state.postgres_pool = postgres_pool
    app.state.ticket_service = None
    app.state.workflow_repository = None
    auto_close_task: asyncio.Task | None = None
    try:
        service, workflow_repository = await build_ticket_service(postgres_pool, settings)
        app.state.ticket_service = service
        app.state.workflow_repository = workflow_repository
        if settings.auto_close_enabled:
            auto_close_task = asyncio.create_task(run_auto_close(service, settings.auto_close_interval_seconds))
    except Exception:  # pragma: no cover - service initialisation best effort
        app_logger.exception("Ticket service initialisation failed")
        app.state.ticket_service = None
        app.state.workflow_repository = None
    try:
        yield
    finally:
        if auto_close_task is not None:
            auto_close_task.cancel()
            with suppress(asyncio.CancelledError):
                await auto_close_task
        await postgres_pool.close()
        shutdown_tracer(tracer_provider)


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.include_router(tickets.router)
    app.include_router(workflows.router)
    return app


app = create_app()
