from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from helpdesk.api.routes import comments, followers, health, notifications, tickets
from helpdesk.core.config import get_settings
from helpdesk.core.errors import register_exception_handlers
from helpdesk.core.logging import configure_logging, init_tracer, shutdown_tracer
from helpdesk.notifications import NotificationRepository, NotificationService
from helpdesk.services.postgres import PostgresDatabase
from helpdesk.tickets import (
    FollowerRepository,
    FollowerService,
    TicketCommentService,
    TicketHistoryRecorder,
    TicketNumberGenerator,
    TicketPermissionPolicy,
    TicketRepository,
    TicketService,
)

_SERVICE_NAMES = ("ticket_service", "comment_service", "follower_service", "notification_service")


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - executed by framework
    settings = get_settings()
    logger = configure_logging(settings)
    tracer_provider = init_tracer(settings)

    app.state.tracer_provider = tracer_provider
    database = PostgresDatabase(
        dsn=settings.postgres_dsn,
        min_size=settings.postgres_pool_min_size,
        max_size=settings.postgres_pool_max_size,
        command_timeout=settings.postgres_command_timeout,
    )
    app.state.database = database
    for name in _SERVICE_NAMES:
        setattr(app.state, name, None)

    try:
        pool = await database.get_pool()
        ticket_repository = TicketRepository(pool)
        policy = TicketPermissionPolicy()
        history = TicketHistoryRecorder(pool)
        notification_service = NotificationService(NotificationRepository(pool))
        follower_service = FollowerService(FollowerRepository(pool), ticket_repository, policy=policy)
        ticket_service = TicketService(
            ticket_repository,
            history=history,
            numbers=TicketNumberGenerator(pool, prefix=settings.ticket_number_prefix),
            policy=policy,
            notifications=notification_service,
            followers=follower_service,
            max_number_attempts=settings.ticket_number_max_attempts,
        )

        # Followers and notifications reference tables created by the ticket schema.
        await ticket_service.ensure_schema()
        await follower_service.ensure_schema()
        await notification_service.ensure_schema()

        app.state.ticket_service = ticket_service
        app.state.comment_service = TicketCommentService(ticket_repository, history=history, policy=policy)
        app.state.follower_service = follower_service
        app.state.notification_service = notification_service
        logger.info("%s started (%s)", settings.app_name, settings.environment)
    except Exception:  # pragma: no cover - service initialisation best effort
        logger.exception("Database initialisation failed; ticket endpoints will return 503")
        for name in _SERVICE_NAMES:
            setattr(app.state, name, None)
    try:
        yield
    finally:
        await database.close()
        shutdown_tracer(tracer_provider)


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_allowed_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)
    app.include_router(health.router)
    app.include_router(tickets.router)
    app.include_router(comments.router)
    app.include_router(followers.router)
    app.include_router(notifications.router)
    return app


app = create_app()
