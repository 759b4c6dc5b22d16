"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
domain exception handlers, and a lifespan that wires every component by
explicit constructor injection:

    RetryExecutor ─┬─ SuggestionEngine ── AssistanceService ─┐
                   ├─ CRMSyncAdapter ────────────────────────┼─ SyncOrchestrator
                   └─ BillingWebhookProcessor ── publisher ──┘
    IdempotencyLedger is shared by the CRM adapter and the billing processor.

Conversation events go straight to the orchestrator in-process. Billing
events go through the Redis event bus when Redis is reachable (consumed by
an EventConsumer feeding the orchestrator) and in-process otherwise.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any

import redis.asyncio as aioredis
import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from sqlalchemy.ext.asyncio import AsyncSession

from src.dealsmart.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.dealsmart.api.v1.router import router as v1_router
from src.dealsmart.assistance.engine import SuggestionEngine
from src.dealsmart.assistance.provider import (
    LiteLLMSuggestionProvider,
    SuggestionProvider,
    build_router,
)
from src.dealsmart.assistance.repository import AIAssistanceRepository
from src.dealsmart.assistance.service import AssistanceService
from src.dealsmart.audit.repository import SyncAttemptRepository
from src.dealsmart.billing.processor import BillingWebhookProcessor
from src.dealsmart.billing.repository import SubscriptionStateRepository
from src.dealsmart.config import Settings, get_settings
from src.dealsmart.conversations.repository import ConversationRepository
from src.dealsmart.conversations.service import ConversationService
from src.dealsmart.core.database import close_db, get_session, init_db
from src.dealsmart.core.errors import (
    AuthError,
    ConflictError,
    DealSmartError,
    NotFoundError,
    TransientError,
    ValidationError,
)
from src.dealsmart.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.dealsmart.core.redis import close_redis, connect_redis
from src.dealsmart.core.retry import RetryExecutor
from src.dealsmart.core.tasks import BackgroundTaskRunner
from src.dealsmart.crm.adapter import CRMClient
from src.dealsmart.crm.hubspot import HubSpotClient
from src.dealsmart.crm.sync import CRMSyncAdapter
from src.dealsmart.events.bus import EventPublisher, RedisEventBus
from src.dealsmart.events.consumer import CONSUMER_GROUP, EventConsumer
from src.dealsmart.events.dlq import DeadLetterQueue
from src.dealsmart.events.schemas import DomainEvent
from src.dealsmart.idempotency.sql import SqlIdempotencyLedger
from src.dealsmart.orchestration.orchestrator import OrchestratorPublisher, SyncOrchestrator
from src.dealsmart.orchestration.scheduler import (
    build_maintenance_tasks,
    start_maintenance_tasks,
)

logger = structlog.get_logger(__name__)

SessionFactory = Callable[..., AsyncGenerator[AsyncSession, None]]


# ── Component wiring ─────────────────────────────────────────────────────────


def wire_components(
    state: Any,
    settings: Settings,
    session_factory: SessionFactory,
    *,
    redis: aioredis.Redis | None = None,
    crm_client: CRMClient | None = None,
    suggestion_provider: SuggestionProvider | None = None,
    executor: RetryExecutor | None = None,
) -> None:
    """Build every component and store it on ``state`` (normally ``app.state``).

    Args:
        state: Attribute container the API dependencies read from.
        settings: Application settings.
        session_factory: Async generator of database sessions.
        redis: Reachable Redis client; enables the event bus when given.
        crm_client: CRM provider client; CRM sync is disabled when None.
        suggestion_provider: AI provider; suggestions degrade to
            "unavailable" when None.
        executor: RetryExecutor override (tests inject a no-sleep one).
    """
    executor = executor or RetryExecutor(default_policy=settings.retry_policy())
    runner = BackgroundTaskRunner()

    ledger = SqlIdempotencyLedger(
        session_factory, lease_seconds=settings.IDEMPOTENCY_LEASE_SECONDS
    )
    sync_attempts = SyncAttemptRepository(session_factory)

    orchestrator: SyncOrchestrator | None = None

    def _to_orchestrator(event: DomainEvent) -> None:
        if orchestrator is not None:
            orchestrator.dispatch(event)

    conversation_service = ConversationService(
        ConversationRepository(session_factory), event_sink=_to_orchestrator
    )

    engine = SuggestionEngine(
        suggestion_provider or LiteLLMSuggestionProvider(None), executor
    )
    assistance_service = AssistanceService(
        conversation_service, AIAssistanceRepository(session_factory), engine
    )

    crm_sync = None
    if crm_client is not None:
        crm_sync = CRMSyncAdapter(crm_client, ledger, sync_attempts, executor)

    orchestrator = SyncOrchestrator(
        crm_sync,
        assistance_service,
        runner,
        auto_suggest=settings.AUTO_SUGGEST_ON_CUSTOMER_MESSAGE,
    )

    event_bus = RedisEventBus(redis) if redis is not None else None
    dead_letters = DeadLetterQueue(event_bus) if event_bus is not None else None
    publisher: EventPublisher = event_bus or OrchestratorPublisher(orchestrator)

    billing_processor = None
    if settings.BILLING_WEBHOOK_SECRET:
        billing_processor = BillingWebhookProcessor(
            secret=settings.BILLING_WEBHOOK_SECRET,
            ledger=ledger,
            repository=SubscriptionStateRepository(session_factory),
            publisher=publisher,
            attempts=sync_attempts,
            executor=executor,
            runner=runner,
            tolerance_seconds=settings.BILLING_SIGNATURE_TOLERANCE_SECONDS,
        )
    else:
        logger.warning("app.billing_webhooks_disabled", reason="BILLING_WEBHOOK_SECRET not set")

    state.settings = settings
    state.session_factory = session_factory
    state.redis = redis
    state.executor = executor
    state.task_runner = runner
    state.ledger = ledger
    state.sync_attempts = sync_attempts
    state.conversation_service = conversation_service
    state.suggestion_provider = suggestion_provider
    state.assistance_service = assistance_service
    state.crm_client = crm_client
    state.crm_sync = crm_sync
    state.orchestrator = orchestrator
    state.event_bus = event_bus
    state.dead_letters = dead_letters
    state.billing_processor = billing_processor

    logger.info(
        "app.components_wired",
        crm_enabled=crm_sync is not None,
        llm_enabled=suggestion_provider is not None,
        event_bus=event_bus is not None,
        billing_enabled=billing_processor is not None,
    )


# ── Lifespan ─────────────────────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, wire components, start loops; close on shutdown."""
    settings = get_settings()
    configure_structlog()
    await init_db()

    # Initialize Sentry if DSN is configured
    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    redis = await connect_redis()

    crm_client: CRMClient | None = None
    if settings.HUBSPOT_ACCESS_TOKEN:
        crm_client = HubSpotClient(
            settings.HUBSPOT_ACCESS_TOKEN, base_url=settings.HUBSPOT_BASE_URL
        )

    router = build_router(settings)
    provider = (
        LiteLLMSuggestionProvider(router, max_tokens=settings.SUGGESTION_MAX_TOKENS)
        if router is not None
        else None
    )

    wire_components(
        app.state,
        settings,
        get_session,
        redis=redis,
        crm_client=crm_client,
        suggestion_provider=provider,
    )

    # ── Event consumer ──────────────────────────────────────────────────
    consumer: EventConsumer | None = None
    consumer_task: asyncio.Task | None = None
    if app.state.event_bus is not None and settings.EVENT_CONSUMER_ENABLED:
        bus = app.state.event_bus
        consumer = EventConsumer(
            bus,
            app.state.dead_letters,
            group=CONSUMER_GROUP,
            consumer_name=f"{CONSUMER_GROUP}-{uuid.uuid4().hex[:8]}",
        )
        consumer_task = asyncio.create_task(
            consumer.process_loop(app.state.orchestrator.handle), name="event_consumer"
        )

    # ── Maintenance loops ───────────────────────────────────────────────
    maintenance = build_maintenance_tasks(
        crm=app.state.crm_sync,
        billing=app.state.billing_processor,
        ledger=app.state.ledger,
        retention=timedelta(hours=settings.IDEMPOTENCY_RETENTION_HOURS),
    )
    maintenance_tasks = start_maintenance_tasks(
        maintenance,
        intervals={
            "reconcile_crm": settings.RECONCILE_INTERVAL_SECONDS,
            "reemit_billing_events": settings.RECONCILE_INTERVAL_SECONDS,
        },
    )

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    if consumer is not None:
        consumer.stop()
    if consumer_task is not None:
        consumer_task.cancel()
        try:
            await consumer_task
        except asyncio.CancelledError:
            pass

    for task_ref in maintenance_tasks:
        task_ref.cancel()
    await asyncio.gather(*maintenance_tasks, return_exceptions=True)

    runner: BackgroundTaskRunner = app.state.task_runner
    await runner.drain(timeout=10)
    await runner.cancel_all()

    if crm_client is not None:
        try:
            await crm_client.aclose()
        except Exception:
            logger.warning("app.crm_client_close_failed", exc_info=True)

    await close_db()
    await close_redis()


# ── Exception handlers ───────────────────────────────────────────────────────

_STATUS_BY_ERROR: list[tuple[type[DealSmartError], int]] = [
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (AuthError, status.HTTP_401_UNAUTHORIZED),
    (TransientError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


async def domain_error_handler(request: Request, exc: DealSmartError) -> JSONResponse:
    """Map domain errors onto HTTP status codes."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            status_code = code
            break
    if status_code >= 500:
        logger.error("request.domain_error", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error": type(exc).__name__},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="DealSmart Communications Hub",
        version="0.1.0",
        description="Conversations, AI-assisted replies, CRM sync and billing webhooks",
        lifespan=lifespan,
    )

    app.add_exception_handler(DealSmartError, domain_error_handler)

    # Middleware is added in reverse order (last added = outermost)

    # CORS middleware
    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    # Include v1 API router (health, status, conversations, webhooks, events)
    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
