import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from redis.asyncio import Redis

from config import clamp_concurrency, settings
from models import async_session, engine
from models.base import create_tables
from aggregation.efficiency import OEETimeSeriesService
from aggregation.orchestrator import AggregationOrchestrator
from aggregation.repository import episode_store_scope
from notifications.delivery import NotificationDelivery
from notifications.dispatcher import NotificationDispatcher
from notifications.duration_gate import CHECK_DURATION_JOB, DurationGate
from notifications.escalation import ESCALATION_CHECK_JOB, EscalationService
from notifications.repository import SqlNotificationRepository
from services.aggregation_sweeper import AggregationSweeper
from services.job_queue import RedisDeadLetterQueue, RedisJobQueue
from services.mailer import EmailClient
from services.publisher import RedisPublisher
from services.queue_worker import QueueWorker
from api.aggregation import RECALCULATE_JOB, router as aggregation_router, states_router
from api.notifications import router as notifications_router
from api.tag_values import router as tag_values_router

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger("linewatch.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("LineWatch backend starting... DEBUG=%s", settings.DEBUG)

    if settings.DB_CREATE_TABLES:
        await create_tables()
        logger.info("Database tables ensured")

    # Redis
    redis = Redis.from_url(settings.REDIS_URL, decode_responses=False)
    app.state.redis = redis
    logger.info("Redis connected: %s", settings.REDIS_URL)
    publisher = RedisPublisher(redis)

    # Queues
    lease_ms = settings.QUEUE_LEASE_SECONDS * 1000
    notification_queue = RedisJobQueue(
        redis, settings.NOTIFICATION_QUEUE_NAME,
        max_attempts=settings.NOTIFICATION_QUEUE_MAX_ATTEMPTS,
        backoff_ms=settings.NOTIFICATION_QUEUE_BACKOFF_MS,
        lease_ms=lease_ms,
    )
    recalculation_queue = RedisJobQueue(
        redis, settings.RECALCULATION_QUEUE_NAME,
        max_attempts=settings.RECALCULATION_QUEUE_MAX_ATTEMPTS,
        backoff_ms=settings.RECALCULATION_QUEUE_BACKOFF_MS,
        lease_ms=lease_ms,
    )
    recalculation_dlq = RedisDeadLetterQueue(
        redis, settings.RECALCULATION_DLQ_NAME, recalculation_queue,
    )
    notification_dlq = None
    if settings.NOTIFICATION_DEAD_LETTER_ENABLED:
        notification_dlq = RedisDeadLetterQueue(
            redis, f"{settings.NOTIFICATION_QUEUE_NAME}-dlq", notification_queue,
        )
    app.state.notification_queue = notification_queue
    app.state.recalculation_queue = recalculation_queue
    app.state.recalculation_dlq = recalculation_dlq

    # Aggregation
    orchestrator = AggregationOrchestrator(
        episode_store_scope(async_session),
        efficiency=OEETimeSeriesService(async_session),
        publisher=publisher,
    )
    app.state.orchestrator = orchestrator

    # Notifications
    mailer = EmailClient()
    if not mailer.enabled:
        logger.info("E-mail delivery DISABLED (EMAIL_API_URL is empty)")
    repository = SqlNotificationRepository(async_session)
    delivery = NotificationDelivery(repository, mailer, publisher)
    escalation = EscalationService(notification_queue, repository, delivery)
    gate = DurationGate(notification_queue, repository)
    dispatcher = NotificationDispatcher(repository, gate, escalation, delivery)
    app.state.dispatcher = dispatcher

    # Workers
    async def run_recalculation(payload: dict):
        return await orchestrator.recalculate(payload.get("job_id"))

    notification_worker = QueueWorker(
        notification_queue,
        {
            CHECK_DURATION_JOB: dispatcher.run_duration_check,
            ESCALATION_CHECK_JOB: dispatcher.run_escalation_check,
        },
        concurrency=clamp_concurrency(settings.NOTIFICATION_QUEUE_CONCURRENCY, 5),
        poll_interval=settings.QUEUE_POLL_INTERVAL,
        dead_letter=notification_dlq,
    )
    recalculation_worker = QueueWorker(
        recalculation_queue,
        {RECALCULATE_JOB: run_recalculation},
        concurrency=clamp_concurrency(settings.RECALCULATION_QUEUE_CONCURRENCY, 4),
        poll_interval=settings.QUEUE_POLL_INTERVAL,
        dead_letter=recalculation_dlq,
    )
    nw_task = asyncio.create_task(notification_worker.start())
    rw_task = asyncio.create_task(recalculation_worker.start())

    # Periodic sweep of jobs without episodes
    sweeper = AggregationSweeper(orchestrator)
    sweeper_task = asyncio.create_task(sweeper.start())

    yield

    # Shutdown
    logger.info("LineWatch backend shutting down...")
    await notification_worker.stop()
    await recalculation_worker.stop()
    await sweeper.stop()

    all_tasks = [nw_task, rw_task, sweeper_task]
    for t in all_tasks:
        t.cancel()
    for t in all_tasks:
        try:
            await t
        except asyncio.CancelledError:
            pass

    await mailer.close()
    await redis.close()
    await engine.dispose()
    logger.info("Shutdown complete")


app = FastAPI(
    title="LineWatch API",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(tag_values_router)
app.include_router(notifications_router)
app.include_router(aggregation_router)
app.include_router(states_router)


@app.get("/health")
async def health():
    return {"status": "ok", "version": "0.1.0"}
