"""Service wiring.

Everything with a connection or a socket is built exactly once here and
handed to the objects that need it:

    Settings ─► redis client?  ─► cache store ─► PriceCache ─┐
            │                 └► job queue ──────────────────┼─► BackfillScheduler
            ├─► AlchemyPriceSource ──────────────────────────┼─► PriceResolver ─► JobWorker
            └─► SQLite engine ─► PricePointStore ────────────┘

Without ``REDIS_URL`` the cache and the queue are in-process, which is only
correct when the API and the worker share one process (``RUN_WORKER=true``).
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging

import redis.asyncio as aioredis
from sqlalchemy import Engine

from app.backfill.queue import JobQueue, MemoryJobQueue, RedisJobQueue
from app.backfill.scheduler import BackfillScheduler
from app.backfill.worker import JobWorker, WorkerSettings
from app.data.alchemy_client import AlchemyPriceSource
from app.data.cache import MemoryCacheStore, PriceCache
from app.data.database import create_db_engine, initialize_database
from app.data.price_resolver import PriceResolver, PriceSourceClient
from app.data.price_store import PricePointStore
from app.data.retry import RetryPolicy
from config import Settings

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    source:    PriceSourceClient
    queue:     JobQueue
    resolver:  PriceResolver
    scheduler: BackfillScheduler
    worker:    JobWorker
    redis:     aioredis.Redis | None = None
    engine:    Engine | None = None
    worker_task: asyncio.Task | None = None

    def start_worker(self) -> asyncio.Task:
        if self.worker_task is None:
            self.worker_task = asyncio.create_task(self.worker.run(), name="backfill-worker")
        return self.worker_task

    async def close(self) -> None:
        if self.worker_task is not None:
            await self.worker.close()
            await self.worker_task
            self.worker_task = None

        close_source = getattr(self.source, "close", None)
        if close_source is not None:
            await close_source()
        await self.queue.close()
        if self.redis is not None:
            await self.redis.aclose()
        if self.engine is not None:
            self.engine.dispose()
        logger.info("Service container closed")


def build_container(settings: Settings) -> ServiceContainer:
    redis = None
    if settings.redis_url:
        redis = aioredis.from_url(settings.redis_url, decode_responses=True)
        cache_store = redis
        queue: JobQueue = RedisJobQueue(
            redis,
            settings.queue_name,
            keep_completed=settings.keep_completed,
            keep_failed=settings.keep_failed,
        )
        logger.info("Using Redis cache and queue '%s'", settings.queue_name)
    else:
        cache_store = MemoryCacheStore()
        queue = MemoryJobQueue(
            keep_completed=settings.keep_completed,
            keep_failed=settings.keep_failed,
        )
        logger.warning("REDIS_URL not set; cache and queue are in-process only")

    if not settings.alchemy_api_key:
        logger.warning("ALCHEMY_API_KEY is empty; upstream calls will be rejected")

    engine = create_db_engine(settings.database_url)
    initialize_database(engine, settings.db_path)

    source = AlchemyPriceSource(
        api_key=settings.alchemy_api_key,
        prices_url=settings.alchemy_prices_url,
        timeout=settings.upstream_timeout_seconds,
    )
    policy = RetryPolicy(
        attempts=settings.upstream_max_attempts,
        base_delay=settings.upstream_backoff_base,
        max_delay=settings.upstream_backoff_max,
    )
    resolver = PriceResolver(
        source,
        PriceCache(cache_store, ttl=settings.cache_ttl_seconds),
        store=PricePointStore(engine),
        retry_policy=policy,
    )
    return ServiceContainer(
        source=source,
        queue=queue,
        resolver=resolver,
        scheduler=BackfillScheduler(source, queue, policy, priority=settings.batch_priority),
        worker=JobWorker(queue, resolver, WorkerSettings.from_settings(settings)),
        redis=redis,
        engine=engine,
    )
