"""
Service container

Builds the counter store, limiter, abuse guard, ledger, registry and
orchestrator once per process and owns their lifecycle. The FastAPI
lifespan keeps it on `app.state.container`; nothing is created lazily on
first access.
"""

import asyncio
import time
from datetime import timedelta
from typing import Callable, Dict, Optional
import logging

from sqlalchemy.orm import Session

from learnflow.core.config import Settings
from learnflow.core.counter_store import Clock, CounterStore, build_counter_store
from learnflow.core.rate_limiting import RateLimiter, RateLimitRule, build_rules
from learnflow.services.abuse.guard import AbuseGuard
from learnflow.services.abuse.store import SqlAbuseStore
from learnflow.services.admission import AdmissionGateway
from learnflow.services.jobs.orchestrator import VideoProcessingOrchestrator
from learnflow.services.jobs.registry import InMemoryJobRegistry, JobRegistry, SqlJobRegistry
from learnflow.services.jobs.steps import StepExecutor
from learnflow.services.jobs.worker_client import WorkerServiceExecutor
from learnflow.services.quota.ledger import QuotaLedger
from learnflow.services.quota.plans import PlanCatalog
from learnflow.services.quota.usage_store import SqlUsageStore

logger = logging.getLogger(__name__)


class ServiceContainer:
    def __init__(
        self,
        settings: Settings,
        counter_store: CounterStore,
        registry: JobRegistry,
        executor: StepExecutor,
        session_factory: Callable[[], Session],
        clock: Clock = time.time,
        cleanup_interval: int = 300,
    ):
        self.settings = settings
        self.counter_store = counter_store
        self.registry = registry
        self.session_factory = session_factory
        self.rate_limit_rules: Dict[str, RateLimitRule] = build_rules(settings.RATE_LIMITS)
        self.rate_limiter = RateLimiter(counter_store, warning_ratio=settings.RATE_LIMIT_WARNING_RATIO)
        self.plans = PlanCatalog.from_overrides(settings.QUOTA_PLAN_OVERRIDES)
        self.ledger = QuotaLedger(
            SqlUsageStore(session_factory),
            counter_store,
            catalog=self.plans,
            clock=clock,
            alert_warning_ratio=settings.QUOTA_ALERT_WARNING_RATIO,
            alert_dedup_hours=settings.QUOTA_ALERT_DEDUP_HOURS,
        )
        self.guard = AbuseGuard(
            SqlAbuseStore(session_factory),
            clock=clock,
            cooldown_minutes=settings.VIDEO_COOLDOWN_MINUTES,
        )
        self.gateway = AdmissionGateway(self.rate_limiter, self.ledger, self.rate_limit_rules, guard=self.guard)
        self.orchestrator = VideoProcessingOrchestrator(
            registry,
            executor,
            self.ledger,
            step_timeouts=settings.STEP_TIMEOUTS,
            default_timeout=settings.DEFAULT_STEP_TIMEOUT,
        )
        self._cleanup_interval = cleanup_interval
        self._cleanup_task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory: Callable[[], Session],
        executor: Optional[StepExecutor] = None,
        clock: Clock = time.time,
    ) -> "ServiceContainer":
        counter_store = build_counter_store(settings.COUNTER_STORE_BACKEND, settings.REDIS_URL, clock=clock)
        if settings.JOB_REGISTRY_BACKEND == "sql":
            registry: JobRegistry = SqlJobRegistry(session_factory, clock=clock)
        else:
            registry = InMemoryJobRegistry(clock=clock, result_ttl=timedelta(hours=settings.JOB_RESULT_TTL_HOURS))
        executor = executor or WorkerServiceExecutor(
            settings.PROCESSING_WORKER_URL,
            timeout=settings.WORKER_REQUEST_TIMEOUT,
            max_retries=settings.WORKER_MAX_RETRIES,
        )
        return cls(settings, counter_store, registry, executor, session_factory, clock=clock)

    async def start(self):
        if self._cleanup_task is None and isinstance(self.registry, InMemoryJobRegistry):
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info(
            f"Services started (counters={self.settings.COUNTER_STORE_BACKEND}, "
            f"jobs={self.settings.JOB_REGISTRY_BACKEND})"
        )

    async def _cleanup_loop(self):
        """Drop finished in-memory jobs once their results expire"""
        ttl = timedelta(hours=self.settings.JOB_RESULT_TTL_HOURS)
        while True:
            await asyncio.sleep(self._cleanup_interval)
            try:
                await self.registry.purge_terminal(self.registry.now() - ttl)
            except Exception as e:
                logger.error(f"Error in job cleanup loop: {e}")

    async def stop(self):
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
        await self.orchestrator.shutdown()
        await self.counter_store.close()
        logger.info("Services stopped")
