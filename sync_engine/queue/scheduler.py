"""Recurring sync registration from the integration scheduling table."""

import logging
from typing import Optional

from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from sync_engine.db.store import DocumentStore
from sync_engine.errors import NotFoundError
from sync_engine.integrations.config import INTEGRATIONS, IntegrationConfig
from sync_engine.queue.job_queue import JobQueue
from sync_engine.queue.models import Job

logger = logging.getLogger(__name__)

MINUTES_PER_DAY = 24 * 60


def rate_to_cron(rate_minutes: int) -> Optional[str]:
    """Crontab expression firing exactly every ``rate_minutes``, or None.

    Cron steps restart at each hour and day boundary, so only rates that
    divide an hour or a day evenly have an exact expression.
    """
    if rate_minutes <= 0:
        raise ValueError("rate_minutes must be positive")
    if rate_minutes < 60:
        return f"*/{rate_minutes} * * * *" if 60 % rate_minutes == 0 else None
    if rate_minutes == MINUTES_PER_DAY:
        return "0 0 * * *"
    if rate_minutes % 60 or MINUTES_PER_DAY % rate_minutes:
        return None
    hours = rate_minutes // 60
    return "0 * * * *" if hours == 1 else f"0 */{hours} * * *"


def rate_to_trigger(rate_minutes: int) -> BaseTrigger:
    """Cron trigger where the rate fits a crontab, a plain interval otherwise."""
    cron = rate_to_cron(rate_minutes)
    if cron is not None:
        return CronTrigger.from_crontab(cron, timezone="UTC")
    return IntervalTrigger(minutes=rate_minutes, timezone="UTC")


class SyncScheduler:
    """Registers a recurring job per (data source, entity type)."""

    def __init__(
        self,
        queue: JobQueue,
        store: DocumentStore,
        integrations: Optional[dict[str, IntegrationConfig]] = None,
    ):
        self.queue = queue
        self.store = store
        self.integrations = integrations if integrations is not None else INTEGRATIONS

    async def schedule_all(self) -> int:
        """Register recurring syncs for every active data source. Returns the count registered."""
        data_sources = await self.store.list("data_sources", None, filters={"status": "active"})
        logger.info(f"Found {len(data_sources)} active data sources")

        registered = 0
        global_seen: set[tuple[str, str, str]] = set()
        # Primary data sources first so global types attach to them
        for data_source in sorted(data_sources, key=lambda d: not d.get("is_primary")):
            registered += self._schedule_data_source(data_source, global_seen)
        logger.info(f"Registered {registered} recurring sync jobs")
        return registered

    def _schedule_data_source(self, data_source: dict, global_seen: set) -> int:
        integration_type = data_source["integration_type"]
        integration = self.integrations.get(integration_type)
        if integration is None or not integration.is_active:
            logger.warning(f"Unknown or inactive integration: {integration_type}")
            return 0
        if integration_type == "microsoft-365" and data_source.get("is_primary"):
            # The primary M365 connection is the tenant's own directory, not a customer
            logger.debug(f"Skipping primary Microsoft 365 data source {data_source['id']}")
            return 0

        registered = 0
        for type_config in integration.supported_types:
            if type_config.is_global:
                key = (data_source["tenant_id"], integration_type, type_config.type)
                if key in global_seen:
                    continue
                global_seen.add(key)
                name = f"sync:{data_source['tenant_id']}:{integration_type}:{type_config.type}"
            else:
                name = f"sync:{data_source['id']}:{type_config.type}"

            template = Job(
                tenant_id=data_source["tenant_id"],
                integration_type=integration_type,
                entity_type=type_config.type,
                data_source_id=data_source["id"],
                priority=type_config.priority,
                max_attempts=self.queue.settings.queue_max_attempts,
            )
            self.queue.schedule_recurring(name, rate_to_trigger(type_config.rate_minutes), template)
            registered += 1
        return registered

    async def schedule_data_source(self, tenant_id: str, data_source_id: str, entity_types: Optional[list[str]] = None) -> list[str]:
        """Enqueue an immediate sync of every (or the given) entity type. Returns job ids."""
        data_source = await self.store.get("data_sources", tenant_id, data_source_id)
        if data_source is None:
            raise NotFoundError(f"Data source {data_source_id} not found")
        integration = self.integrations.get(data_source["integration_type"])
        if integration is None:
            raise NotFoundError(f"Unknown integration: {data_source['integration_type']}")

        job_ids = []
        for type_config in integration.supported_types:
            if entity_types and type_config.type not in entity_types:
                continue
            job = Job(
                tenant_id=tenant_id,
                integration_type=data_source["integration_type"],
                entity_type=type_config.type,
                data_source_id=data_source_id,
                priority=type_config.priority,
                max_attempts=self.queue.settings.queue_max_attempts,
            )
            job_ids.append(await self.queue.schedule(job, origin="manual"))
        logger.info(f"Manual sync of data source {data_source_id}: {len(job_ids)} job(s)")
        return job_ids
