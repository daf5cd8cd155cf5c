"""
Service Container
Wires stores, repositories, the CRM provider and the processors from
Settings + ConfigManager. Worker entry points build one container per process.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from supabase import create_client

from leadflow.core.config import ConfigManager, Settings, get_settings
from leadflow.domain.interfaces.durable_queue import DurableQueue
from leadflow.domain.interfaces.notifier import Notifier
from leadflow.domain.interfaces.repositories import (
    OpportunityRepository,
    LeadRepository,
    AvailabilityRepository,
    ProcessDestinationRepository,
    ActivityRepository,
    FollowUpRepository,
)
from leadflow.domain.services.assignment_engine import AssignmentEngine
from leadflow.domain.services.filter_classifier import FilterClassifier
from leadflow.domain.services.lifecycle import LifecycleStateMachine
from leadflow.domain.services.queue_service import PendingSweeper
from leadflow.infrastructure.connectors.crm.base import CRMProvider
from leadflow.infrastructure.connectors.crm.hubspot import HubSpotConnector
from leadflow.infrastructure.connectors.crm.memory import InMemoryCRM
from leadflow.infrastructure.notifications import LogNotifier
from leadflow.infrastructure.queue.memory import InMemoryQueue
from leadflow.infrastructure.queue.redis_streams import RedisStreamQueue
from leadflow.infrastructure.storage.memory import (
    InMemoryOpportunityRepository,
    InMemoryLeadRepository,
    InMemoryAvailabilityRepository,
    InMemoryProcessDestinationRepository,
    InMemoryActivityRepository,
    InMemoryFollowUpRepository,
)
from leadflow.infrastructure.storage.supabase_repositories import build_supabase_repositories
from leadflow.services.crm_sync_processor import CrmSyncProcessor
from leadflow.services.intake_publisher import IntakePublisher
from leadflow.services.lead_intake_processor import LeadIntakeProcessor
from leadflow.services.operator_actions import OperatorActions

logger = logging.getLogger(__name__)


@dataclass
class Container:
    settings: Settings
    config: ConfigManager
    queue: DurableQueue
    opportunities: OpportunityRepository
    leads: LeadRepository
    availabilities: AvailabilityRepository
    destination_maps: ProcessDestinationRepository
    activities: ActivityRepository
    followups: FollowUpRepository
    crm: CRMProvider
    notifier: Notifier
    assignment_engine: AssignmentEngine
    classifier: FilterClassifier
    intake_processor: LeadIntakeProcessor
    sync_processor: CrmSyncProcessor
    operator_actions: OperatorActions
    publisher: IntakePublisher

    def sweeper(self, topic: str, group: str) -> PendingSweeper:
        return PendingSweeper(self.queue, topic, group, config=self.config)

    async def close(self) -> None:
        await self.queue.close()
        await self.crm.close()


def _build_queue(settings: Settings) -> DurableQueue:
    if settings.queue_backend == "memory":
        logger.warning("Using in-memory queue; messages do not survive a restart")
        return InMemoryQueue()
    if settings.queue_backend != "redis":
        raise RuntimeError(f"Unknown queue backend: {settings.queue_backend}")
    return RedisStreamQueue(redis_url=settings.redis_url)


def _build_repositories(settings: Settings) -> dict:
    if settings.storage_backend == "memory":
        logger.warning("Using in-memory repositories")
        return {
            "opportunities": InMemoryOpportunityRepository(),
            "leads": InMemoryLeadRepository(),
            "availabilities": InMemoryAvailabilityRepository(),
            "destination_maps": InMemoryProcessDestinationRepository(),
            "activities": InMemoryActivityRepository(),
            "followups": InMemoryFollowUpRepository(),
        }
    if settings.storage_backend != "supabase":
        raise RuntimeError(f"Unknown storage backend: {settings.storage_backend}")

    if not settings.supabase_url or not settings.supabase_service_key:
        raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set")
    return build_supabase_repositories(
        create_client(settings.supabase_url, settings.supabase_service_key)
    )


def _build_crm(settings: Settings, config: ConfigManager) -> CRMProvider:
    if settings.crm_provider == "memory":
        logger.warning("Using in-memory CRM; nothing is pushed to an external system")
        return InMemoryCRM()
    if settings.crm_provider != "hubspot":
        raise RuntimeError(f"Unknown CRM provider: {settings.crm_provider}")

    if not settings.hubspot_access_token:
        raise RuntimeError("HUBSPOT_ACCESS_TOKEN must be set")
    return HubSpotConnector(
        settings.hubspot_access_token,
        deal_stage=config.get("crm.deal_stage", "appointmentscheduled")
    )


def build_container(
    settings: Optional[Settings] = None,
    config: Optional[ConfigManager] = None
) -> Container:
    """Build the object graph for one worker process."""
    settings = settings or get_settings()
    config = config or ConfigManager(env=settings.environment)

    queue = _build_queue(settings)
    repos = _build_repositories(settings)
    crm = _build_crm(settings, config)
    notifier = LogNotifier()
    lifecycle = LifecycleStateMachine()

    max_cas_attempts = int(config.get("assignment.max_cas_attempts", 5))
    engine = AssignmentEngine(repos["availabilities"], max_cas_attempts=max_cas_attempts)
    classifier = FilterClassifier(repos["destination_maps"], max_cas_attempts=max_cas_attempts)

    intake_processor = LeadIntakeProcessor(
        queue=queue,
        opportunities=repos["opportunities"],
        leads=repos["leads"],
        activities=repos["activities"],
        assignment_engine=engine,
        classifier=classifier,
        notifier=notifier,
        sync_topic=settings.sync_topic,
        lifecycle=lifecycle
    )
    sync_processor = CrmSyncProcessor(
        opportunities=repos["opportunities"],
        activities=repos["activities"],
        followups=repos["followups"],
        assignment_engine=engine,
        crm=crm,
        lifecycle=lifecycle,
        followup_sla=timedelta(hours=float(config.get("crm.followup_sla_hours", 24)))
    )
    operator_actions = OperatorActions(
        queue=queue,
        opportunities=repos["opportunities"],
        activities=repos["activities"],
        availabilities=repos["availabilities"],
        assignment_engine=engine,
        classifier=classifier,
        sync_topic=settings.sync_topic,
        lifecycle=lifecycle
    )

    return Container(
        settings=settings,
        config=config,
        queue=queue,
        opportunities=repos["opportunities"],
        leads=repos["leads"],
        availabilities=repos["availabilities"],
        destination_maps=repos["destination_maps"],
        activities=repos["activities"],
        followups=repos["followups"],
        crm=crm,
        notifier=notifier,
        assignment_engine=engine,
        classifier=classifier,
        intake_processor=intake_processor,
        sync_processor=sync_processor,
        operator_actions=operator_actions,
        publisher=IntakePublisher(queue, settings.intake_topic),
    )
