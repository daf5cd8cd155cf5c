"""
Shared fixtures for the lead routing unit tests
"""
import pytest
from types import SimpleNamespace

from leadflow.domain.services.assignment_engine import AssignmentEngine
from leadflow.domain.services.filter_classifier import FilterClassifier
from leadflow.infrastructure.connectors.crm.memory import InMemoryCRM
from leadflow.infrastructure.notifications import LogNotifier
from leadflow.infrastructure.queue.memory import InMemoryQueue
from leadflow.infrastructure.storage.memory import (
    InMemoryOpportunityRepository,
    InMemoryLeadRepository,
    InMemoryAvailabilityRepository,
    InMemoryProcessDestinationRepository,
    InMemoryActivityRepository,
    InMemoryFollowUpRepository,
)
from leadflow.services.crm_sync_processor import CrmSyncProcessor
from leadflow.services.lead_intake_processor import LeadIntakeProcessor
from leadflow.services.operator_actions import OperatorActions

from factories import SYNC_TOPIC, ManualClock


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def availability_records():
    """Handlers seeded into the availability repository; override per module."""
    return []


@pytest.fixture
def destination_mappings():
    """Destination maps seeded into the classifier repository; override per module."""
    return []


@pytest.fixture
def pipeline(clock, availability_records, destination_mappings):
    """In-memory wiring of both processors and the operator actions."""
    queue = InMemoryQueue(clock=clock)
    opportunities = InMemoryOpportunityRepository()
    leads = InMemoryLeadRepository()
    availabilities = InMemoryAvailabilityRepository(availability_records)
    destination_maps = InMemoryProcessDestinationRepository(destination_mappings)
    activities = InMemoryActivityRepository()
    followups = InMemoryFollowUpRepository()
    crm = InMemoryCRM()

    engine = AssignmentEngine(availabilities)
    classifier = FilterClassifier(destination_maps)

    intake = LeadIntakeProcessor(
        queue=queue,
        opportunities=opportunities,
        leads=leads,
        activities=activities,
        assignment_engine=engine,
        classifier=classifier,
        notifier=LogNotifier(),
        sync_topic=SYNC_TOPIC
    )
    sync = CrmSyncProcessor(
        opportunities=opportunities,
        activities=activities,
        followups=followups,
        assignment_engine=engine,
        crm=crm,
        clock=clock
    )
    operator = OperatorActions(
        queue=queue,
        opportunities=opportunities,
        activities=activities,
        availabilities=availabilities,
        assignment_engine=engine,
        classifier=classifier,
        sync_topic=SYNC_TOPIC
    )

    return SimpleNamespace(
        queue=queue,
        opportunities=opportunities,
        leads=leads,
        availabilities=availabilities,
        destination_maps=destination_maps,
        activities=activities,
        followups=followups,
        crm=crm,
        engine=engine,
        classifier=classifier,
        intake=intake,
        sync=sync,
        operator=operator,
    )
