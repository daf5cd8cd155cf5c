"""
Unit tests for the lead intake processor
Runs against the in-memory queue and repositories from conftest.
"""
import pytest
from unittest.mock import AsyncMock

from leadflow.core.errors import MalformedMessageError, TransientInfraError
from leadflow.domain.models.opportunity import (
    Opportunity,
    OpportunityStatus,
    FilterType,
    HandlerProcess,
)
from leadflow.services.lead_intake_processor import derive_ids

from factories import (
    INTAKE_TOPIC,
    SYNC_TOPIC,
    intake_payload,
    make_availability,
    make_mapping,
    queue_message,
)


@pytest.fixture
def availability_records():
    return [
        make_availability("psv-1", seq=1),
        make_availability("sales-1", process=HandlerProcess.SALES, destinations=["Dubai", "Bali"]),
    ]


@pytest.fixture
def destination_mappings():
    """Dubai goes to PSV, Bali needs no filtration, Goa is undecided."""
    return [
        make_mapping("m-psv", FilterType.PSV),
        make_mapping("m-bali", FilterType.NO_FILTER, destinations=["Bali"]),
        make_mapping("m-goa", FilterType.WEST, destinations=["Goa"]),
    ]


def _message(message_id="1704099600000-1", **kwargs):
    return queue_message(INTAKE_TOPIC, message_id, intake_payload(**kwargs))


async def _actions(pipeline, opportunity_id):
    return [a.action for a in await pipeline.activities.list_for_opportunity(opportunity_id)]


class TestDeriveIds:

    def test_same_message_same_ids(self):
        """Same message should derive the same ids"""
        assert derive_ids(INTAKE_TOPIC, "1-1") == derive_ids(INTAKE_TOPIC, "1-1")

    def test_different_messages_differ(self):
        """Different messages derive different ids"""
        assert derive_ids(INTAKE_TOPIC, "1-1") != derive_ids(INTAKE_TOPIC, "1-2")

    def test_trace_and_opportunity_ids_differ(self):
        """Test trace and opportunity ids differ"""
        trace_id, opportunity_id = derive_ids(INTAKE_TOPIC, "1-1")
        assert trace_id != opportunity_id


class TestFiltrationRouting:
    """Leads classified into a filtration process"""

    @pytest.mark.asyncio
    async def test_psv_lead_is_assigned(self, pipeline):
        """Test a filtration lead is assigned a handler"""
        opportunity = await pipeline.intake.handle(_message())

        assert opportunity.status == OpportunityStatus.IN_PSV
        assert opportunity.filtration_status.filter_type == FilterType.PSV
        assert opportunity.filtration_status.assignee_id == "psv-1"
        assert opportunity.source == "facebook"
        assert not opportunity.is_pushed
        assert (await pipeline.availabilities.get("psv-1")).lead_count == 1
        assert await _actions(pipeline, opportunity.id) == ["created", "classified", "assigned:PSV"]

    @pytest.mark.asyncio
    async def test_ids_are_derived_from_message(self, pipeline):
        """Test ids are derived from the message id"""
        opportunity = await pipeline.intake.handle(_message("42-0"))

        assert (opportunity.trace_id, opportunity.id) == derive_ids(INTAKE_TOPIC, "42-0")
        assert opportunity.source_message_id == "42-0"

    @pytest.mark.asyncio
    async def test_lead_profile_is_linked(self, pipeline):
        """Test the lead profile is linked to the opportunity"""
        opportunity = await pipeline.intake.handle(_message())

        lead = await pipeline.leads.find_by_phone("+971500000001")
        assert lead.name == "Sara Khan"
        assert lead.active_opportunity_ids == [opportunity.id]
        assert opportunity.lead_id == lead.id

    @pytest.mark.asyncio
    async def test_no_handler_leaves_opportunity_under_processing(self, pipeline):
        """No handler leaves the opportunity under processing"""
        opportunity = await pipeline.intake.handle(_message(destination="Goa"))

        assert opportunity.status == OpportunityStatus.UNDER_PROCESSING
        assert opportunity.filtration_status.filter_type == FilterType.WEST
        assert opportunity.filtration_status.assignee_id is None
        assert (await _actions(pipeline, opportunity.id))[-1] == "assignment_failed"
        assert pipeline.queue.messages(SYNC_TOPIC) == []


class TestParkedRouting:

    @pytest.mark.asyncio
    async def test_unmapped_destination_resolving_unknown(self, pipeline):
        """Test unmapped destinations are parked as unknown"""
        opportunity = await pipeline.intake.handle(_message(destination="Atlantis"))

        assert opportunity.status == OpportunityStatus.RESOLVING_UNKNOWN
        assert all(a.lead_count == 0 for a in pipeline.availabilities.all())

    @pytest.mark.asyncio
    async def test_missing_destination_resolving_unknown(self, pipeline):
        """Test missing destinations are parked as unknown"""
        opportunity = await pipeline.intake.handle(_message(destination=None))

        assert opportunity.status == OpportunityStatus.RESOLVING_UNKNOWN

    @pytest.mark.asyncio
    async def test_upcoming_destination(self, pipeline):
        """Test upcoming destinations are parked"""
        opportunity = await pipeline.intake.handle(_message(destination="UPCOMING"))

        assert opportunity.status == OpportunityStatus.UPCOMING_FRESH_LEAD
        assert opportunity.filtration_status.filter_type == FilterType.UPCOMING

    @pytest.mark.asyncio
    async def test_upcoming_flag(self, pipeline):
        """Test the upcoming flag parks the lead"""
        opportunity = await pipeline.intake.handle(_message(upcoming=True))

        assert opportunity.status == OpportunityStatus.UPCOMING_FRESH_LEAD


class TestNoFilterRouting:

    @pytest.mark.asyncio
    async def test_no_filter_lead_is_promoted_and_synced(self, pipeline):
        """Test a no-filter lead goes straight to sync"""
        opportunity = await pipeline.intake.handle(_message(destination="Bali"))

        assert opportunity.status == OpportunityStatus.OPEN
        assert opportunity.is_pushed
        assert opportunity.crm_stage_meta.assignee_id is None
        assert pipeline.queue.messages(SYNC_TOPIC) == [
            {"opportunityId": opportunity.id, "traceId": opportunity.trace_id}
        ]

    @pytest.mark.asyncio
    async def test_redelivered_open_opportunity_republishes_sync(self, pipeline):
        """Test redelivery republishes the sync request"""
        message = _message(destination="Bali")
        await pipeline.intake.handle(message)
        await pipeline.intake.handle(message)

        assert len(pipeline.queue.messages(SYNC_TOPIC)) == 2
        assert len(pipeline.opportunities.all()) == 1


class TestDuplicates:

    @pytest.mark.asyncio
    async def test_same_phone_and_destination_is_duplicate(self, pipeline):
        """Same phone and destination is a duplicate"""
        first = await pipeline.intake.handle(_message("1-1"))
        second = await pipeline.intake.handle(_message("1-2"))

        assert second.status == OpportunityStatus.DORMANT
        assert second.is_duplicate
        assert second.duplicate_of_id == first.id
        assert await _actions(pipeline, second.id) == ["duplicate"]
        # The duplicate is not charged to a handler
        assert (await pipeline.availabilities.get("psv-1")).lead_count == 1

    @pytest.mark.asyncio
    async def test_email_match_is_duplicate(self, pipeline):
        """Matching email is a duplicate"""
        first = await pipeline.intake.handle(_message("1-1", email="sara@example.com"))
        second = await pipeline.intake.handle(
            _message("1-2", phone="+971500000999", email="sara@example.com")
        )

        assert second.duplicate_of_id == first.id

    @pytest.mark.asyncio
    async def test_other_destination_is_not_duplicate(self, pipeline):
        """Other destination is not a duplicate"""
        await pipeline.intake.handle(_message("1-1"))
        second = await pipeline.intake.handle(_message("1-2", destination="Atlantis"))

        assert not second.is_duplicate

    @pytest.mark.asyncio
    async def test_closed_opportunity_does_not_block_new_one(self, pipeline):
        """Closed opportunity should not block a new one"""
        first = await pipeline.intake.handle(_message("1-1"))
        await pipeline.operator.disqualify(first.id, ["wrong number"])

        second = await pipeline.intake.handle(_message("1-2"))

        assert not second.is_duplicate
        assert second.status == OpportunityStatus.IN_PSV

    @pytest.mark.asyncio
    async def test_creation_race_loser_becomes_duplicate(self, pipeline):
        """The store-side uniqueness check catches what the lookup missed"""
        first = await pipeline.intake.handle(_message("1-1"))
        pipeline.opportunities.find_active_duplicate = AsyncMock(return_value=None)

        second = await pipeline.intake.handle(_message("1-2"))

        assert second.status == OpportunityStatus.DORMANT
        assert second.duplicate_of_id == first.id

    @pytest.mark.asyncio
    async def test_at_most_one_live_opportunity(self, pipeline):
        """Test only one live opportunity per lead"""
        for n in range(3):
            await pipeline.intake.handle(_message(f"1-{n}"))

        live = [o for o in pipeline.opportunities.all() if not o.is_duplicate]
        assert len(live) == 1


class TestRedelivery:

    @pytest.mark.asyncio
    async def test_redelivery_does_not_duplicate_work(self, pipeline):
        """Redelivery should not duplicate work"""
        message = _message()
        first = await pipeline.intake.handle(message)
        again = await pipeline.intake.handle(message.model_copy(update={"delivery_count": 2}))

        assert again.id == first.id
        assert again.status == OpportunityStatus.IN_PSV
        assert len(pipeline.opportunities.all()) == 1
        assert (await pipeline.availabilities.get("psv-1")).lead_count == 1
        lead = await pipeline.leads.find_by_phone("+971500000001")
        assert lead.active_opportunity_ids == [first.id]

    @pytest.mark.asyncio
    async def test_redelivery_after_failed_assignment_resumes(self, pipeline):
        """Classification is checkpointed, so the map counter moves once"""
        engine = pipeline.intake.assignment_engine
        real_assign = engine.assign
        engine.assign = AsyncMock(side_effect=TransientInfraError("store down"))
        message = _message()

        with pytest.raises(TransientInfraError):
            await pipeline.intake.handle(message)

        stored = pipeline.opportunities.all()[0]
        assert stored.status == OpportunityStatus.UNDER_PROCESSING
        assert stored.filtration_status.filter_type == FilterType.PSV

        engine.assign = real_assign
        opportunity = await pipeline.intake.handle(message)

        assert opportunity.status == OpportunityStatus.IN_PSV
        assert (await pipeline.destination_maps.get("m-psv")).counter == 1

    @pytest.mark.asyncio
    async def test_redelivered_duplicate_stays_duplicate(self, pipeline):
        """Redelivered duplicate stays a duplicate"""
        await pipeline.intake.handle(_message("1-1"))
        duplicate_message = _message("1-2")
        first = await pipeline.intake.handle(duplicate_message)
        again = await pipeline.intake.handle(duplicate_message)

        assert again.id == first.id
        assert again.is_duplicate


class TestMalformedPayloads:

    @pytest.mark.asyncio
    async def test_missing_phone(self, pipeline):
        """Missing phone is malformed"""
        message = queue_message(INTAKE_TOPIC, "1-1", {"source": "web", "leadData": {"name": "x"}})

        with pytest.raises(MalformedMessageError):
            await pipeline.intake.handle(message)

    @pytest.mark.asyncio
    async def test_blank_phone(self, pipeline):
        """Blank phone is malformed"""
        with pytest.raises(MalformedMessageError):
            await pipeline.intake.handle(_message(phone="   "))

    @pytest.mark.asyncio
    async def test_missing_lead_data(self, pipeline):
        """Missing lead data is malformed"""
        message = queue_message(INTAKE_TOPIC, "1-1", {"source": "web"})

        with pytest.raises(MalformedMessageError):
            await pipeline.intake.handle(message)

        assert pipeline.opportunities.all() == []

    def test_opportunity_requires_phone(self):
        """Test an opportunity cannot be built without a phone"""
        with pytest.raises(ValueError):
            Opportunity(id="o", trace_id="t", phone="")
