"""
Unit tests for destination classification
"""
import pytest
from unittest.mock import AsyncMock

from leadflow.core.errors import TransientInfraError
from leadflow.domain.models.opportunity import FilterType
from leadflow.domain.services.filter_classifier import FilterClassifier, is_upcoming, pick_weighted
from leadflow.infrastructure.storage.memory import InMemoryProcessDestinationRepository

from factories import make_mapping


class TestUpcoming:

    def test_upcoming_destination(self):
        """Test upcoming destinations are parked"""
        assert is_upcoming("UPCOMING")
        assert is_upcoming(" upcoming ")

    def test_upcoming_flag(self):
        """Test the upcoming flag parks the lead"""
        assert is_upcoming("Dubai", {"upcoming": True})

    def test_regular_destination(self):
        """Test a regular destination is routed to a process"""
        assert not is_upcoming("Dubai", {"upcoming": False})
        assert not is_upcoming(None)


class TestPickWeighted:

    def test_lowest_weighted_load(self):
        """Test the lowest weighted load wins"""
        psv = make_mapping("m1", FilterType.PSV, counter=4, load_share=2.0)   # 2.0
        west = make_mapping("m2", FilterType.WEST, counter=3, load_share=1.0)  # 3.0

        assert pick_weighted([psv, west]).id == "m1"

    def test_ties_by_id(self):
        """Equal loads fall back to the lowest id"""
        a = make_mapping("b", FilterType.PSV)
        b = make_mapping("a", FilterType.WEST)

        assert pick_weighted([a, b]).id == "a"


class TestFilterClassifier:

    @pytest.mark.asyncio
    async def test_single_process_destination(self):
        """Test a single-process destination"""
        repo = InMemoryProcessDestinationRepository([make_mapping("m1", FilterType.PSV)])

        assert await FilterClassifier(repo).classify("dubai") == FilterType.PSV
        assert (await repo.get("m1")).counter == 1

    @pytest.mark.asyncio
    async def test_no_filter_destination(self):
        """Test no-filter destinations skip filtration"""
        repo = InMemoryProcessDestinationRepository([
            make_mapping("m1", FilterType.NO_FILTER, destinations=["Bali"])
        ])

        assert await FilterClassifier(repo).classify("Bali") == FilterType.NO_FILTER

    @pytest.mark.asyncio
    async def test_unmapped_destination_is_unknown(self):
        """Unmapped destination resolves to unknown"""
        repo = InMemoryProcessDestinationRepository([make_mapping("m1", FilterType.PSV)])

        assert await FilterClassifier(repo).classify("Atlantis") == FilterType.UNKNOWN

    @pytest.mark.asyncio
    async def test_missing_destination_is_unknown(self):
        """Missing destination resolves to unknown"""
        repo = InMemoryProcessDestinationRepository([make_mapping("m1", FilterType.PSV)])

        assert await FilterClassifier(repo).classify(None) == FilterType.UNKNOWN

    @pytest.mark.asyncio
    async def test_upcoming_skips_maps(self):
        """Test upcoming leads never charge a map"""
        repo = InMemoryProcessDestinationRepository([
            make_mapping("m1", FilterType.PSV, destinations=["UPCOMING"])
        ])

        assert await FilterClassifier(repo).classify("UPCOMING") == FilterType.UPCOMING
        assert (await repo.get("m1")).counter == 0

    @pytest.mark.asyncio
    async def test_inactive_map_is_ignored(self):
        """Inactive maps are ignored"""
        mapping = make_mapping("m1", FilterType.PSV).model_copy(update={"is_active": False})
        repo = InMemoryProcessDestinationRepository([mapping])

        assert await FilterClassifier(repo).classify("Dubai") == FilterType.UNKNOWN

    @pytest.mark.asyncio
    async def test_traffic_follows_load_share(self):
        """Test traffic follows the configured load share"""
        repo = InMemoryProcessDestinationRepository([
            make_mapping("m1", FilterType.PSV, load_share=3.0),
            make_mapping("m2", FilterType.WEST, load_share=1.0),
        ])
        classifier = FilterClassifier(repo)

        results = [await classifier.classify("Dubai") for _ in range(8)]

        assert results.count(FilterType.PSV) == 6
        assert results.count(FilterType.WEST) == 2

    @pytest.mark.asyncio
    async def test_contention_exhaustion_is_transient(self):
        """Exhausted retries should raise a transient error"""
        repo = AsyncMock()
        repo.list_for_destination.return_value = [make_mapping("m1", FilterType.PSV)]
        repo.increment_counter_if_unchanged.return_value = None

        with pytest.raises(TransientInfraError):
            await FilterClassifier(repo, max_cas_attempts=2).classify("Dubai")
