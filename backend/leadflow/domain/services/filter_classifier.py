"""
Filter Classifier
Decides which filtration process a new lead enters.

- Destination "UPCOMING" (or leadData.upcoming) -> UPCOMING
- No active ProcessDestinationMap covers the destination -> UNKNOWN
- Otherwise a weighted pick between the covering maps: the map with the
  smallest counter / load_share wins and its counter is incremented, so
  traffic converges on the configured split.
"""
import logging
from typing import Any, Dict, List, Optional

from leadflow.core.errors import TransientInfraError
from leadflow.domain.interfaces.repositories import ProcessDestinationRepository
from leadflow.domain.models.availability import ProcessDestinationMap
from leadflow.domain.models.opportunity import FilterType, UPCOMING_DESTINATION

logger = logging.getLogger(__name__)


def is_upcoming(destination: Optional[str], lead_data: Optional[Dict[str, Any]] = None) -> bool:
    if lead_data and lead_data.get("upcoming") is True:
        return True
    return (destination or "").strip().upper() == UPCOMING_DESTINATION


def pick_weighted(mappings: List[ProcessDestinationMap]) -> Optional[ProcessDestinationMap]:
    """Smallest counter/load_share, ties by id for a stable order."""
    if not mappings:
        return None
    return min(mappings, key=lambda m: (m.weighted_load, m.id))


class FilterClassifier:

    def __init__(self, destination_maps: ProcessDestinationRepository, max_cas_attempts: int = 5):
        self.destination_maps = destination_maps
        self.max_cas_attempts = max_cas_attempts

    async def classify(
        self,
        destination: Optional[str],
        lead_data: Optional[Dict[str, Any]] = None
    ) -> FilterType:
        """
        Classify a lead by destination.

        Raises:
            TransientInfraError: Lost the counter race max_cas_attempts times
        """
        if is_upcoming(destination, lead_data):
            return FilterType.UPCOMING

        if not destination:
            return FilterType.UNKNOWN

        for _ in range(self.max_cas_attempts):
            mappings = await self.destination_maps.list_for_destination(destination)
            chosen = pick_weighted([m for m in mappings if m.covers(destination)])
            if chosen is None:
                logger.info(f"No process serves destination {destination}, marking UNKNOWN")
                return FilterType.UNKNOWN

            updated = await self.destination_maps.increment_counter_if_unchanged(chosen)
            if updated is not None:
                logger.debug(
                    f"Destination {destination} routed to {updated.process.value} "
                    f"(counter={updated.counter}, share={updated.load_share})"
                )
                return updated.process

        raise TransientInfraError(
            f"Could not classify destination {destination}: counter contention"
        )
