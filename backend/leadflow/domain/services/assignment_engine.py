"""
Assignment Engine
Load-balanced, source-aware handler selection.

Selection:
1. Available, non-deleted records for the process that list the destination
2. If any of those list the request source, keep only those
3. Lowest lead_count wins, ties broken by lowest seq

The winner's counters are bumped with a compare-and-swap. Losing the race
means another worker assigned to the same record in between: re-read and
pick again, so the choice is always made on fresh counters.
"""
import logging
from typing import List, Optional

from leadflow.core.errors import NoAvailableHandler, TransientInfraError
from leadflow.domain.interfaces.repositories import AvailabilityRepository
from leadflow.domain.models.availability import Availability
from leadflow.domain.models.opportunity import HandlerProcess

logger = logging.getLogger(__name__)


def select_candidate(
    candidates: List[Availability],
    source: Optional[str] = None
) -> Optional[Availability]:
    """
    Pick the least loaded record, preferring records with source affinity.

    Pure function over an already filtered pool.
    """
    if not candidates:
        return None

    preferred = [c for c in candidates if c.has_source(source)]
    pool = preferred or candidates

    return min(pool, key=lambda c: (c.lead_count, c.seq))


class AssignmentEngine:
    """
    Assigns a handler for a (process, destination, source) request.

    Usage:
        engine = AssignmentEngine(availability_repo)
        handler = await engine.assign(HandlerProcess.PSV, "Dubai", "facebook")
    """

    DEFAULT_MAX_CAS_ATTEMPTS = 5

    def __init__(
        self,
        availabilities: AvailabilityRepository,
        max_cas_attempts: int = DEFAULT_MAX_CAS_ATTEMPTS
    ):
        self.availabilities = availabilities
        self.max_cas_attempts = max_cas_attempts

    async def assign(
        self,
        process: HandlerProcess,
        destination: Optional[str],
        source: Optional[str] = None
    ) -> Availability:
        """
        Assign and atomically charge one handler.

        Returns:
            The availability record after its counters were incremented

        Raises:
            NoAvailableHandler: No eligible record for the process + destination
            TransientInfraError: Lost the counter race max_cas_attempts times
        """
        for attempt in range(1, self.max_cas_attempts + 1):
            candidates = await self.availabilities.list_candidates(process, destination)
            # The repository may be coarse; enforce eligibility here as well
            candidates = [c for c in candidates if c.serves(process, destination)]

            chosen = select_candidate(candidates, source)
            if chosen is None:
                raise NoAvailableHandler(process.value, destination, source)

            updated = await self.availabilities.increment_if_unchanged(chosen)
            if updated is not None:
                logger.info(
                    f"Assigned {process.value}/{destination} to {updated.id} "
                    f"(lead_count={updated.lead_count}, attempt {attempt})"
                )
                return updated

            logger.debug(
                f"Counter race lost on {chosen.id} (attempt {attempt}/{self.max_cas_attempts})"
            )

        raise TransientInfraError(
            f"Could not assign {process.value}/{destination}: "
            f"counter contention after {self.max_cas_attempts} attempts"
        )

    async def charge(self, availability_id: str) -> Availability:
        """
        Assign to a specific record (operator reassignment).

        Raises:
            NoAvailableHandler: Record missing, deleted or unavailable
            TransientInfraError: Lost the counter race max_cas_attempts times
        """
        for _ in range(self.max_cas_attempts):
            current = await self.availabilities.get(availability_id)
            if current is None or current.is_deleted or not current.is_available:
                raise NoAvailableHandler(
                    current.process.value if current else "unknown", None
                )

            updated = await self.availabilities.increment_if_unchanged(current)
            if updated is not None:
                return updated

        raise TransientInfraError(
            f"Could not charge {availability_id}: counter contention"
        )
