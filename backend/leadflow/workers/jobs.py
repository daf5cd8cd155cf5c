"""
Scheduled Jobs
Static registry of periodic reports run by the scheduler worker.

The reports are the operator-visible failure surface: dead-letter and
pending sizes per consumer group, opportunities stuck in UNDER_PROCESSING,
and follow-ups past their due time.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional, Tuple

from leadflow.domain.models.opportunity import OpportunityStatus
from leadflow.utils.clock import utc_now

if TYPE_CHECKING:
    from leadflow.core.container import Container

logger = logging.getLogger(__name__)

JobHandler = Callable[["Container"], Awaitable[Dict[str, Any]]]


@dataclass(frozen=True)
class JobDescriptor:
    name: str
    interval_seconds: float
    handler: JobHandler

    @property
    def config_key(self) -> str:
        return f"jobs.{self.name.replace('-', '_')}"


async def queue_health_report(container: "Container") -> Dict[str, Any]:
    """Pending and dead-letter sizes for every consumer group."""
    settings = container.settings
    report: Dict[str, Any] = {}

    for topic, group in (
        (settings.intake_topic, settings.intake_group),
        (settings.sync_topic, settings.sync_group),
    ):
        stats = await container.queue.stats(topic, group)
        report[f"{topic}/{group}"] = stats

        if stats.get("dead_letters", 0) > 0:
            logger.warning(
                f"{topic}/{group}: {stats['dead_letters']} dead-lettered, "
                f"{stats.get('pending', 0)} pending"
            )
        else:
            logger.info(f"{topic}/{group}: {stats.get('pending', 0)} pending, length {stats.get('length', 0)}")

    return report


async def stuck_opportunity_report(container: "Container") -> Dict[str, Any]:
    """Opportunities left in UNDER_PROCESSING longer than the threshold."""
    threshold_minutes = float(container.config.get("jobs.stuck_opportunity_report.threshold_minutes", 30))
    cutoff = utc_now() - timedelta(minutes=threshold_minutes)

    stuck = await container.opportunities.list_by_status(
        OpportunityStatus.UNDER_PROCESSING, updated_before=cutoff
    )
    for opportunity in stuck:
        logger.warning(
            f"Opportunity {opportunity.id} stuck in UNDER_PROCESSING since "
            f"{opportunity.updated_at.isoformat()} (trace {opportunity.trace_id})"
        )

    return {"count": len(stuck), "opportunity_ids": [o.id for o in stuck]}


async def overdue_followup_report(container: "Container") -> Dict[str, Any]:
    overdue = await container.followups.list_overdue(utc_now())
    for followup in overdue:
        logger.warning(
            f"Follow-up {followup.id} for opportunity {followup.opportunity_id} "
            f"overdue since {followup.due_at.isoformat()} (assignee {followup.assignee_id})"
        )
    return {"count": len(overdue), "followup_ids": [f.id for f in overdue]}


JOBS: Tuple[JobDescriptor, ...] = (
    JobDescriptor("queue-health-report", 300, queue_health_report),
    JobDescriptor("stuck-opportunity-report", 900, stuck_opportunity_report),
    JobDescriptor("overdue-followup-report", 1800, overdue_followup_report),
)


def get_job(name: str) -> Optional[JobDescriptor]:
    for job in JOBS:
        if job.name == name:
            return job
    return None
