"""
Clock Utility
Timezone-aware UTC timestamps shared by models, stores and workers
"""
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ms_between(earlier: datetime, later: datetime) -> int:
    """Whole milliseconds elapsed from earlier to later (never negative)."""
    return max(0, int((later - earlier).total_seconds() * 1000))
