"""
Data models for scheduled analyses and the trigger messages they produce.
"""

from dataclasses import dataclass, asdict
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any

from sqlalchemy import Column, String, Boolean, DateTime, Integer, JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

Base = declarative_base()

SCHEDULE_DAILY = 'daily'
SCHEDULE_WEEKLY = 'weekly'

# Schedule types the scheduler knows how to recur
RECURRING_SCHEDULE_TYPES = (SCHEDULE_DAILY, SCHEDULE_WEEKLY)

SCHEDULE_INTERVALS = {
    SCHEDULE_DAILY: timedelta(hours=24),
    SCHEDULE_WEEKLY: timedelta(hours=7 * 24),
}


def utcnow() -> datetime:
    """Current time as a naive UTC datetime, the format stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def calculate_next_run(schedule_type: Optional[str], from_time: datetime) -> datetime:
    """
    Compute the next run time for a schedule.

    The interval is added to the actual trigger time, not to a calendar
    anchor, so delays accumulate. Missing or unknown schedule types fall
    back to daily.
    """
    interval = SCHEDULE_INTERVALS.get(schedule_type, SCHEDULE_INTERVALS[SCHEDULE_DAILY])
    return from_time + interval


class ScheduledAnalysis(Base):
    """
    A recurring analysis definition (row of the ``analysis`` table).

    The table is owned by the API; the scheduler only reads it and writes
    the two scheduling timestamps.
    """
    __tablename__ = "analysis"

    id = Column(String(36), primary_key=True)
    created_on = Column(DateTime)
    config = Column(JSON().with_variant(JSONB(), "postgresql"))
    stage = Column(Integer)
    status = Column(String)
    branch = Column(String)
    schedule_type = Column(String)
    next_scheduled_run = Column(DateTime, index=True)
    is_active = Column(Boolean, nullable=False, default=False)
    last_scheduled_run = Column(DateTime)
    project_id = Column("projectId", String(36))
    analyzer_id = Column("analyzerId", String(36))
    organization_id = Column("organizationId", String(36))
    integration_id = Column("integrationId", String(36))
    created_by_id = Column("createdById", String(36))

    def idempotency_key(self) -> str:
        """
        Key identifying one due occurrence of this schedule.

        Built from the previous run, which only changes once an occurrence
        has been fully dispatched, so every retry of it shares the key.
        """
        previous = self.last_scheduled_run.isoformat() if self.last_scheduled_run else 'first'
        return f"{self.id}:{previous}"

    def __repr__(self):
        return (
            f"<ScheduledAnalysis(id={self.id}, schedule={self.schedule_type}, "
            f"active={self.is_active}, next={self.next_scheduled_run})>"
        )


@dataclass
class ExecutionTrigger:
    """Message telling the dispatcher to run a freshly created execution"""
    analysis_id: str  # ID of the new execution, not of the schedule
    project_id: str
    organization_id: str
    integration_id: Optional[str]
    config: Optional[Dict[str, Any]]

    @classmethod
    def from_analysis(cls, analysis: ScheduledAnalysis, execution_id: str) -> 'ExecutionTrigger':
        """Create from a scheduled analysis and the ID of its new execution"""
        return cls(
            analysis_id=execution_id,
            project_id=analysis.project_id,
            organization_id=analysis.organization_id,
            integration_id=analysis.integration_id,
            config=analysis.config,
        )

    def to_message(self) -> Dict[str, Any]:
        return asdict(self)
