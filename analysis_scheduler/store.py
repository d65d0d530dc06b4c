"""
Schedule store backed by the API's PostgreSQL database.

Reads due scheduled analyses and writes their scheduling timestamps. The
engine is created once and shared by every tick; each operation opens its
own short-lived session.

Concurrent ticks are kept apart with a lease on ``next_scheduled_run``:
claiming an analysis moves the timestamp forward to the end of the lease
with a compare-and-swap on the value seen at discovery, so an overlapping
tick (or a second process) no longer sees the row as due.
"""

import logging
from datetime import datetime
from typing import Optional, List

from sqlalchemy import create_engine, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from analysis_scheduler.errors import StoreError
from analysis_scheduler.models import Base, ScheduledAnalysis, RECURRING_SCHEDULE_TYPES

logger = logging.getLogger(__name__)

DB_CONNECT_TIMEOUT = 10  # seconds


def create_store_engine(dsn: str) -> Engine:
    """Create the process-wide SQLAlchemy engine for a DSN."""
    connect_args = {}
    if dsn.startswith('postgresql'):
        connect_args['connect_timeout'] = DB_CONNECT_TIMEOUT
    return create_engine(
        dsn,
        pool_pre_ping=True,    # Verify connections before using
        pool_recycle=3600,     # Recycle connections after 1 hour
        connect_args=connect_args,
    )


class ScheduleStore:
    """Data access for scheduled analyses"""

    def __init__(self, dsn: Optional[str] = None, engine: Optional[Engine] = None):
        """
        Initialize the store.

        Args:
            dsn: SQLAlchemy database URL (ignored when engine is given)
            engine: Pre-built engine to use instead of creating one
        """
        if engine is None:
            if not dsn:
                raise ValueError("Either dsn or engine is required")
            engine = create_store_engine(dsn)
        self.engine = engine
        self.Session = sessionmaker(bind=engine, expire_on_commit=False)
        logger.info(f"Initialized schedule store: {engine.url.render_as_string(hide_password=True)}")

    def create_schema(self):
        """Create the analysis table. Only meant for local and test databases."""
        Base.metadata.create_all(self.engine)

    def find_due_analyses(self, now: datetime) -> List[ScheduledAnalysis]:
        """
        Find all active recurring analyses whose next run is at or before now.

        Args:
            now: Reference time (naive UTC)

        Returns:
            Detached ScheduledAnalysis rows, in no particular order

        Raises:
            StoreError: If the query fails
        """
        stmt = (
            select(ScheduledAnalysis)
            .where(ScheduledAnalysis.is_active.is_(True))
            .where(ScheduledAnalysis.schedule_type.in_(RECURRING_SCHEDULE_TYPES))
            .where(ScheduledAnalysis.next_scheduled_run <= now)
        )
        try:
            with self.Session() as session:
                return list(session.scalars(stmt).all())
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to fetch due analyses: {e}") from e

    def get_analysis(self, analysis_id: str) -> Optional[ScheduledAnalysis]:
        """Get a scheduled analysis by ID, or None if it does not exist."""
        try:
            with self.Session() as session:
                return session.get(ScheduledAnalysis, analysis_id)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to load analysis {analysis_id}: {e}") from e

    def claim(self, analysis_id: str, expected_next_run: datetime, lease_until: datetime) -> bool:
        """
        Claim a due analysis for processing.

        Moves ``next_scheduled_run`` from ``expected_next_run`` to
        ``lease_until``. Only succeeds if the row still holds the value
        seen at discovery.

        Returns:
            True if this caller now owns the analysis, False if another
            tick already claimed or rescheduled it
        """
        stmt = (
            update(ScheduledAnalysis)
            .where(ScheduledAnalysis.id == analysis_id)
            .where(ScheduledAnalysis.is_active.is_(True))
            .where(ScheduledAnalysis.next_scheduled_run == expected_next_run)
            .values(next_scheduled_run=lease_until)
            .execution_options(synchronize_session=False)
        )
        return self._execute_update(stmt, f"claim analysis {analysis_id}") == 1

    def release(self, analysis_id: str, lease_until: datetime, due_at: datetime) -> bool:
        """
        Give back a claim so the analysis is due again.

        The lease is moved back to ``due_at``. Callers pass the claim time,
        which is never earlier than the due time the claim replaced, so a
        claim followed by a release never leaves the row due earlier than
        before the claim.

        Returns:
            True if the claim was released, False if the row no longer
            holds this lease
        """
        stmt = (
            update(ScheduledAnalysis)
            .where(ScheduledAnalysis.id == analysis_id)
            .where(ScheduledAnalysis.next_scheduled_run == lease_until)
            .values(next_scheduled_run=due_at)
            .execution_options(synchronize_session=False)
        )
        return self._execute_update(stmt, f"release analysis {analysis_id}") == 1

    def update_schedule(self, analysis_id: str, last_run: datetime, next_run: datetime):
        """
        Record a run and set the next due time.

        Raises:
            StoreError: If the update fails or the analysis no longer exists
        """
        stmt = (
            update(ScheduledAnalysis)
            .where(ScheduledAnalysis.id == analysis_id)
            .values(last_scheduled_run=last_run, next_scheduled_run=next_run)
            .execution_options(synchronize_session=False)
        )
        updated = self._execute_update(stmt, f"update schedule of analysis {analysis_id}")
        if updated != 1:
            raise StoreError(f"Analysis {analysis_id} not found while updating schedule")

    def _execute_update(self, stmt, action: str) -> int:
        try:
            with self.Session.begin() as session:
                result = session.execute(stmt)
                return result.rowcount
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to {action}: {e}") from e

    def close(self):
        """Dispose of the engine's connection pool."""
        self.engine.dispose()
