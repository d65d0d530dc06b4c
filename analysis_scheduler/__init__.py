"""
Analysis Scheduler

Dispatches recurring (daily or weekly) scheduled analyses. Every minute
the scheduler looks up the analyses that are due, asks the API to create
a new execution for each, hands that execution to the dispatcher through
a RabbitMQ queue, and moves the analysis on to its next due time.

Features:
- Cron-driven polling with APScheduler
- Lease-based claiming so overlapping polls never dispatch the same run twice
- Explicit timeouts on every remote call
- At-least-once delivery with idempotency keys for downstream deduplication
"""

from analysis_scheduler.config import SchedulerConfig
from analysis_scheduler.models import ScheduledAnalysis, ExecutionTrigger, calculate_next_run
from analysis_scheduler.processor import AnalysisProcessor, ProcessResult
from analysis_scheduler.service import SchedulerService, TickSummary

__version__ = "0.1.0"
__all__ = [
    "SchedulerConfig",
    "ScheduledAnalysis",
    "ExecutionTrigger",
    "calculate_next_run",
    "AnalysisProcessor",
    "ProcessResult",
    "SchedulerService",
    "TickSummary",
]
