"""Tests for next-run calculation and trigger messages."""

from datetime import datetime, timedelta

import pytest

from analysis_scheduler.models import ScheduledAnalysis, ExecutionTrigger, calculate_next_run, utcnow

FROM = datetime(2026, 10, 19, 12, 0, 30)


@pytest.mark.parametrize("schedule_type, expected", [
    ('daily', timedelta(hours=24)),
    ('weekly', timedelta(hours=168)),
    (None, timedelta(hours=24)),
    ('monthly', timedelta(hours=24)),
    ('', timedelta(hours=24)),
])
def test_calculate_next_run(schedule_type, expected):
    assert calculate_next_run(schedule_type, FROM) == FROM + expected


def test_calculate_next_run_is_relative_to_trigger_time():
    """A late run pushes every later run back by the same delay."""
    late = FROM + timedelta(minutes=7)
    assert calculate_next_run('daily', late) == datetime(2026, 10, 20, 12, 7, 30)


def test_utcnow_is_naive():
    assert utcnow().tzinfo is None


def test_execution_trigger_message():
    config = {'plugins': ['js-sbom', 'js-vuln'], 'nested': {'depth': 2}}
    analysis = ScheduledAnalysis(
        id='A',
        organization_id='org-1',
        project_id='proj-1',
        integration_id='int-1',
        config=config,
    )

    trigger = ExecutionTrigger.from_analysis(analysis, 'E1')

    assert trigger.to_message() == {
        'analysis_id': 'E1',
        'project_id': 'proj-1',
        'organization_id': 'org-1',
        'integration_id': 'int-1',
        'config': config,
    }


def test_execution_trigger_without_integration():
    analysis = ScheduledAnalysis(id='A', organization_id='o', project_id='p', config=None)
    message = ExecutionTrigger.from_analysis(analysis, 'E1').to_message()
    assert message['integration_id'] is None
    assert message['config'] is None


def test_idempotency_key_identifies_due_occurrence():
    analysis = ScheduledAnalysis(id='A', last_scheduled_run=datetime(2026, 10, 18, 11, 55))
    assert analysis.idempotency_key() == 'A:2026-10-18T11:55:00'

    # A claim moving next_scheduled_run does not change the key
    analysis.next_scheduled_run = datetime(2026, 10, 19, 12, 10)
    assert analysis.idempotency_key() == 'A:2026-10-18T11:55:00'

    assert ScheduledAnalysis(id='B').idempotency_key() == 'B:first'
