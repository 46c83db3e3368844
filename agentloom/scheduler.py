"""Periodic jobs: cron-triggered workflows and stale execution cleanup."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, List, Optional, Set

from .constants import STALE_EXECUTION_SECONDS
from .contracts import (
    DefinitionStatus,
    ExecutionError,
    ExecutionStatus,
    TriggerType,
    utcnow,
)
from .errors import AgentloomError
from .persistence import OrchestrationRepository

if TYPE_CHECKING:
    from .dispatch import ExecutionDispatcher

logger = logging.getLogger(__name__)

# (low, high) per field: minute, hour, day of month, month, day of week
_FIELD_RANGES = [(0, 59), (0, 23), (1, 31), (1, 12), (0, 7)]


def _parse_field(field: str, low: int, high: int) -> Set[int]:
    values: Set[int] = set()
    for part in field.split(","):
        step = 1
        if "/" in part:
            part, step_text = part.split("/", 1)
            step = int(step_text)
            if step < 1:
                raise ValueError(f"Invalid cron step: {step_text}")
        if part == "*":
            start, end = low, high
        elif "-" in part:
            start_text, end_text = part.split("-", 1)
            start, end = int(start_text), int(end_text)
        else:
            start = end = int(part)
        if start < low or end > high or start > end:
            raise ValueError(f"Cron value {part} outside {low}-{high}")
        values.update(range(start, end + 1, step))
    return values


def cron_matches(expression: str, now: datetime) -> bool:
    """Return True if the five-field cron ``expression`` fires at ``now``'s minute.

    Supports ``*``, numbers, ``a-b`` ranges, ``/n`` steps and comma lists.
    Day of week uses 0 (or 7) for Sunday.
    """
    fields = expression.split()
    if len(fields) != 5:
        raise ValueError(f"Cron expression must have 5 fields: {expression!r}")

    minutes, hours, days, months, weekdays = (
        _parse_field(field, low, high) for field, (low, high) in zip(fields, _FIELD_RANGES)
    )
    if 7 in weekdays:
        weekdays.add(0)
    cron_weekday = (now.weekday() + 1) % 7
    return (
        now.minute in minutes
        and now.hour in hours
        and now.day in days
        and now.month in months
        and cron_weekday in weekdays
    )


async def process_scheduled_workflows(
    dispatcher: "ExecutionDispatcher", now: Optional[datetime] = None
) -> List[str]:
    """Submit every active scheduled workflow whose cron fires now. Returns execution ids."""
    now = now or utcnow()
    submitted: List[str] = []
    for workflow in await dispatcher.repository.list_workflows():
        if (
            workflow.status != DefinitionStatus.ACTIVE
            or workflow.trigger_type != TriggerType.SCHEDULE
        ):
            continue
        cron = workflow.trigger_config.get("cron")
        if not cron:
            logger.warning(f"Scheduled workflow {workflow.id} has no cron expression")
            continue
        try:
            if not cron_matches(cron, now):
                continue
        except ValueError as e:
            logger.error(f"Invalid cron for workflow {workflow.id}: {e}")
            continue

        try:
            receipt = await dispatcher.submit_workflow(
                workflow.id,
                dict(workflow.trigger_config.get("input") or {}),
                workflow.workspace_id,
                trigger_type=TriggerType.SCHEDULE,
                triggered_by="scheduler",
            )
        except AgentloomError as e:
            logger.error(f"Failed to submit scheduled workflow {workflow.id}: {e.message}")
            continue
        submitted.append(receipt["executionId"])
        logger.info(f"Submitted scheduled workflow {workflow.id} as {receipt['executionId']}")
    return submitted


async def cleanup_stale_executions(
    repository: OrchestrationRepository,
    now: Optional[datetime] = None,
    max_age: float = STALE_EXECUTION_SECONDS,
) -> int:
    """Fail running executions started more than ``max_age`` seconds ago."""
    now = now or utcnow()
    cutoff = now - timedelta(seconds=max_age)
    cleaned = 0
    for execution in await repository.list_executions(status=ExecutionStatus.RUNNING):
        if execution.started_at is None or execution.started_at > cutoff:
            continue
        execution.status = ExecutionStatus.FAILED
        execution.completed_at = now
        execution.error = ExecutionError(
            message=f"Execution timed out after {int(max_age)}s without finishing",
            kind="stale_execution",
            step_id=execution.current_step_id,
        )
        await repository.save_execution(execution)
        cleaned += 1
    if cleaned:
        logger.info(f"Marked {cleaned} stale execution(s) as failed")
    return cleaned
