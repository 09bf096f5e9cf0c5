"""
Scheduler module.
Contains schedule validation, engine registration and HTTP execution.
"""

from jobrelay.scheduler.service import ScheduleService
from jobrelay.scheduler.timing import (
    backoff_delay_ms,
    calculate_next_execution,
    validate_endpoint,
    validate_schedule_spec,
)
from jobrelay.scheduler.worker import schedule_processor

__all__ = [
    "ScheduleService",
    "schedule_processor",
    "validate_schedule_spec",
    "validate_endpoint",
    "calculate_next_execution",
    "backoff_delay_ms",
]
