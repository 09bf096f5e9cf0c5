"""
Scheduler queue processor.

Each job on the scheduler queue carries the id of the schedule that fired.
The processor runs the schedule and hands the execution result back to the
engine as the job result.
"""

import logging
from typing import TYPE_CHECKING, Any

from jobrelay.engine.base import EngineJob, Processor
from jobrelay.observability.logging import log_context

if TYPE_CHECKING:
    from jobrelay.scheduler.service import ScheduleService

logger = logging.getLogger(__name__)


def schedule_processor(service: "ScheduleService") -> Processor:
    """Build the processor attached to the scheduler queue."""

    async def process(job: EngineJob) -> dict[str, Any] | None:
        schedule_id = job.data.get("schedule_id")
        if not schedule_id:
            logger.warning("Scheduler job without schedule id", extra={"job_id": job.id})
            return None
        with log_context(schedule_id=schedule_id, engine_job_id=job.id):
            result = await service.execute_scheduled_job(schedule_id)
        return None if result is None else result.model_dump(mode="json")

    return process
