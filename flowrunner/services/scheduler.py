"""
Flow schedule service using APScheduler.

Parses cron expressions for schedule nodes and re-runs flows whose
definition carries a cron or interval schedule.
"""
from datetime import datetime, timedelta, timezone as dt_timezone
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from flowrunner.core.config import Settings
from flowrunner.core.logging import get_logger
from flowrunner.models.flow import ExecutionOptions, FlowDefinition

if TYPE_CHECKING:
    from flowrunner.services.flow_runner import FlowRunnerService

logger = get_logger(__name__)


def build_cron_trigger(cron_expression: str, timezone: Optional[str] = None) -> CronTrigger:
    """
    Build a CronTrigger from a 5- or 6-field cron expression.

    Args:
        cron_expression: 6-field (second minute hour day month weekday)
                        or 5-field (minute hour day month weekday)
        timezone: Timezone for the schedule (default: UTC)

    Raises:
        ValueError: wrong field count, bad field values or unknown timezone
    """
    parts = (cron_expression or "").split()
    tz = timezone or "UTC"

    if len(parts) not in (5, 6):
        raise ValueError(f"expected 5 or 6 fields, got {len(parts)}")

    if len(parts) == 5:
        # minute hour day month weekday (second pinned to 0)
        parts = ["0"] + parts

    try:
        return CronTrigger(
            second=parts[0],
            minute=parts[1],
            hour=parts[2],
            day=parts[3],
            month=parts[4],
            day_of_week=parts[5],
            timezone=tz
        )
    except (ValueError, KeyError) as e:
        raise ValueError(str(e)) from e


def next_fire_time(cron: Optional[str] = None, interval_ms: Optional[int] = None,
                   timezone: Optional[str] = None, now: Optional[datetime] = None) -> Optional[datetime]:
    """Next time a cron expression or fixed interval fires after ``now``."""
    now = now or datetime.now(dt_timezone.utc)
    if cron:
        return build_cron_trigger(cron, timezone).get_next_fire_time(None, now)
    if interval_ms:
        return now + timedelta(milliseconds=int(interval_ms))
    return None


class FlowScheduler:
    """Runs flows on their cron/interval schedule through the flow runner."""

    def __init__(self, runner: "FlowRunnerService", settings: Settings):
        self.runner = runner
        self.settings = settings
        self._scheduler = AsyncIOScheduler(timezone=settings.scheduler_timezone)
        self._entries: Dict[str, Dict[str, Any]] = {}
        self._started = False

    @property
    def running(self) -> bool:
        # APScheduler 3.11 may still report running until the loop processes the shutdown
        return self._started and self._scheduler.running

    def start(self) -> None:
        """Start the scheduler if not already running."""
        if self._started:
            return
        if not self._scheduler.running:
            self._scheduler.start()
        self._started = True
        logger.info("Flow scheduler started", timezone=self.settings.scheduler_timezone)

    def shutdown(self) -> None:
        """Shutdown the scheduler without waiting for running jobs."""
        if not self._started:
            return
        self._started = False
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        logger.info("Flow scheduler shutdown")

    @staticmethod
    def job_id(flow_id: str) -> str:
        return f"flow:{flow_id}"

    def schedule_flow(self, flow: FlowDefinition, options: Optional[ExecutionOptions] = None,
                      cron: Optional[str] = None, interval_ms: Optional[int] = None) -> Dict[str, Any]:
        """
        Register (or replace) a recurring run of ``flow``.

        The explicit ``cron``/``interval_ms`` win over ``flow.schedule``.

        Raises:
            ValueError: no schedule given or the cron expression is invalid
        """
        schedule = flow.schedule
        tz = (schedule.timezone if schedule else None) or self.settings.scheduler_timezone
        if cron is None and interval_ms is None and schedule is not None:
            cron, interval_ms = schedule.cron, schedule.interval

        if cron:
            trigger = build_cron_trigger(cron, tz)
        elif interval_ms:
            trigger = IntervalTrigger(seconds=interval_ms / 1000, timezone=tz)
        else:
            raise ValueError(f"Flow '{flow.id}' has no cron or interval schedule")

        options = options or ExecutionOptions()
        job_id = self.job_id(flow.id)
        self._scheduler.add_job(
            self._run_scheduled,
            trigger=trigger,
            id=job_id,
            replace_existing=True,
            kwargs={"flow_id": flow.id},
            max_instances=1,
            coalesce=True,
        )
        self._entries[flow.id] = {
            "flow": flow,
            "options": options,
            "cron": cron,
            "interval_ms": interval_ms,
            "timezone": tz,
        }

        logger.info("Registered flow schedule", flow_id=flow.id, cron=cron, interval_ms=interval_ms)
        return self.get_job_info(flow.id)

    def unschedule_flow(self, flow_id: str) -> bool:
        """Remove a flow schedule. Returns False when none was registered."""
        self._entries.pop(flow_id, None)
        try:
            self._scheduler.remove_job(self.job_id(flow_id))
            logger.info("Removed flow schedule", flow_id=flow_id)
            return True
        except JobLookupError:
            logger.warning("Flow schedule not found", flow_id=flow_id)
            return False

    def get_job_info(self, flow_id: str) -> Optional[Dict[str, Any]]:
        job = self._scheduler.get_job(self.job_id(flow_id))
        entry = self._entries.get(flow_id)
        if job is None or entry is None:
            return None
        # Pending jobs (scheduler not started) have no next_run_time yet
        next_run = getattr(job, "next_run_time", None)
        return {
            "flowId": flow_id,
            "jobId": job.id,
            "cron": entry["cron"],
            "intervalMs": entry["interval_ms"],
            "timezone": entry["timezone"],
            "sandbox": entry["options"].sandbox,
            "nextRunTime": next_run.isoformat() if next_run else None,
            "trigger": str(job.trigger),
        }

    def list_jobs(self) -> List[Dict[str, Any]]:
        return [info for info in (self.get_job_info(flow_id) for flow_id in list(self._entries)) if info]

    async def _run_scheduled(self, flow_id: str) -> None:
        entry = self._entries.get(flow_id)
        if entry is None:
            return

        flow: FlowDefinition = entry["flow"]
        options: ExecutionOptions = entry["options"]
        logger.info("Running scheduled flow", flow_id=flow_id, sandbox=options.sandbox)
        try:
            if options.sandbox:
                result = await self.runner.run_sandbox(flow, options)
            else:
                result = await self.runner.run_live(flow, options)
            logger.info("Scheduled flow finished", flow_id=flow_id, status=result.status.value,
                        success=result.success, duration_ms=result.duration_ms)
        except Exception as e:
            logger.error("Scheduled flow failed", flow_id=flow_id, error=str(e))
