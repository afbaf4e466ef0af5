"""
Cron trigger materialization.

A trigger records the run time and, when the job has both a target column and
a task template, appends one task built from the template to that column.
Schedules are never interpreted here; an external scheduler decides when to
call trigger_cron_job().
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from .board import insert_task, validate_priority
from .errors import NotFound
from .events import BoardEventBridge, CRON_TRIGGERED
from .schema import DATE_PLACEHOLDER, CronJob, Task, TaskTemplate, new_id
from .store import BoardStore, StoreTx

logger = logging.getLogger(__name__)


@dataclass
class TriggerResult:
    cron_job_id: str
    task_created: bool
    task: Optional[Dict[str, Any]] = None  # {id, title, column, board, project}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cron_job_id": self.cron_job_id,
            "triggered": True,
            "task_created": self.task_created,
            "task": self.task,
        }


def local_now() -> datetime:
    """Current time in the server's local timezone; {{date}} follows the local calendar."""
    return datetime.now().astimezone()


def format_template_date(now: datetime) -> str:
    """Render a date the way templates show it, e.g. "Jan 5, 2025"."""
    return f"{now:%b} {now.day}, {now.year}"


def fill_placeholders(text: Optional[str], now: datetime) -> Optional[str]:
    if not text:
        return text
    return text.replace(DATE_PLACEHOLDER, format_template_date(now))


def resolve_assignee(tx: StoreTx, job: CronJob, template: TaskTemplate) -> Optional[str]:
    """Template assignee, else the job's default agent, else nobody."""
    for agent_id in (template.assigned_agent_id, job.agent_id):
        if not agent_id:
            continue
        if tx.get_agent(agent_id) is None:
            logger.warning(f"Cron job {job.id}: agent {agent_id} no longer exists, skipping")
            continue
        return agent_id
    return None


class TriggerMaterializer:
    """Turns cron job templates into tasks."""

    def __init__(self, store: BoardStore, events: Optional[BoardEventBridge] = None):
        self.store = store
        self.events = events or BoardEventBridge()

    def trigger_cron_job(self, cron_job_id: str, now: Optional[datetime] = None) -> TriggerResult:
        """
        Run one cron job.

        last_run_at is set even when the job has no template or target column;
        such a trigger is a heartbeat and creates nothing.
        """
        now = now or local_now()
        pending = []
        summary = None

        with self.store.transaction() as tx:
            job = tx.get_cron_job(cron_job_id)
            if job is None:
                raise NotFound("Cron job", cron_job_id)
            tx.record_cron_run(job.id, now)

            context = tx.column_context(job.target_column_id) if job.target_column_id else None
            if job.target_column_id and context is None:
                logger.warning(f"Cron job {job.id}: target column {job.target_column_id} is gone")

            if context is not None and job.task_template is not None:
                column, board, project = context
                template = job.task_template
                task = Task(
                    id=new_id("task"),
                    title=fill_placeholders(template.title, now) or job.name,
                    column_id=column.id,
                    description=fill_placeholders(template.description, now),
                    priority=validate_priority(template.priority),
                    assigned_agent_id=resolve_assignee(tx, job, template),
                )
                insert_task(tx, task)
                summary = {
                    "id": task.id,
                    "title": task.title,
                    "column": column.name,
                    "board": board.name,
                    "project": project.name,
                }

            pending.append(self.events.record(
                tx, CRON_TRIGGERED, job.id,
                f"Created {summary['title']!r}" if summary else "Heartbeat",
                {"task_id": summary["id"] if summary else None, "ran_at": now.isoformat()},
            ))

        if summary:
            logger.info(f"Cron job {cron_job_id} created task {summary['id']} in {summary['column']}")
        else:
            logger.info(f"Cron job {cron_job_id} triggered without a template")
        self.events.publish(pending)
        return TriggerResult(cron_job_id, summary is not None, summary)

    def trigger_due(self, cron_job_ids: Iterable[str], now: Optional[datetime] = None) -> List[TriggerResult]:
        """Trigger every enabled job in `cron_job_ids`; disabled or missing jobs are skipped."""
        results = []
        for cron_job_id in cron_job_ids:
            job = self.store.get_cron_job(cron_job_id)
            if job is None:
                logger.warning(f"Skipping unknown cron job {cron_job_id}")
                continue
            if not job.enabled:
                logger.debug(f"Skipping disabled cron job {cron_job_id}")
                continue
            results.append(self.trigger_cron_job(cron_job_id, now=now))
        return results
