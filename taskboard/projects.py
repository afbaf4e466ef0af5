"""
Registry of projects, boards, agents and cron jobs.

These records are what the ordering and automation code reads: a project's
default board with its role-tagged columns, the agent pool, and the cron jobs
that feed tasks into columns.
"""
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from .assignment import agent_workloads
from .board import require_agent, require_column, validate_priority
from .columns import layout_roles, resolve_role
from .config import DEFAULT_COLUMNS
from .errors import InvalidArgument, NotFound
from .schema import (
    Agent, AgentStatus, Board, Column, CronJob, Project, TaskTemplate, new_id,
)
from .store import BoardStore

logger = logging.getLogger(__name__)

# A column spec is either a name or a (name, role) pair
ColumnSpec = Union[str, Tuple[str, Optional[str]], Dict[str, Any]]


def _column_layout(columns: Sequence[ColumnSpec]):
    layout = []
    for spec in columns:
        if isinstance(spec, dict):
            name, role = spec.get("name"), spec.get("role")
        elif isinstance(spec, (tuple, list)):
            name, role = spec[0], spec[1] if len(spec) > 1 else None
        else:
            name, role = spec, None
        if not isinstance(name, str) or not name.strip():
            raise InvalidArgument("Column name is required")
        layout.append((name.strip(), resolve_role(name, role)))
    return layout


def _required_text(value: Any, label: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidArgument(f"{label} is required")
    return value.strip()


def _parse_template(task_template: Optional[Dict[str, Any]]) -> Optional[TaskTemplate]:
    """Validate a task template object; empty or None means no template."""
    if task_template is None:
        return None
    if not isinstance(task_template, dict):
        raise InvalidArgument("task_template must be an object")
    for key in ("title", "description", "priority", "assigned_agent_id", "assignedAgentId"):
        value = task_template.get(key)
        if value is not None and not isinstance(value, str):
            raise InvalidArgument(f"task_template.{key} must be a string")
    template = TaskTemplate.from_dict(task_template) if task_template else None
    if template and template.priority:
        validate_priority(template.priority)
    return template


def _check_cron_refs(tx, job: CronJob) -> None:
    if job.agent_id:
        require_agent(tx, job.agent_id)
    if job.target_column_id:
        require_column(tx, job.target_column_id)
    if job.task_template and job.task_template.assigned_agent_id:
        require_agent(tx, job.task_template.assigned_agent_id)


class Registry:
    """Creates and edits the records the board engine depends on."""

    def __init__(self, store: BoardStore, default_columns: Optional[List[str]] = None):
        self.store = store
        self.default_columns = default_columns or list(DEFAULT_COLUMNS)

    # ── Projects ────────────────────────────────────────────────────────────

    def create_project(self, name: str, board_name: str = "Main Board",
                       columns: Optional[Sequence[ColumnSpec]] = None) -> Dict[str, Any]:
        """
        Create a project with one board and its columns.

        Without `columns` the configured default layout is used and each
        column's role is inferred from its name.
        """
        if not isinstance(name, str) or not name.strip():
            raise InvalidArgument("Project name is required")
        layout = _column_layout(columns) if columns else layout_roles(self.default_columns)
        if not layout:
            raise InvalidArgument("A board needs at least one column")

        with self.store.transaction() as tx:
            project = tx.insert_project(Project(id=new_id("proj"), name=name.strip()))
            board = tx.insert_board(Board(id=new_id("board"), project_id=project.id, name=board_name))
            created = [
                tx.insert_column(Column(
                    id=new_id("col"), board_id=board.id, name=col_name, position=i, role=role,
                ))
                for i, (col_name, role) in enumerate(layout)
            ]

        logger.info(f"Created project {project.name} with {len(created)} columns")
        data = project.to_dict()
        data["boards"] = [dict(board.to_dict(), columns=[c.to_dict() for c in created])]
        return data

    def get_project(self, project_id: str) -> Project:
        with self.store.read() as tx:
            project = tx.get_project(project_id)
            if project is None:
                raise NotFound("Project", project_id)
            return project

    def list_boards(self, project_id: str) -> List[Board]:
        with self.store.read() as tx:
            if tx.get_project(project_id) is None:
                raise NotFound("Project", project_id)
            return tx.list_boards(project_id)

    def column_by_role(self, board_id: str, role: str) -> Column:
        """First column of a board with the given role."""
        wanted = resolve_role("", role)
        with self.store.read() as tx:
            if tx.get_board(board_id) is None:
                raise NotFound("Board", board_id)
            for column in tx.list_columns(board_id):
                if column.role == wanted:
                    return column
        raise NotFound("Column", f"{board_id}/{role}")

    # ── Agents ──────────────────────────────────────────────────────────────

    def create_agent(self, name: str, status: str = "ACTIVE",
                     project_ids: Sequence[str] = ()) -> Agent:
        if not isinstance(name, str) or not name.strip():
            raise InvalidArgument("Agent name is required")
        agent_status = self._parse_status(status)
        with self.store.transaction() as tx:
            for project_id in project_ids:
                if tx.get_project(project_id) is None:
                    raise NotFound("Project", project_id)
            agent = tx.insert_agent(Agent(id=new_id("agent"), name=name.strip(), status=agent_status))
            for project_id in project_ids:
                tx.link_agent(project_id, agent.id)
        logger.info(f"Created agent {agent.name} ({agent.status.value})")
        return agent

    def get_agent(self, agent_id: str) -> Agent:
        with self.store.read() as tx:
            agent = tx.get_agent(agent_id)
            if agent is None:
                raise NotFound("Agent", agent_id)
            return agent

    def link_agent(self, project_id: str, agent_id: str) -> None:
        """Add an agent to a project's pool; linking twice is harmless."""
        with self.store.transaction() as tx:
            if tx.get_project(project_id) is None:
                raise NotFound("Project", project_id)
            require_agent(tx, agent_id)
            tx.link_agent(project_id, agent_id)

    def unlink_agent(self, project_id: str, agent_id: str) -> bool:
        with self.store.transaction() as tx:
            return tx.unlink_agent(project_id, agent_id)

    def set_agent_status(self, agent_id: str, status: str) -> Agent:
        agent_status = self._parse_status(status)
        with self.store.transaction() as tx:
            if not tx.set_agent_status(agent_id, agent_status):
                raise NotFound("Agent", agent_id)
            agent = tx.get_agent(agent_id)
        logger.info(f"Agent {agent.name} is now {agent.status.value}")
        return agent

    def agent_workloads(self, project_id: str) -> List[Dict[str, Any]]:
        """Open task counts for every agent in the project's pool."""
        with self.store.read() as tx:
            if tx.get_project(project_id) is None:
                raise NotFound("Project", project_id)
            agents = tx.project_agents(project_id)
            counts = agent_workloads(tx, project_id, agents)
        return [dict(a.to_dict(), open_tasks=counts[a.id]) for a in agents]

    @staticmethod
    def _parse_status(status: Any) -> AgentStatus:
        if isinstance(status, AgentStatus):
            return status
        try:
            return AgentStatus.from_str(str(status))
        except KeyError:
            valid = ", ".join(s.value for s in AgentStatus)
            raise InvalidArgument(f"Invalid agent status {status!r}. Must be one of {valid}")

    # ── Cron jobs ───────────────────────────────────────────────────────────

    CRON_FIELDS = ("name", "schedule", "enabled", "agent_id", "target_column_id", "task_template")

    def create_cron_job(
        self,
        name: str,
        schedule: str,
        agent_id: Optional[str] = None,
        target_column_id: Optional[str] = None,
        task_template: Optional[Dict[str, Any]] = None,
        enabled: bool = True,
    ) -> CronJob:
        """Store a cron job; `schedule` is kept as given and never parsed."""
        job = CronJob(
            id=new_id("cron"),
            name=_required_text(name, "Cron job name"),
            schedule=_required_text(schedule, "Cron job schedule"),
            enabled=bool(enabled),
            agent_id=agent_id or None,
            target_column_id=target_column_id or None,
            task_template=_parse_template(task_template),
        )
        with self.store.transaction() as tx:
            _check_cron_refs(tx, job)
            tx.insert_cron_job(job)
        logger.info(f"Created cron job {job.name} ({job.schedule})")
        return job

    def update_cron_job(self, cron_job_id: str, **fields) -> CronJob:
        """
        Change some fields of a cron job.

        Accepts the same fields as create_cron_job. Passing None for
        agent_id, target_column_id or task_template clears it.
        """
        unknown = set(fields) - set(self.CRON_FIELDS)
        if unknown:
            raise InvalidArgument(f"Unknown cron job fields: {', '.join(sorted(unknown))}")

        with self.store.transaction() as tx:
            job = tx.get_cron_job(cron_job_id)
            if job is None:
                raise NotFound("Cron job", cron_job_id)
            if "name" in fields:
                job.name = _required_text(fields["name"], "Cron job name")
            if "schedule" in fields:
                job.schedule = _required_text(fields["schedule"], "Cron job schedule")
            if "enabled" in fields:
                if not isinstance(fields["enabled"], bool):
                    raise InvalidArgument("enabled must be true or false")
                job.enabled = fields["enabled"]
            if "agent_id" in fields:
                job.agent_id = fields["agent_id"] or None
            if "target_column_id" in fields:
                job.target_column_id = fields["target_column_id"] or None
            if "task_template" in fields:
                job.task_template = _parse_template(fields["task_template"])
            _check_cron_refs(tx, job)
            tx.save_cron_job(job)
        logger.info(f"Updated cron job {job.name}: {', '.join(sorted(fields)) or 'no changes'}")
        return job

    def delete_cron_job(self, cron_job_id: str) -> None:
        with self.store.transaction() as tx:
            if not tx.delete_cron_job(cron_job_id):
                raise NotFound("Cron job", cron_job_id)
        logger.info(f"Deleted cron job {cron_job_id}")

    def get_cron_job(self, cron_job_id: str) -> CronJob:
        job = self.store.get_cron_job(cron_job_id)
        if job is None:
            raise NotFound("Cron job", cron_job_id)
        return job

    def list_cron_jobs(self) -> List[CronJob]:
        with self.store.read() as tx:
            return tx.list_cron_jobs()
