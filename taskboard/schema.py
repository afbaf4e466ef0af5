"""
Task board schema.

Board layout:
  Project → Board → Column (fixed, ordered) → Task (dense positions 0..N-1)

Columns carry an explicit role; automation rules read the role, not the
display name. Tasks are the only entities whose placement moves.
"""
import json
import uuid
from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any


VALID_PRIORITIES = ("P0", "P1", "P2", "P3", "P4")
DEFAULT_PRIORITY = "P2"

DATE_PLACEHOLDER = "{{date}}"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    """Generate an opaque entity ID such as task-3f9a1c0b2e."""
    return f"{prefix}-{uuid.uuid4().hex[:10]}"


def parse_ts(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if isinstance(value, datetime) else value


class ColumnRole(Enum):
    """Semantic role of a column in the workflow."""
    BACKLOG = "backlog"          # Ideas / Backlog: not yet committed to
    TODO = "todo"                # Committed, waiting for an agent
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    DONE = "done"                # Finished work, excluded from workloads
    OTHER = "other"

    @classmethod
    def from_str(cls, value: str) -> "ColumnRole":
        return cls[str(value).strip().upper()]


class AgentStatus(Enum):
    """Lifecycle status of an agent. Only ACTIVE agents receive work."""
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    ARCHIVED = "ARCHIVED"

    @classmethod
    def from_str(cls, value: str) -> "AgentStatus":
        return cls[value.upper()]


class AuthorType(Enum):
    """Who wrote a thread message."""
    USER = "USER"
    AGENT = "AGENT"
    SYSTEM = "SYSTEM"


@dataclass
class Project:
    id: str
    name: str
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "created_at": _iso(self.created_at)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Project":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            created_at=parse_ts(data.get("created_at")) or utc_now(),
        )


@dataclass
class Board:
    id: str
    project_id: str
    name: str = "Main Board"

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "project_id": self.project_id, "name": self.name}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Board":
        return cls(id=data["id"], project_id=data["project_id"], name=data.get("name", ""))


@dataclass
class Column:
    id: str
    board_id: str
    name: str
    position: int = 0
    role: ColumnRole = ColumnRole.OTHER

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "board_id": self.board_id,
            "name": self.name,
            "position": self.position,
            "role": self.role.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Column":
        return cls(
            id=data["id"],
            board_id=data["board_id"],
            name=data.get("name", ""),
            position=int(data.get("position") or 0),
            role=ColumnRole(data.get("role") or "other"),
        )


@dataclass
class Task:
    """A card on the board. `position` is dense within `column_id`."""

    id: str
    title: str
    column_id: str
    position: int = 0
    description: Optional[str] = None
    priority: str = DEFAULT_PRIORITY
    assigned_agent_id: Optional[str] = None
    parent_task_id: Optional[str] = None
    awaiting_input: bool = False
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "priority": self.priority,
            "column_id": self.column_id,
            "position": self.position,
            "assigned_agent_id": self.assigned_agent_id,
            "parent_task_id": self.parent_task_id,
            "awaiting_input": self.awaiting_input,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            column_id=data["column_id"],
            position=int(data.get("position") or 0),
            description=data.get("description"),
            priority=data.get("priority") or DEFAULT_PRIORITY,
            assigned_agent_id=data.get("assigned_agent_id"),
            parent_task_id=data.get("parent_task_id"),
            awaiting_input=bool(data.get("awaiting_input", False)),
            created_at=parse_ts(data.get("created_at")) or utc_now(),
            updated_at=parse_ts(data.get("updated_at")) or utc_now(),
        )


@dataclass
class Agent:
    id: str
    name: str
    status: AgentStatus = AgentStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "status": self.status.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Agent":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            status=AgentStatus(data.get("status") or "ACTIVE"),
        )


@dataclass
class TaskTemplate:
    """Blueprint for tasks created by a cron trigger. Strings may contain {{date}}."""
    title: Optional[str] = None
    description: Optional[str] = None
    priority: Optional[str] = None
    assigned_agent_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "priority": self.priority,
            "assigned_agent_id": self.assigned_agent_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskTemplate":
        return cls(
            title=data.get("title") or None,
            description=data.get("description") or None,
            priority=data.get("priority") or None,
            assigned_agent_id=data.get("assigned_agent_id") or data.get("assignedAgentId") or None,
        )


@dataclass
class CronJob:
    id: str
    name: str
    schedule: str
    enabled: bool = True
    agent_id: Optional[str] = None
    target_column_id: Optional[str] = None
    task_template: Optional[TaskTemplate] = None
    last_run_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "schedule": self.schedule,
            "enabled": self.enabled,
            "agent_id": self.agent_id,
            "target_column_id": self.target_column_id,
            "task_template": self.task_template.to_dict() if self.task_template else None,
            "last_run_at": _iso(self.last_run_at),
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CronJob":
        template = data.get("task_template")
        if isinstance(template, str):
            try:
                template = json.loads(template)
            except json.JSONDecodeError:
                template = None
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            schedule=data.get("schedule", ""),
            enabled=bool(data.get("enabled", True)),
            agent_id=data.get("agent_id"),
            target_column_id=data.get("target_column_id"),
            task_template=TaskTemplate.from_dict(template) if isinstance(template, dict) else None,
            last_run_at=parse_ts(data.get("last_run_at")),
            created_at=parse_ts(data.get("created_at")) or utc_now(),
        )


@dataclass
class Message:
    id: str
    thread_id: str
    author_type: AuthorType
    content: str
    author_id: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "thread_id": self.thread_id,
            "author_type": self.author_type.value,
            "author_id": self.author_id,
            "content": self.content,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(
            id=data["id"],
            thread_id=data["thread_id"],
            author_type=AuthorType(data.get("author_type") or "USER"),
            content=data.get("content", ""),
            author_id=data.get("author_id"),
            created_at=parse_ts(data.get("created_at")) or utc_now(),
        )


@dataclass
class Thread:
    """A conversation on a task; messages are ordered oldest first."""
    id: str
    task_id: str
    messages: List[Message] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "messages": [m.to_dict() for m in self.messages],
            "created_at": _iso(self.created_at),
        }
