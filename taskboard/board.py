"""
Task operations on the board: create, move, update, delete, threads.

Each public method runs in a single store transaction. Preconditions are
checked inside the transaction before the first write, and any failure rolls
back everything, so a column's positions are always 0..N-1 as seen by other
callers. Audit events are published only after the commit.
"""
import logging
from typing import Any, Dict, List, Optional

from .assignment import pick_agent_for_task
from .columns import is_auto_assign_transition
from .errors import InvalidArgument, NotFound
from .events import (
    BoardEventBridge, COLUMN_COMPACTED, TASK_ASSIGNMENT_SKIPPED, TASK_AUTO_ASSIGNED,
    TASK_CREATED, TASK_DELETED, TASK_MOVED, TASK_UPDATED,
)
from .reindex import is_dense, plan_compact, plan_insert, plan_move_within, plan_remove
from .schema import (
    VALID_PRIORITIES, DEFAULT_PRIORITY, AuthorType, Column, Task, Thread, new_id,
)
from .store import BoardStore, StoreTx

logger = logging.getLogger(__name__)

# Fields update_task() accepts
EDITABLE_FIELDS = (
    "title", "description", "priority", "assigned_agent_id",
    "parent_task_id", "awaiting_input", "column_id", "position",
)


def validate_priority(priority: Optional[str]) -> str:
    if priority is None or priority == "":
        return DEFAULT_PRIORITY
    if priority not in VALID_PRIORITIES:
        raise InvalidArgument(f"Invalid priority {priority!r}. Must be one of {', '.join(VALID_PRIORITIES)}")
    return priority


def validate_index(index: Any) -> int:
    if isinstance(index, bool) or not isinstance(index, int):
        raise InvalidArgument("Position must be a non-negative integer")
    if index < 0:
        raise InvalidArgument("Position must be a non-negative integer")
    return index


def require_column(tx: StoreTx, column_id: str) -> Column:
    column = tx.get_column(column_id)
    if column is None:
        raise NotFound("Column", column_id)
    return column


def require_task(tx: StoreTx, task_id: str) -> Task:
    task = tx.get_task(task_id)
    if task is None:
        raise NotFound("Task", task_id)
    return task


def require_agent(tx: StoreTx, agent_id: str) -> None:
    if tx.get_agent(agent_id) is None:
        raise NotFound("Agent", agent_id)


def insert_task(tx: StoreTx, task: Task, index: Optional[int] = None) -> Task:
    """
    Place a new task into its column at `index` (end of column when None).

    The end is computed from the column's current rows inside `tx`.
    """
    slot, updates = plan_insert(tx.placements(task.column_id), index)
    tx.apply_position_updates(updates)
    task.position = slot
    return tx.insert_task(task)


def check_ancestry(tx: StoreTx, task_id: Optional[str], parent_id: str, max_depth: int) -> None:
    """Reject a parent link that would make a task its own ancestor or nest too deep."""
    if parent_id == task_id:
        raise InvalidArgument("Task cannot be its own parent")
    if tx.get_task(parent_id) is None:
        raise NotFound("Parent task", parent_id)

    visited = {task_id} if task_id else set()
    current: Optional[str] = parent_id
    depth = 0
    while current is not None:
        if current in visited:
            raise InvalidArgument(f"Parent {parent_id} would create a cycle")
        visited.add(current)
        depth += 1
        if depth >= max_depth:
            raise InvalidArgument(f"Task hierarchy deeper than {max_depth} levels")
        current = tx.parent_of(current)


class TaskBoard:
    """Task-level operations over a BoardStore."""

    def __init__(self, store: BoardStore, events: Optional[BoardEventBridge] = None,
                 max_task_depth: int = 16):
        self.store = store
        self.events = events or BoardEventBridge()
        self.max_task_depth = max_task_depth

    # ── Create ──────────────────────────────────────────────────────────────

    def create_task(
        self,
        title: str,
        column_id: str,
        priority: Optional[str] = None,
        assigned_agent_id: Optional[str] = None,
        description: Optional[str] = None,
        parent_task_id: Optional[str] = None,
    ) -> Task:
        """Create a task at the end of `column_id`."""
        if not isinstance(title, str) or not title.strip():
            raise InvalidArgument("Task title is required")
        priority = validate_priority(priority)

        pending = []
        with self.store.transaction() as tx:
            require_column(tx, column_id)
            if assigned_agent_id:
                require_agent(tx, assigned_agent_id)
            if parent_task_id:
                check_ancestry(tx, None, parent_task_id, self.max_task_depth)

            task = Task(
                id=new_id("task"),
                title=title.strip(),
                column_id=column_id,
                description=(description or "").strip() or None,
                priority=priority,
                assigned_agent_id=assigned_agent_id or None,
                parent_task_id=parent_task_id or None,
            )
            insert_task(tx, task)
            pending.append(self.events.record(
                tx, TASK_CREATED, task.id, f"Created {task.title!r}",
                {"column_id": column_id, "position": task.position},
            ))

        logger.info(f"Created task {task.id} at {column_id}@{task.position}")
        self.events.publish(pending)
        return task

    # ── Move ────────────────────────────────────────────────────────────────

    def move_task(self, task_id: str, column_id: str, index: int) -> Task:
        """
        Move a task to `index` in `column_id`, reindexing both columns.

        A move out of a backlog column into a todo column of the same project
        auto-assigns an unassigned task and leaves a SYSTEM note on it.
        """
        index = validate_index(index)

        pending = []
        with self.store.transaction() as tx:
            task = require_task(tx, task_id)
            source = require_column(tx, task.column_id)
            destination = require_column(tx, column_id)
            old_column, old_position = task.column_id, task.position

            if not self._relocate(tx, task, destination.id, index):
                return task

            pending.append(self.events.record(
                tx, TASK_MOVED, task.id,
                f"Moved from {source.name}@{old_position} to {destination.name}@{task.position}",
                {"from_column_id": old_column, "from_position": old_position,
                 "to_column_id": destination.id, "to_position": task.position},
            ))

            if (
                source.id != destination.id
                and is_auto_assign_transition(source.role, destination.role)
                and not task.assigned_agent_id
            ):
                pending.extend(self._auto_assign(tx, task, source, destination))

        logger.info(f"Moved task {task.id} to {column_id}@{task.position}")
        self.events.publish(pending)
        return task

    def _relocate(self, tx: StoreTx, task: Task, column_id: str, index: Optional[int]) -> bool:
        """Apply the position updates for a move; False when nothing changes."""
        if column_id == task.column_id:
            if index is None:
                return False
            slot, updates = plan_move_within(tx.placements(column_id), task.id, task.position, index)
            if slot == task.position:
                return False
            tx.apply_position_updates(updates)
            task.position = slot
        else:
            tx.apply_position_updates(plan_remove(tx.placements(task.column_id), task.position))
            slot, updates = plan_insert(tx.placements(column_id), index)
            tx.apply_position_updates(updates)
            task.column_id = column_id
            task.position = slot
        tx.save_task(task)
        return True

    def _auto_assign(self, tx: StoreTx, task: Task, source: Column, destination: Column) -> List[Dict[str, Any]]:
        source_ctx = tx.column_context(source.id)
        dest_ctx = tx.column_context(destination.id)
        project = dest_ctx[2]
        if source_ctx[2].id != project.id:
            return []

        agent = pick_agent_for_task(tx, project.id)
        if agent is not None:
            task.assigned_agent_id = agent.id
            tx.save_task(task)
            self.events.post_system_note(
                tx, task.id,
                f"Orchestrator assigned this task to {agent.name} after it moved "
                f"from {source.name} to {destination.name}.",
            )
            logger.info(f"Auto-assigned task {task.id} to agent {agent.name}")
            return [self.events.record(
                tx, TASK_AUTO_ASSIGNED, task.id, f"Assigned to {agent.name}",
                {"agent_id": agent.id, "project_id": project.id},
            )]

        self.events.post_system_note(
            tx, task.id,
            f"Orchestrator could not assign this task automatically after moving "
            f"to {destination.name} because no ACTIVE agents are available.",
        )
        logger.info(f"No ACTIVE agents available for task {task.id}")
        return [self.events.record(
            tx, TASK_ASSIGNMENT_SKIPPED, task.id, "No ACTIVE agents available",
            {"project_id": project.id},
        )]

    # ── Update ──────────────────────────────────────────────────────────────

    def update_task(self, task_id: str, **fields: Any) -> Task:
        """
        Edit task fields. Changing `column_id` without `position` appends to
        the end of the new column. Column-change automation only runs via
        move_task().
        """
        unknown = set(fields) - set(EDITABLE_FIELDS)
        if unknown:
            raise InvalidArgument(f"Unknown fields: {', '.join(sorted(unknown))}")
        if "priority" in fields and fields["priority"] is not None:
            validate_priority(fields["priority"])
        if fields.get("position") is not None:
            validate_index(fields["position"])
        if "title" in fields and (not isinstance(fields["title"], str) or not fields["title"].strip()):
            raise InvalidArgument("Task title cannot be empty")

        pending = []
        with self.store.transaction() as tx:
            task = require_task(tx, task_id)

            agent_id = fields.get("assigned_agent_id")
            if agent_id:
                require_agent(tx, agent_id)
            parent_id = fields.get("parent_task_id")
            if parent_id:
                check_ancestry(tx, task.id, parent_id, self.max_task_depth)
            column_id = fields.get("column_id") or task.column_id
            if column_id != task.column_id:
                require_column(tx, column_id)

            if "title" in fields:
                task.title = fields["title"].strip()
            if "description" in fields:
                task.description = (fields["description"] or "").strip() or None
            if "priority" in fields:
                task.priority = fields["priority"] or DEFAULT_PRIORITY
            if "assigned_agent_id" in fields:
                task.assigned_agent_id = agent_id or None
            if "parent_task_id" in fields:
                task.parent_task_id = parent_id or None
            if "awaiting_input" in fields:
                task.awaiting_input = bool(fields["awaiting_input"])

            if not self._relocate(tx, task, column_id, fields.get("position")):
                tx.save_task(task)
            pending.append(self.events.record(
                tx, TASK_UPDATED, task.id, f"Updated {', '.join(sorted(fields)) or 'nothing'}",
                {"fields": sorted(fields)},
            ))

        self.events.publish(pending)
        return task

    # ── Delete ──────────────────────────────────────────────────────────────

    def delete_task(self, task_id: str) -> None:
        """Delete a task and close the gap it leaves in its column."""
        pending = []
        with self.store.transaction() as tx:
            task = require_task(tx, task_id)
            tx.delete_task(task.id)
            tx.apply_position_updates(plan_remove(tx.placements(task.column_id), task.position))
            pending.append(self.events.record(
                tx, TASK_DELETED, task.id, f"Deleted {task.title!r}",
                {"column_id": task.column_id, "position": task.position},
            ))

        logger.info(f"Deleted task {task_id} from {task.column_id}@{task.position}")
        self.events.publish(pending)

    # ── Reads ───────────────────────────────────────────────────────────────

    def get_task(self, task_id: str) -> Task:
        with self.store.read() as tx:
            return require_task(tx, task_id)

    def task_detail(self, task_id: str) -> Dict[str, Any]:
        """Task with its column, board, assignee, subtasks and threads."""
        with self.store.read() as tx:
            task = require_task(tx, task_id)
            column, board, project = tx.column_context(task.column_id)
            agent = tx.get_agent(task.assigned_agent_id) if task.assigned_agent_id else None
            data = task.to_dict()
            data["column"] = column.to_dict()
            data["board"] = board.to_dict()
            data["project"] = project.to_dict()
            data["assigned_agent"] = agent.to_dict() if agent else None
            data["subtasks"] = [
                {"id": t.id, "title": t.title, "awaiting_input": t.awaiting_input}
                for t in tx.list_subtasks(task.id)
            ]
            data["threads"] = [t.to_dict() for t in tx.list_threads(task.id)]
            return data

    def get_board(self, board_id: str) -> Dict[str, Any]:
        """Board layout: columns in order, each with its tasks in order."""
        with self.store.read() as tx:
            board = tx.get_board(board_id)
            if board is None:
                raise NotFound("Board", board_id)
            columns = []
            for column in tx.list_columns(board.id):
                entry = column.to_dict()
                entry["tasks"] = [t.to_dict() for t in tx.list_tasks(column.id)]
                columns.append(entry)
            data = board.to_dict()
            data["columns"] = columns
            return data

    # ── Threads ─────────────────────────────────────────────────────────────

    def post_message(self, task_id: str, content: str, author_type: AuthorType = AuthorType.USER,
                     author_id: Optional[str] = None) -> Thread:
        """Start a new thread on a task."""
        if not isinstance(content, str) or not content.strip():
            raise InvalidArgument("Message content is required")
        with self.store.transaction() as tx:
            require_task(tx, task_id)
            return tx.create_thread(task_id, author_type, content.strip(), author_id)

    def list_threads(self, task_id: str) -> List[Thread]:
        with self.store.read() as tx:
            require_task(tx, task_id)
            return tx.list_threads(task_id)

    # ── Integrity ───────────────────────────────────────────────────────────

    def column_is_dense(self, column_id: str) -> bool:
        with self.store.read() as tx:
            require_column(tx, column_id)
            return is_dense(p.position for p in tx.placements(column_id))

    def compact_column(self, column_id: str) -> int:
        """Renumber a column to 0..N-1; returns the number of tasks moved."""
        pending = []
        with self.store.transaction() as tx:
            require_column(tx, column_id)
            updates = plan_compact(tx.placements(column_id))
            tx.apply_position_updates(updates)
            if updates:
                pending.append(self.events.record(
                    tx, COLUMN_COMPACTED, column_id, f"Renumbered {len(updates)} tasks",
                    {"updates": len(updates)},
                ))
        if updates:
            logger.warning(f"Column {column_id} was not dense; renumbered {len(updates)} tasks")
        self.events.publish(pending)
        return len(updates)
