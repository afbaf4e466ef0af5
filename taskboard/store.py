"""
Task board storage backend (SQLite).

`BoardStore` owns the database file and hands out transactions. All reads and
writes go through a `StoreTx`, so a multi-step operation (shift siblings,
write the moved task, append a thread note) commits or rolls back as one unit.
The store does not enforce ordering invariants itself; `reindex` plans the
updates and `board` applies them.
"""
import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from .columns import infer_role
from .reindex import Placement, PositionUpdate
from .schema import (
    Agent, AgentStatus, AuthorType, Board, Column, ColumnRole, CronJob, Message,
    Project, Task, Thread, new_id, parse_ts, utc_now,
)

logger = logging.getLogger(__name__)


def _connect(db_path: str, busy_timeout: float = 10.0) -> sqlite3.Connection:
    """Open an autocommit connection with FK enforcement and WAL mode.

    Transactions are opened explicitly by BoardStore.
    """
    conn = sqlite3.connect(db_path, timeout=busy_timeout, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


SCHEMA = """
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS boards (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    name TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS board_columns (
    id TEXT PRIMARY KEY,
    board_id TEXT NOT NULL REFERENCES boards(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    position INTEGER NOT NULL DEFAULT 0,
    role TEXT NOT NULL DEFAULT 'other'
);

CREATE TABLE IF NOT EXISTS agents (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'ACTIVE'
);

CREATE TABLE IF NOT EXISTS project_agents (
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    agent_id TEXT NOT NULL REFERENCES agents(id) ON DELETE CASCADE,
    PRIMARY KEY (project_id, agent_id)
);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    description TEXT,
    priority TEXT NOT NULL DEFAULT 'P2',
    column_id TEXT NOT NULL REFERENCES board_columns(id) ON DELETE CASCADE,
    position INTEGER NOT NULL,
    assigned_agent_id TEXT REFERENCES agents(id) ON DELETE SET NULL,
    parent_task_id TEXT REFERENCES tasks(id) ON DELETE SET NULL,
    awaiting_input INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS cron_jobs (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    schedule TEXT NOT NULL,
    enabled INTEGER NOT NULL DEFAULT 1,
    agent_id TEXT REFERENCES agents(id) ON DELETE SET NULL,
    target_column_id TEXT REFERENCES board_columns(id) ON DELETE SET NULL,
    task_template TEXT,  -- JSON object
    last_run_at TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS threads (
    id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    thread_id TEXT NOT NULL REFERENCES threads(id) ON DELETE CASCADE,
    author_type TEXT NOT NULL,
    author_id TEXT,
    content TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS audit_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    event_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    summary TEXT NOT NULL,
    payload TEXT,  -- JSON object
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_tasks_column_position ON tasks(column_id, position);
CREATE INDEX IF NOT EXISTS idx_tasks_agent ON tasks(assigned_agent_id);
CREATE INDEX IF NOT EXISTS idx_columns_board ON board_columns(board_id, position);
CREATE INDEX IF NOT EXISTS idx_threads_task ON threads(task_id, created_at);
CREATE INDEX IF NOT EXISTS idx_messages_thread ON messages(thread_id, created_at);
CREATE INDEX IF NOT EXISTS idx_audit_entity ON audit_events(entity_id, created_at);
"""


class StoreTx:
    """Row-level reads and writes bound to one open transaction."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    # ── Projects / boards / columns ─────────────────────────────────────────

    def insert_project(self, project: Project) -> Project:
        self.conn.execute(
            "INSERT INTO projects (id, name, created_at) VALUES (?, ?, ?)",
            (project.id, project.name, project.created_at.isoformat()),
        )
        return project

    def get_project(self, project_id: str) -> Optional[Project]:
        row = self.conn.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
        return Project.from_dict(dict(row)) if row else None

    def insert_board(self, board: Board) -> Board:
        self.conn.execute(
            "INSERT INTO boards (id, project_id, name) VALUES (?, ?, ?)",
            (board.id, board.project_id, board.name),
        )
        return board

    def get_board(self, board_id: str) -> Optional[Board]:
        row = self.conn.execute("SELECT * FROM boards WHERE id = ?", (board_id,)).fetchone()
        return Board.from_dict(dict(row)) if row else None

    def list_boards(self, project_id: str) -> List[Board]:
        rows = self.conn.execute(
            "SELECT * FROM boards WHERE project_id = ? ORDER BY rowid", (project_id,)
        ).fetchall()
        return [Board.from_dict(dict(r)) for r in rows]

    def insert_column(self, column: Column) -> Column:
        self.conn.execute(
            "INSERT INTO board_columns (id, board_id, name, position, role) VALUES (?, ?, ?, ?, ?)",
            (column.id, column.board_id, column.name, column.position, column.role.value),
        )
        return column

    def get_column(self, column_id: str) -> Optional[Column]:
        row = self.conn.execute("SELECT * FROM board_columns WHERE id = ?", (column_id,)).fetchone()
        return Column.from_dict(dict(row)) if row else None

    def list_columns(self, board_id: str) -> List[Column]:
        rows = self.conn.execute(
            "SELECT * FROM board_columns WHERE board_id = ? ORDER BY position, id", (board_id,)
        ).fetchall()
        return [Column.from_dict(dict(r)) for r in rows]

    def column_context(self, column_id: str) -> Optional[Tuple[Column, Board, Project]]:
        """Column with its board and project, or None if the column is gone."""
        column = self.get_column(column_id)
        if column is None:
            return None
        board = self.get_board(column.board_id)
        project = self.get_project(board.project_id)
        return column, board, project

    # ── Tasks ───────────────────────────────────────────────────────────────

    def insert_task(self, task: Task) -> Task:
        self.conn.execute(
            """
            INSERT INTO tasks
            (id, title, description, priority, column_id, position, assigned_agent_id,
             parent_task_id, awaiting_input, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                task.id, task.title, task.description, task.priority, task.column_id,
                task.position, task.assigned_agent_id, task.parent_task_id,
                1 if task.awaiting_input else 0,
                task.created_at.isoformat(), task.updated_at.isoformat(),
            ),
        )
        return task

    def get_task(self, task_id: str) -> Optional[Task]:
        row = self.conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return self._row_to_task(row) if row else None

    def save_task(self, task: Task) -> Task:
        """Write every mutable field of an existing task."""
        task.updated_at = utc_now()
        self.conn.execute(
            """
            UPDATE tasks SET title = ?, description = ?, priority = ?, column_id = ?,
                position = ?, assigned_agent_id = ?, parent_task_id = ?,
                awaiting_input = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                task.title, task.description, task.priority, task.column_id, task.position,
                task.assigned_agent_id, task.parent_task_id,
                1 if task.awaiting_input else 0, task.updated_at.isoformat(), task.id,
            ),
        )
        return task

    def delete_task(self, task_id: str) -> bool:
        cur = self.conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
        return cur.rowcount > 0

    def list_tasks(self, column_id: str) -> List[Task]:
        rows = self.conn.execute(
            "SELECT * FROM tasks WHERE column_id = ? ORDER BY position, id", (column_id,)
        ).fetchall()
        return [self._row_to_task(r) for r in rows]

    def placements(self, column_id: str) -> List[Placement]:
        """Current (task_id, position) pairs of a column, in order."""
        rows = self.conn.execute(
            "SELECT id, position FROM tasks WHERE column_id = ? ORDER BY position, id",
            (column_id,),
        ).fetchall()
        return [Placement(r["id"], r["position"]) for r in rows]

    def apply_position_updates(self, updates: Sequence[PositionUpdate]) -> None:
        if not updates:
            return
        self.conn.executemany(
            "UPDATE tasks SET position = ? WHERE id = ?",
            [(u.new, u.task_id) for u in updates],
        )

    def parent_of(self, task_id: str) -> Optional[str]:
        row = self.conn.execute("SELECT parent_task_id FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return row["parent_task_id"] if row else None

    def list_subtasks(self, task_id: str) -> List[Task]:
        rows = self.conn.execute(
            "SELECT * FROM tasks WHERE parent_task_id = ? ORDER BY position, id", (task_id,)
        ).fetchall()
        return [self._row_to_task(r) for r in rows]

    # ── Agents ──────────────────────────────────────────────────────────────

    def insert_agent(self, agent: Agent) -> Agent:
        self.conn.execute(
            "INSERT INTO agents (id, name, status) VALUES (?, ?, ?)",
            (agent.id, agent.name, agent.status.value),
        )
        return agent

    def get_agent(self, agent_id: str) -> Optional[Agent]:
        row = self.conn.execute("SELECT * FROM agents WHERE id = ?", (agent_id,)).fetchone()
        return Agent.from_dict(dict(row)) if row else None

    def set_agent_status(self, agent_id: str, status: AgentStatus) -> bool:
        cur = self.conn.execute("UPDATE agents SET status = ? WHERE id = ?", (status.value, agent_id))
        return cur.rowcount > 0

    def link_agent(self, project_id: str, agent_id: str) -> None:
        self.conn.execute(
            "INSERT OR IGNORE INTO project_agents (project_id, agent_id) VALUES (?, ?)",
            (project_id, agent_id),
        )

    def unlink_agent(self, project_id: str, agent_id: str) -> bool:
        cur = self.conn.execute(
            "DELETE FROM project_agents WHERE project_id = ? AND agent_id = ?",
            (project_id, agent_id),
        )
        return cur.rowcount > 0

    def project_agents(self, project_id: str, status: Optional[AgentStatus] = None) -> List[Agent]:
        sql = """
            SELECT a.* FROM agents a
            JOIN project_agents pa ON pa.agent_id = a.id
            WHERE pa.project_id = ?
        """
        params: List[Any] = [project_id]
        if status is not None:
            sql += " AND a.status = ?"
            params.append(status.value)
        rows = self.conn.execute(sql + " ORDER BY a.name, a.id", params).fetchall()
        return [Agent.from_dict(dict(r)) for r in rows]

    def list_agents(self, status: Optional[AgentStatus] = None) -> List[Agent]:
        if status is None:
            rows = self.conn.execute("SELECT * FROM agents ORDER BY name, id").fetchall()
        else:
            rows = self.conn.execute(
                "SELECT * FROM agents WHERE status = ? ORDER BY name, id", (status.value,)
            ).fetchall()
        return [Agent.from_dict(dict(r)) for r in rows]

    def open_task_counts(self, project_id: str, agent_ids: Sequence[str]) -> Dict[str, int]:
        """Assigned tasks per agent on the project's boards, outside DONE columns."""
        if not agent_ids:
            return {}
        marks = ", ".join("?" for _ in agent_ids)
        rows = self.conn.execute(
            f"""
            SELECT t.assigned_agent_id AS agent_id, COUNT(*) AS n
            FROM tasks t
            JOIN board_columns c ON c.id = t.column_id
            JOIN boards b ON b.id = c.board_id
            WHERE b.project_id = ?
              AND c.role != ?
              AND t.assigned_agent_id IN ({marks})
            GROUP BY t.assigned_agent_id
            """,
            [project_id, ColumnRole.DONE.value, *agent_ids],
        ).fetchall()
        return {r["agent_id"]: r["n"] for r in rows}

    # ── Cron jobs ───────────────────────────────────────────────────────────

    def insert_cron_job(self, job: CronJob) -> CronJob:
        self.conn.execute(
            """
            INSERT INTO cron_jobs
            (id, name, schedule, enabled, agent_id, target_column_id, task_template,
             last_run_at, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                job.id, job.name, job.schedule, 1 if job.enabled else 0, job.agent_id,
                job.target_column_id,
                json.dumps(job.task_template.to_dict()) if job.task_template else None,
                job.last_run_at.isoformat() if job.last_run_at else None,
                job.created_at.isoformat(),
            ),
        )
        return job

    def get_cron_job(self, cron_job_id: str) -> Optional[CronJob]:
        row = self.conn.execute("SELECT * FROM cron_jobs WHERE id = ?", (cron_job_id,)).fetchone()
        return self._row_to_cron_job(row) if row else None

    def list_cron_jobs(self) -> List[CronJob]:
        rows = self.conn.execute("SELECT * FROM cron_jobs ORDER BY created_at, id").fetchall()
        return [self._row_to_cron_job(r) for r in rows]

    def save_cron_job(self, job: CronJob) -> CronJob:
        self.conn.execute(
            """
            UPDATE cron_jobs
            SET name = ?, schedule = ?, enabled = ?, agent_id = ?, target_column_id = ?,
                task_template = ?
            WHERE id = ?
            """,
            (
                job.name, job.schedule, 1 if job.enabled else 0, job.agent_id,
                job.target_column_id,
                json.dumps(job.task_template.to_dict()) if job.task_template else None,
                job.id,
            ),
        )
        return job

    def delete_cron_job(self, cron_job_id: str) -> bool:
        cur = self.conn.execute("DELETE FROM cron_jobs WHERE id = ?", (cron_job_id,))
        return cur.rowcount > 0

    def record_cron_run(self, cron_job_id: str, ran_at) -> None:
        self.conn.execute(
            "UPDATE cron_jobs SET last_run_at = ? WHERE id = ?",
            (ran_at.isoformat(), cron_job_id),
        )

    # ── Threads ─────────────────────────────────────────────────────────────

    def create_thread(self, task_id: str, author_type: AuthorType, content: str,
                      author_id: Optional[str] = None) -> Thread:
        """Start a thread on a task with its first message."""
        now = utc_now()
        thread = Thread(id=new_id("thread"), task_id=task_id, created_at=now)
        self.conn.execute(
            "INSERT INTO threads (id, task_id, created_at) VALUES (?, ?, ?)",
            (thread.id, task_id, now.isoformat()),
        )
        thread.messages.append(self.add_message(thread.id, author_type, content, author_id))
        return thread

    def add_message(self, thread_id: str, author_type: AuthorType, content: str,
                    author_id: Optional[str] = None) -> Message:
        msg = Message(
            id=new_id("msg"), thread_id=thread_id, author_type=author_type,
            content=content, author_id=author_id,
        )
        self.conn.execute(
            """
            INSERT INTO messages (id, thread_id, author_type, author_id, content, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (msg.id, thread_id, author_type.value, author_id, content, msg.created_at.isoformat()),
        )
        return msg

    def get_thread(self, thread_id: str) -> Optional[Thread]:
        row = self.conn.execute("SELECT * FROM threads WHERE id = ?", (thread_id,)).fetchone()
        if not row:
            return None
        return self._hydrate_thread(row)

    def list_threads(self, task_id: str) -> List[Thread]:
        """Threads on a task, newest first, each with its messages oldest first."""
        rows = self.conn.execute(
            "SELECT * FROM threads WHERE task_id = ? ORDER BY created_at DESC, rowid DESC",
            (task_id,),
        ).fetchall()
        return [self._hydrate_thread(r) for r in rows]

    # ── Audit events ────────────────────────────────────────────────────────

    def append_event(self, event_type: str, entity_id: str, summary: str,
                     payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        now = utc_now().isoformat()
        cur = self.conn.execute(
            """
            INSERT INTO audit_events (event_type, entity_id, summary, payload, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (event_type, entity_id, summary, json.dumps(payload or {}), now),
        )
        return {
            "id": cur.lastrowid,
            "event_type": event_type,
            "entity_id": entity_id,
            "summary": summary,
            "payload": payload or {},
            "created_at": now,
        }

    def recent_events(self, entity_id: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        if entity_id:
            rows = self.conn.execute(
                "SELECT * FROM audit_events WHERE entity_id = ? ORDER BY id DESC LIMIT ?",
                (entity_id, limit),
            ).fetchall()
        else:
            rows = self.conn.execute(
                "SELECT * FROM audit_events ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
        events = []
        for row in rows:
            event = dict(row)
            try:
                event["payload"] = json.loads(event["payload"] or "{}")
            except (json.JSONDecodeError, TypeError):
                event["payload"] = {}
            events.append(event)
        return events

    # ── Row conversion ──────────────────────────────────────────────────────

    def _hydrate_thread(self, row: sqlite3.Row) -> Thread:
        msgs = self.conn.execute(
            "SELECT * FROM messages WHERE thread_id = ? ORDER BY created_at, rowid",
            (row["id"],),
        ).fetchall()
        return Thread(
            id=row["id"],
            task_id=row["task_id"],
            messages=[Message.from_dict(dict(m)) for m in msgs],
            created_at=parse_ts(row["created_at"]) or utc_now(),
        )

    def _row_to_task(self, row: sqlite3.Row) -> Task:
        data = dict(row)
        data["awaiting_input"] = bool(data.get("awaiting_input", 0))
        return Task.from_dict(data)

    def _row_to_cron_job(self, row: sqlite3.Row) -> CronJob:
        data = dict(row)
        data["enabled"] = bool(data.get("enabled", 1))
        return CronJob.from_dict(data)


class BoardStore:
    """SQLite-backed store for boards, tasks, agents and cron jobs."""

    def __init__(self, db_path: Optional[str] = None, busy_timeout: float = 10.0):
        """Initialize store and create tables if needed."""
        if db_path is None:
            db_path = str(Path.home() / ".local" / "share" / "taskboard" / "taskboard.db")
        self.db_path = db_path
        self.busy_timeout = busy_timeout
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _init_schema(self):
        """Create tables if they don't exist, then migrate older databases."""
        conn = _connect(self.db_path, self.busy_timeout)
        try:
            conn.executescript(SCHEMA)
            self._migrate_columns(conn)
        finally:
            conn.close()

    def _migrate_columns(self, conn: sqlite3.Connection):
        """Add columns missing from databases created by earlier versions."""
        new_columns = [
            ("board_columns", "role", "TEXT NOT NULL DEFAULT 'other'"),
            ("tasks", "awaiting_input", "INTEGER NOT NULL DEFAULT 0"),
            ("cron_jobs", "enabled", "INTEGER NOT NULL DEFAULT 1"),
        ]
        added = set()
        for table, col_name, col_type in new_columns:
            existing = {r["name"] for r in conn.execute(f"PRAGMA table_info({table})")}
            if col_name not in existing:
                conn.execute(f"ALTER TABLE {table} ADD COLUMN {col_name} {col_type}")
                added.add((table, col_name))
                logger.info(f"Migrated {table}: added column {col_name}")

        # Columns from before roles existed get a role inferred from their name
        if ("board_columns", "role") in added:
            rows = conn.execute("SELECT id, name FROM board_columns").fetchall()
            for row in rows:
                role = infer_role(row["name"])
                conn.execute("UPDATE board_columns SET role = ? WHERE id = ?", (role.value, row["id"]))

    @contextmanager
    def transaction(self) -> Iterator[StoreTx]:
        """
        Open a write transaction.

        BEGIN IMMEDIATE takes SQLite's writer lock before the first read, so
        positions read inside the block cannot change under a concurrent writer.
        Any exception rolls back every write made in the block.
        """
        conn = _connect(self.db_path, self.busy_timeout)
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield StoreTx(conn)
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    @contextmanager
    def read(self) -> Iterator[StoreTx]:
        """Open a read-only snapshot."""
        conn = _connect(self.db_path, self.busy_timeout)
        try:
            conn.execute("BEGIN")
            try:
                yield StoreTx(conn)
            finally:
                conn.execute("ROLLBACK")
        finally:
            conn.close()

    # ── Convenience reads ───────────────────────────────────────────────────

    def get_task(self, task_id: str) -> Optional[Task]:
        with self.read() as tx:
            return tx.get_task(task_id)

    def get_column(self, column_id: str) -> Optional[Column]:
        with self.read() as tx:
            return tx.get_column(column_id)

    def list_tasks(self, column_id: str) -> List[Task]:
        with self.read() as tx:
            return tx.list_tasks(column_id)

    def get_cron_job(self, cron_job_id: str) -> Optional[CronJob]:
        with self.read() as tx:
            return tx.get_cron_job(cron_job_id)

    def recent_events(self, entity_id: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        with self.read() as tx:
            return tx.recent_events(entity_id, limit)
