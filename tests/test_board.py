"""
Tests for task operations: create, move, update, delete, threads, board view.
"""
import random
import threading

import pytest

from conftest import column_positions, column_titles, fill_column
from taskboard.board import TaskBoard
from taskboard.errors import InvalidArgument, NotFound
from taskboard.events import ALL_EVENTS, TASK_CREATED, TASK_DELETED, TASK_MOVED
from taskboard.reindex import PositionUpdate, is_dense
from taskboard.schema import AuthorType


def _assert_dense(store, *column_ids):
    for column_id in column_ids:
        assert is_dense(column_positions(store, column_id)), column_id


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Create
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestCreateTask:

    def test_appends_to_end(self, board, store, cols):
        fill_column(board, cols["To Do"], "A", "B", "C")
        assert column_titles(store, cols["To Do"]) == ["A", "B", "C"]
        assert column_positions(store, cols["To Do"]) == [0, 1, 2]

    def test_defaults(self, board, cols):
        task = board.create_task("  Write report ", cols["Ideas"])
        assert task.title == "Write report"
        assert task.priority == "P2"
        assert task.assigned_agent_id is None
        assert task.id.startswith("task-")

    def test_rejects_bad_input(self, board, cols):
        with pytest.raises(InvalidArgument):
            board.create_task("   ", cols["Ideas"])
        with pytest.raises(InvalidArgument):
            board.create_task("Task", cols["Ideas"], priority="URGENT")

    def test_missing_references(self, board, cols):
        with pytest.raises(NotFound):
            board.create_task("Task", "col-missing")
        with pytest.raises(NotFound):
            board.create_task("Task", cols["Ideas"], assigned_agent_id="agent-missing")
        with pytest.raises(NotFound):
            board.create_task("Task", cols["Ideas"], parent_task_id="task-missing")

    def test_emits_event_after_commit(self, board, events, cols):
        seen = []
        events.subscribe(TASK_CREATED, seen.append)
        task = board.create_task("Task", cols["Ideas"])
        assert [e["entity_id"] for e in seen] == [task.id]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Move
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestMoveTask:

    def test_move_to_end_of_same_column(self, board, store, cols):
        t1, t2, t3 = fill_column(board, cols["Review"], "T1", "T2", "T3")
        moved = board.move_task(t1.id, cols["Review"], 2)
        assert moved.position == 2
        assert column_titles(store, cols["Review"]) == ["T2", "T3", "T1"]
        assert column_positions(store, cols["Review"]) == [0, 1, 2]

    def test_move_backward_within_column(self, board, store, cols):
        fill_column(board, cols["Review"], "A", "B", "C", "D")
        d = store.list_tasks(cols["Review"])[3]
        board.move_task(d.id, cols["Review"], 1)
        assert column_titles(store, cols["Review"]) == ["A", "D", "B", "C"]

    def test_cross_column_move(self, board, store, cols):
        fill_column(board, cols["In Progress"], "A", "B", "C")
        fill_column(board, cols["Review"], "X", "Y")
        b = store.list_tasks(cols["In Progress"])[1]
        moved = board.move_task(b.id, cols["Review"], 1)
        assert moved.column_id == cols["Review"]
        assert column_titles(store, cols["In Progress"]) == ["A", "C"]
        assert column_titles(store, cols["Review"]) == ["X", "B", "Y"]
        _assert_dense(store, cols["In Progress"], cols["Review"])

    def test_move_into_empty_column(self, board, store, cols):
        (task,) = fill_column(board, cols["In Progress"], "Solo")
        moved = board.move_task(task.id, cols["Done"], 0)
        assert moved.position == 0
        assert column_titles(store, cols["In Progress"]) == []

    def test_oversized_index_appends(self, board, store, cols):
        (task,) = fill_column(board, cols["In Progress"], "A")
        fill_column(board, cols["Review"], "X", "Y")
        moved = board.move_task(task.id, cols["Review"], 50)
        assert moved.position == 2
        _assert_dense(store, cols["Review"])

    def test_move_is_idempotent(self, board, store, cols):
        fill_column(board, cols["Review"], "A", "B", "C")
        a = store.list_tasks(cols["Review"])[0]
        board.move_task(a.id, cols["Review"], 1)
        before = column_titles(store, cols["Review"])
        board.move_task(a.id, cols["Review"], 1)
        assert column_titles(store, cols["Review"]) == before

    def test_noop_move_records_nothing(self, board, events, store, cols):
        (task,) = fill_column(board, cols["Review"], "A")
        seen = []
        events.subscribe(TASK_MOVED, seen.append)
        board.move_task(task.id, cols["Review"], 0)
        assert seen == []

    def test_round_trip_restores_both_columns(self, board, store, cols):
        fill_column(board, cols["In Progress"], "A", "B", "C", "D")
        fill_column(board, cols["Review"], "W", "X", "Y")
        before = (column_titles(store, cols["In Progress"]), column_titles(store, cols["Review"]))
        c = store.list_tasks(cols["In Progress"])[2]
        board.move_task(c.id, cols["Review"], 1)
        board.move_task(c.id, cols["In Progress"], 2)
        after = (column_titles(store, cols["In Progress"]), column_titles(store, cols["Review"]))
        assert after == before

    @pytest.mark.parametrize("index", [-1, "1", 1.5, None, True])
    def test_invalid_index(self, board, cols, index):
        (task,) = fill_column(board, cols["Review"], "A")
        with pytest.raises(InvalidArgument):
            board.move_task(task.id, cols["Review"], index)

    def test_missing_task_or_column(self, board, cols):
        (task,) = fill_column(board, cols["Review"], "A")
        with pytest.raises(NotFound):
            board.move_task("task-missing", cols["Review"], 0)
        with pytest.raises(NotFound):
            board.move_task(task.id, "col-missing", 0)

    def test_failure_mid_move_rolls_back(self, board, events, store, cols, monkeypatch):
        fill_column(board, cols["Ideas"], "A", "B", "C")
        fill_column(board, cols["To Do"], "X", "Y")
        before = (column_titles(store, cols["Ideas"]), column_titles(store, cols["To Do"]))
        published = []
        events.subscribe(ALL_EVENTS, published.append)

        def explode(*args, **kwargs):
            raise RuntimeError("thread store unavailable")

        # Fails after both columns were reindexed, during the automation step
        monkeypatch.setattr(events, "post_system_note", explode)
        a = store.list_tasks(cols["Ideas"])[0]
        with pytest.raises(RuntimeError):
            board.move_task(a.id, cols["To Do"], 0)

        after = (column_titles(store, cols["Ideas"]), column_titles(store, cols["To Do"]))
        assert after == before
        _assert_dense(store, cols["Ideas"], cols["To Do"])
        assert published == []
        assert store.recent_events(a.id)[0]["event_type"] == TASK_CREATED

    def test_move_event_payload(self, board, events, cols):
        (task,) = fill_column(board, cols["In Progress"], "A")
        seen = []
        events.subscribe(TASK_MOVED, seen.append)
        board.move_task(task.id, cols["Review"], 0)
        assert seen[0]["payload"] == {
            "from_column_id": cols["In Progress"], "from_position": 0,
            "to_column_id": cols["Review"], "to_position": 0,
        }


def test_random_operations_keep_columns_dense(board, store, cols):
    rng = random.Random(1234)
    column_ids = [cols["In Progress"], cols["Review"], cols["Done"]]
    live = []
    for step in range(80):
        op = rng.random()
        if op < 0.35 or not live:
            live.append(board.create_task(f"T{step}", rng.choice(column_ids)).id)
        elif op < 0.85:
            board.move_task(rng.choice(live), rng.choice(column_ids), rng.randint(0, 6))
        else:
            task_id = live.pop(rng.randrange(len(live)))
            board.delete_task(task_id)
        _assert_dense(store, *column_ids)
    assert sum(len(store.list_tasks(c)) for c in column_ids) == len(live)


def test_concurrent_moves_to_head_of_same_column(db_path, cols, store):
    fill_column(TaskBoard(store), cols["In Progress"], "A", "B")
    fill_column(TaskBoard(store), cols["Review"], "R0", "R1", "R2")
    movers = store.list_tasks(cols["In Progress"])
    barrier = threading.Barrier(len(movers))
    errors = []

    def worker(task_id):
        # Each thread uses its own board over the same database file
        from taskboard.store import BoardStore
        local = TaskBoard(BoardStore(db_path))
        barrier.wait()
        try:
            local.move_task(task_id, cols["Review"], 0)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(t.id,)) for t in movers]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    review = store.list_tasks(cols["Review"])
    assert [t.position for t in review] == [0, 1, 2, 3, 4]
    assert sum(1 for t in review if t.position == 0) == 1
    assert review[0].title in ("A", "B")
    assert [t.title for t in review[2:]] == ["R0", "R1", "R2"]
    assert store.list_tasks(cols["In Progress"]) == []


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Update
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestUpdateTask:

    def test_edit_fields(self, board, cols):
        (task,) = fill_column(board, cols["Ideas"], "Draft")
        updated = board.update_task(task.id, title="Final", priority="P0",
                                    description="details", awaiting_input=True)
        assert (updated.title, updated.priority, updated.description) == ("Final", "P0", "details")
        reloaded = board.get_task(task.id)
        assert reloaded.awaiting_input is True
        assert reloaded.title == "Final"

    def test_invalid_fields(self, board, cols):
        (task,) = fill_column(board, cols["Ideas"], "Draft")
        with pytest.raises(InvalidArgument):
            board.update_task(task.id, priority="P9")
        with pytest.raises(InvalidArgument):
            board.update_task(task.id, title="")
        with pytest.raises(InvalidArgument):
            board.update_task(task.id, colour="red")
        with pytest.raises(NotFound):
            board.update_task(task.id, assigned_agent_id="agent-missing")

    def test_self_parent_rejected(self, board, cols):
        (task,) = fill_column(board, cols["Ideas"], "Loop")
        with pytest.raises(InvalidArgument):
            board.update_task(task.id, parent_task_id=task.id)

    def test_ancestry_cycle_rejected(self, board, cols):
        a, b = fill_column(board, cols["Ideas"], "A", "B")
        board.update_task(b.id, parent_task_id=a.id)
        with pytest.raises(InvalidArgument):
            board.update_task(a.id, parent_task_id=b.id)
        assert board.get_task(a.id).parent_task_id is None

    def test_depth_limit(self, store, cols):
        shallow = TaskBoard(store, max_task_depth=3)
        t1 = shallow.create_task("L1", cols["Ideas"])
        t2 = shallow.create_task("L2", cols["Ideas"], parent_task_id=t1.id)
        t3 = shallow.create_task("L3", cols["Ideas"], parent_task_id=t2.id)
        with pytest.raises(InvalidArgument):
            shallow.create_task("L4", cols["Ideas"], parent_task_id=t3.id)

    def test_column_change_appends_to_end(self, board, store, cols):
        a, b = fill_column(board, cols["In Progress"], "A", "B")
        fill_column(board, cols["Review"], "X", "Y")
        updated = board.update_task(a.id, column_id=cols["Review"])
        assert updated.position == 2
        assert column_titles(store, cols["Review"]) == ["X", "Y", "A"]
        assert column_positions(store, cols["In Progress"]) == [0]

    def test_column_change_with_position(self, board, store, cols):
        (a,) = fill_column(board, cols["In Progress"], "A")
        fill_column(board, cols["Review"], "X", "Y")
        board.update_task(a.id, column_id=cols["Review"], position=0)
        assert column_titles(store, cols["Review"]) == ["A", "X", "Y"]

    def test_column_change_skips_auto_assignment(self, board, registry, project, cols):
        registry.create_agent("Ada", project_ids=[project["id"]])
        (task,) = fill_column(board, cols["Ideas"], "Idea")
        updated = board.update_task(task.id, column_id=cols["To Do"])
        assert updated.assigned_agent_id is None
        assert board.list_threads(task.id) == []


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Delete
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_delete_closes_gap(board, events, store, cols):
    tasks = fill_column(board, cols["Review"], "A", "B", "C", "D")
    seen = []
    events.subscribe(TASK_DELETED, seen.append)
    board.delete_task(tasks[1].id)
    assert column_titles(store, cols["Review"]) == ["A", "C", "D"]
    assert column_positions(store, cols["Review"]) == [0, 1, 2]
    assert seen[0]["payload"] == {"column_id": cols["Review"], "position": 1}


def test_delete_missing_task(board):
    with pytest.raises(NotFound):
        board.delete_task("task-missing")


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Reads, threads, integrity
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_get_board_layout(board, project, cols):
    fill_column(board, cols["To Do"], "A", "B")
    layout = board.get_board(project["boards"][0]["id"])
    assert [c["name"] for c in layout["columns"]] == ["Ideas", "To Do", "In Progress", "Review", "Done"]
    todo = layout["columns"][1]
    assert todo["role"] == "todo"
    assert [t["title"] for t in todo["tasks"]] == ["A", "B"]

    with pytest.raises(NotFound):
        board.get_board("board-missing")


def test_task_detail(board, cols):
    parent = board.create_task("Parent", cols["Ideas"])
    board.create_task("Child", cols["Ideas"], parent_task_id=parent.id)
    detail = board.task_detail(parent.id)
    assert detail["column"]["name"] == "Ideas"
    assert detail["project"]["name"] == "Acme"
    assert [s["title"] for s in detail["subtasks"]] == ["Child"]
    assert detail["threads"] == []


def test_post_and_list_threads(board, cols):
    (task,) = fill_column(board, cols["Ideas"], "A")
    board.post_message(task.id, "first")
    board.post_message(task.id, "from agent", AuthorType.AGENT, author_id="agent-1")
    threads = board.list_threads(task.id)
    assert [t.messages[0].content for t in threads] == ["from agent", "first"]
    assert threads[0].messages[0].author_type == AuthorType.AGENT

    with pytest.raises(InvalidArgument):
        board.post_message(task.id, "   ")
    with pytest.raises(NotFound):
        board.post_message("task-missing", "hello")


def test_compact_repairs_drifted_column(board, store, cols):
    tasks = fill_column(board, cols["Review"], "A", "B", "C")
    with store.transaction() as tx:
        tx.apply_position_updates([PositionUpdate(tasks[1].id, 1, 4), PositionUpdate(tasks[2].id, 2, 9)])
    assert not board.column_is_dense(cols["Review"])

    assert board.compact_column(cols["Review"]) == 2
    assert board.column_is_dense(cols["Review"])
    assert column_titles(store, cols["Review"]) == ["A", "B", "C"]
    assert board.compact_column(cols["Review"]) == 0
