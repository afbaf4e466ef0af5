"""Shared fixtures for task board tests."""

import sys
from pathlib import Path

import pytest

# Ensure the repo root is importable when running without an install
sys.path.insert(0, str(Path(__file__).parent.parent))

from taskboard.board import TaskBoard
from taskboard.events import BoardEventBridge
from taskboard.projects import Registry
from taskboard.store import BoardStore
from taskboard.triggers import TriggerMaterializer


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "taskboard.db")


@pytest.fixture
def store(db_path):
    return BoardStore(db_path)


@pytest.fixture
def events():
    return BoardEventBridge()


@pytest.fixture
def board(store, events):
    return TaskBoard(store, events)


@pytest.fixture
def registry(store):
    return Registry(store)


@pytest.fixture
def triggers(store, events):
    return TriggerMaterializer(store, events)


@pytest.fixture
def project(registry):
    """Project with the default board: Ideas, To Do, In Progress, Review, Done."""
    return registry.create_project("Acme")


@pytest.fixture
def cols(project):
    """Column name → column id for the default board."""
    return {c["name"]: c["id"] for c in project["boards"][0]["columns"]}


def column_titles(store, column_id):
    """Task titles of a column in position order."""
    return [t.title for t in store.list_tasks(column_id)]


def column_positions(store, column_id):
    return [t.position for t in store.list_tasks(column_id)]


def fill_column(board, column_id, *titles):
    return [board.create_task(title, column_id) for title in titles]
