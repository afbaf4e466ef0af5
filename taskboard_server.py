#!/usr/bin/env python3
"""
Task Board Server
-----------------
JSON API over the task board engine: task ordering, moves with
auto-assignment, cron triggers, and the project/agent registry.

Usage:
    python taskboard_server.py --port 3000 --db ./taskboard.db

    # Scheduler side: trigger a cron job
    curl -X POST -H "X-API-Key: $TASKBOARD_API_SECRET" \\
         http://localhost:3000/api/cron/<id>/trigger

API (write routes require X-API-Key):
    GET    /health
    POST   /api/projects                 → { name, board_name?, columns? }
    GET    /api/projects/<id>            → project with its boards
    GET    /api/projects/<id>/workloads  → open task count per agent
    POST   /api/projects/<id>/agents     → { agent_id }
    POST   /api/agents                   → { name, status?, project_ids? }
    POST   /api/agents/<id>/status       → { status }
    GET    /api/boards/<id>              → columns with ordered tasks
    POST   /api/tasks                    → { title, column_id, priority?, ... }
    GET    /api/tasks/<id>
    PATCH  /api/tasks/<id>               → { title?, priority?, column_id?, position?, ... }
    DELETE /api/tasks/<id>
    POST   /api/tasks/<id>/move          → { column_id, position }
    GET    /api/tasks/<id>/threads
    POST   /api/tasks/<id>/threads       → { content, author_type?, author_id? }
    POST   /api/columns/<id>/compact
    GET    /api/cron
    POST   /api/cron                     → { name, schedule, agent_id?, target_column_id?, task_template? }
    GET    /api/cron/<id>
    PATCH  /api/cron/<id>                → { name?, schedule?, enabled?, agent_id?, target_column_id?, task_template? }
    DELETE /api/cron/<id>
    POST   /api/cron/<id>/trigger
    GET    /api/events                   → recent audit events
"""

import argparse
import hmac
import logging
import os
import sys
from functools import wraps
from typing import Optional

from flask import Flask, current_app, jsonify, request
from werkzeug.exceptions import HTTPException

from taskboard.board import TaskBoard
from taskboard.config import Config
from taskboard.errors import InvalidArgument, NotFound
from taskboard.events import BoardEventBridge
from taskboard.projects import Registry
from taskboard.schema import AuthorType
from taskboard.store import BoardStore
from taskboard.triggers import TriggerMaterializer


# ── Auth ─────────────────────────────────────────────────────────────────────

def require_api_key(f):
    """Decorator: reject requests without a valid X-API-Key header."""
    @wraps(f)
    def decorated(*args, **kwargs):
        secret = current_app.config.get("API_SECRET", "")
        if not secret:
            return jsonify({"error": "API secret not set"}), 503
        provided = request.headers.get("X-API-Key", "").strip()
        if not hmac.compare_digest(provided, secret):
            code = 401 if not provided else 403
            return jsonify({"error": "Unauthorized"}), code
        return f(*args, **kwargs)
    return decorated


def _body() -> dict:
    data = request.get_json(force=True, silent=True)
    return data if isinstance(data, dict) else {}


def _engine(name: str):
    return current_app.extensions["taskboard"][name]


# ── App factory ──────────────────────────────────────────────────────────────

def create_app(config: Optional[Config] = None) -> Flask:
    cfg = config or Config.load()

    app = Flask(__name__)
    app.config["API_SECRET"] = cfg.api_secret
    app.config["DB_PATH"] = cfg.db_path

    store = BoardStore(cfg.db_path, busy_timeout=cfg.busy_timeout)
    events = BoardEventBridge(cfg.notify_url, cfg.notify_timeout)
    app.extensions["taskboard"] = {
        "store": store,
        "events": events,
        "board": TaskBoard(store, events, max_task_depth=cfg.max_task_depth),
        "triggers": TriggerMaterializer(store, events),
        "registry": Registry(store, cfg.default_columns),
    }

    @app.errorhandler(NotFound)
    def handle_not_found(e):
        return jsonify({"error": str(e)}), 404

    @app.errorhandler(InvalidArgument)
    def handle_invalid(e):
        return jsonify({"error": str(e)}), 400

    @app.errorhandler(Exception)
    def handle_unexpected(e):
        if isinstance(e, HTTPException):
            return jsonify({"error": e.description}), e.code
        app.logger.exception(f"Unhandled error on {request.method} {request.path}")
        return jsonify({"error": "Internal server error"}), 500

    _register_routes(app)
    return app


# ── Routes ───────────────────────────────────────────────────────────────────

def _register_routes(app: Flask):

    @app.route("/health")
    def health():
        return jsonify({"status": "ok", "db": current_app.config["DB_PATH"]})

    # Projects / agents

    @app.route("/api/projects", methods=["POST"])
    @require_api_key
    def api_create_project():
        data = _body()
        project = _engine("registry").create_project(
            data.get("name", ""),
            board_name=data.get("board_name") or "Main Board",
            columns=data.get("columns"),
        )
        return jsonify({"project": project}), 201

    @app.route("/api/projects/<project_id>")
    def api_get_project(project_id):
        registry = _engine("registry")
        project = registry.get_project(project_id)
        boards = registry.list_boards(project_id)
        return jsonify({"project": dict(project.to_dict(), boards=[b.to_dict() for b in boards])})

    @app.route("/api/projects/<project_id>/workloads")
    def api_workloads(project_id):
        return jsonify({"agents": _engine("registry").agent_workloads(project_id)})

    @app.route("/api/projects/<project_id>/agents", methods=["POST"])
    @require_api_key
    def api_link_agent(project_id):
        agent_id = _body().get("agent_id", "")
        if not agent_id:
            return jsonify({"error": "agent_id is required"}), 400
        _engine("registry").link_agent(project_id, agent_id)
        return jsonify({"project_id": project_id, "agent_id": agent_id}), 201

    @app.route("/api/agents", methods=["POST"])
    @require_api_key
    def api_create_agent():
        data = _body()
        agent = _engine("registry").create_agent(
            data.get("name", ""),
            status=data.get("status") or "ACTIVE",
            project_ids=data.get("project_ids") or [],
        )
        return jsonify({"agent": agent.to_dict()}), 201

    @app.route("/api/agents/<agent_id>/status", methods=["POST"])
    @require_api_key
    def api_agent_status(agent_id):
        status = _body().get("status", "")
        if not status:
            return jsonify({"error": "status is required"}), 400
        agent = _engine("registry").set_agent_status(agent_id, status)
        return jsonify({"agent": agent.to_dict()})

    # Boards / tasks

    @app.route("/api/boards/<board_id>")
    def api_board(board_id):
        return jsonify({"board": _engine("board").get_board(board_id)})

    @app.route("/api/tasks", methods=["POST"])
    @require_api_key
    def api_create_task():
        data = _body()
        if not data.get("column_id"):
            return jsonify({"error": "column_id is required"}), 400
        task = _engine("board").create_task(
            data.get("title", ""),
            data["column_id"],
            priority=data.get("priority"),
            assigned_agent_id=data.get("assigned_agent_id"),
            description=data.get("description"),
            parent_task_id=data.get("parent_task_id"),
        )
        return jsonify({"task": task.to_dict()}), 201

    @app.route("/api/tasks/<task_id>", methods=["GET"])
    def api_get_task(task_id):
        return jsonify({"task": _engine("board").task_detail(task_id)})

    @app.route("/api/tasks/<task_id>", methods=["PATCH"])
    @require_api_key
    def api_update_task(task_id):
        task = _engine("board").update_task(task_id, **_body())
        return jsonify({"task": task.to_dict()})

    @app.route("/api/tasks/<task_id>", methods=["DELETE"])
    @require_api_key
    def api_delete_task(task_id):
        _engine("board").delete_task(task_id)
        return jsonify({"deleted": task_id})

    @app.route("/api/tasks/<task_id>/move", methods=["POST"])
    @require_api_key
    def api_move_task(task_id):
        data = _body()
        column_id = data.get("column_id")
        position = data.get("position")
        if not column_id or position is None:
            return jsonify({"error": "column_id and position are required"}), 400
        task = _engine("board").move_task(task_id, column_id, position)
        return jsonify({"task": task.to_dict()})

    @app.route("/api/tasks/<task_id>/threads", methods=["GET"])
    def api_threads(task_id):
        threads = _engine("board").list_threads(task_id)
        return jsonify({"threads": [t.to_dict() for t in threads]})

    @app.route("/api/tasks/<task_id>/threads", methods=["POST"])
    @require_api_key
    def api_post_thread(task_id):
        data = _body()
        author = (data.get("author_type") or "USER").upper()
        if author not in (AuthorType.USER.value, AuthorType.AGENT.value):
            return jsonify({"error": "author_type must be USER or AGENT"}), 400
        thread = _engine("board").post_message(
            task_id, data.get("content", ""), AuthorType(author), data.get("author_id"),
        )
        return jsonify({"thread": thread.to_dict()}), 201

    @app.route("/api/columns/<column_id>/compact", methods=["POST"])
    @require_api_key
    def api_compact_column(column_id):
        moved = _engine("board").compact_column(column_id)
        return jsonify({"column_id": column_id, "renumbered": moved})

    # Cron

    @app.route("/api/cron", methods=["GET"])
    def api_cron_jobs():
        jobs = _engine("registry").list_cron_jobs()
        return jsonify({"cron_jobs": [j.to_dict() for j in jobs], "count": len(jobs)})

    @app.route("/api/cron", methods=["POST"])
    @require_api_key
    def api_create_cron_job():
        data = _body()
        job = _engine("registry").create_cron_job(
            data.get("name", ""),
            data.get("schedule", ""),
            agent_id=data.get("agent_id"),
            target_column_id=data.get("target_column_id"),
            task_template=data.get("task_template"),
            enabled=data.get("enabled", True),
        )
        return jsonify({"cron_job": job.to_dict()}), 201

    @app.route("/api/cron/<cron_job_id>", methods=["GET"])
    def api_get_cron_job(cron_job_id):
        return jsonify({"cron_job": _engine("registry").get_cron_job(cron_job_id).to_dict()})

    @app.route("/api/cron/<cron_job_id>", methods=["PATCH"])
    @require_api_key
    def api_update_cron_job(cron_job_id):
        job = _engine("registry").update_cron_job(cron_job_id, **_body())
        return jsonify({"cron_job": job.to_dict()})

    @app.route("/api/cron/<cron_job_id>", methods=["DELETE"])
    @require_api_key
    def api_delete_cron_job(cron_job_id):
        _engine("registry").delete_cron_job(cron_job_id)
        return jsonify({"deleted": cron_job_id})

    @app.route("/api/cron/<cron_job_id>/trigger", methods=["POST"])
    @require_api_key
    def api_trigger_cron_job(cron_job_id):
        result = _engine("triggers").trigger_cron_job(cron_job_id)
        return jsonify(result.to_dict())

    @app.route("/api/events")
    def api_events():
        limit = request.args.get("limit", 50, type=int)
        entity_id = request.args.get("entity_id")
        return jsonify({"events": _engine("store").recent_events(entity_id, limit)})


# ── Main ─────────────────────────────────────────────────────────────────────

def main():
    parser = argparse.ArgumentParser(description="Task Board Server")
    parser.add_argument("--host", default="127.0.0.1",
                        help="Bind address (use 0.0.0.0 to expose on network)")
    parser.add_argument("--port", type=int, default=3000)
    parser.add_argument("--db", help="Path to taskboard.db (overrides TASKBOARD_DB env var)")
    parser.add_argument("--config", help="Path to taskboard.yaml")
    args = parser.parse_args()

    cfg = Config.load(args.config)
    if args.db:
        cfg.db_path = os.path.expanduser(args.db)

    logging.basicConfig(
        level=getattr(logging, cfg.log_level.upper(), logging.INFO),
        format="%(asctime)s [taskboard] %(levelname)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    app = create_app(cfg)
    app.logger.info(f"Task board on http://{args.host}:{args.port} (db: {cfg.db_path})")
    app.run(host=args.host, port=args.port, debug=False, threaded=True)


if __name__ == "__main__":
    main()
