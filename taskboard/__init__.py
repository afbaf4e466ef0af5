# Task board engine: dense column ordering, moves, and workflow automation
#
# Components:
#   schema.py     - Data model (Task, Column, Board, Agent, CronJob, TaskTemplate)
#   store.py      - SQLite persistence layer with explicit transactions
#   reindex.py    - Position deltas for insert / remove / move-within
#   columns.py    - Column role inference (backlog, todo, done, ...)
#   board.py      - Task operations: create, move, update, delete, threads
#   assignment.py - Least-loaded agent selection for auto-assignment
#   triggers.py   - Cron job template materialization
#   events.py     - Thread notes, audit log, subscribers, webhook notifier
#   projects.py   - Projects, default boards, agents, memberships, cron jobs
#   config.py     - YAML / environment configuration
#   errors.py     - NotFound / InvalidArgument
