"""
Workload-balanced agent selection.

A task entering work goes to the ACTIVE agent with the fewest open tasks in
the same project. The pool is the project's own agents when any of them is
ACTIVE, otherwise every ACTIVE agent. The policy only places the one task it
is asked about; it never rebalances existing assignments.
"""
import logging
from typing import Dict, List, Optional, Sequence

from .schema import Agent, AgentStatus
from .store import StoreTx

logger = logging.getLogger(__name__)


def candidate_pool(tx: StoreTx, project_id: str) -> List[Agent]:
    """ACTIVE project agents, falling back to all ACTIVE agents."""
    candidates = tx.project_agents(project_id, status=AgentStatus.ACTIVE)
    if not candidates:
        candidates = tx.list_agents(status=AgentStatus.ACTIVE)
    return candidates


def agent_workloads(tx: StoreTx, project_id: str, agents: Sequence[Agent]) -> Dict[str, int]:
    """Open (non-done) task count per agent within the project; zero when idle."""
    counts = tx.open_task_counts(project_id, [a.id for a in agents])
    return {a.id: counts.get(a.id, 0) for a in agents}


def rank_candidates(candidates: Sequence[Agent], workloads: Dict[str, int]) -> List[Agent]:
    """Order by (workload, name); name ties fall back to exact name, then id."""
    return sorted(
        candidates,
        key=lambda a: (workloads.get(a.id, 0), a.name.casefold(), a.name, a.id),
    )


def pick_agent_for_task(tx: StoreTx, project_id: str) -> Optional[Agent]:
    """
    Pick the least-loaded eligible agent for a task in `project_id`.

    Returns None when no ACTIVE agent exists anywhere; that is a normal
    outcome, not an error.
    """
    candidates = candidate_pool(tx, project_id)
    if not candidates:
        return None
    workloads = agent_workloads(tx, project_id, candidates)
    chosen = rank_candidates(candidates, workloads)[0]
    logger.debug(f"Picked {chosen.name} ({workloads[chosen.id]} open) from {len(candidates)} candidates")
    return chosen
