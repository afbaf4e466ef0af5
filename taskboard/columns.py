"""
Column role inference from display names.

Column names are free text ("Ideas", "To-Do", "In progress"). When a column
is created without an explicit role, its role is looked up here once and
stored; workflow rules only ever look at the stored role. Only exact names
(after normalizing case, separators and whitespace) are classified; anything
else is OTHER, so a name like "Not done" never takes part in automation.
"""
import re
from typing import Dict, Iterable, List, Optional, Tuple

from .errors import InvalidArgument
from .schema import ColumnRole


# Normalized names → role
EXACT_NAMES: Dict[str, ColumnRole] = {
    "ideas": ColumnRole.BACKLOG,
    "backlog": ColumnRole.BACKLOG,
    "todo": ColumnRole.TODO,
    "to do": ColumnRole.TODO,
    "in progress": ColumnRole.IN_PROGRESS,
    "doing": ColumnRole.IN_PROGRESS,
    "review": ColumnRole.REVIEW,
    "in review": ColumnRole.REVIEW,
    "done": ColumnRole.DONE,
}


def normalize_name(name: str) -> str:
    """Lowercase, treat hyphens/underscores as spaces, collapse whitespace."""
    key = re.sub(r"[-_]+", " ", name.strip().lower())
    return re.sub(r"\s+", " ", key).strip()


def infer_role(name: str) -> ColumnRole:
    """Classify a column name into a workflow role; unknown names are OTHER."""
    return EXACT_NAMES.get(normalize_name(name), ColumnRole.OTHER)


def resolve_role(name: str, role: Optional[str] = None) -> ColumnRole:
    """Use an explicit role when given, otherwise infer from the name."""
    if isinstance(role, ColumnRole):
        return role
    if role:
        try:
            return ColumnRole.from_str(role)
        except KeyError:
            valid = ", ".join(r.value for r in ColumnRole)
            raise InvalidArgument(f"Invalid column role {role!r}. Must be one of {valid}")
    return infer_role(name)


def is_auto_assign_transition(source: ColumnRole, destination: ColumnRole) -> bool:
    """True for the one column transition that triggers auto-assignment."""
    return source == ColumnRole.BACKLOG and destination == ColumnRole.TODO


def layout_roles(names: Iterable[str]) -> List[Tuple[str, ColumnRole]]:
    """Pair each column name of a board template with its inferred role."""
    return [(name, infer_role(name)) for name in names]
