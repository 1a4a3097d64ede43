"""
Role Registry

Fixed set of workflow roles, their display metadata, and the directed graph
of legal handoffs between them.

Roles:
    intake -> research -> architecture -> implementation -> review

The graph and the routing table are module constants built once at import;
nothing here holds runtime state.
"""

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Optional, Dict, List, FrozenSet, Mapping, Tuple

from .errors import InvalidTransitionError


# -----------------------------------------------------------------------------
# Roles
# -----------------------------------------------------------------------------
class Role(str, Enum):
    """Workflow roles. Closed set."""
    INTAKE = "intake"
    RESEARCH = "research"
    ARCHITECTURE = "architecture"
    IMPLEMENTATION = "implementation"
    REVIEW = "review"


@dataclass(frozen=True)
class RoleInfo:
    """Display metadata for a role."""
    role: Role
    display_name: str
    emoji: str
    description: str


ROLE_INFO: Mapping[Role, RoleInfo] = MappingProxyType({
    Role.INTAKE: RoleInfo(
        Role.INTAKE, "Intake", "📥",
        "Scopes the task, delegates work and closes it out",
    ),
    Role.RESEARCH: RoleInfo(
        Role.RESEARCH, "Research", "🔬",
        "Investigates unknowns before design starts",
    ),
    Role.ARCHITECTURE: RoleInfo(
        Role.ARCHITECTURE, "Architecture", "🏗️",
        "Produces the implementation plan and work breakdown",
    ),
    Role.IMPLEMENTATION: RoleInfo(
        Role.IMPLEMENTATION, "Implementation", "👨‍💻",
        "Implements the planned work units",
    ),
    Role.REVIEW: RoleInfo(
        Role.REVIEW, "Review", "🔍",
        "Verifies the implementation against the plan",
    ),
})

# Canonical forward order, used for stage-based progress estimates
CANONICAL_STAGES: Tuple[Role, ...] = (
    Role.INTAKE,
    Role.RESEARCH,
    Role.ARCHITECTURE,
    Role.IMPLEMENTATION,
    Role.REVIEW,
)

# -----------------------------------------------------------------------------
# Transition Graph
# -----------------------------------------------------------------------------

# Map of from_role -> legal to_roles
LEGAL_TRANSITIONS: Mapping[Role, FrozenSet[Role]] = MappingProxyType({
    Role.INTAKE: frozenset({Role.RESEARCH, Role.ARCHITECTURE}),
    Role.RESEARCH: frozenset({Role.ARCHITECTURE, Role.INTAKE}),
    Role.ARCHITECTURE: frozenset({Role.IMPLEMENTATION, Role.RESEARCH, Role.INTAKE}),
    Role.IMPLEMENTATION: frozenset({Role.REVIEW, Role.ARCHITECTURE}),
    Role.REVIEW: frozenset({Role.ARCHITECTURE, Role.INTAKE}),
})


@dataclass(frozen=True)
class RoutingContext:
    """Flags consulted by next_role."""
    needs_research: bool = False
    review_rejected: bool = False
    total_work_units: int = 0
    completed_work_units: int = 0

    @property
    def all_work_units_complete(self) -> bool:
        return self.completed_work_units >= self.total_work_units


def parse_role(value) -> Role:
    """Accept a Role or its string value."""
    if isinstance(value, Role):
        return value
    try:
        return Role(value)
    except ValueError:
        raise ValueError(f"Unknown role '{value}'. Valid roles: {[r.value for r in Role]}")


def get_role_info(role: Role) -> RoleInfo:
    return ROLE_INFO[role]


def legal_successors(role: Role) -> List[Role]:
    """Legal targets of a role, in canonical stage order."""
    targets = LEGAL_TRANSITIONS.get(role, frozenset())
    return [r for r in CANONICAL_STAGES if r in targets]


def is_legal_transition(from_role: Role, to_role: Role) -> bool:
    """True if the edge exists in the fixed graph."""
    return to_role in LEGAL_TRANSITIONS.get(from_role, frozenset())


def require_legal_transition(from_role: Role, to_role: Role, task_id: Optional[str] = None) -> None:
    """Raise InvalidTransitionError unless from_role -> to_role is legal."""
    if not is_legal_transition(from_role, to_role):
        raise InvalidTransitionError(
            from_role=from_role.value,
            to_role=to_role.value,
            task_id=task_id,
            allowed=[r.value for r in legal_successors(from_role)],
        )


def next_role(current_role: Role, context: Optional[RoutingContext] = None) -> Role:
    """
    Default forward role for current_role given routing flags.

    implementation stays with itself until every work unit is complete.
    """
    context = context or RoutingContext()

    if current_role == Role.INTAKE:
        return Role.RESEARCH if context.needs_research else Role.ARCHITECTURE
    if current_role == Role.RESEARCH:
        return Role.ARCHITECTURE
    if current_role == Role.ARCHITECTURE:
        return Role.IMPLEMENTATION
    if current_role == Role.IMPLEMENTATION:
        return Role.REVIEW if context.all_work_units_complete else Role.IMPLEMENTATION
    if current_role == Role.REVIEW:
        return Role.ARCHITECTURE if context.review_rejected else Role.INTAKE
    raise ValueError(f"Unknown role '{current_role}'")


def stage_index(role: Role) -> int:
    return CANONICAL_STAGES.index(role)


def describe_graph() -> Dict[str, List[str]]:
    """Serializable view of the transition graph."""
    return {role.value: [r.value for r in legal_successors(role)] for role in CANONICAL_STAGES}
