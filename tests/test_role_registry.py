"""
Unit Tests for the Role Registry

Test coverage for:
- Legal transition graph
- InvalidTransitionError details
- next_role decision table
- Immutable role metadata
"""

import pytest

from task_workflow.errors import InvalidTransitionError
from task_workflow.role_registry import (
    CANONICAL_STAGES,
    LEGAL_TRANSITIONS,
    ROLE_INFO,
    Role,
    RoutingContext,
    describe_graph,
    get_role_info,
    is_legal_transition,
    legal_successors,
    next_role,
    parse_role,
    require_legal_transition,
    stage_index,
)


# -----------------------------------------------------------------------------
# Transition Graph
# -----------------------------------------------------------------------------
class TestTransitionGraph:
    """Fixed from -> to edges."""

    def test_every_role_has_successors(self):
        """No role is a dead end."""
        for role in Role:
            assert LEGAL_TRANSITIONS[role]

    def test_forward_edges_are_legal(self):
        assert is_legal_transition(Role.INTAKE, Role.RESEARCH)
        assert is_legal_transition(Role.INTAKE, Role.ARCHITECTURE)
        assert is_legal_transition(Role.ARCHITECTURE, Role.IMPLEMENTATION)
        assert is_legal_transition(Role.IMPLEMENTATION, Role.REVIEW)

    def test_skipping_stages_is_illegal(self):
        assert not is_legal_transition(Role.INTAKE, Role.IMPLEMENTATION)
        assert not is_legal_transition(Role.INTAKE, Role.REVIEW)
        assert not is_legal_transition(Role.RESEARCH, Role.REVIEW)

    def test_self_edges_are_illegal(self):
        for role in Role:
            assert not is_legal_transition(role, role)

    def test_successors_in_canonical_order(self):
        assert legal_successors(Role.ARCHITECTURE) == [Role.INTAKE, Role.RESEARCH, Role.IMPLEMENTATION]

    def test_graph_is_read_only(self):
        with pytest.raises(TypeError):
            LEGAL_TRANSITIONS[Role.INTAKE] = frozenset()

    def test_describe_graph_is_serializable(self):
        graph = describe_graph()
        assert list(graph) == [r.value for r in CANONICAL_STAGES]
        assert graph["implementation"] == ["architecture", "review"]


class TestRequireLegalTransition:
    """InvalidTransitionError carries enough detail to diagnose."""

    def test_legal_edge_passes(self):
        require_legal_transition(Role.REVIEW, Role.INTAKE)

    def test_illegal_edge_raises_with_pair(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            require_legal_transition(Role.INTAKE, Role.REVIEW, task_id="T9")

        error = exc_info.value
        assert error.code == "INVALID_TRANSITION"
        assert error.details["task_id"] == "T9"
        assert error.details["from_role"] == "intake"
        assert error.details["to_role"] == "review"
        assert error.details["allowed"] == ["research", "architecture"]


# -----------------------------------------------------------------------------
# Routing
# -----------------------------------------------------------------------------
class TestNextRole:
    """Default forward role per decision table."""

    def test_intake_goes_to_architecture_by_default(self):
        assert next_role(Role.INTAKE) == Role.ARCHITECTURE

    def test_intake_goes_to_research_when_needed(self):
        assert next_role(Role.INTAKE, RoutingContext(needs_research=True)) == Role.RESEARCH

    def test_research_goes_to_architecture(self):
        assert next_role(Role.RESEARCH, RoutingContext(needs_research=True)) == Role.ARCHITECTURE

    def test_implementation_waits_for_work_units(self):
        context = RoutingContext(total_work_units=4, completed_work_units=3)
        assert next_role(Role.IMPLEMENTATION, context) == Role.IMPLEMENTATION

    def test_implementation_advances_when_units_complete(self):
        context = RoutingContext(total_work_units=4, completed_work_units=4)
        assert next_role(Role.IMPLEMENTATION, context) == Role.REVIEW

    def test_review_rejected_goes_back_to_architecture(self):
        assert next_role(Role.REVIEW, RoutingContext(review_rejected=True)) == Role.ARCHITECTURE

    def test_review_accepted_returns_to_intake(self):
        assert next_role(Role.REVIEW) == Role.INTAKE

    def test_suggestions_stay_on_the_graph(self):
        """Every forward suggestion is a legal edge (or implementation staying put)."""
        for role in Role:
            for context in (RoutingContext(), RoutingContext(needs_research=True, review_rejected=True)):
                target = next_role(role, context)
                assert target == role or is_legal_transition(role, target)


# -----------------------------------------------------------------------------
# Metadata
# -----------------------------------------------------------------------------
class TestRoleMetadata:
    """Single immutable metadata table."""

    def test_every_role_has_metadata(self):
        assert set(ROLE_INFO) == set(Role)
        assert get_role_info(Role.REVIEW).display_name == "Review"

    def test_metadata_table_is_read_only(self):
        with pytest.raises(TypeError):
            ROLE_INFO[Role.INTAKE] = None

    def test_parse_role_accepts_values(self):
        assert parse_role("research") is Role.RESEARCH
        assert parse_role(Role.REVIEW) is Role.REVIEW

    def test_parse_role_rejects_unknown(self):
        with pytest.raises(ValueError, match="Unknown role"):
            parse_role("qa")

    def test_stage_index(self):
        assert stage_index(Role.INTAKE) == 0
        assert stage_index(Role.REVIEW) == 4
