"""
Unit Tests for the Delegation Analytics Engine

Test coverage for:
- Role metrics formulas (success, efficiency, speed, quality, workload)
- Monotonic delegation efficiency
- Common paths with first-seen tie breaking
- Redelegation hotspots with deduplicated reasons
- Bottleneck detection and thresholds
- Success breakdown, handoff time, weekly trend, health score
- Completion times derived before filtering
- Closed tasks complete their final record
- Filter date normalization and validation
- Malformed history exclusion and empty input
"""

from datetime import datetime, timezone

import pytest

from task_workflow.analytics_engine import (
    DelegationAnalyticsEngine,
    get_delegation_analytics,
    get_role_metrics,
    resolve_completion_times,
)
from task_workflow.analytics_model import AnalyticsFilter
from task_workflow.config import WorkflowConfig
from task_workflow.errors import InvalidRequestError
from task_workflow.role_registry import Role
from task_workflow.task_model import DelegationKind


# -----------------------------------------------------------------------------
# Fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
def engine(config):
    return DelegationAnalyticsEngine(config)


@pytest.fixture
def rejected_once(make_record):
    """
    intake -> architecture (6h), rejected back (1h), redo (3h), returned.
    """
    return [
        make_record("T1", 1, Role.INTAKE, Role.ARCHITECTURE, 0),
        make_record(
            "T1", 2, Role.ARCHITECTURE, Role.INTAKE, 6,
            kind=DelegationKind.REDELEGATION, success=False, reason="missing diagram",
        ),
        make_record("T1", 3, Role.INTAKE, Role.ARCHITECTURE, 7),
        make_record("T1", 4, Role.ARCHITECTURE, Role.INTAKE, 10, kind=DelegationKind.COMPLETION),
    ]


@pytest.fixture
def review_loop(make_record):
    """implementation sends work back to architecture three times."""
    rework = dict(kind=DelegationKind.REDELEGATION, success=False)
    return [
        make_record("T3", 1, Role.INTAKE, Role.ARCHITECTURE, 0),
        make_record("T3", 2, Role.ARCHITECTURE, Role.IMPLEMENTATION, 1),
        make_record("T3", 3, Role.IMPLEMENTATION, Role.ARCHITECTURE, 2, reason="tests fail", **rework),
        make_record("T3", 4, Role.ARCHITECTURE, Role.IMPLEMENTATION, 3),
        make_record("T3", 5, Role.IMPLEMENTATION, Role.ARCHITECTURE, 4, reason="tests fail", **rework),
        make_record("T3", 6, Role.ARCHITECTURE, Role.IMPLEMENTATION, 5),
        make_record("T3", 7, Role.IMPLEMENTATION, Role.ARCHITECTURE, 6, reason="lint", **rework),
    ]


@pytest.fixture
def slow_research(make_record):
    """research holds the task for 30 hours."""
    return [
        make_record("T2", 1, Role.INTAKE, Role.RESEARCH, 0),
        make_record("T2", 2, Role.RESEARCH, Role.ARCHITECTURE, 30),
        make_record("T2", 3, Role.ARCHITECTURE, Role.IMPLEMENTATION, 31),
        make_record("T2", 4, Role.IMPLEMENTATION, Role.ARCHITECTURE, 32, kind=DelegationKind.COMPLETION),
    ]


def _metric(report, role):
    return next(m for m in report.metrics if m.role == role)


# -----------------------------------------------------------------------------
# Role Metrics
# -----------------------------------------------------------------------------
class TestRoleMetrics:
    """Per-role formulas."""

    def test_architecture_metrics(self, engine, rejected_once):
        report = engine.get_role_metrics({"T1": rejected_once})
        architecture = _metric(report, Role.ARCHITECTURE)

        assert architecture.tasks_received == 2
        assert architecture.tasks_completed == 2
        assert architecture.average_completion_time == 4.5
        assert architecture.success_rate == 100.0
        assert architecture.delegation_efficiency == 100.0
        assert architecture.workload_share == 50.0
        # 0.4*100 + 0.3*(100 - 4.5/24*100) + 0.3*100
        assert architecture.quality_score == 94.4

    def test_intake_metrics_penalize_redelegation(self, engine, rejected_once):
        report = engine.get_role_metrics({"T1": rejected_once})
        intake = _metric(report, Role.INTAKE)

        assert intake.tasks_received == 2
        assert intake.redelegations_received == 1
        assert intake.success_rate == 50.0
        # 50 - 20 * 0.5
        assert intake.delegation_efficiency == 40.0
        # the final return has no completion time
        assert intake.tasks_completed == 1
        assert intake.average_completion_time == 1.0
        assert intake.quality_score == pytest.approx(60.75, abs=0.1)

    def test_roles_without_records_are_omitted(self, engine, rejected_once):
        report = engine.get_role_metrics({"T1": rejected_once})
        assert [m.role for m in report.metrics] == [Role.INTAKE, Role.ARCHITECTURE]

    def test_no_completion_means_zero_speed(self, engine, make_record):
        report = engine.get_role_metrics({"T5": [make_record("T5", 1, Role.INTAKE, Role.RESEARCH, 0)]})
        research = _metric(report, Role.RESEARCH)
        assert research.tasks_completed == 0
        # 0.4*100 + 0.3*0 + 0.3*100
        assert research.quality_score == 70.0

    def test_role_filter_limits_metrics(self, engine, rejected_once, review_loop):
        report = engine.get_role_metrics(
            {"T1": rejected_once, "T3": review_loop},
            AnalyticsFilter(role=Role.IMPLEMENTATION),
        )
        assert [m.role for m in report.metrics] == [Role.IMPLEMENTATION]
        assert report.metrics[0].tasks_received == 3

    def test_efficiency_monotonic_in_redelegations(self):
        previous = None
        for redelegated in range(0, 8):
            efficiency = DelegationAnalyticsEngine.delegation_efficiency(
                received=5 + redelegated, successful=5, redelegated=redelegated
            )
            if previous is not None:
                assert efficiency <= previous
            assert efficiency >= 0
            previous = efficiency

    def test_efficiency_never_negative(self):
        assert DelegationAnalyticsEngine.delegation_efficiency(4, 0, 4) == 0.0


# -----------------------------------------------------------------------------
# Delegation Flow
# -----------------------------------------------------------------------------
class TestDelegationFlow:
    """Paths, hotspots, matrix."""

    def test_common_paths_ties_keep_first_seen(self, engine, rejected_once):
        paths = engine.common_paths(rejected_once)
        assert [(p.from_role, p.to_role, p.count) for p in paths] == [
            (Role.INTAKE, Role.ARCHITECTURE, 2),
            (Role.ARCHITECTURE, Role.INTAKE, 2),
        ]
        assert paths[0].percentage == 50.0

    def test_common_paths_sorted_and_limited(self, review_loop):
        engine = DelegationAnalyticsEngine(WorkflowConfig(top_paths_limit=1))
        paths = engine.common_paths(review_loop)
        assert len(paths) == 1
        assert (paths[0].from_role, paths[0].to_role, paths[0].count) == (
            Role.ARCHITECTURE, Role.IMPLEMENTATION, 3,
        )

    def test_zero_limit_returns_no_paths(self, engine, review_loop):
        assert engine.common_paths(review_loop, limit=0) == []

    def test_hotspots(self, engine, rejected_once, review_loop):
        analytics = engine.get_delegation_analytics({"T1": rejected_once, "T3": review_loop})
        hotspots = analytics.hotspots
        assert [(h.from_role, h.to_role, h.count) for h in hotspots] == [
            (Role.IMPLEMENTATION, Role.ARCHITECTURE, 3),
            (Role.ARCHITECTURE, Role.INTAKE, 1),
        ]
        assert hotspots[0].reasons == ("tests fail", "lint")

    def test_transition_matrix(self, engine, rejected_once):
        analytics = engine.get_delegation_analytics({"T1": rejected_once})
        matrix = analytics.matrix_dict()
        assert matrix["intake"]["architecture"] == 2
        assert matrix["architecture"]["intake"] == 2
        assert matrix["review"]["intake"] == 0
        assert set(matrix) == {r.value for r in Role}


# -----------------------------------------------------------------------------
# Bottlenecks
# -----------------------------------------------------------------------------
class TestBottlenecks:
    """Roles holding work well above average."""

    def test_slow_role_flagged(self, engine, slow_research):
        bottlenecks = engine.bottlenecks(resolve_completion_times(slow_research))
        assert [b.role for b in bottlenecks] == [Role.RESEARCH]
        assert bottlenecks[0].average_wait_hours == 30.0
        assert bottlenecks[0].impact == "high"
        assert bottlenecks[0].sample_size == 1

    def test_balanced_roles_not_flagged(self, engine, rejected_once):
        assert engine.bottlenecks(resolve_completion_times(rejected_once)) == []

    def test_absolute_threshold(self, rejected_once):
        engine = DelegationAnalyticsEngine(WorkflowConfig(bottleneck_threshold_hours=2.0))
        bottlenecks = engine.bottlenecks(resolve_completion_times(rejected_once))
        assert [b.role for b in bottlenecks] == [Role.ARCHITECTURE]
        assert bottlenecks[0].threshold_hours == 2.0
        assert bottlenecks[0].impact == "high"

    def test_no_completed_records(self, engine, make_record):
        assert engine.bottlenecks([make_record("T5", 1, Role.INTAKE, Role.RESEARCH, 0)]) == []


# -----------------------------------------------------------------------------
# Aggregate Analytics
# -----------------------------------------------------------------------------
class TestDelegationAnalytics:
    """Cross-task aggregates."""

    def test_success_and_timing(self, engine, rejected_once):
        analytics = engine.get_delegation_analytics({"T1": rejected_once})
        assert analytics.total_records == 4
        assert analytics.task_count == 1
        assert analytics.success.successful == 3
        assert analytics.success.failed == 1
        assert analytics.success.pending == 0
        assert analytics.success.success_rate == 75.0
        # gaps of 6h, 1h, 3h
        assert analytics.average_handoff_hours == 3.3
        assert analytics.average_redelegations_per_task == 1.0

    def test_pending_records_excluded_from_rate(self, engine, make_record):
        records = [
            make_record("T6", 1, Role.INTAKE, Role.RESEARCH, 0),
            make_record("T6", 2, Role.RESEARCH, Role.ARCHITECTURE, 1, success=None),
        ]
        success = engine.get_delegation_analytics({"T6": records}).success
        assert success.pending == 1
        assert success.success_rate == 100.0

    def test_handoff_window_ignores_long_gaps(self, engine, make_record):
        records = [
            make_record("T7", 1, Role.INTAKE, Role.RESEARCH, 0),
            make_record("T7", 2, Role.RESEARCH, Role.ARCHITECTURE, 2),
            make_record("T7", 3, Role.ARCHITECTURE, Role.IMPLEMENTATION, 2 + 200),
        ]
        assert engine.average_handoff_hours(records) == 2.0

    def test_health_score(self, engine, rejected_once):
        health = engine.get_delegation_analytics({"T1": rejected_once}).health
        # 0.3*75 + 0.25*(100 - 2*3.33) + 0.25*(100 - 20) + 0.2*mean(40, 100)
        assert health.score == 80
        assert health.grade == "B"
        assert dict(health.factors) == {
            "success": 75, "handoff": 93, "redelegation": 80, "efficiency": 70,
        }

    def test_health_grades(self):
        assert DelegationAnalyticsEngine.workflow_health(100, 0, 0, [100]).grade == "A"
        assert DelegationAnalyticsEngine.workflow_health(0, 100, 10, [0]).grade == "F"

    def test_weekly_trend_oldest_first(self, engine, rejected_once, at):
        analytics = engine.get_delegation_analytics({"T1": rejected_once}, now=at(24 * 14 + 12))
        assert analytics.weekly_trend.successful == (0, 3, 0, 0)
        assert analytics.weekly_trend.failed == (0, 1, 0, 0)

    def test_completion_times_resolved_before_filtering(self, engine, rejected_once, at):
        report = engine.get_role_metrics({"T1": rejected_once}, AnalyticsFilter(end_date=at(7)))
        architecture = _metric(report, Role.ARCHITECTURE)
        # record 3 completes at hour 10, outside the window
        assert architecture.tasks_completed == 2
        assert architecture.average_completion_time == 4.5

    def test_date_bounds_are_inclusive(self, engine, rejected_once, at):
        analytics = engine.get_delegation_analytics(
            {"T1": rejected_once}, AnalyticsFilter(start_date=at(6), end_date=at(7))
        )
        assert analytics.total_records == 2

    def test_task_filter(self, engine, rejected_once, review_loop):
        analytics = engine.get_delegation_analytics(
            {"T1": rejected_once, "T3": review_loop}, AnalyticsFilter(task_id="T3")
        )
        assert analytics.task_count == 1
        assert analytics.total_records == 7

    def test_inputs_not_mutated(self, engine, rejected_once):
        before = list(rejected_once)
        engine.get_delegation_analytics({"T1": rejected_once})
        assert rejected_once == before
        assert all(r.completed_at is None for r in rejected_once)


# -----------------------------------------------------------------------------
# Edge Cases
# -----------------------------------------------------------------------------
class TestEdgeCases:
    """Empty input and malformed histories."""

    def test_empty_input_returns_zero_aggregates(self, engine):
        analytics = engine.get_delegation_analytics({})
        assert analytics.total_records == 0
        assert analytics.task_count == 0
        assert analytics.common_paths == ()
        assert analytics.hotspots == ()
        assert analytics.bottlenecks == ()
        assert analytics.success.success_rate == 0.0
        assert analytics.average_handoff_hours == 0.0
        assert analytics.weekly_trend.successful == (0, 0, 0, 0)
        assert analytics.health.score == 0
        assert analytics.health.grade == "F"
        assert engine.get_role_metrics({}).metrics == ()

    def test_malformed_history_excluded_and_reported(self, engine, rejected_once, make_record):
        broken = [
            make_record("BAD", 1, Role.INTAKE, Role.RESEARCH, 0),
            make_record("BAD", 2, Role.REVIEW, Role.INTAKE, 1),
        ]
        analytics = engine.get_delegation_analytics({"T1": rejected_once, "BAD": broken})
        assert analytics.excluded_task_count == 1
        assert analytics.excluded_task_ids == ("BAD",)
        assert analytics.total_records == 4

        report = engine.get_role_metrics({"T1": rejected_once, "BAD": broken})
        assert report.excluded_task_count == 1

    def test_module_functions(self, rejected_once):
        assert get_role_metrics({"T1": rejected_once}).metrics
        assert get_delegation_analytics({"T1": rejected_once}).total_records == 4

    def test_to_dict_is_plain_data(self, engine, rejected_once):
        data = engine.get_delegation_analytics({"T1": rejected_once}).to_dict()
        assert data["common_paths"][0]["from_role"] == "intake"
        assert data["health"]["grade"] == "B"
        assert data["transition_matrix"]["architecture"]["intake"] == 2


# -----------------------------------------------------------------------------
# Closed Tasks
# -----------------------------------------------------------------------------
class TestClosedTasks:
    """Closing a task writes no record; its completed_at ends the final one."""

    def test_final_record_completed_by_task_close(self, engine, rejected_once, at):
        report = engine.get_role_metrics({"T1": rejected_once}, completions={"T1": at(12)})
        intake = _metric(report, Role.INTAKE)
        assert intake.tasks_received == 2
        assert intake.tasks_completed == 2
        # 1h for the rejection, 2h from the return to the close
        assert intake.average_completion_time == 1.5

    def test_open_task_keeps_final_record_pending(self, engine, rejected_once, at):
        report = engine.get_role_metrics({"T1": rejected_once}, completions={"T2": at(12)})
        assert _metric(report, Role.INTAKE).tasks_completed == 1

    def test_close_before_final_record_is_ignored(self, rejected_once, at):
        resolved = resolve_completion_times(rejected_once, closed_at=at(9))
        assert resolved[-1].completed_at is None

    def test_module_functions_accept_completions(self, rejected_once, at):
        analytics = get_delegation_analytics({"T1": rejected_once}, completions={"T1": at(12)})
        assert analytics.total_records == 4
        report = get_role_metrics({"T1": rejected_once}, completions={"T1": at(12)})
        assert _metric(report, Role.INTAKE).tasks_completed == 2


# -----------------------------------------------------------------------------
# Filter
# -----------------------------------------------------------------------------
class TestAnalyticsFilter:
    """Date bounds are normalized to UTC and validated on construction."""

    def test_naive_dates_taken_as_utc(self):
        criteria = AnalyticsFilter(start_date=datetime(2026, 1, 1), end_date=datetime(2026, 2, 1))
        assert criteria.start_date == datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert criteria.end_date.tzinfo is timezone.utc

    def test_naive_filter_against_stored_records(self, engine, rejected_once):
        analytics = engine.get_delegation_analytics(
            {"T1": rejected_once}, AnalyticsFilter(start_date=datetime(2026, 1, 1))
        )
        assert analytics.total_records == 4

        report = get_role_metrics({"T1": rejected_once}, AnalyticsFilter(end_date=datetime(2026, 1, 1)))
        assert report.metrics == ()

    def test_inverted_dates_refused(self, at):
        with pytest.raises(InvalidRequestError) as exc_info:
            AnalyticsFilter(start_date=at(2), end_date=at(1))
        assert exc_info.value.code == "INVALID_REQUEST"

    def test_equal_dates_allowed(self, at):
        assert AnalyticsFilter(start_date=at(1), end_date=at(1)).start_date == at(1)
