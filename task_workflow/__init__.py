"""
Task Workflow Module

Role-delegation state machine and analytics for work items moving through
the specialist roles of the development workflow:

    intake -> research -> architecture -> implementation -> review

Components:
- Role Registry: fixed roles, role metadata and the legal handoff graph
- Delegation Chain Tracker: validates and records handoffs, completions and
  redelegations using an explicit per-task delegation stack
- Workflow Status Projector: read-only point-in-time view of a task
- Analytics Aggregator: role efficiency, common paths, redelegation
  hotspots, bottlenecks and workflow health across many tasks

The core never performs I/O. Persistence lives in task_store, the exposed
operations in workflow_service, and the HTTP surface in workflow_router.
"""

__version__ = "1.2.0"
