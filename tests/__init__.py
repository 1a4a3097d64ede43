"""
Test Suite for the Task Workflow package

- role registry, delegation chain and status projector (pure core)
- analytics engine formulas and edge cases
- task store persistence, workflow service and HTTP router
"""
