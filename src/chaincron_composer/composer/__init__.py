"""Workflow composition, planning and execution.

- `graph`: the editable workflow graph, its validator and variable flow
- `planning`: staged execution plans, estimates and the re-plan session
- `execution`: the step executor interface and the plan runner
- `storage`: workflow documents and their JSON-file store
"""
