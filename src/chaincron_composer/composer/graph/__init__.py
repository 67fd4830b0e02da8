"""The editable workflow graph.

Nodes and connections are owned by the composing user. Everything else here
(validation results, visible variables) is derived from them and recomputed on
every structural edit.
"""

__all__: list[str] = []
