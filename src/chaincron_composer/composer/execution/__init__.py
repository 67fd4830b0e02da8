"""Plan execution.

The runner walks a plan stage by stage and hands each node to an injected
`StepExecutor`. Dry runs use a deterministic stub executor.
"""

__all__: list[str] = []
