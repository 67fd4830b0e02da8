"""Workflow documents and their persistence."""

__all__: list[str] = []
