"""FastAPI server adapter for chaincron-composer.

Design intent:
- Keep planning and execution logic in `chaincron_composer.composer.*`
- Keep server-specific concerns (routing, CORS, persistence wiring) here
"""

from __future__ import annotations

__all__ = ["create_app"]

from chaincron_composer.server.app import create_app
