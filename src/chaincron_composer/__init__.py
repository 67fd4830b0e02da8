"""ChainCron workflow composer.

The composition engine behind the ChainCron workflow builder:
- a typed graph model of trigger/action/condition/output steps
- structural validation and typed variable flow
- staged, concurrency-aware execution plans with cost and risk estimates
- dry-run and live execution through an injected step executor
- JSON persistence of workflow documents
"""

__version__ = "0.1.0"

from chaincron_composer.composer.config import ComposerSettings

__all__ = ["__version__", "ComposerSettings"]
