"""Configuration for the workflow composer.

Configuration is loaded from:
- environment variables
- and a local `.env` file (if present)

Chain details (gas tokens, testnet flags) are static and live in
`chaincron_composer.composer.planning.chains`, not here.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from chaincron_composer.composer.planning.chains import SUPPORTED_CHAINS


class ComposerSettings(BaseSettings):
    """Settings for the composer library.

    Environment variables:
    - LOG_LEVEL                     (optional)
    - CHAINCRON_WORKFLOWS_PATH      (optional)
    - CHAINCRON_DEFAULT_CHAIN       (optional)
    - CHAINCRON_CANCEL_GRACE_MS     (optional)
    - CHAINCRON_DEFAULT_TIMEOUT_MS  (optional)

    Notes:
        Pydantic-settings supports overriding the env file in tests via:
        `ComposerSettings(_env_file=path_to_env)`.
    """

    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Root logging level",
    )

    workflows_path: Path = Field(
        default=Path("agent_state/workflows.json"),
        validation_alias="CHAINCRON_WORKFLOWS_PATH",
        description="JSON file where saved workflow documents are persisted",
    )

    default_chain: str = Field(
        default="flow",
        validation_alias="CHAINCRON_DEFAULT_CHAIN",
        description="Chain charged for steps that do not name one",
    )

    cancel_grace_ms: int = Field(
        default=250,
        ge=0,
        validation_alias="CHAINCRON_CANCEL_GRACE_MS",
        description=(
            "How long a cancelled or timed-out step may take to wind down before it is "
            "detached and reported as running in the background."
        ),
    )

    default_timeout_ms: int | None = Field(
        default=None,
        gt=0,
        validation_alias="CHAINCRON_DEFAULT_TIMEOUT_MS",
        description="Per-step timeout applied when a node does not declare its own.",
    )

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("default_chain")
    @classmethod
    def _known_chain(cls, value: str) -> str:
        key = value.strip().lower()
        if key not in SUPPORTED_CHAINS:
            raise ValueError(f"Unsupported default chain: {value!r}")
        return key
