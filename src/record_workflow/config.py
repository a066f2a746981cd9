"""Configuration for the workflow engine.

Configuration is loaded from:
- environment variables
- and a local `.env` file (if present)

Every setting has a working default so an engine can be built with
`WorkflowSettings()` in tests and scripts.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PostActionFailurePolicy = Literal["log", "raise"]


class WorkflowSettings(BaseSettings):
    """Settings for the workflow engine.

    Environment variables:
    - WORKFLOW_DATABASE_PATH
    - LOG_LEVEL                        (optional)
    - WORKFLOW_BUSY_TIMEOUT_MS         (optional)
    - WORKFLOW_POST_ACTION_FAILURE     (optional, "log" or "raise")
    - WORKFLOW_STRICT_FINAL_STATES     (optional)
    - WORKFLOW_SYSTEM_ACTOR            (optional)

    Notes:
        Pydantic-settings supports overriding the env file in tests via:
        `WorkflowSettings(_env_file=path_to_env)`.
    """

    database_path: Path = Field(
        default=Path("workflow.db"),
        validation_alias="WORKFLOW_DATABASE_PATH",
        description="SQLite file holding definitions, instances and history",
    )

    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Root logging level",
    )

    busy_timeout_ms: int = Field(
        default=5000,
        ge=0,
        validation_alias="WORKFLOW_BUSY_TIMEOUT_MS",
        description="How long a writer waits for the database write lock before failing",
    )

    post_action_failure: PostActionFailurePolicy = Field(
        default="log",
        validation_alias="WORKFLOW_POST_ACTION_FAILURE",
        description=(
            "What happens when an action fails after the state write. "
            "'log' records the failure in history and keeps the transition; "
            "'raise' rolls the whole transition back and re-raises."
        ),
    )

    strict_final_states: bool = Field(
        default=False,
        validation_alias="WORKFLOW_STRICT_FINAL_STATES",
        description=(
            "Treat states flagged is_final as terminal: definitions may not declare "
            "outgoing transitions from them and wildcard transitions skip them."
        ),
    )

    system_actor: str = Field(
        default="system",
        validation_alias="WORKFLOW_SYSTEM_ACTOR",
        description="Actor recorded for system-triggered transitions when none is given",
    )

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )
