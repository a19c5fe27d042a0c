"""Workflow configuration using pydantic-settings.

This module defines the WorkflowSettings class that reads configuration
from environment variables with the WORKFLOW_ prefix, plus helpers that
turn the flat settings into the config objects each component takes.
Invalid configuration fails at startup with a pydantic ValidationError.
"""

from pathlib import Path
from typing import Dict, List, Optional

from pydantic import ValidationInfo, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.workflow.capabilities.interfaces import Capability
from src.workflow.capabilities.models import FailureClass
from src.workflow.orchestrator import OrchestratorConfig
from src.workflow.recovery.circuit_breaker import CircuitBreakerConfig
from src.workflow.recovery.retry import RetryPolicy
from src.workflow.workspace.manager import WorkspaceConfig


class WorkflowSettings(BaseSettings):
    """Workflow orchestrator configuration from environment variables.

    All environment variables are prefixed with WORKFLOW_
    (e.g., WORKFLOW_WORKSPACE_MAX_OPEN). Every field has a default so the
    orchestrator can run locally with no configuration.
    """

    model_config = SettingsConfigDict(
        env_prefix="WORKFLOW_",
        case_sensitive=False,
    )

    # -------------------------------------------------------------------------
    # Workspace Configuration
    # -------------------------------------------------------------------------
    # Base path for per-task working trees
    workspace_base_path: str = "/var/lib/workflow/workspaces"

    # "git" creates git worktrees, "directory" creates plain directories
    workspace_backend: str = "directory"

    # Repository checkout worktrees are created from (git backend only)
    repository_path: Optional[str] = None

    # Revision new workspaces branch from
    base_revision: str = "HEAD"

    # Prefix of per-workspace branch names
    branch_prefix: str = "ai-fix"

    # Maximum number of concurrently leased workspaces
    workspace_max_open: int = 4

    # Days parked workspaces are kept before cleanup
    workspace_retention_days: int = 7

    # -------------------------------------------------------------------------
    # Scheduler Configuration
    # -------------------------------------------------------------------------
    # Maximum number of tasks running at once
    scheduler_max_concurrency: int = 4

    # Wait before re-trying admission after the workspace cap was hit
    scheduler_requeue_delay_seconds: float = 5.0

    # -------------------------------------------------------------------------
    # Pipeline Configuration
    # -------------------------------------------------------------------------
    # Overall deadline for one task, from admission to terminal state
    task_deadline_seconds: float = 3600.0

    # Review → resolve loops allowed before escalating
    max_rework_cycles: int = 2

    # Per-stage call timeouts
    analyze_timeout_seconds: float = 300.0
    resolve_timeout_seconds: float = 1800.0
    review_timeout_seconds: float = 600.0
    integrate_timeout_seconds: float = 300.0

    # Per-stage maximum attempts
    analyze_max_attempts: int = 3
    resolve_max_attempts: int = 2
    review_max_attempts: int = 3
    integrate_max_attempts: int = 2

    # -------------------------------------------------------------------------
    # Retry Configuration
    # -------------------------------------------------------------------------
    retry_base_delay_seconds: float = 1.0
    retry_multiplier: float = 2.0
    retry_max_delay_seconds: float = 30.0
    retry_jitter_ratio: float = 0.5

    # Optional per-failure-class limits within one stage execution
    retry_timeout_budget: Optional[int] = None
    retry_circuit_open_budget: Optional[int] = None

    # -------------------------------------------------------------------------
    # Circuit Breaker Configuration
    # -------------------------------------------------------------------------
    breaker_failure_threshold: int = 5
    breaker_open_seconds: float = 60.0
    breaker_failure_window_seconds: Optional[float] = 300.0

    # -------------------------------------------------------------------------
    # Capability Service Configuration
    # -------------------------------------------------------------------------
    # Base URL of the remote capability service; None disables remote wiring
    capability_base_url: Optional[str] = None

    # Bearer token for the capability service
    capability_token: Optional[str] = None

    # HTTP timeout for a single capability request
    capability_request_timeout_seconds: float = 1800.0

    # -------------------------------------------------------------------------
    # Persistence and Observability
    # -------------------------------------------------------------------------
    # PostgreSQL connection string; None keeps tasks in memory
    database_url: Optional[str] = None

    # Comma-separated event sinks: logging, metrics, stream
    event_sinks: str = "logging,metrics"

    # -------------------------------------------------------------------------
    # Server Configuration
    # -------------------------------------------------------------------------
    host: str = "0.0.0.0"
    port: int = 8080

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator("workspace_base_path")
    @classmethod
    def validate_workspace_path(cls, v: str) -> str:
        """Validate that workspace base path is an absolute path."""
        if not Path(v).is_absolute():
            raise ValueError("workspace_base_path must be an absolute path")
        return v

    @field_validator("workspace_backend")
    @classmethod
    def validate_workspace_backend(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("git", "directory"):
            raise ValueError("workspace_backend must be 'git' or 'directory'")
        return v

    @field_validator(
        "workspace_max_open",
        "scheduler_max_concurrency",
        "workspace_retention_days",
        "breaker_failure_threshold",
        "analyze_max_attempts",
        "resolve_max_attempts",
        "review_max_attempts",
        "integrate_max_attempts",
    )
    @classmethod
    def validate_at_least_one(cls, v: int, info: ValidationInfo) -> int:
        if v < 1:
            raise ValueError(f"{info.field_name} must be at least 1")
        return v

    @field_validator("max_rework_cycles")
    @classmethod
    def validate_rework_cycles(cls, v: int) -> int:
        if v < 0:
            raise ValueError("max_rework_cycles cannot be negative")
        return v

    @field_validator(
        "task_deadline_seconds",
        "analyze_timeout_seconds",
        "resolve_timeout_seconds",
        "review_timeout_seconds",
        "integrate_timeout_seconds",
        "breaker_open_seconds",
        "capability_request_timeout_seconds",
        "scheduler_requeue_delay_seconds",
    )
    @classmethod
    def validate_positive(cls, v: float, info: ValidationInfo) -> float:
        if v <= 0:
            raise ValueError(f"{info.field_name} must be positive")
        return v

    @field_validator("retry_jitter_ratio")
    @classmethod
    def validate_jitter(cls, v: float) -> float:
        if not 0 <= v <= 1:
            raise ValueError("retry_jitter_ratio must be between 0 and 1")
        return v

    @field_validator("capability_base_url")
    @classmethod
    def validate_capability_url(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        if not v.startswith(("http://", "https://")):
            raise ValueError("capability_base_url must start with http:// or https://")
        return v

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        if not v.startswith(("postgresql://", "postgres://")):
            raise ValueError(
                "database_url must start with postgresql:// or postgres://"
            )
        return v

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        if not 1 <= v <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return v

    @model_validator(mode="after")
    def validate_git_backend(self) -> "WorkflowSettings":
        if self.workspace_backend == "git" and not self.repository_path:
            raise ValueError("repository_path is required for the git workspace backend")
        if self.retry_max_delay_seconds < self.retry_base_delay_seconds:
            raise ValueError("retry_max_delay_seconds must be >= retry_base_delay_seconds")
        return self

    # -------------------------------------------------------------------------
    # Component configuration
    # -------------------------------------------------------------------------
    def retry_policy_for(self, capability: Capability) -> RetryPolicy:
        max_attempts = {
            Capability.ANALYZER: self.analyze_max_attempts,
            Capability.RESOLVER: self.resolve_max_attempts,
            Capability.REVIEWER: self.review_max_attempts,
            Capability.INTEGRATOR: self.integrate_max_attempts,
        }[capability]

        class_budgets: Dict[FailureClass, int] = {}
        if self.retry_timeout_budget is not None:
            class_budgets[FailureClass.TIMEOUT] = self.retry_timeout_budget
        if self.retry_circuit_open_budget is not None:
            class_budgets[FailureClass.CIRCUIT_OPEN] = self.retry_circuit_open_budget

        return RetryPolicy(
            max_attempts=max_attempts,
            base_delay_seconds=self.retry_base_delay_seconds,
            multiplier=self.retry_multiplier,
            max_delay_seconds=self.retry_max_delay_seconds,
            jitter_ratio=self.retry_jitter_ratio,
            class_budgets=class_budgets,
        )

    def retry_policies(self) -> Dict[Capability, RetryPolicy]:
        return {capability: self.retry_policy_for(capability) for capability in Capability}

    def stage_timeouts(self) -> Dict[Capability, float]:
        return {
            Capability.ANALYZER: self.analyze_timeout_seconds,
            Capability.RESOLVER: self.resolve_timeout_seconds,
            Capability.REVIEWER: self.review_timeout_seconds,
            Capability.INTEGRATOR: self.integrate_timeout_seconds,
        }

    def stage_timeout_for(self, capability: Capability) -> float:
        return self.stage_timeouts()[capability]

    def orchestrator_config(self) -> OrchestratorConfig:
        return OrchestratorConfig(
            task_deadline_seconds=self.task_deadline_seconds,
            max_rework_cycles=self.max_rework_cycles,
            stage_timeouts=self.stage_timeouts(),
        )

    def breaker_config(self) -> CircuitBreakerConfig:
        return CircuitBreakerConfig(
            failure_threshold=self.breaker_failure_threshold,
            open_duration_seconds=self.breaker_open_seconds,
            failure_window_seconds=self.breaker_failure_window_seconds,
        )

    def workspace_config(self) -> WorkspaceConfig:
        return WorkspaceConfig(
            base_path=Path(self.workspace_base_path),
            max_open=self.workspace_max_open,
            base_revision=self.base_revision,
            branch_prefix=self.branch_prefix,
            retention_days=self.workspace_retention_days,
        )

    def event_sink_names(self) -> List[str]:
        return [name.strip().lower() for name in self.event_sinks.split(",") if name.strip()]


def get_settings() -> WorkflowSettings:
    """Create and return a WorkflowSettings instance.

    Raises:
        pydantic.ValidationError: If any field is invalid.
    """
    return WorkflowSettings()
