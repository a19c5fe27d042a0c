"""Tests for WorkflowSettings loading, validation and derived configs."""

import os
from pathlib import Path

import pytest
from pydantic import ValidationError

from src.workflow.capabilities.interfaces import Capability
from src.workflow.capabilities.models import FailureClass
from src.workflow.config import WorkflowSettings, get_settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Remove WORKFLOW_* variables leaking in from the environment."""
    for key in list(os.environ):
        if key.startswith("WORKFLOW_"):
            monkeypatch.delenv(key, raising=False)


class TestDefaults:
    def test_runs_with_no_configuration(self):
        settings = get_settings()

        assert settings.workspace_max_open == 4
        assert settings.workspace_backend == "directory"
        assert settings.max_rework_cycles == 2
        assert settings.capability_base_url is None
        assert settings.database_url is None
        assert settings.event_sink_names() == ["logging", "metrics"]

    def test_stage_timeouts_cover_every_capability(self):
        timeouts = WorkflowSettings().stage_timeouts()

        assert set(timeouts) == set(Capability)
        assert timeouts[Capability.RESOLVER] == 1800.0


class TestEnvironment:
    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("WORKFLOW_WORKSPACE_MAX_OPEN", "8")
        monkeypatch.setenv("WORKFLOW_CAPABILITY_BASE_URL", "https://agents.internal:9000")
        monkeypatch.setenv("WORKFLOW_EVENT_SINKS", " Logging , stream,")

        settings = get_settings()

        assert settings.workspace_max_open == 8
        assert settings.capability_base_url == "https://agents.internal:9000"
        assert settings.event_sink_names() == ["logging", "stream"]

    def test_blank_urls_mean_unset(self, monkeypatch):
        monkeypatch.setenv("WORKFLOW_CAPABILITY_BASE_URL", "  ")
        monkeypatch.setenv("WORKFLOW_DATABASE_URL", "")

        settings = get_settings()

        assert settings.capability_base_url is None
        assert settings.database_url is None


class TestValidation:
    @pytest.mark.parametrize(
        "field,value",
        [
            ("workspace_base_path", "relative/path"),
            ("workspace_backend", "svn"),
            ("workspace_max_open", 0),
            ("scheduler_max_concurrency", 0),
            ("resolve_max_attempts", 0),
            ("max_rework_cycles", -1),
            ("task_deadline_seconds", 0),
            ("review_timeout_seconds", -5),
            ("retry_jitter_ratio", 1.5),
            ("capability_base_url", "ftp://agents"),
            ("database_url", "mysql://db"),
            ("port", 70000),
        ],
    )
    def test_invalid_values_rejected(self, field, value):
        with pytest.raises(ValidationError):
            WorkflowSettings(**{field: value})

    def test_git_backend_requires_repository(self):
        with pytest.raises(ValidationError, match="repository_path"):
            WorkflowSettings(workspace_backend="git")

    def test_retry_delay_bounds_checked(self):
        with pytest.raises(ValidationError):
            WorkflowSettings(retry_base_delay_seconds=10.0, retry_max_delay_seconds=5.0)

    def test_backend_name_is_normalised(self):
        settings = WorkflowSettings(workspace_backend=" GIT ", repository_path="/srv/repo")

        assert settings.workspace_backend == "git"


class TestDerivedConfigs:
    def test_retry_policies_use_per_stage_attempts(self):
        settings = WorkflowSettings(
            analyze_max_attempts=4,
            resolve_max_attempts=2,
            retry_timeout_budget=1,
            retry_jitter_ratio=0.0,
        )

        policies = settings.retry_policies()

        assert policies[Capability.ANALYZER].max_attempts == 4
        assert policies[Capability.RESOLVER].max_attempts == 2
        assert policies[Capability.RESOLVER].class_budgets == {FailureClass.TIMEOUT: 1}
        assert policies[Capability.REVIEWER].jitter_ratio == 0.0

    def test_breaker_config(self):
        config = WorkflowSettings(breaker_failure_threshold=2, breaker_open_seconds=15).breaker_config()

        assert config.failure_threshold == 2
        assert config.open_duration_seconds == 15
        assert config.failure_window_seconds == 300.0

    def test_workspace_config(self):
        config = WorkflowSettings(
            workspace_base_path="/tmp/ws",
            workspace_max_open=3,
            branch_prefix="bot",
        ).workspace_config()

        assert config.base_path == Path("/tmp/ws")
        assert config.max_open == 3
        assert config.branch_prefix == "bot"
        assert config.retention_days == 7

    def test_orchestrator_config(self):
        settings = WorkflowSettings(task_deadline_seconds=900, max_rework_cycles=0, review_timeout_seconds=45)

        config = settings.orchestrator_config()

        assert config.task_deadline_seconds == 900
        assert config.max_rework_cycles == 0
        assert config.stage_timeout(Capability.REVIEWER) == 45
        assert settings.stage_timeout_for(Capability.REVIEWER) == 45
