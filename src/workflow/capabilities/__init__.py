"""Capability result models.

Interfaces live in capabilities/interfaces.py and HTTP adapters in
capabilities/remote.py; they are imported from those modules directly
because they depend on the state and workspace packages.
"""

from src.workflow.capabilities.models import (
    AnalysisOutcome,
    ChangeSet,
    FailureClass,
    IntegrationReference,
    ReviewVerdict,
    StageOutcome,
    StagePayload,
    StageResult,
)

__all__ = [
    "AnalysisOutcome",
    "ChangeSet",
    "FailureClass",
    "IntegrationReference",
    "ReviewVerdict",
    "StageOutcome",
    "StagePayload",
    "StageResult",
]
