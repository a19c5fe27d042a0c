"""Stage result models returned by workflow capabilities.

Every capability call (analyze, resolve, review, integrate) produces a
StageResult. The orchestrator only reads the outcome tag and, for
successes, the payload's ``advances`` flag; everything else in a payload
is carried through to the task history for humans and downstream stages.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class StageOutcome(str, Enum):
    """Outcome tag of a single capability call.

    Attributes:
        SUCCESS: The capability finished and produced a payload.
        TRANSIENT_FAILURE: The call failed in a way that may succeed on retry
            (timeouts, rate limits, flaky dependencies, open circuits).
        PERMANENT_FAILURE: Retrying the same input is pointless.
    """

    SUCCESS = "success"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"


class FailureClass(str, Enum):
    """Sub-classification of transient failures.

    Retry budgets can be limited per class so that, for example, repeated
    circuit-open rejections exhaust faster than ordinary flaky errors.
    """

    ERROR = "error"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    CIRCUIT_OPEN = "circuit_open"


class StagePayload(BaseModel):
    """Base class for successful stage payloads."""

    details: Dict[str, Any] = Field(
        default_factory=dict,
        description="Free-form capability output kept for audit",
    )

    @property
    def advances(self) -> bool:
        """Whether the pipeline should move on to the next stage."""
        return True


class AnalysisOutcome(StagePayload):
    """Result of analyzing an issue for feasibility."""

    feasible: bool = Field(..., description="Whether automated resolution should be attempted")
    summary: str = Field(default="", description="Short description of the problem")
    complexity: Optional[str] = Field(default=None, description="Estimated complexity label")
    confidence: Optional[float] = Field(
        default=None,
        ge=0.0,
        le=1.0,
        description="Analyzer confidence in the feasibility verdict",
    )

    @property
    def advances(self) -> bool:
        return self.feasible


class ChangeSet(StagePayload):
    """Changes written into the workspace by the resolver."""

    branch: Optional[str] = Field(default=None, description="Branch the changes were committed to")
    files_changed: List[str] = Field(default_factory=list)
    summary: str = Field(default="")


class ReviewVerdict(StagePayload):
    """Reviewer verdict over a change set."""

    approved: bool = Field(..., description="False when blocking issues were found")
    blocking_issues: List[str] = Field(default_factory=list)
    score: Optional[float] = Field(default=None, ge=0.0, le=100.0)

    @property
    def advances(self) -> bool:
        return self.approved


class IntegrationReference(StagePayload):
    """Reference to the integrated change (e.g. a pull request)."""

    url: Optional[str] = Field(default=None)
    number: Optional[int] = Field(default=None, gt=0)
    branch: Optional[str] = Field(default=None)


@dataclass(frozen=True)
class StageResult:
    """Tagged result of a capability call.

    Use the ``success``, ``transient`` and ``permanent`` constructors rather
    than building instances directly.
    """

    outcome: StageOutcome
    payload: Optional[StagePayload] = None
    reason: Optional[str] = None
    failure_class: Optional[FailureClass] = None

    @classmethod
    def success(cls, payload: Optional[StagePayload] = None) -> "StageResult":
        return cls(outcome=StageOutcome.SUCCESS, payload=payload)

    @classmethod
    def transient(
        cls,
        reason: str,
        failure_class: FailureClass = FailureClass.ERROR,
    ) -> "StageResult":
        return cls(
            outcome=StageOutcome.TRANSIENT_FAILURE,
            reason=reason,
            failure_class=failure_class,
        )

    @classmethod
    def permanent(cls, reason: str) -> "StageResult":
        return cls(outcome=StageOutcome.PERMANENT_FAILURE, reason=reason)

    @property
    def is_success(self) -> bool:
        return self.outcome == StageOutcome.SUCCESS

    @property
    def is_transient(self) -> bool:
        return self.outcome == StageOutcome.TRANSIENT_FAILURE

    @property
    def is_permanent(self) -> bool:
        return self.outcome == StageOutcome.PERMANENT_FAILURE

    @property
    def advances(self) -> bool:
        """True for a success whose payload lets the pipeline move forward."""
        if not self.is_success:
            return False
        return self.payload is None or self.payload.advances
