import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from bidopt.bidding.schema import OptimizationSuggestion, SuggestionType


class AutomationMode(str, Enum):
    FULL_AUTO = "full_auto"
    SUPERVISED = "supervised"
    APPROVAL = "approval"
    DISABLED = "disabled"


class ExecutionType(str, Enum):
    BID_ADJUSTMENT = "bid_adjustment"
    BUDGET_ADJUSTMENT = "budget_adjustment"
    PLACEMENT_TILT = "placement_tilt"
    NEGATIVE_KEYWORD = "negative_keyword"
    DAYPARTING = "dayparting"
    AUTO_ROLLBACK = "auto_rollback"
    TARGET_STATE = "target_state"


class ExecutionStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    BLOCKED = "blocked"
    ROLLED_BACK = "rolled_back"


class ConfidenceTier(str, Enum):
    AUTO = "auto"
    SUPERVISED = "supervised"
    MANUAL = "manual"


_SUGGESTION_TO_EXECUTION = {
    SuggestionType.BID_ADJUSTMENT: ExecutionType.BID_ADJUSTMENT,
    SuggestionType.PAUSE: ExecutionType.TARGET_STATE,
    SuggestionType.ENABLE: ExecutionType.TARGET_STATE,
    SuggestionType.PLACEMENT_ADJUSTMENT: ExecutionType.PLACEMENT_TILT,
}

TARGET_STATES = ("paused", "enabled")

_SUGGESTION_TO_STATE = {
    SuggestionType.PAUSE: "paused",
    SuggestionType.ENABLE: "enabled",
}


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


@dataclass(slots=True)
class ExecutionRequest:
    """
    One candidate change for the controller. `confidence` is 0-100.
    """

    execution_type: ExecutionType
    target_id: str
    current_value: float
    new_value: float
    confidence: float
    reason: str = ""
    target_type: str = "keyword"
    target_name: str = ""
    campaign_id: str = ""
    placement: Optional[str] = None
    keyword_text: Optional[str] = None
    target_state: Optional[str] = None  # paused | enabled, for TARGET_STATE

    @classmethod
    def from_suggestion(cls, suggestion: OptimizationSuggestion, campaign_id: str = "") -> "ExecutionRequest":
        placement = suggestion.algorithm_data.get("placement")
        return cls(
            execution_type=_SUGGESTION_TO_EXECUTION[suggestion.suggestion_type],
            target_id=suggestion.target_id,
            current_value=suggestion.current_value,
            new_value=suggestion.suggested_value,
            confidence=suggestion.confidence * 100,
            reason=suggestion.reasoning,
            target_type="placement" if placement else suggestion.target_type,
            target_name=suggestion.target_name,
            campaign_id=campaign_id,
            placement=placement,
            target_state=_SUGGESTION_TO_STATE.get(suggestion.suggestion_type),
        )


@dataclass(slots=True)
class ExecutionResult:
    """Audit record. Status is written once, except success -> rolled_back."""

    account_id: str
    execution_type: ExecutionType
    target_type: str
    target_id: str
    target_name: str
    previous_value: float
    new_value: float
    confidence: float
    status: ExecutionStatus
    reason: str
    executed_at: datetime
    tier: Optional[ConfidenceTier] = None
    executed_by: str = "auto"
    id: str = field(default_factory=lambda: _new_id("exec"))


@dataclass(slots=True)
class ExecutionBatch:
    account_id: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    results: List[ExecutionResult] = field(default_factory=list)
    id: str = field(default_factory=lambda: _new_id("batch"))

    def _count(self, status: ExecutionStatus) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def total_items(self) -> int:
        return len(self.results)

    @property
    def success_items(self) -> int:
        return self._count(ExecutionStatus.SUCCESS)

    @property
    def failed_items(self) -> int:
        return self._count(ExecutionStatus.FAILED)

    @property
    def skipped_items(self) -> int:
        return self._count(ExecutionStatus.SKIPPED)

    @property
    def blocked_items(self) -> int:
        return self._count(ExecutionStatus.BLOCKED)
