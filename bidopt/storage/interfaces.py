from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Protocol

from bidopt.bidding.schema import MarketCurveModel, PerformanceSample


@dataclass(slots=True)
class StoredTree:
    """A persisted tree blob. Only one version per (account, model_type) is active."""

    account_id: str
    model_type: str  # "cr" | "cv"
    version: int
    tree: Dict[str, Any]
    metadata: Dict[str, Any] = field(default_factory=dict)
    is_active: bool = True
    created_at: Optional[datetime] = None


class PerformanceRepository(Protocol):
    def get_performance_history(
        self,
        account_id: str,
        target_type: str,
        target_id: str,
        start: date,
        end: date,
    ) -> List[PerformanceSample]:
        ...

    def save_curve_model(self, account_id: str, target_type: str, target_id: str, model: MarketCurveModel) -> None:
        ...

    def get_curve_model(self, account_id: str, target_type: str, target_id: str) -> Optional[MarketCurveModel]:
        ...


class ModelRepository(Protocol):
    def save_tree_model(self, account_id: str, model_type: str, tree: Dict[str, Any], metadata: Dict[str, Any]) -> int:
        """Persist a new version, deactivate older ones, return the new version number."""
        ...

    def get_active_tree_model(self, account_id: str, model_type: str) -> Optional[StoredTree]:
        ...

    def list_tree_models(self, account_id: str, model_type: str) -> List[StoredTree]:
        ...


class AdPlatform(Protocol):
    """Applies changes on the advertising platform. Any exception means the change failed."""

    def update_keyword_bid(self, account_id: str, target_id: str, bid: float) -> None:
        ...

    def update_campaign_budget(self, account_id: str, campaign_id: str, budget: float) -> None:
        ...

    def update_placement_multiplier(self, account_id: str, campaign_id: str, placement: str, multiplier: float) -> None:
        ...

    def add_negative_keyword(self, account_id: str, campaign_id: str, keyword_text: str) -> None:
        ...

    def update_target_state(self, account_id: str, target_id: str, state: str) -> None:
        """Pause or re-enable a target. `state` is "paused" or "enabled"."""
        ...


class Notifier(Protocol):
    def notify(self, account_id: str, title: str, message: str, severity: str = "info") -> None:
        ...
