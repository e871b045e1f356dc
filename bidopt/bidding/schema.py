from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


@dataclass(frozen=True, slots=True)
class PerformanceSample:
    """
    One historical observation of a bid object at a given bid.
    Immutable input to curve fitting.
    """

    bid: float
    effective_cpc: float = 0.0
    impressions: int = 0
    clicks: int = 0
    spend: float = 0.0
    sales: float = 0.0
    orders: int = 0
    ctr: float = 0.0
    cvr: float = 0.0

    @classmethod
    def from_totals(cls, bid: float, impressions: int, clicks: int, spend: float, sales: float, orders: int) -> "PerformanceSample":
        """Build a sample from raw totals, deriving CPC, CTR and CVR."""
        return cls(
            bid=bid,
            effective_cpc=spend / clicks if clicks > 0 else bid,
            impressions=impressions,
            clicks=clicks,
            spend=spend,
            sales=sales,
            orders=orders,
            ctr=clicks / impressions if impressions > 0 else 0.0,
            cvr=orders / clicks if clicks > 0 else 0.0,
        )


@dataclass(frozen=True, slots=True)
class ImpressionCurve:
    a: float
    b: float
    c: float
    r2: float


@dataclass(frozen=True, slots=True)
class CTRCurve:
    base_ctr: float
    position_bonus: float
    top_search_bonus: float


@dataclass(frozen=True, slots=True)
class ConversionParams:
    cvr: float
    aov: float
    delay_days: int = 7


@dataclass(frozen=True, slots=True)
class ProfitPoint:
    bid: float
    profit: float


@dataclass(slots=True)
class OptimalBidResult:
    optimal_bid: float
    max_profit: float
    profit_margin: float
    break_even_cpc: float
    profit_curve: List[ProfitPoint] = field(default_factory=list)


@dataclass(slots=True)
class MarginalAnalysis:
    current_bid: float
    optimal_bid: float
    current_marginal_profit: float
    optimal_marginal_profit: float
    break_even_bid: float
    max_profit_bid: float


@dataclass(slots=True)
class MarketCurveModel:
    """
    Fitted market curves for one bid object plus the derived optimum.
    Keyed by (account, target_type, target_id); rebuilt and overwritten on demand.
    """

    impression_curve: ImpressionCurve
    ctr_curve: CTRCurve
    conversion: ConversionParams
    optimal_bid: float
    max_profit: float
    profit_margin: float
    break_even_cpc: float
    confidence: float
    data_points: int


@dataclass(frozen=True, slots=True)
class KeywordFeatures:
    """Engineered inputs for the CR/CV regression trees."""

    match_type: str = "broad"
    word_count: int = 1
    keyword_type: str = "generic"
    avg_bid: float = 1.0
    price_range: Optional[str] = None
    competition_level: Optional[str] = None

    def get(self, name: str) -> Any:
        return getattr(self, name)


@dataclass(frozen=True, slots=True)
class TrainingSample:
    features: KeywordFeatures
    cr: float
    cv: float

    def target(self, name: str) -> float:
        return self.cr if name == "cr" else self.cv


class PredictionSource(str, Enum):
    DEFAULT = "default"
    DECISION_TREE = "decision_tree"
    BAYESIAN_UPDATE = "bayesian_update"


@dataclass(slots=True)
class PredictionResult:
    predicted_cr: float
    predicted_cv: float
    cr_low: float
    cr_high: float
    cv_low: float
    cv_high: float
    confidence: float
    sample_count: int
    source: PredictionSource


class AlgorithmSource(str, Enum):
    """Which estimator produced a suggestion. Dispatch on it must be exhaustive."""

    DECISION_TREE = "decision_tree"
    MARKET_CURVE = "market_curve"
    RULE_BASED = "rule_based"
    BANDIT = "bandit"


class SuggestionType(str, Enum):
    BID_ADJUSTMENT = "bid_adjustment"
    PAUSE = "pause"
    ENABLE = "enable"
    PLACEMENT_ADJUSTMENT = "placement_adjustment"


class Priority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    Priority.CRITICAL: 0,
    Priority.HIGH: 1,
    Priority.MEDIUM: 2,
    Priority.LOW: 3,
}


@dataclass(slots=True)
class PlacementPerformance:
    impressions: int = 0
    clicks: int = 0
    cost: float = 0.0
    sales: float = 0.0
    orders: int = 0

    @property
    def acos(self) -> float:
        return self.cost / self.sales if self.sales > 0 else 0.0


@dataclass(slots=True)
class TargetPerformance:
    """
    Aggregated performance of one bid object (keyword or product target)
    over the analysis window. Input to the optimization engine.
    """

    target_id: str
    target_name: str = ""
    target_type: str = "keyword"
    current_bid: float = 1.0
    impressions: int = 0
    clicks: int = 0
    cost: float = 0.0
    sales: float = 0.0
    orders: int = 0
    match_type: str = "broad"
    features: Optional[KeywordFeatures] = None
    total_clicks: int = 0
    reward_variance: float = 0.0
    placements: Dict[str, PlacementPerformance] = field(default_factory=dict)

    @property
    def acos(self) -> float:
        return self.cost / self.sales if self.sales > 0 else 0.0

    @property
    def roas(self) -> float:
        return self.sales / self.cost if self.cost > 0 else 0.0

    @property
    def ctr(self) -> float:
        return self.clicks / self.impressions if self.impressions > 0 else 0.0

    @property
    def cvr(self) -> float:
        return self.orders / self.clicks if self.clicks > 0 else 0.0

    @property
    def cpc(self) -> float:
        return self.cost / self.clicks if self.clicks > 0 else 0.0

    @property
    def profit(self) -> float:
        return self.sales - self.cost


@dataclass(slots=True)
class ExpectedImpact:
    metric: str
    current_value: float
    expected_value: float
    change_percent: float


@dataclass(slots=True)
class OptimizationSuggestion:
    """
    Ephemeral engine output for one target. `confidence` is in [0, 1].
    """

    target_id: str
    target_name: str
    suggestion_type: SuggestionType
    priority: Priority
    current_value: float
    suggested_value: float
    change_percent: float
    confidence: float
    reasoning: str
    algorithm_source: AlgorithmSource
    expected_impact: ExpectedImpact
    target_type: str = "keyword"
    algorithm_data: Dict[str, Any] = field(default_factory=dict)
