from dataclasses import dataclass, field
from typing import Tuple


@dataclass(frozen=True)
class CurveConfig:
    """Configuration for market-curve fitting and the profit-maximizing bid search."""
    min_impression_points: int = 5
    min_ctr_points: int = 3
    min_conversion_points: int = 3

    # Fallback curves when history is too thin
    default_a: float = 1000.0
    default_b: float = 0.1
    default_c: float = 100.0
    default_base_ctr: float = 0.01
    default_position_bonus: float = 0.5
    default_top_search_bonus: float = 0.3
    default_cvr: float = 0.05
    default_aov: float = 30.0
    conversion_delay_days: int = 7

    # Fitted offset inside ln(bid + b)
    fitted_b: float = 0.01
    max_position_bonus: float = 2.0
    top_search_share: float = 0.6
    position_max_cpc: float = 5.0

    # Optimal bid search
    search_min_bid: float = 0.02
    search_max_bid: float = 10.0
    search_break_even_multiple: float = 1.5
    grid_step: float = 0.05
    golden_tolerance: float = 0.001
    golden_max_iterations: int = 100
    profit_curve_step: float = 0.1

    # Confidence
    full_confidence_points: int = 30
    min_trusted_confidence: float = 0.3
    fallback_confidence: float = 0.3
    history_days: int = 30


@dataclass(frozen=True)
class TreeConfig:
    """Configuration for the CR/CV regression trees."""
    max_depth: int = 6
    min_samples_split: int = 10
    min_samples_leaf: int = 5
    min_variance: float = 1e-4
    min_training_samples: int = 20

    numeric_features: Tuple[str, ...] = ("word_count", "avg_bid")
    categorical_features: Tuple[str, ...] = (
        "match_type",
        "keyword_type",
        "price_range",
        "competition_level",
    )

    # Fallbacks when no active model exists
    default_cr: float = 0.05
    default_cv: float = 30.0
    confidence_samples: int = 100
    z_score: float = 1.96
    min_prior_variance: float = 1e-4


@dataclass(frozen=True)
class BanditConfig:
    """Thresholds for the UCB1-Tuned explore/exploit bid regimes."""
    exploration_factor: float = 2.0
    variance_weight: float = 0.5

    explore_clicks: int = 10
    exploit_clicks: int = 50

    explore_max_increase: float = 0.10
    exploit_max_increase: float = 0.20

    explore_confidence: float = 0.3
    balanced_confidence_start: float = 0.5
    balanced_confidence_end: float = 1.0
    exploit_confidence_start: float = 0.7
    exploit_confidence_ceiling: float = 0.95
    exploit_confidence_scale: float = 50.0

    # Hard clamp relative to current bid
    min_bid_ratio: float = 0.7
    max_bid_ratio: float = 1.3


@dataclass(frozen=True)
class EngineConfig:
    """Algorithm parameters for the search-ad optimization engine."""
    target_acos: float = 0.25
    target_roas: float = 4.0
    min_bid: float = 0.10
    max_bid: float = 10.00
    max_bid_adjustment: float = 0.50

    # Policy thresholds
    min_clicks: int = 10
    pause_clicks: int = 30
    acos_excellent: float = 0.20
    acos_target: float = 0.35
    acos_high: float = 0.50

    market_curve_enabled: bool = True
    curve_confidence_threshold: float = 0.7
    blend_with_tree: bool = True
    bandit_fallback: bool = True

    # Placement multipliers
    placement_min_change: float = 0.05
    placement_max_multiplier: float = 9.0
    placement_confidence: float = 0.7

    curve: CurveConfig = field(default_factory=CurveConfig)
    tree: TreeConfig = field(default_factory=TreeConfig)
    bandit: BanditConfig = field(default_factory=BanditConfig)


@dataclass(frozen=True)
class SafetyBoundary:
    """Per-account limits gating automatic execution. Percentages are 0-100."""
    max_bid_change_percent: float = 30.0
    max_budget_change_percent: float = 50.0
    max_placement_change_percent: float = 20.0

    max_daily_bid_adjustments: int = 100
    max_daily_budget_adjustments: int = 10
    max_daily_total_adjustments: int = 150

    auto_execute_confidence: float = 80.0
    supervised_confidence: float = 60.0

    # Emergency stop triggers
    acos_increase_threshold: float = 50.0
    spend_overrun_threshold: float = 200.0
    conversion_drop_threshold: float = 70.0
    api_failure_threshold: int = 3


@dataclass(frozen=True)
class NotificationConfig:
    notify_on_success: bool = False
    notify_on_failure: bool = True
    notify_on_blocked: bool = True
    daily_summary: bool = True


@dataclass(frozen=True)
class AutomationConfig:
    """Per-account automation settings. Copied on update, never mutated."""
    enabled: bool = True
    mode: str = "full_auto"  # full_auto | supervised | approval | disabled
    safety: SafetyBoundary = field(default_factory=SafetyBoundary)
    enabled_types: Tuple[str, ...] = (
        "bid_adjustment",
        "budget_adjustment",
        "placement_tilt",
        "negative_keyword",
        "dayparting",
        "auto_rollback",
    )  # target_state (pause/enable) is opt-in
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    counter_retention_days: int = 7


@dataclass(frozen=True)
class RollbackConfig:
    tracking_windows: Tuple[int, ...] = (7, 14, 30)
    retention_days: int = 30


@dataclass(frozen=False)
class AlgorithmParameters:
    """Master configuration for the decision engine."""
    engine: EngineConfig = field(default_factory=EngineConfig)
    automation: AutomationConfig = field(default_factory=AutomationConfig)
    rollback: RollbackConfig = field(default_factory=RollbackConfig)


# Global singleton config instance
config = AlgorithmParameters()
