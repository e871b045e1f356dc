import logging
import time
from dataclasses import replace
from typing import Dict, List, Optional, Sequence

from bidopt.bidding.bandit import BanditStrategy, calculate_ucb_bid_suggestion
from bidopt.bidding.config import EngineConfig, config
from bidopt.bidding.market_curve import (
    MarketCurveService,
    calculate_optimal_bid,
    perform_marginal_analysis,
)
from bidopt.bidding.model import DecisionTreePredictor
from bidopt.bidding.policy import Action, Leaf, PolicyNode, build_search_ad_policy, execute_policy
from bidopt.bidding.schema import (
    AlgorithmSource,
    ExpectedImpact,
    MarketCurveModel,
    OptimizationSuggestion,
    Priority,
    SuggestionType,
    TargetPerformance,
)
from bidopt.monitoring.metrics import SUGGESTIONS

logger = logging.getLogger(__name__)

# Every source must name the metric its expected impact is projected on.
_IMPACT_METRIC: Dict[AlgorithmSource, str] = {
    AlgorithmSource.MARKET_CURVE: "profit",
    AlgorithmSource.DECISION_TREE: "acos",
    AlgorithmSource.BANDIT: "roas",
    AlgorithmSource.RULE_BASED: "sales",
}
_missing = set(AlgorithmSource) - set(_IMPACT_METRIC)
if _missing:
    raise RuntimeError(f"No impact metric for algorithm sources: {sorted(s.value for s in _missing)}")


def impact_metric(source: AlgorithmSource) -> str:
    return _IMPACT_METRIC[source]


class SearchAdOptimizationEngine:
    """
    Routes each target through the bid policy and the estimators behind it.

    Responsibilities:
        1. Policy traversal (fixed, hand-authored rules)
        2. Market curve optimization for targets inside the ACoS target band
        3. CR blending with the decision tree when an active model exists
        4. UCB1-Tuned fallback when the curve is not trusted
        5. Placement multiplier suggestions

    Attributes:
        curve_service (MarketCurveService): Builds and stores market curves.
        predictor (DecisionTreePredictor): Optional CR/CV tree predictor.
        policy (PolicyNode): Root of the decision policy, built once.
    """

    def __init__(
        self,
        curve_service: MarketCurveService,
        predictor: Optional[DecisionTreePredictor] = None,
        conf: Optional[EngineConfig] = None,
        policy: Optional[PolicyNode] = None,
    ):
        self.conf = conf or config.engine
        self.curve_service = curve_service
        self.predictor = predictor
        self.policy = policy if policy is not None else build_search_ad_policy(self.conf)

    def generate_suggestion(self, account_id: str, performance: TargetPerformance) -> Optional[OptimizationSuggestion]:
        """
        Produce at most one suggestion for a target. Returns None when the
        policy says to maintain the current bid.
        """
        leaf, path = execute_policy(performance, self.policy)

        if leaf.action == Action.USE_MARKET_CURVE:
            if not self.conf.market_curve_enabled:
                return None
            return self._from_market_curve(account_id, performance, leaf, path)

        if leaf.action == Action.MAINTAIN:
            return None

        return self._from_leaf(performance, leaf, path)

    def _current_bid(self, performance: TargetPerformance) -> float:
        return performance.current_bid if performance.current_bid > 0 else self.conf.min_bid

    def _clamp_bid(self, bid: float) -> float:
        return max(self.conf.min_bid, min(self.conf.max_bid, bid))

    def _from_market_curve(
        self, account_id: str, performance: TargetPerformance, leaf: Leaf, path: List[str]
    ) -> Optional[OptimizationSuggestion]:
        model = self.curve_service.build_for_target(account_id, performance)
        model, confidence, blend = self._blend_with_tree(account_id, performance, model)

        if confidence < self.conf.curve_confidence_threshold:
            logger.debug(
                f"Target {performance.target_id}: curve confidence {confidence:.2f} below "
                f"{self.conf.curve_confidence_threshold}, deferring to bandit"
            )
            if self.conf.bandit_fallback:
                return self._from_bandit(performance, path, curve_confidence=confidence)
            return None

        current = self._current_bid(performance)
        suggested = self._clamp_bid(model.optimal_bid)
        change = (suggested - current) / current
        limited = max(-self.conf.max_bid_adjustment, min(self.conf.max_bid_adjustment, change))
        final_bid = round(current * (1 + limited), 2)

        current_profit = performance.sales - performance.cost
        expected_change = (
            (model.max_profit - current_profit) / abs(current_profit or 1) if model.max_profit > 0 else 0.0
        )
        marginal = perform_marginal_analysis(
            model.impression_curve,
            model.ctr_curve,
            model.conversion,
            current,
            min_bid=self.conf.min_bid,
            max_bid=self.conf.max_bid,
        )

        return self._emit(OptimizationSuggestion(
            target_id=performance.target_id,
            target_name=performance.target_name,
            target_type=performance.target_type,
            suggestion_type=SuggestionType.BID_ADJUSTMENT,
            priority=Priority.HIGH if abs(limited) > 0.2 else Priority.MEDIUM,
            current_value=performance.current_bid,
            suggested_value=final_bid,
            change_percent=limited,
            confidence=confidence,
            reasoning=(
                f"Market curve optimum is ${model.optimal_bid:.2f} "
                f"with expected profit margin {model.profit_margin * 100:.1f}%"
            ),
            algorithm_source=AlgorithmSource.MARKET_CURVE,
            expected_impact=ExpectedImpact(
                metric=impact_metric(AlgorithmSource.MARKET_CURVE),
                current_value=current_profit,
                expected_value=model.max_profit,
                change_percent=expected_change,
            ),
            algorithm_data={
                "path": path,
                "market_curve": {
                    "optimal_bid": model.optimal_bid,
                    "max_profit": model.max_profit,
                    "profit_margin": model.profit_margin,
                    "break_even_cpc": model.break_even_cpc,
                    "data_points": model.data_points,
                    "cvr": model.conversion.cvr,
                    "aov": model.conversion.aov,
                },
                "marginal_analysis": {
                    "current_marginal_profit": marginal.current_marginal_profit,
                    "optimal_marginal_profit": marginal.optimal_marginal_profit,
                    "max_profit_bid": marginal.max_profit_bid,
                },
                "blend": blend,
            },
        ))

    def _blend_with_tree(self, account_id: str, performance: TargetPerformance, model: MarketCurveModel):
        """
        Blend the curve's CVR with the tree-predicted CR, weighted by the two
        confidences, and re-derive the optimum. Returns (model, confidence, blend info).
        """
        if (
            not self.conf.blend_with_tree
            or self.predictor is None
            or performance.features is None
            or not self.predictor.has_active_model(account_id, "cr")
        ):
            return model, model.confidence, None

        prediction = self.predictor.predict_keyword_performance(account_id, performance.features)
        total = model.confidence + prediction.confidence
        if total <= 0:
            return model, model.confidence, None

        w_curve = model.confidence / total
        w_tree = prediction.confidence / total
        cvr = w_curve * model.conversion.cvr + w_tree * prediction.predicted_cr
        conversion = replace(model.conversion, cvr=cvr)
        optimal = calculate_optimal_bid(model.impression_curve, model.ctr_curve, conversion, min_bid=self.conf.min_bid)
        blended = replace(
            model,
            conversion=conversion,
            optimal_bid=optimal.optimal_bid,
            max_profit=optimal.max_profit,
            profit_margin=optimal.profit_margin,
            break_even_cpc=optimal.break_even_cpc,
        )
        confidence = w_curve * model.confidence + w_tree * prediction.confidence
        blend = {
            "curve_cvr": model.conversion.cvr,
            "tree_cr": prediction.predicted_cr,
            "curve_weight": w_curve,
            "tree_weight": w_tree,
        }
        return blended, confidence, blend

    def _from_bandit(
        self, performance: TargetPerformance, path: List[str], curve_confidence: float
    ) -> Optional[OptimizationSuggestion]:
        current = self._current_bid(performance)
        result = calculate_ucb_bid_suggestion(
            current,
            performance.roas,
            performance.clicks,
            performance.total_clicks or performance.clicks,
            performance.reward_variance,
            self.conf.target_roas,
            self.conf.bandit,
        )
        suggested = round(self._clamp_bid(result.suggested_bid), 2)
        change = (suggested - current) / current
        if abs(change) < 1e-9:
            return None

        return self._emit(OptimizationSuggestion(
            target_id=performance.target_id,
            target_name=performance.target_name,
            target_type=performance.target_type,
            suggestion_type=SuggestionType.BID_ADJUSTMENT,
            priority=Priority.LOW if result.strategy == BanditStrategy.EXPLORE else Priority.MEDIUM,
            current_value=performance.current_bid,
            suggested_value=suggested,
            change_percent=change,
            confidence=result.confidence,
            reasoning=f"Market curve not trusted (confidence {curve_confidence:.2f}); {result.reasoning}",
            algorithm_source=AlgorithmSource.BANDIT,
            expected_impact=ExpectedImpact(
                metric=impact_metric(AlgorithmSource.BANDIT),
                current_value=performance.roas,
                expected_value=performance.roas / (1 + change * 0.5),
                change_percent=1 / (1 + change * 0.5) - 1,
            ),
            algorithm_data={
                "path": path,
                "bandit": {
                    "strategy": result.strategy.value,
                    "ucb_score": result.ucb_score,
                    "exploration_bonus": result.exploration_bonus,
                },
                "curve_confidence": curve_confidence,
            },
        ))

    def _from_leaf(self, performance: TargetPerformance, leaf: Leaf, path: List[str]) -> OptimizationSuggestion:
        current = self._current_bid(performance)
        if leaf.action == Action.PAUSE:
            suggestion_type = SuggestionType.PAUSE
            suggested, change = 0.0, -1.0
        elif leaf.action == Action.ENABLE:
            suggestion_type = SuggestionType.ENABLE
            suggested, change = current, 0.0
        else:
            suggestion_type = SuggestionType.BID_ADJUSTMENT
            suggested = round(self._clamp_bid(current * (1 + leaf.adjustment)), 2)
            change = (suggested - current) / current

        return self._emit(OptimizationSuggestion(
            target_id=performance.target_id,
            target_name=performance.target_name,
            target_type=performance.target_type,
            suggestion_type=suggestion_type,
            priority=leaf.priority,
            current_value=performance.current_bid,
            suggested_value=suggested,
            change_percent=change,
            confidence=leaf.confidence,
            reasoning=leaf.reasoning,
            algorithm_source=AlgorithmSource.DECISION_TREE,
            expected_impact=ExpectedImpact(
                metric=impact_metric(AlgorithmSource.DECISION_TREE),
                current_value=performance.acos,
                expected_value=performance.acos * (1 - change * 0.5),
                change_percent=-change * 0.5,
            ),
            algorithm_data={"path": path, "action": leaf.action.value},
        ))

    def _emit(self, suggestion: OptimizationSuggestion) -> OptimizationSuggestion:
        SUGGESTIONS.labels(
            algorithm_source=suggestion.algorithm_source.value,
            priority=suggestion.priority.value,
        ).inc()
        return suggestion

    def batch_generate(self, account_id: str, performances: Sequence[TargetPerformance]) -> List[OptimizationSuggestion]:
        """
        Suggestions for many targets, ranked by priority then confidence.
        A target that raises is logged and skipped.
        """
        start = time.perf_counter()
        suggestions = []
        for performance in performances:
            try:
                suggestion = self.generate_suggestion(account_id, performance)
            except Exception as e:
                logger.error(f"Suggestion failed for target {performance.target_id}: {e}", exc_info=True)
                continue
            if suggestion is not None:
                suggestions.append(suggestion)

        suggestions.sort(key=lambda s: (s.priority.rank, -s.confidence))
        logger.info(
            f"Account {account_id}: {len(suggestions)} suggestions from {len(performances)} targets "
            f"in {(time.perf_counter() - start) * 1000:.1f}ms"
        )
        return suggestions

    def generate_placement_suggestions(
        self, performance: TargetPerformance, current_multipliers: Dict[str, float]
    ) -> List[OptimizationSuggestion]:
        """
        Placement multiplier changes from efficiency = target ACoS / placement ACoS.
        The multiplier moves by sqrt(efficiency), limited to max_bid_adjustment of
        its current value and to [0, placement_max_multiplier].
        """
        suggestions = []
        for placement, current in current_multipliers.items():
            data = performance.placements.get(placement)
            if data is None or data.clicks < self.conf.min_clicks:
                continue

            efficiency = self.conf.target_acos / data.acos if data.cost > 0 and data.sales > 0 else 0.0
            proposed = current * efficiency ** 0.5
            max_change = current * self.conf.max_bid_adjustment
            proposed = max(current - max_change, min(current + max_change, proposed))
            proposed = round(max(0.0, min(self.conf.placement_max_multiplier, proposed)), 2)

            diff = proposed - current
            if abs(diff) <= self.conf.placement_min_change:
                continue

            direction = "raise" if efficiency > 1 else "lower"
            suggestions.append(self._emit(OptimizationSuggestion(
                target_id=performance.target_id,
                target_name=performance.target_name,
                target_type=performance.target_type,
                suggestion_type=SuggestionType.PLACEMENT_ADJUSTMENT,
                priority=Priority.MEDIUM,
                current_value=current,
                suggested_value=proposed,
                change_percent=diff / current if current > 0 else 0.0,
                confidence=self.conf.placement_confidence,
                reasoning=f"{placement} efficiency {efficiency:.0%}; {direction} the placement multiplier",
                algorithm_source=AlgorithmSource.RULE_BASED,
                expected_impact=ExpectedImpact(
                    metric=impact_metric(AlgorithmSource.RULE_BASED),
                    current_value=data.sales,
                    expected_value=data.sales * (1 + diff * efficiency),
                    change_percent=diff * efficiency,
                ),
                algorithm_data={"placement": placement, "efficiency": efficiency},
            )))
        return suggestions
