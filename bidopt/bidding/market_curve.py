import logging
import math
from datetime import date, datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np
from scipy import stats

from bidopt.bidding.config import CurveConfig, config
from bidopt.bidding.schema import (
    ConversionParams,
    CTRCurve,
    ImpressionCurve,
    MarginalAnalysis,
    MarketCurveModel,
    OptimalBidResult,
    PerformanceSample,
    ProfitPoint,
    TargetPerformance,
)
from bidopt.evaluation.metrics import coefficient_of_variation, r_squared
from bidopt.monitoring.metrics import CURVE_FITS
from bidopt.storage.interfaces import PerformanceRepository

logger = logging.getLogger(__name__)

_PHI = (1 + math.sqrt(5)) / 2
_RESPHI = 2 - _PHI


def build_impression_curve(samples: Sequence[PerformanceSample], conf: CurveConfig = None) -> ImpressionCurve:
    """
    Fit Impressions = a * ln(bid + b) + c by least squares.

    Only samples with bid > 0 and impressions > 0 are used. Falls back to the
    configured default curve when fewer than `min_impression_points` remain.
    """
    conf = conf or config.engine.curve
    valid = [s for s in samples if s.impressions > 0 and s.bid > 0]

    if len(valid) < conf.min_impression_points:
        return ImpressionCurve(a=conf.default_a, b=conf.default_b, c=conf.default_c, r2=0.0)

    ln_x = np.log(np.array([s.bid for s in valid], dtype=float) + conf.fitted_b)
    y = np.array([s.impressions for s in valid], dtype=float)

    if np.ptp(ln_x) == 0:
        # A single bid level carries no slope information
        return ImpressionCurve(a=0.0, b=conf.fitted_b, c=float(np.mean(y)), r2=0.0)

    fit = stats.linregress(ln_x, y)
    a, c = float(fit.slope), float(fit.intercept)
    r2 = r_squared(y, a * ln_x + c)

    return ImpressionCurve(
        a=max(a, 0.0),
        b=conf.fitted_b,
        c=max(c, 0.0),
        r2=max(0.0, min(1.0, r2)),
    )


def build_ctr_curve(samples: Sequence[PerformanceSample], conf: CurveConfig = None) -> CTRCurve:
    """
    CTR = base_ctr * (1 + position_bonus * position_score).

    The position bonus compares mean CTR of the higher-bid half against the
    lower-bid half of click-bearing samples.
    """
    conf = conf or config.engine.curve
    valid = [s for s in samples if s.clicks > 0 and s.impressions > 0]

    if len(valid) < conf.min_ctr_points:
        return CTRCurve(
            base_ctr=conf.default_base_ctr,
            position_bonus=conf.default_position_bonus,
            top_search_bonus=conf.default_top_search_bonus,
        )

    base_ctr = sum(s.clicks for s in valid) / sum(s.impressions for s in valid)

    by_bid = sorted(valid, key=lambda s: s.bid, reverse=True)
    split = math.ceil(len(by_bid) / 2)
    top_ctr = float(np.mean([_sample_ctr(s) for s in by_bid[:split]]))
    bottom_ctr = float(np.mean([_sample_ctr(s) for s in by_bid[split:]]))

    if bottom_ctr > 0:
        bonus = (top_ctr - bottom_ctr) / bottom_ctr
    else:
        bonus = conf.default_position_bonus
    bonus = max(0.0, min(conf.max_position_bonus, bonus))

    return CTRCurve(
        base_ctr=base_ctr,
        position_bonus=bonus,
        top_search_bonus=bonus * conf.top_search_share,
    )


def _sample_ctr(sample: PerformanceSample) -> float:
    if sample.ctr > 0:
        return sample.ctr
    return sample.clicks / sample.impressions if sample.impressions > 0 else 0.0


def calculate_conversion_params(samples: Sequence[PerformanceSample], conf: CurveConfig = None) -> ConversionParams:
    conf = conf or config.engine.curve
    valid = [s for s in samples if s.clicks > 0]

    if len(valid) < conf.min_conversion_points:
        return ConversionParams(cvr=conf.default_cvr, aov=conf.default_aov, delay_days=conf.conversion_delay_days)

    clicks = sum(s.clicks for s in valid)
    orders = sum(s.orders for s in valid)
    sales = sum(s.sales for s in valid)

    return ConversionParams(
        cvr=orders / max(clicks, 1),
        aov=sales / orders if orders > 0 else conf.default_aov,
        delay_days=conf.conversion_delay_days,
    )


def calculate_impressions(bid: float, curve: ImpressionCurve) -> float:
    """Expected impressions at `bid`, floored at zero."""
    x = bid + curve.b
    if x <= 0:
        return 0.0
    return max(0.0, curve.a * math.log(x) + curve.c)


def calculate_ctr(bid: float, curve: CTRCurve, max_cpc: float = None) -> float:
    max_cpc = max_cpc or config.engine.curve.position_max_cpc
    position_score = min(bid / max_cpc, 1.0)
    return curve.base_ctr * (1 + curve.position_bonus * position_score)


def calculate_profit(
    bid: float,
    impression_curve: ImpressionCurve,
    ctr_curve: CTRCurve,
    conversion: ConversionParams,
) -> float:
    """Profit = clicks * (cvr * aov - bid), with the bid standing in for CPC."""
    clicks = max(0.0, calculate_impressions(bid, impression_curve) * calculate_ctr(bid, ctr_curve))
    return clicks * (conversion.cvr * conversion.aov - bid)


def golden_section_search(
    f: Callable[[float], float],
    lower: float,
    upper: float,
    tolerance: float = 0.001,
    max_iterations: int = 100,
) -> float:
    """Maximize a unimodal `f` on [lower, upper]."""
    a, b = lower, upper
    x1 = a + _RESPHI * (b - a)
    x2 = b - _RESPHI * (b - a)
    f1, f2 = f(x1), f(x2)

    iterations = 0
    while abs(b - a) > tolerance and iterations < max_iterations:
        if f1 > f2:
            b, x2, f2 = x2, x1, f1
            x1 = a + _RESPHI * (b - a)
            f1 = f(x1)
        else:
            a, x1, f1 = x1, x2, f2
            x2 = b - _RESPHI * (b - a)
            f2 = f(x2)
        iterations += 1

    return (a + b) / 2


def calculate_optimal_bid(
    impression_curve: ImpressionCurve,
    ctr_curve: CTRCurve,
    conversion: ConversionParams,
    min_bid: float = None,
    conf: CurveConfig = None,
) -> OptimalBidResult:
    """
    Find the profit-maximizing bid.

    A coarse grid over [search_min_bid, min(1.5 * break_even, search_max_bid)]
    locates the peak, golden-section search refines it within two grid steps,
    and the result is clipped to [min_bid, break_even].
    """
    conf = conf or config.engine.curve
    min_bid = conf.search_min_bid if min_bid is None else min_bid

    def profit(bid: float) -> float:
        return calculate_profit(bid, impression_curve, ctr_curve, conversion)

    break_even = conversion.cvr * conversion.aov
    lo = conf.search_min_bid
    hi = min(break_even * conf.search_break_even_multiple, conf.search_max_bid)

    best_bid = lo
    if hi >= lo:
        grid = np.arange(lo, hi + 1e-9, conf.grid_step)
        profits = np.array([profit(b) for b in grid])
        best_bid = float(grid[int(np.argmax(profits))])

    lower = max(lo, best_bid - 2 * conf.grid_step)
    upper = min(hi, best_bid + 2 * conf.grid_step)
    if upper > lower:
        optimal = golden_section_search(profit, lower, upper, conf.golden_tolerance, conf.golden_max_iterations)
    else:
        optimal = lower

    if break_even >= min_bid:
        optimal = max(min_bid, min(break_even, optimal))
    else:
        optimal = min_bid

    optimal_bid = round(optimal, 2)
    if break_even >= min_bid and optimal_bid > break_even:
        # Rounding must not lift the bid past break-even
        optimal_bid = math.floor(break_even * 100) / 100

    margin = (break_even - optimal) / break_even if break_even > 0 else 0.0

    curve = [
        ProfitPoint(bid=round(float(b), 2), profit=profit(float(b)))
        for b in (np.arange(lo, hi + 1e-9, conf.profit_curve_step) if hi >= lo else [])
    ]

    return OptimalBidResult(
        optimal_bid=optimal_bid,
        max_profit=round(profit(optimal), 2),
        profit_margin=round(margin, 4),
        break_even_cpc=round(break_even, 2),
        profit_curve=curve,
    )


def calculate_model_confidence(samples: Sequence[PerformanceSample], r2: float, conf: CurveConfig = None) -> float:
    """
    Weighted blend of data volume, fit quality and click consistency.
    Results below `min_trusted_confidence` should not drive decisions.
    """
    conf = conf or config.engine.curve
    if not samples:
        return 0.0

    volume = min(len(samples) / conf.full_confidence_points, 1.0)
    fit = max(r2, 0.0)
    consistency = max(0.0, 1 - coefficient_of_variation([s.clicks for s in samples]))
    return 0.4 * volume + 0.3 * fit + 0.3 * consistency


def build_market_curve(samples: Sequence[PerformanceSample], conf: CurveConfig = None, min_bid: float = None) -> MarketCurveModel:
    conf = conf or config.engine.curve
    impression_curve = build_impression_curve(samples, conf)
    ctr_curve = build_ctr_curve(samples, conf)
    conversion = calculate_conversion_params(samples, conf)
    optimal = calculate_optimal_bid(impression_curve, ctr_curve, conversion, min_bid=min_bid, conf=conf)

    return MarketCurveModel(
        impression_curve=impression_curve,
        ctr_curve=ctr_curve,
        conversion=conversion,
        optimal_bid=optimal.optimal_bid,
        max_profit=optimal.max_profit,
        profit_margin=optimal.profit_margin,
        break_even_cpc=optimal.break_even_cpc,
        confidence=calculate_model_confidence(samples, impression_curve.r2, conf),
        data_points=len(samples),
    )


def generate_profit_curve_data(
    impression_curve: ImpressionCurve,
    ctr_curve: CTRCurve,
    conversion: ConversionParams,
    min_cpc: float = 0.1,
    max_cpc: float = 5.0,
    points: int = 50,
) -> List[Dict[str, float]]:
    """Per-CPC projections for charting the profit curve."""
    rows = []
    for cpc in np.linspace(min_cpc, max_cpc, points + 1):
        cpc = float(cpc)
        impressions = calculate_impressions(cpc, impression_curve)
        clicks = impressions * calculate_ctr(cpc, ctr_curve)
        spend = clicks * cpc
        revenue = clicks * conversion.cvr * conversion.aov
        rows.append({
            "cpc": round(cpc, 2),
            "impressions": round(impressions),
            "clicks": round(clicks),
            "spend": round(spend, 2),
            "revenue": round(revenue, 2),
            "profit": round(revenue - spend, 2),
            "roas": round(revenue / spend, 2) if spend > 0 else 0.0,
            "acos": round(spend / revenue, 4) if revenue > 0 else 0.0,
        })
    return rows


def perform_marginal_analysis(
    impression_curve: ImpressionCurve,
    ctr_curve: CTRCurve,
    conversion: ConversionParams,
    current_bid: float,
    min_bid: float = None,
    max_bid: float = None,
    step: float = 0.02,
) -> MarginalAnalysis:
    """
    Marginal profit along the bid axis. The suggested bid is the profitable
    point whose marginal profit is closest to zero.
    """
    min_bid = config.engine.min_bid if min_bid is None else min_bid
    max_bid = config.engine.max_bid if max_bid is None else max_bid
    break_even = conversion.cvr * conversion.aov
    hi = min(max_bid, break_even * config.engine.curve.search_break_even_multiple)

    if hi < min_bid + step:
        return MarginalAnalysis(
            current_bid=current_bid,
            optimal_bid=round(min_bid, 2),
            current_marginal_profit=0.0,
            optimal_marginal_profit=0.0,
            break_even_bid=round(break_even, 2),
            max_profit_bid=round(min_bid, 2),
        )

    bids = np.arange(min_bid, hi + 1e-9, step)
    profits = np.array([calculate_profit(float(b), impression_curve, ctr_curve, conversion) for b in bids])
    marginal = np.gradient(profits, step)

    max_profit_bid = float(bids[int(np.argmax(profits))])
    profitable = profits > 0
    if profitable.any():
        idx = np.flatnonzero(profitable)[int(np.argmin(np.abs(marginal[profitable])))]
        optimal_bid, optimal_marginal = float(bids[idx]), float(marginal[idx])
    else:
        optimal_bid, optimal_marginal = max_profit_bid, 0.0

    return MarginalAnalysis(
        current_bid=current_bid,
        optimal_bid=round(optimal_bid, 2),
        current_marginal_profit=float(np.interp(current_bid, bids, marginal)),
        optimal_marginal_profit=optimal_marginal,
        break_even_bid=round(break_even, 2),
        max_profit_bid=round(max_profit_bid, 2),
    )


class MarketCurveService:
    """
    Builds, persists and refreshes market curve models for bid objects.

    History is fetched from the repository over the configured window. When
    fewer than `min_impression_points` rows exist, the target's own totals are
    used as a single aggregated sample and the model is marked low confidence.
    """

    def __init__(self, repository: PerformanceRepository, clock: Callable[[], datetime] = None, conf: CurveConfig = None):
        self.repository = repository
        self.clock = clock or datetime.now
        self.conf = conf or config.engine.curve

    def _window(self, days_back: int) -> tuple:
        end: date = self.clock().date()
        return end - timedelta(days=days_back), end

    def build_for_target(self, account_id: str, target: TargetPerformance, days_back: int = None) -> MarketCurveModel:
        start, end = self._window(days_back or self.conf.history_days)
        samples = self.repository.get_performance_history(
            account_id, target.target_type, target.target_id, start, end
        )

        if len(samples) < self.conf.min_impression_points:
            logger.debug(
                f"Target {target.target_id}: {len(samples)} history rows, using aggregated fallback"
            )
            aggregate = PerformanceSample(
                bid=target.current_bid or 1.0,
                effective_cpc=target.cost / max(target.clicks, 1),
                impressions=target.impressions,
                clicks=target.clicks,
                spend=target.cost,
                sales=target.sales,
                orders=target.orders,
                ctr=target.ctr,
                cvr=target.cvr,
            )
            model = build_market_curve([aggregate], self.conf)
            model.data_points = 1
            model.confidence = self.conf.fallback_confidence
            CURVE_FITS.labels(outcome="fallback").inc()
        else:
            model = build_market_curve(samples, self.conf)
            CURVE_FITS.labels(outcome="fitted").inc()

        self.repository.save_curve_model(account_id, target.target_type, target.target_id, model)
        return model

    def get_model(self, account_id: str, target_type: str, target_id: str) -> Optional[MarketCurveModel]:
        return self.repository.get_curve_model(account_id, target_type, target_id)

    def update_all(self, account_id: str, targets: Sequence[TargetPerformance]) -> Dict[str, object]:
        """Rebuild curves for many targets. A failing target is counted and skipped."""
        result = {"updated": 0, "failed": 0, "errors": []}
        for target in targets:
            try:
                self.build_for_target(account_id, target)
                result["updated"] += 1
            except Exception as e:
                logger.error(f"Curve rebuild failed for {target.target_id}: {e}", exc_info=True)
                CURVE_FITS.labels(outcome="failed").inc()
                result["failed"] += 1
                result["errors"].append(f"{target.target_id}: {e}")

        logger.info(f"Account {account_id}: {result['updated']} curves updated, {result['failed']} failed")
        return result
