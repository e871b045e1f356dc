import math
from dataclasses import replace
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from bidopt.bidding.config import config
from bidopt.bidding.engine import SearchAdOptimizationEngine, impact_metric
from bidopt.bidding.market_curve import MarketCurveService
from bidopt.bidding.model import DecisionTreePredictor
from bidopt.bidding.schema import (
    AlgorithmSource,
    KeywordFeatures,
    PerformanceSample,
    PlacementPerformance,
    Priority,
    SuggestionType,
    TargetPerformance,
    TrainingSample,
)
from bidopt.storage.memory import InMemoryRepository

TODAY = datetime(2026, 3, 1, 9, 0)


def _steady_history():
    """30 days over six bid levels with an exact log impression curve, steady clicks, CVR 5%, AOV 30."""
    rows = []
    bids = [0.5, 1.0, 1.5, 2.0, 2.5, 3.0]
    for i in range(30):
        bid = bids[i % 6]
        impressions = 300 * math.log(bid + 0.01) + 500
        rows.append((
            TODAY.date() - timedelta(days=i),
            PerformanceSample(
                bid=bid, impressions=impressions, clicks=20, spend=20 * bid, sales=30.0, orders=1,
                ctr=20 / impressions, cvr=0.05,
            ),
        ))
    return rows


def _in_band(target_id="kw-curve", bid=1.0, features=None):
    # ACoS 30%: inside the market curve band
    return TargetPerformance(
        target_id=target_id, target_name=target_id, current_bid=bid,
        impressions=5000, clicks=100, cost=30.0, sales=100.0, orders=5, features=features,
    )


@pytest.fixture
def repo():
    repo = InMemoryRepository()
    repo.add_performance_series("acc", "keyword", "kw-curve", _steady_history())
    return repo


@pytest.fixture
def engine(repo):
    return SearchAdOptimizationEngine(MarketCurveService(repo, clock=lambda: TODAY))


def test_every_source_has_impact_metric():
    assert {impact_metric(s) for s in AlgorithmSource} == {"profit", "acos", "roas", "sales"}


def test_maintain_returns_none(engine):
    assert engine.generate_suggestion("acc", TargetPerformance(target_id="kw", clicks=3)) is None


def test_rule_increase(engine):
    perf = TargetPerformance(target_id="kw", current_bid=1.0, clicks=50, orders=5, cost=10.0, sales=100.0)
    s = engine.generate_suggestion("acc", perf)
    assert s.suggestion_type == SuggestionType.BID_ADJUSTMENT
    assert s.algorithm_source == AlgorithmSource.DECISION_TREE
    assert s.suggested_value == 1.15
    assert s.change_percent == pytest.approx(0.15)
    assert s.priority == Priority.HIGH
    assert s.confidence == 0.9
    assert s.expected_impact.metric == "acos"
    assert s.reasoning


def test_rule_pause_and_critical(engine):
    pause = engine.generate_suggestion("acc", TargetPerformance(target_id="kw", clicks=40, cost=40.0))
    assert pause.suggestion_type == SuggestionType.PAUSE
    assert pause.suggested_value == 0.0
    assert pause.change_percent == -1.0

    critical = engine.generate_suggestion(
        "acc", TargetPerformance(target_id="kw", current_bid=2.0, clicks=50, orders=2, cost=80.0, sales=100.0)
    )
    assert critical.priority == Priority.CRITICAL
    assert critical.suggested_value == 1.4


def test_rule_respects_min_bid(engine):
    perf = TargetPerformance(target_id="kw", current_bid=0.11, clicks=50, orders=1, cost=90.0, sales=100.0)
    s = engine.generate_suggestion("acc", perf)
    assert s.suggested_value == config.engine.min_bid


def test_market_curve_path(engine):
    s = engine.generate_suggestion("acc", _in_band())
    assert s.algorithm_source == AlgorithmSource.MARKET_CURVE
    assert s.confidence >= config.engine.curve_confidence_threshold
    assert 0.5 <= s.suggested_value < 1.0
    assert s.priority == Priority.HIGH
    assert s.expected_impact.metric == "profit"

    curve = s.algorithm_data["market_curve"]
    assert curve["break_even_cpc"] == pytest.approx(1.5)
    assert curve["data_points"] == 30
    assert s.algorithm_data["blend"] is None
    assert s.algorithm_data["path"][-1] == "check_acos_medium"


def test_market_curve_change_is_limited(repo, engine):
    repo.add_performance_series("acc", "keyword", "kw-high", _steady_history())
    s = engine.generate_suggestion("acc", _in_band("kw-high", bid=3.0))
    assert s.change_percent == pytest.approx(-0.5)
    assert s.suggested_value == 1.5


def test_untrusted_curve_falls_back_to_bandit(engine):
    # No history: aggregated fallback curve at confidence 0.3
    s = engine.generate_suggestion("acc", _in_band("kw-new"))
    assert s.algorithm_source == AlgorithmSource.BANDIT
    assert s.expected_impact.metric == "roas"
    assert s.algorithm_data["bandit"]["strategy"] == "exploit"
    # ROAS 3.33 against target 4.0
    assert s.suggested_value == pytest.approx(0.83)


def test_untrusted_curve_without_bandit(repo):
    engine = SearchAdOptimizationEngine(
        MarketCurveService(repo, clock=lambda: TODAY), conf=replace(config.engine, bandit_fallback=False)
    )
    assert engine.generate_suggestion("acc", _in_band("kw-new")) is None


def test_blends_with_active_tree(repo):
    predictor = DecisionTreePredictor(InMemoryRepository())
    exact = KeywordFeatures(match_type="exact")
    samples = [TrainingSample(exact, cr=0.20, cv=30.0)] * 15 + [
        TrainingSample(KeywordFeatures(match_type="broad"), cr=0.01, cv=30.0)
    ] * 15
    predictor.train("acc", "cr", samples)
    predictor.train("acc", "cv", samples)

    engine = SearchAdOptimizationEngine(MarketCurveService(repo, clock=lambda: TODAY), predictor=predictor)
    blended = engine.generate_suggestion("acc", _in_band(features=exact))
    plain = SearchAdOptimizationEngine(MarketCurveService(repo, clock=lambda: TODAY)).generate_suggestion(
        "acc", _in_band()
    )

    blend = blended.algorithm_data["blend"]
    assert blend["tree_cr"] == pytest.approx(0.20)
    assert blend["curve_weight"] + blend["tree_weight"] == pytest.approx(1.0)
    assert blend["curve_weight"] > blend["tree_weight"]
    # A higher blended CVR raises break-even and the optimum
    assert blended.algorithm_data["market_curve"]["break_even_cpc"] > 1.5
    assert blended.suggested_value > plain.suggested_value


def test_batch_ranks_and_isolates_failures(repo):
    service = MarketCurveService(repo, clock=lambda: TODAY)
    service.build_for_target = MagicMock(side_effect=RuntimeError("boom"))
    engine = SearchAdOptimizationEngine(service)

    performances = [
        TargetPerformance(target_id="pause", clicks=40, cost=40.0),
        TargetPerformance(target_id="maintain", clicks=2),
        TargetPerformance(target_id="critical", current_bid=2.0, clicks=50, orders=2, cost=80.0, sales=100.0),
        _in_band("explodes"),
        TargetPerformance(target_id="increase", clicks=50, orders=5, cost=10.0, sales=100.0),
    ]
    suggestions = engine.batch_generate("acc", performances)
    assert [s.target_id for s in suggestions] == ["critical", "increase", "pause"]


def test_placement_suggestions(engine):
    perf = TargetPerformance(
        target_id="camp-1",
        placements={
            "top_of_search": PlacementPerformance(clicks=50, cost=10.0, sales=100.0, orders=4),
            "rest_of_search": PlacementPerformance(clicks=50, cost=50.0, sales=100.0, orders=4),
            "product_pages": PlacementPerformance(clicks=5, cost=5.0, sales=10.0, orders=1),
            "no_sales": PlacementPerformance(clicks=40, cost=20.0),
        },
    )
    multipliers = {"top_of_search": 1.0, "rest_of_search": 1.0, "product_pages": 1.0, "no_sales": 1.0}
    by_placement = {
        s.algorithm_data["placement"]: s for s in engine.generate_placement_suggestions(perf, multipliers)
    }

    assert set(by_placement) == {"top_of_search", "rest_of_search", "no_sales"}
    assert by_placement["top_of_search"].suggested_value == 1.5
    assert by_placement["rest_of_search"].suggested_value == pytest.approx(0.71)
    assert by_placement["no_sales"].suggested_value == 0.5
    for s in by_placement.values():
        assert s.algorithm_source == AlgorithmSource.RULE_BASED
        assert s.suggestion_type == SuggestionType.PLACEMENT_ADJUSTMENT
        assert s.confidence == config.engine.placement_confidence
