from dataclasses import replace
from types import SimpleNamespace

import pytest

from bidopt.bidding.config import config
from bidopt.bidding.policy import (
    Action,
    Condition,
    Field,
    Leaf,
    Operator,
    build_search_ad_policy,
    execute_policy,
)
from bidopt.bidding.schema import Priority, TargetPerformance


def _perf(clicks=0, orders=0, cost=0.0, sales=0.0):
    return TargetPerformance(target_id="kw", clicks=clicks, orders=orders, cost=cost, sales=sales)


@pytest.fixture(scope="module")
def policy():
    return build_search_ad_policy()


def test_insufficient_clicks_maintains(policy):
    leaf, path = execute_policy(_perf(clicks=9), policy)
    assert leaf.action == Action.MAINTAIN
    assert leaf.priority == Priority.LOW
    assert path == ["root"]


def test_no_conversion_branches(policy):
    leaf, path = execute_policy(_perf(clicks=30), policy)
    assert leaf.action == Action.PAUSE
    assert path == ["root", "has_data", "no_conversion"]

    leaf, _ = execute_policy(_perf(clicks=29), policy)
    assert leaf.action == Action.DECREASE_BID
    assert leaf.adjustment == pytest.approx(-0.20)
    assert leaf.priority == Priority.MEDIUM


@pytest.mark.parametrize(
    "acos,action,adjustment,priority,confidence",
    [
        (0.10, Action.INCREASE_BID, 0.15, Priority.HIGH, 0.9),
        (0.20, Action.INCREASE_BID, 0.15, Priority.HIGH, 0.9),
        (0.30, Action.USE_MARKET_CURVE, 0.0, Priority.MEDIUM, 0.85),
        (0.45, Action.DECREASE_BID, -0.15, Priority.HIGH, 0.85),
        (0.80, Action.DECREASE_BID, -0.30, Priority.CRITICAL, 0.9),
    ],
)
def test_acos_bands(policy, acos, action, adjustment, priority, confidence):
    leaf, path = execute_policy(_perf(clicks=50, orders=5, cost=acos * 100, sales=100.0), policy)
    assert leaf.action == action
    assert leaf.adjustment == pytest.approx(adjustment)
    assert leaf.priority == priority
    assert leaf.confidence == confidence
    assert path[:3] == ["root", "has_data", "has_conversion"]


def test_thresholds_come_from_config():
    strict = build_search_ad_policy(replace(config.engine, min_clicks=100))
    leaf, _ = execute_policy(_perf(clicks=50, orders=5, cost=10.0, sales=100.0), strict)
    assert leaf.action == Action.MAINTAIN


def test_missing_field_evaluates_false():
    node = Condition("n", Field.ROAS, Operator.GT, 1.0, if_true=Leaf(Action.PAUSE, Priority.HIGH, "", 1.0),
                     if_false=Leaf(Action.MAINTAIN, Priority.LOW, "", 1.0))
    assert node.evaluate(SimpleNamespace()) is False
    leaf, path = execute_policy(SimpleNamespace(), node)
    assert leaf.action == Action.MAINTAIN
    assert path == ["n"]


def test_default_policy_used_when_none():
    leaf, _ = execute_policy(_perf(clicks=1))
    assert leaf.action == Action.MAINTAIN
