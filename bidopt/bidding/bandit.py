import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

import numpy as np

from bidopt.bidding.config import BanditConfig, config

logger = logging.getLogger(__name__)


class BanditStrategy(str, Enum):
    EXPLORE = "explore"
    BALANCED = "balanced"
    EXPLOIT = "exploit"


@dataclass(slots=True)
class BanditBidSuggestion:
    suggested_bid: float
    strategy: BanditStrategy
    confidence: float
    ucb_score: float
    exploration_bonus: float
    reasoning: str


@dataclass(slots=True)
class Arm:
    arm_id: str
    pulls: int = 0
    avg_reward: float = 0.0
    reward_variance: float = 0.0


def calculate_ucb(avg_reward: float, total_trials: int, arm_trials: int, exploration_factor: float = 2.0) -> float:
    """UCB1. An untried arm scores +inf so it is always explored first."""
    if arm_trials <= 0:
        return math.inf
    return avg_reward + exploration_factor * math.sqrt(math.log(max(total_trials, 1)) / arm_trials)


def exploration_bonus(
    total_trials: int,
    arm_trials: int,
    reward_variance: float,
    exploration_factor: float = 2.0,
    variance_weight: float = 0.5,
) -> float:
    """UCB1-Tuned bonus: the UCB1 term widened by (1 + w * sqrt(variance))."""
    if arm_trials <= 0:
        return math.inf
    base = exploration_factor * math.sqrt(math.log(max(total_trials, 1)) / arm_trials)
    return base * (1 + variance_weight * math.sqrt(max(reward_variance, 0.0)))


def calculate_ucb_tuned(
    avg_reward: float,
    total_trials: int,
    arm_trials: int,
    reward_variance: float,
    exploration_factor: float = 2.0,
    variance_weight: float = 0.5,
) -> float:
    if arm_trials <= 0:
        return math.inf
    return avg_reward + exploration_bonus(total_trials, arm_trials, reward_variance, exploration_factor, variance_weight)


def calculate_ucb_bid_suggestion(
    current_bid: float,
    average_roas: float,
    clicks: int,
    total_clicks: int,
    reward_variance: float,
    target_roas: float,
    conf: Optional[BanditConfig] = None,
) -> BanditBidSuggestion:
    """
    Propose a bid from click volume and ROAS performance.

    The regime depends only on `clicks`:
      explore  (< explore_clicks): small upward nudge, fixed low confidence.
      balanced (< exploit_clicks): blend of an exploration bid and a ROAS bid.
      exploit  (otherwise): bid scaled by ROAS / target, capped above.
    The result is always clamped to [min_bid_ratio, max_bid_ratio] x current.
    """
    conf = conf or config.engine.bandit
    ratio = average_roas / target_roas if target_roas > 0 else 1.0
    bonus = exploration_bonus(
        total_clicks, clicks, reward_variance, conf.exploration_factor, conf.variance_weight
    )
    score = calculate_ucb_tuned(
        ratio, total_clicks, clicks, reward_variance, conf.exploration_factor, conf.variance_weight
    )

    if clicks < conf.explore_clicks:
        strategy = BanditStrategy.EXPLORE
        need = (conf.explore_clicks - max(clicks, 0)) / conf.explore_clicks
        bid = current_bid * (1 + conf.explore_max_increase * need)
        confidence = conf.explore_confidence
        reasoning = f"Only {clicks} clicks; exploring with a bid nudge of {need * conf.explore_max_increase:.0%}"

    elif clicks < conf.exploit_clicks:
        strategy = BanditStrategy.BALANCED
        weight = (clicks - conf.explore_clicks) / (conf.exploit_clicks - conf.explore_clicks)
        confidence = conf.balanced_confidence_start + (
            conf.balanced_confidence_end - conf.balanced_confidence_start
        ) * weight
        explore_bid = current_bid * (1 + conf.explore_max_increase * min(1.0, bonus))
        exploit_bid = current_bid * min(ratio, 1 + conf.exploit_max_increase)
        bid = (1 - weight) * explore_bid + weight * exploit_bid
        reasoning = (
            f"{clicks} clicks; blending exploration ({1 - weight:.0%}) with "
            f"ROAS {average_roas:.2f} vs target {target_roas:.2f} ({weight:.0%})"
        )

    else:
        strategy = BanditStrategy.EXPLOIT
        settled = 1 - math.exp(-(clicks - conf.exploit_clicks) / conf.exploit_confidence_scale)
        confidence = min(
            conf.exploit_confidence_ceiling,
            conf.exploit_confidence_start + (conf.exploit_confidence_ceiling - conf.exploit_confidence_start) * settled,
        )
        bid = current_bid * min(ratio, 1 + conf.exploit_max_increase)
        reasoning = f"{clicks} clicks; exploiting ROAS {average_roas:.2f} vs target {target_roas:.2f}"

    bid = float(np.clip(bid, current_bid * conf.min_bid_ratio, current_bid * conf.max_bid_ratio))

    return BanditBidSuggestion(
        suggested_bid=round(bid, 2) if _round_stays_inside(bid, current_bid, conf) else bid,
        strategy=strategy,
        confidence=confidence,
        ucb_score=score,
        exploration_bonus=bonus,
        reasoning=reasoning,
    )


def _round_stays_inside(bid: float, current_bid: float, conf: BanditConfig) -> bool:
    rounded = round(bid, 2)
    return current_bid * conf.min_bid_ratio <= rounded <= current_bid * conf.max_bid_ratio


def select_arm(arms: Sequence[Arm], conf: Optional[BanditConfig] = None) -> Arm:
    """Pick the arm with the highest UCB1-Tuned score. Untried arms win first."""
    if not arms:
        raise ValueError("select_arm requires at least one arm")
    conf = conf or config.engine.bandit
    total = sum(a.pulls for a in arms)
    scores = [
        calculate_ucb_tuned(a.avg_reward, total, a.pulls, a.reward_variance, conf.exploration_factor, conf.variance_weight)
        for a in arms
    ]
    best = int(np.argmax(scores))
    logger.debug(f"Selected arm {arms[best].arm_id} with score {scores[best]}")
    return arms[best]
