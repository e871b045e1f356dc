import logging
import operator
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional, Tuple, Union

from bidopt.bidding.config import EngineConfig, config
from bidopt.bidding.schema import Priority

logger = logging.getLogger(__name__)


class Field(str, Enum):
    CLICKS = "clicks"
    ORDERS = "orders"
    IMPRESSIONS = "impressions"
    ACOS = "acos"
    ROAS = "roas"
    CTR = "ctr"


class Operator(str, Enum):
    GT = ">"
    GTE = ">="
    LT = "<"
    LTE = "<="
    EQ = "=="


_COMPARE = {
    Operator.GT: operator.gt,
    Operator.GTE: operator.ge,
    Operator.LT: operator.lt,
    Operator.LTE: operator.le,
    Operator.EQ: operator.eq,
}


class Action(str, Enum):
    MAINTAIN = "maintain"
    INCREASE_BID = "increase_bid"
    DECREASE_BID = "decrease_bid"
    PAUSE = "pause"
    ENABLE = "enable"
    USE_MARKET_CURVE = "use_market_curve"


@dataclass(frozen=True)
class Leaf:
    action: Action
    priority: Priority
    reasoning: str
    confidence: float
    adjustment: float = 0.0  # fractional bid change, e.g. -0.15


@dataclass(frozen=True)
class Condition:
    node_id: str
    field: Field
    op: Operator
    value: float
    if_true: "PolicyNode"
    if_false: "PolicyNode"
    description: str = ""

    def evaluate(self, performance: Any) -> bool:
        actual = getattr(performance, self.field.value, None)
        if actual is None:
            return False
        return _COMPARE[self.op](actual, self.value)


PolicyNode = Union[Condition, Leaf]


def build_search_ad_policy(conf: Optional[EngineConfig] = None) -> Condition:
    """
    The hand-authored bid policy for search ads.

    clicks < min_clicks              -> maintain
    no orders                        -> pause (>= pause_clicks) or -20%
    ACoS <= acos_excellent           -> +15%
    ACoS <= acos_target              -> market curve
    ACoS <= acos_high                -> -15%
    otherwise                        -> -30%, critical
    """
    conf = conf or config.engine

    acos_branch = Condition(
        node_id="has_conversion",
        field=Field.ACOS,
        op=Operator.LTE,
        value=conf.acos_excellent,
        description="ACoS in the high-value band",
        if_true=Leaf(
            Action.INCREASE_BID,
            Priority.HIGH,
            f"High-value target (ACoS <= {conf.acos_excellent:.0%}); raise bid to capture more traffic",
            0.9,
            adjustment=0.15,
        ),
        if_false=Condition(
            node_id="check_acos_medium",
            field=Field.ACOS,
            op=Operator.LTE,
            value=conf.acos_target,
            description="ACoS within the target band",
            if_true=Leaf(
                Action.USE_MARKET_CURVE,
                Priority.MEDIUM,
                "ACoS within target band; refine with the market curve model",
                0.85,
            ),
            if_false=Condition(
                node_id="check_acos_high",
                field=Field.ACOS,
                op=Operator.LTE,
                value=conf.acos_high,
                description="ACoS slightly above target",
                if_true=Leaf(
                    Action.DECREASE_BID,
                    Priority.HIGH,
                    f"ACoS between {conf.acos_target:.0%} and {conf.acos_high:.0%}; lower bid to recover efficiency",
                    0.85,
                    adjustment=-0.15,
                ),
                if_false=Leaf(
                    Action.DECREASE_BID,
                    Priority.CRITICAL,
                    f"ACoS above {conf.acos_high:.0%}; cut bid sharply or consider pausing",
                    0.9,
                    adjustment=-0.30,
                ),
            ),
        ),
    )

    no_conversion = Condition(
        node_id="no_conversion",
        field=Field.CLICKS,
        op=Operator.GTE,
        value=conf.pause_clicks,
        description="Many clicks without a conversion",
        if_true=Leaf(
            Action.PAUSE,
            Priority.HIGH,
            f"{conf.pause_clicks}+ clicks without a conversion; pause to stop wasted spend",
            0.85,
        ),
        if_false=Leaf(
            Action.DECREASE_BID,
            Priority.MEDIUM,
            "Clicks without conversions; lower bid and keep observing",
            0.7,
            adjustment=-0.20,
        ),
    )

    return Condition(
        node_id="root",
        field=Field.CLICKS,
        op=Operator.GTE,
        value=conf.min_clicks,
        description="Enough click data",
        if_true=Condition(
            node_id="has_data",
            field=Field.ORDERS,
            op=Operator.GT,
            value=0,
            description="Has conversions",
            if_true=acos_branch,
            if_false=no_conversion,
        ),
        if_false=Leaf(
            Action.MAINTAIN,
            Priority.LOW,
            "Not enough data yet; keep observing",
            0.5,
        ),
    )


def execute_policy(performance: Any, tree: Optional[PolicyNode] = None) -> Tuple[Leaf, List[str]]:
    """Walk the policy from the root. Returns the reached leaf and the visited node ids."""
    node = tree if tree is not None else build_search_ad_policy()
    path: List[str] = []
    while isinstance(node, Condition):
        path.append(node.node_id)
        node = node.if_true if node.evaluate(performance) else node.if_false
    return node, path
