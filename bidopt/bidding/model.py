import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from bidopt.bidding.config import TreeConfig, config
from bidopt.bidding.features import KeywordFeatureExtractor
from bidopt.bidding.schema import KeywordFeatures, PredictionResult, PredictionSource, TrainingSample
from bidopt.errors import InsufficientDataError, ModelNotFoundError
from bidopt.evaluation.metrics import population_variance, r_squared
from bidopt.monitoring.metrics import TREE_TRAININGS
from bidopt.storage.interfaces import ModelRepository

logger = logging.getLogger(__name__)

MODEL_TYPES = ("cr", "cv")


@dataclass
class TreeNode:
    """
    A split node (feature plus threshold or category set, two children)
    or a leaf (prediction, sample count, variance). Leaves have no children.
    """

    id: int
    samples: int
    is_leaf: bool = True
    prediction: float = 0.0
    variance: float = 0.0
    feature: Optional[str] = None
    threshold: Optional[float] = None
    categories: Optional[List[str]] = None
    left: Optional["TreeNode"] = None
    right: Optional["TreeNode"] = None

    def goes_left(self, features: KeywordFeatures) -> bool:
        value = features.get(self.feature)
        if self.threshold is not None:
            if value is None:
                return False
            return float(value) <= self.threshold
        return _category(value) in (self.categories or [])

    def to_dict(self) -> Dict[str, Any]:
        if self.is_leaf:
            return {
                "id": self.id,
                "is_leaf": True,
                "prediction": self.prediction,
                "samples": self.samples,
                "variance": self.variance,
            }
        return {
            "id": self.id,
            "is_leaf": False,
            "feature": self.feature,
            "threshold": self.threshold,
            "categories": self.categories,
            "samples": self.samples,
            "left": self.left.to_dict(),
            "right": self.right.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TreeNode":
        if data.get("is_leaf", True):
            return cls(
                id=data.get("id", 0),
                samples=data.get("samples", 0),
                prediction=data.get("prediction", 0.0),
                variance=data.get("variance", 0.0),
            )
        return cls(
            id=data.get("id", 0),
            samples=data.get("samples", 0),
            is_leaf=False,
            feature=data["feature"],
            threshold=data.get("threshold"),
            categories=data.get("categories"),
            left=cls.from_dict(data["left"]),
            right=cls.from_dict(data["right"]),
        )


def _category(value: Any) -> str:
    return "unknown" if value is None else str(value)


@dataclass(frozen=True)
class LeafPrediction:
    prediction: float
    samples: int
    variance: float


def variance_reduction(parent: Sequence[float], left: Sequence[float], right: Sequence[float]) -> float:
    """Parent variance minus the sample-weighted variance of the two children."""
    n = len(parent)
    if n == 0:
        return 0.0
    weighted = (len(left) / n) * population_variance(left) + (len(right) / n) * population_variance(right)
    return population_variance(parent) - weighted


class DecisionTree:
    """
    CART-style regression tree over keyword features.

    Numeric features are split at midpoints between adjacent distinct values;
    categorical features as one category against the rest. The split with the
    largest variance reduction wins, provided both children keep at least
    `min_samples_leaf` samples.
    """

    def __init__(self, conf: TreeConfig = None):
        self.conf = conf or config.engine.tree
        self.root: Optional[TreeNode] = None
        self._next_id = 1

    def fit(self, samples: Sequence[TrainingSample], target: str) -> "DecisionTree":
        if target not in MODEL_TYPES:
            raise ValueError(f"Unknown target {target!r}")
        self._next_id = 1
        self.root = self._build(list(samples), target, depth=0)
        return self

    def _leaf(self, node_id: int, values: List[float]) -> TreeNode:
        return TreeNode(
            id=node_id,
            samples=len(values),
            prediction=float(np.mean(values)) if values else 0.0,
            variance=population_variance(values),
        )

    def _build(self, data: List[TrainingSample], target: str, depth: int) -> TreeNode:
        node_id = self._next_id
        self._next_id += 1
        values = [d.target(target) for d in data]

        if (
            depth >= self.conf.max_depth
            or len(data) < self.conf.min_samples_split
            or population_variance(values) < self.conf.min_variance
        ):
            return self._leaf(node_id, values)

        best = self._best_split(data, values, target)
        if best is None:
            return self._leaf(node_id, values)

        feature, threshold, categories, left_data, right_data = best
        return TreeNode(
            id=node_id,
            samples=len(data),
            is_leaf=False,
            feature=feature,
            threshold=threshold,
            categories=categories,
            left=self._build(left_data, target, depth + 1),
            right=self._build(right_data, target, depth + 1),
        )

    def _best_split(self, data: List[TrainingSample], values: List[float], target: str):
        min_leaf = self.conf.min_samples_leaf
        best_gain = 0.0
        best = None

        for feature in self.conf.numeric_features:
            rows = sorted(
                (d for d in data if d.features.get(feature) is not None),
                key=lambda d: float(d.features.get(feature)),
            )
            if len(rows) < len(data):
                # Rows missing the feature cannot be routed by a threshold
                continue
            xs = [float(d.features.get(feature)) for d in rows]
            ys = [d.target(target) for d in rows]
            for i in range(min_leaf - 1, len(rows) - min_leaf):
                if xs[i] == xs[i + 1]:
                    continue
                gain = variance_reduction(ys, ys[: i + 1], ys[i + 1:])
                if gain > best_gain:
                    best_gain = gain
                    best = (feature, (xs[i] + xs[i + 1]) / 2, None, rows[: i + 1], rows[i + 1:])

        for feature in self.conf.categorical_features:
            groups: Dict[str, List[TrainingSample]] = {}
            for d in data:
                groups.setdefault(_category(d.features.get(feature)), []).append(d)
            if len(groups) < 2:
                continue
            for cat, left in groups.items():
                right = [d for d in data if _category(d.features.get(feature)) != cat]
                if len(left) < min_leaf or len(right) < min_leaf:
                    continue
                gain = variance_reduction(values, [d.target(target) for d in left], [d.target(target) for d in right])
                if gain > best_gain:
                    best_gain = gain
                    best = (feature, None, [cat], left, right)

        return best

    def predict(self, features: KeywordFeatures) -> LeafPrediction:
        if self.root is None:
            raise ModelNotFoundError("Tree has not been trained")
        node = self.root
        while not node.is_leaf:
            node = node.left if node.goes_left(features) else node.right
        return LeafPrediction(node.prediction, node.samples, node.variance)

    @property
    def depth(self) -> int:
        def _depth(node: TreeNode) -> int:
            if node.is_leaf:
                return 1
            return 1 + max(_depth(node.left), _depth(node.right))
        return _depth(self.root) if self.root else 0

    @property
    def leaf_count(self) -> int:
        def _count(node: TreeNode) -> int:
            return 1 if node.is_leaf else _count(node.left) + _count(node.right)
        return _count(self.root) if self.root else 0

    def feature_importance(self) -> Dict[str, float]:
        """Sum of node.samples / total samples over the splitting nodes of each feature."""
        importance: Dict[str, float] = {}
        if self.root is None or self.root.samples == 0:
            return importance
        total = self.root.samples
        stack = [self.root]
        while stack:
            node = stack.pop()
            if node.is_leaf:
                continue
            importance[node.feature] = importance.get(node.feature, 0.0) + node.samples / total
            stack.extend([node.left, node.right])
        return importance

    def to_dict(self) -> Dict[str, Any]:
        return self.root.to_dict() if self.root else {}

    @classmethod
    def from_dict(cls, data: Dict[str, Any], conf: TreeConfig = None) -> "DecisionTree":
        tree = cls(conf)
        tree.root = TreeNode.from_dict(data)
        return tree


@dataclass
class TrainedModel:
    tree: DecisionTree
    model_type: str
    depth: int
    leaf_count: int
    feature_importance: Dict[str, float]
    training_r2: float
    total_samples: int

    def metadata(self) -> Dict[str, Any]:
        return {
            "depth": self.depth,
            "leaf_count": self.leaf_count,
            "feature_importance": self.feature_importance,
            "training_r2": self.training_r2,
            "total_samples": self.total_samples,
        }


def train_tree(samples: Sequence[TrainingSample], model_type: str, conf: TreeConfig = None) -> TrainedModel:
    """
    Train a CR or CV tree. Raises InsufficientDataError below
    `min_training_samples`; there is no silent fallback.
    """
    conf = conf or config.engine.tree
    if len(samples) < conf.min_training_samples:
        TREE_TRAININGS.labels(model_type=model_type, outcome="insufficient_data").inc()
        raise InsufficientDataError(
            f"Need at least {conf.min_training_samples} click-bearing keywords, got {len(samples)}",
            available=len(samples),
            required=conf.min_training_samples,
        )

    tree = DecisionTree(conf).fit(samples, model_type)
    actual = [s.target(model_type) for s in samples]
    predicted = [tree.predict(s.features).prediction for s in samples]

    TREE_TRAININGS.labels(model_type=model_type, outcome="trained").inc()
    return TrainedModel(
        tree=tree,
        model_type=model_type,
        depth=tree.depth,
        leaf_count=tree.leaf_count,
        feature_importance={k: round(v, 3) for k, v in tree.feature_importance().items()},
        training_r2=round(max(0.0, r_squared(actual, predicted)), 3),
        total_samples=len(samples),
    )


def bayesian_update(prior_mean: float, prior_variance: float, observed_mean: float, observed_samples: int) -> Tuple[float, float]:
    """
    Conjugate-normal refinement of a prior with an observation batch.
    The observed sample count acts as the observation precision.
    """
    prior_precision = 1.0 / max(prior_variance, config.engine.tree.min_prior_variance)
    observed_precision = float(max(observed_samples, 0))
    posterior_precision = prior_precision + observed_precision
    posterior_mean = (prior_precision * prior_mean + observed_precision * observed_mean) / posterior_precision
    return posterior_mean, 1.0 / posterior_precision


class DecisionTreePredictor:
    """
    Trains, versions and queries the per-account CR and CV trees.
    """

    def __init__(self, repository: ModelRepository, conf: TreeConfig = None):
        self.repository = repository
        self.conf = conf or config.engine.tree
        self.extractor = KeywordFeatureExtractor()
        self._cache: Dict[Tuple[str, str, int], DecisionTree] = {}
        self._z = self.conf.z_score

    def train(self, account_id: str, model_type: str, samples: Sequence[TrainingSample]) -> int:
        """Train and persist a new active version. Returns the version number."""
        trained = train_tree(samples, model_type, self.conf)
        version = self.repository.save_tree_model(account_id, model_type, trained.tree.to_dict(), trained.metadata())
        logger.info(
            f"Account {account_id}: trained {model_type} tree v{version} "
            f"(depth={trained.depth}, leaves={trained.leaf_count}, r2={trained.training_r2})"
        )
        return version

    def train_from_frame(self, account_id: str, frame: pd.DataFrame) -> Dict[str, int]:
        """Train both trees from keyword rows. Returns {model_type: version}."""
        samples = self.extractor.build_training_set(frame)
        return {model_type: self.train(account_id, model_type, samples) for model_type in MODEL_TYPES}

    def get_active_tree(self, account_id: str, model_type: str) -> Optional[DecisionTree]:
        stored = self.repository.get_active_tree_model(account_id, model_type)
        if stored is None:
            return None
        key = (account_id, model_type, stored.version)
        if key not in self._cache:
            self._cache[key] = DecisionTree.from_dict(stored.tree, self.conf)
        return self._cache[key]

    def require_active(self, account_id: str, model_type: str) -> DecisionTree:
        tree = self.get_active_tree(account_id, model_type)
        if tree is None:
            raise ModelNotFoundError(f"No active {model_type} tree for account {account_id}")
        return tree

    def has_active_model(self, account_id: str, model_type: str = "cr") -> bool:
        return self.get_active_tree(account_id, model_type) is not None

    def predict_keyword_performance(self, account_id: str, features: KeywordFeatures) -> PredictionResult:
        cr = cv = None
        try:
            cr = self.require_active(account_id, "cr").predict(features)
        except ModelNotFoundError:
            logger.debug(f"Account {account_id}: no CR tree, using default {self.conf.default_cr}")
        try:
            cv = self.require_active(account_id, "cv").predict(features)
        except ModelNotFoundError:
            logger.debug(f"Account {account_id}: no CV tree, using default {self.conf.default_cv}")

        cr = cr or LeafPrediction(self.conf.default_cr, 0, 0.0)
        cv = cv or LeafPrediction(self.conf.default_cv, 0, 0.0)
        source = PredictionSource.DECISION_TREE if cr.samples > 0 else PredictionSource.DEFAULT

        sample_count = min(cr.samples, cv.samples)
        confidence = min(1.0, sample_count / self.conf.confidence_samples) * (1 - min(cr.variance, 1.0))
        cr_sd, cv_sd = math.sqrt(cr.variance), math.sqrt(cv.variance)

        return PredictionResult(
            predicted_cr=max(0.0, cr.prediction),
            predicted_cv=max(0.0, cv.prediction),
            cr_low=max(0.0, cr.prediction - self._z * cr_sd),
            cr_high=cr.prediction + self._z * cr_sd,
            cv_low=max(0.0, cv.prediction - self._z * cv_sd),
            cv_high=cv.prediction + self._z * cv_sd,
            confidence=confidence,
            sample_count=sample_count,
            source=source,
        )

    def refine(self, prediction: PredictionResult, observed_cr: float, observed_clicks: int) -> PredictionResult:
        """Bayesian refinement of a CR prediction with freshly observed clicks."""
        prior_var = ((prediction.cr_high - prediction.predicted_cr) / self._z) ** 2
        mean, var = bayesian_update(prediction.predicted_cr, prior_var, observed_cr, observed_clicks)
        sd = math.sqrt(var)
        return PredictionResult(
            predicted_cr=max(0.0, mean),
            predicted_cv=prediction.predicted_cv,
            cr_low=max(0.0, mean - self._z * sd),
            cr_high=mean + self._z * sd,
            cv_low=prediction.cv_low,
            cv_high=prediction.cv_high,
            confidence=prediction.confidence,
            sample_count=prediction.sample_count + max(observed_clicks, 0),
            source=PredictionSource.BAYESIAN_UPDATE,
        )

    def predict_frame(self, account_id: str, frame: pd.DataFrame) -> pd.DataFrame:
        """
        Batch prediction for keyword rows. Rows that fail are logged and
        reported with NaN predictions rather than aborting the batch.
        """
        records = []
        for row in frame.to_dict("records"):
            try:
                features = self.extractor.extract(
                    row.get("keyword_text", ""),
                    row.get("match_type", "broad"),
                    row.get("bid"),
                    row.get("price_range"),
                    row.get("competition_level"),
                )
                p = self.predict_keyword_performance(account_id, features)
                records.append({
                    "keyword_text": row.get("keyword_text"),
                    "match_type": features.match_type,
                    "keyword_type": features.keyword_type,
                    "predicted_cr": p.predicted_cr,
                    "predicted_cv": p.predicted_cv,
                    "confidence": p.confidence,
                    "source": p.source.value,
                    "actual_cr": _actual_cr(row),
                })
            except Exception as e:
                logger.error(f"Prediction failed for keyword {row.get('keyword_text')!r}: {e}", exc_info=True)
                records.append({"keyword_text": row.get("keyword_text"), "predicted_cr": np.nan, "predicted_cv": np.nan})
        return pd.DataFrame.from_records(records)


def _actual_cr(row: Dict[str, Any]) -> float:
    if row.get("cvr") is not None and not pd.isna(row.get("cvr")):
        return float(row["cvr"])
    clicks = row.get("clicks") or 0
    return float(row.get("orders") or 0) / clicks if clicks > 0 else 0.0


def prediction_summary(predictions: pd.DataFrame) -> Dict[str, Any]:
    """
    Aggregate a batch-prediction frame: averages, accuracy against actual CR
    (1 - mean relative error, floored at 0) and per match/keyword type breakdowns.
    """
    preds = predictions.dropna(subset=["predicted_cr"]) if not predictions.empty else predictions
    if preds.empty:
        return {
            "total_predictions": 0,
            "avg_confidence": 0.0,
            "avg_predicted_cr": 0.0,
            "avg_predicted_cv": 0.0,
            "prediction_accuracy": 0.0,
            "by_match_type": {},
            "by_keyword_type": {},
        }

    accuracy = 0.0
    if "actual_cr" in preds.columns:
        valid = preds[preds["actual_cr"] > 0]
        if not valid.empty:
            errors = (valid["predicted_cr"] - valid["actual_cr"]).abs() / valid["actual_cr"].clip(lower=0.001)
            accuracy = max(0.0, 1.0 - float(errors.mean()))

    def breakdown(column: str) -> Dict[str, Dict[str, float]]:
        grouped = preds.fillna({column: "unknown"}).groupby(column).agg(
            count=("predicted_cr", "size"),
            avg_cr=("predicted_cr", "mean"),
            avg_cv=("predicted_cv", "mean"),
        )
        return {
            str(k): {"count": int(r["count"]), "avg_cr": float(r["avg_cr"]), "avg_cv": float(r["avg_cv"])}
            for k, r in grouped.iterrows()
        }

    return {
        "total_predictions": int(len(preds)),
        "avg_confidence": float(preds["confidence"].mean()),
        "avg_predicted_cr": float(preds["predicted_cr"].mean()),
        "avg_predicted_cv": float(preds["predicted_cv"].mean()),
        "prediction_accuracy": accuracy,
        "by_match_type": breakdown("match_type"),
        "by_keyword_type": breakdown("keyword_type"),
    }
