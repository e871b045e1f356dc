import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from bidopt.bidding.schema import MarketCurveModel, PerformanceSample
from bidopt.errors import ApplyFailureError
from bidopt.storage.interfaces import StoredTree

logger = logging.getLogger(__name__)


class InMemoryRepository:
    """
    Thread-safe in-process store implementing both PerformanceRepository and
    ModelRepository. Tree versions are never deleted; saving a new version
    deactivates the previous ones.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._history: Dict[Tuple[str, str, str], List[Tuple[date, PerformanceSample]]] = {}
        self._curves: Dict[Tuple[str, str, str], MarketCurveModel] = {}
        self._trees: Dict[Tuple[str, str], List[StoredTree]] = {}

    def add_performance(
        self, account_id: str, target_type: str, target_id: str, day: date, sample: PerformanceSample
    ) -> None:
        with self._lock:
            self._history.setdefault((account_id, target_type, target_id), []).append((day, sample))

    def add_performance_series(
        self, account_id: str, target_type: str, target_id: str, rows: Sequence[Tuple[date, PerformanceSample]]
    ) -> None:
        for day, sample in rows:
            self.add_performance(account_id, target_type, target_id, day, sample)

    def get_performance_history(
        self, account_id: str, target_type: str, target_id: str, start: date, end: date
    ) -> List[PerformanceSample]:
        with self._lock:
            rows = self._history.get((account_id, target_type, target_id), [])
            return [s for d, s in sorted(rows, key=lambda r: r[0]) if start <= d <= end]

    def save_curve_model(self, account_id: str, target_type: str, target_id: str, model: MarketCurveModel) -> None:
        with self._lock:
            self._curves[(account_id, target_type, target_id)] = model

    def get_curve_model(self, account_id: str, target_type: str, target_id: str) -> Optional[MarketCurveModel]:
        with self._lock:
            return self._curves.get((account_id, target_type, target_id))

    def save_tree_model(self, account_id: str, model_type: str, tree: Dict[str, Any], metadata: Dict[str, Any]) -> int:
        with self._lock:
            versions = self._trees.setdefault((account_id, model_type), [])
            for stored in versions:
                stored.is_active = False
            version = len(versions) + 1
            versions.append(
                StoredTree(
                    account_id=account_id,
                    model_type=model_type,
                    version=version,
                    tree=tree,
                    metadata=dict(metadata),
                    is_active=True,
                    created_at=datetime.now(),
                )
            )
        logger.debug(f"Stored {model_type} tree v{version} for account {account_id}")
        return version

    def get_active_tree_model(self, account_id: str, model_type: str) -> Optional[StoredTree]:
        with self._lock:
            for stored in self._trees.get((account_id, model_type), []):
                if stored.is_active:
                    return stored
        return None

    def list_tree_models(self, account_id: str, model_type: str) -> List[StoredTree]:
        with self._lock:
            return sorted(self._trees.get((account_id, model_type), []), key=lambda t: t.version, reverse=True)


@dataclass(frozen=True)
class PlatformCall:
    operation: str
    account_id: str
    target: str
    value: Any


class RecordingAdPlatform:
    """Records applied changes. Targets listed in `failing_targets` raise ApplyFailureError."""

    def __init__(self, failing_targets: Optional[Set[str]] = None):
        self.failing_targets: Set[str] = set(failing_targets or ())
        self.calls: List[PlatformCall] = []
        self._lock = threading.Lock()

    def _record(self, operation: str, account_id: str, target: str, value: Any) -> None:
        if target in self.failing_targets:
            raise ApplyFailureError(f"Platform rejected {operation} for {target}")
        with self._lock:
            self.calls.append(PlatformCall(operation, account_id, target, value))

    def update_keyword_bid(self, account_id: str, target_id: str, bid: float) -> None:
        self._record("update_keyword_bid", account_id, target_id, bid)

    def update_campaign_budget(self, account_id: str, campaign_id: str, budget: float) -> None:
        self._record("update_campaign_budget", account_id, campaign_id, budget)

    def update_placement_multiplier(self, account_id: str, campaign_id: str, placement: str, multiplier: float) -> None:
        self._record("update_placement_multiplier", account_id, campaign_id, (placement, multiplier))

    def add_negative_keyword(self, account_id: str, campaign_id: str, keyword_text: str) -> None:
        self._record("add_negative_keyword", account_id, campaign_id, keyword_text)

    def update_target_state(self, account_id: str, target_id: str, state: str) -> None:
        self._record("update_target_state", account_id, target_id, state)


@dataclass(frozen=True)
class Notification:
    account_id: str
    title: str
    message: str
    severity: str


class LoggingNotifier:
    """Logs every notification and keeps it for inspection."""

    _LEVELS = {"info": logging.INFO, "warning": logging.WARNING, "critical": logging.CRITICAL}

    def __init__(self):
        self.sent: List[Notification] = []
        self._lock = threading.Lock()

    def notify(self, account_id: str, title: str, message: str, severity: str = "info") -> None:
        logger.log(self._LEVELS.get(severity, logging.INFO), f"[{account_id}] {title}: {message}")
        with self._lock:
            self.sent.append(Notification(account_id, title, message, severity))

    def by_severity(self, severity: str) -> List[Notification]:
        with self._lock:
            return [n for n in self.sent if n.severity == severity]
