import logging
import threading
from datetime import date, timedelta
from typing import Dict, List, Optional, Tuple

from bidopt.automation.schema import ExecutionBatch, ExecutionResult, ExecutionStatus, ExecutionType
from bidopt.bidding.config import AutomationConfig, config
from bidopt.errors import InvalidTransitionError

logger = logging.getLogger(__name__)

CounterKey = Tuple[str, date, ExecutionType]


class ExecutionStore:
    """
    Process-wide execution state owned by one controller: per-account
    automation config, daily execution counters and the audit trail.

    Features:
    - Per-account re-entrant locks for check-reserve-apply-commit sequences.
    - Daily counters keyed by (account, date, type), purged past a retention window.
    - Append-only audit records; the only status change allowed is success -> rolled_back.
    """

    def __init__(self, defaults: Optional[AutomationConfig] = None):
        self._lock = threading.Lock()
        self._account_locks: Dict[str, threading.RLock] = {}
        self._defaults = defaults or config.automation

        self._configs: Dict[str, AutomationConfig] = {}
        self._counters: Dict[CounterKey, int] = {}
        self._last_day: Optional[date] = None

        self._batches: List[ExecutionBatch] = []
        self._results: Dict[str, ExecutionResult] = {}

    def account_lock(self, account_id: str) -> threading.RLock:
        with self._lock:
            lock = self._account_locks.get(account_id)
            if lock is None:
                lock = self._account_locks[account_id] = threading.RLock()
            return lock

    # Config

    def get_config(self, account_id: str) -> AutomationConfig:
        """Lazily seeded from defaults on first access."""
        with self._lock:
            cfg = self._configs.get(account_id)
            if cfg is None:
                cfg = self._configs[account_id] = self._defaults
            return cfg

    def set_config(self, account_id: str, cfg: AutomationConfig) -> None:
        with self._lock:
            self._configs[account_id] = cfg

    # Daily counters

    def get_count(self, account_id: str, day: date, execution_type: ExecutionType) -> int:
        with self._lock:
            return self._counters.get((account_id, day, execution_type), 0)

    def increment(self, account_id: str, day: date, execution_type: ExecutionType) -> int:
        with self._lock:
            key = (account_id, day, execution_type)
            self._counters[key] = self._counters.get(key, 0) + 1
            return self._counters[key]

    def counts_for_day(self, account_id: str, day: date) -> Dict[ExecutionType, int]:
        with self._lock:
            return {t: n for (acc, d, t), n in self._counters.items() if acc == account_id and d == day}

    def purge_counters(self, before: date) -> int:
        """Drop counters dated strictly before `before`. Returns the number removed."""
        with self._lock:
            stale = [k for k in self._counters if k[1] < before]
            for k in stale:
                del self._counters[k]
        if stale:
            logger.debug(f"Purged {len(stale)} daily counters before {before}")
        return len(stale)

    def observe_day(self, day: date, retention_days: int) -> None:
        """Purge counters outside the retention window when the calendar day rolls over."""
        with self._lock:
            if self._last_day == day:
                return
            self._last_day = day
        self.purge_counters(day - timedelta(days=retention_days))

    # Audit trail

    def append_result(self, result: ExecutionResult) -> None:
        with self._lock:
            if result.id in self._results:
                raise InvalidTransitionError(f"Execution record {result.id} already written")
            self._results[result.id] = result

    def append_batch(self, batch: ExecutionBatch) -> None:
        with self._lock:
            self._batches.append(batch)

    def get_result(self, result_id: str) -> Optional[ExecutionResult]:
        with self._lock:
            return self._results.get(result_id)

    def mark_rolled_back(self, result_id: str) -> ExecutionResult:
        with self._lock:
            result = self._results.get(result_id)
            if result is None:
                raise KeyError(result_id)
            if result.status != ExecutionStatus.SUCCESS:
                raise InvalidTransitionError(
                    f"Cannot roll back execution {result_id} in status {result.status.value}"
                )
            result.status = ExecutionStatus.ROLLED_BACK
            return result

    def batches(self, account_id: str) -> List[ExecutionBatch]:
        with self._lock:
            return [b for b in self._batches if b.account_id == account_id]

    def results(self, account_id: str) -> List[ExecutionResult]:
        with self._lock:
            return [r for r in self._results.values() if r.account_id == account_id]
