import logging
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccountSnapshot:
    """Account-level totals over a comparison window."""

    spend: float = 0.0
    sales: float = 0.0
    clicks: int = 0
    orders: int = 0

    @property
    def acos(self) -> float:
        return self.spend / self.sales if self.sales > 0 else 0.0

    @property
    def cvr(self) -> float:
        return self.orders / self.clicks if self.clicks > 0 else 0.0


class EmergencyGuard:
    """
    Stateful watchdog over the SafetyBoundary emergency triggers.

    Trips the controller's emergency stop on:
    - ACoS increase beyond `acos_increase_threshold` % of baseline.
    - Spend beyond `spend_overrun_threshold` % of the expected spend.
    - Conversion-rate drop beyond `conversion_drop_threshold` % of baseline.
    - `api_failure_threshold` consecutive apply failures.

    Resuming is always a manual call on the controller.
    """

    def __init__(self, controller):
        self.controller = controller
        self._lock = threading.Lock()
        self._consecutive_failures: Dict[str, int] = {}

    def record_api_result(self, account_id: str, success: bool) -> bool:
        """Track consecutive apply failures. Returns True when this call tripped a stop."""
        threshold = self.controller.get_account_config(account_id).safety.api_failure_threshold
        with self._lock:
            if success:
                self._consecutive_failures[account_id] = 0
                return False
            failures = self._consecutive_failures.get(account_id, 0) + 1
            self._consecutive_failures[account_id] = failures

        if failures >= threshold:
            with self._lock:
                self._consecutive_failures[account_id] = 0
            self.controller.emergency_stop(account_id, f"{failures} consecutive API failures")
            return True
        return False

    def consecutive_failures(self, account_id: str) -> int:
        with self._lock:
            return self._consecutive_failures.get(account_id, 0)

    def evaluate(
        self,
        account_id: str,
        baseline: AccountSnapshot,
        current: AccountSnapshot,
        expected_spend: Optional[float] = None,
    ) -> List[str]:
        """
        Compare current totals against baseline. Any tripped trigger stops
        automation for the account. Returns the trigger descriptions.
        """
        safety = self.controller.get_account_config(account_id).safety
        triggers = []

        if baseline.acos > 0:
            increase = (current.acos - baseline.acos) / baseline.acos * 100
            if increase > safety.acos_increase_threshold:
                triggers.append(f"ACoS up {increase:.1f}% (limit {safety.acos_increase_threshold}%)")

        if expected_spend and expected_spend > 0:
            ratio = current.spend / expected_spend * 100
            if ratio > safety.spend_overrun_threshold:
                triggers.append(f"Spend at {ratio:.1f}% of expected (limit {safety.spend_overrun_threshold}%)")

        if baseline.cvr > 0:
            drop = (baseline.cvr - current.cvr) / baseline.cvr * 100
            if drop > safety.conversion_drop_threshold:
                triggers.append(f"Conversion rate down {drop:.1f}% (limit {safety.conversion_drop_threshold}%)")

        if triggers:
            logger.warning(f"Account {account_id}: emergency triggers fired: {triggers}")
            self.controller.emergency_stop(account_id, "; ".join(triggers))
        return triggers
