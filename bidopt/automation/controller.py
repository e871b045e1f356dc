import logging
import math
import time
from dataclasses import asdict, replace
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from bidopt.automation.schema import (
    AutomationMode,
    ConfidenceTier,
    ExecutionBatch,
    ExecutionRequest,
    ExecutionResult,
    ExecutionStatus,
    ExecutionType,
    TARGET_STATES,
)
from bidopt.automation.store import ExecutionStore
from bidopt.bidding.config import AutomationConfig, NotificationConfig, SafetyBoundary
from bidopt.bidding.schema import TargetPerformance
from bidopt.errors import ApplyFailureError, BoundaryViolationError, ConfigurationError
from bidopt.monitoring.guard import EmergencyGuard
from bidopt.monitoring.metrics import AUTOMATION_ENABLED, BATCH_LATENCY, EMERGENCY_STOPS, EXECUTIONS
from bidopt.storage.interfaces import AdPlatform, Notifier

logger = logging.getLogger(__name__)


def change_percent(current: float, new: float) -> float:
    """|new - current| / current as a percentage. A move away from zero is unbounded."""
    if current == 0:
        return 0.0 if new == 0 else math.inf
    return abs((new - current) / current * 100)


def daily_limit(safety: SafetyBoundary, execution_type: ExecutionType) -> int:
    if execution_type == ExecutionType.BID_ADJUSTMENT:
        return safety.max_daily_bid_adjustments
    if execution_type == ExecutionType.BUDGET_ADJUSTMENT:
        return safety.max_daily_budget_adjustments
    return safety.max_daily_total_adjustments


def check_boundary(safety: SafetyBoundary, request: ExecutionRequest) -> None:
    """Raise BoundaryViolationError when the change exceeds the cap for its type."""
    limits = {
        ExecutionType.BID_ADJUSTMENT: ("Bid", safety.max_bid_change_percent),
        ExecutionType.BUDGET_ADJUSTMENT: ("Budget", safety.max_budget_change_percent),
        ExecutionType.PLACEMENT_TILT: ("Placement", safety.max_placement_change_percent),
    }
    if request.execution_type not in limits:
        return
    label, limit = limits[request.execution_type]
    # Rounded so an exact cap such as 1.0 -> 0.7 at 30% is not a violation
    pct = round(change_percent(request.current_value, request.new_value), 6)
    if pct > limit:
        raise BoundaryViolationError(
            f"{label} change {pct:.1f}% exceeds safety boundary {limit}%",
            change_percent=pct,
            limit_percent=limit,
        )


def confidence_tier(safety: SafetyBoundary, confidence: float) -> Tuple[ConfidenceTier, str]:
    if confidence >= safety.auto_execute_confidence:
        return ConfidenceTier.AUTO, f"Confidence {confidence:.0f}% >= {safety.auto_execute_confidence:.0f}%, auto-executed"
    if confidence >= safety.supervised_confidence:
        return ConfidenceTier.SUPERVISED, f"Confidence {confidence:.0f}% >= {safety.supervised_confidence:.0f}%, supervised execution"
    return ConfidenceTier.MANUAL, f"Confidence {confidence:.0f}% < {safety.supervised_confidence:.0f}%, needs manual review"


class AutomationController:
    """
    Gates and applies optimization changes per account.

    Execution Flow (per request, under the account lock):
        1. Account enabled and execution type enabled
        2. Per-type daily counter not exhausted
        3. Change within the per-type safety boundary
        4. Confidence tier: auto / supervised / manual (manual proceeds only in approval mode)
        5. Apply through the ad platform, increment the counter, append the audit record

    Attributes:
        store (ExecutionStore): Config, counters and audit trail.
        ad_platform (AdPlatform): Applies changes.
        notifier (Notifier): Receives alerts; its failures never affect execution.
        guard (EmergencyGuard): Trips emergency stops on repeated apply failures.
    """

    def __init__(
        self,
        ad_platform: AdPlatform,
        notifier: Notifier,
        store: Optional[ExecutionStore] = None,
        engine=None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.ad_platform = ad_platform
        self.notifier = notifier
        self.store = store or ExecutionStore()
        self.engine = engine
        self.clock = clock or datetime.now
        self.guard = EmergencyGuard(self)

        self._appliers: Dict[ExecutionType, Callable[[str, ExecutionRequest], None]] = {
            ExecutionType.BID_ADJUSTMENT: self._apply_bid,
            ExecutionType.AUTO_ROLLBACK: self._apply_bid,
            ExecutionType.BUDGET_ADJUSTMENT: self._apply_budget,
            ExecutionType.PLACEMENT_TILT: self._apply_placement,
            ExecutionType.NEGATIVE_KEYWORD: self._apply_negative_keyword,
            ExecutionType.TARGET_STATE: self._apply_target_state,
        }

    # Config

    def get_account_config(self, account_id: str) -> AutomationConfig:
        return self.store.get_config(account_id)

    def update_account_config(
        self,
        account_id: str,
        enabled: Optional[bool] = None,
        mode: Optional[str] = None,
        safety: Optional[Dict[str, Any]] = None,
        enabled_types: Optional[Sequence[str]] = None,
        notifications: Optional[Dict[str, Any]] = None,
    ) -> AutomationConfig:
        """Merge changes into the account config. Invalid values raise ConfigurationError."""
        with self.store.account_lock(account_id):
            current = self.get_account_config(account_id)
            changes: Dict[str, Any] = {}

            if enabled is not None:
                changes["enabled"] = bool(enabled)
            if mode is not None:
                try:
                    changes["mode"] = AutomationMode(mode).value
                except ValueError:
                    raise ConfigurationError(f"Unknown automation mode {mode!r}")
            if enabled_types is not None:
                try:
                    changes["enabled_types"] = tuple(ExecutionType(t).value for t in enabled_types)
                except ValueError as e:
                    raise ConfigurationError(f"Unknown execution type: {e}")
            if safety is not None:
                changes["safety"] = _merge(current.safety, safety, SafetyBoundary)
                _validate_safety(changes["safety"])
            if notifications is not None:
                changes["notifications"] = _merge(current.notifications, notifications, NotificationConfig)

            updated = replace(current, **changes)
            self.store.set_config(account_id, updated)

        logger.info(f"Account {account_id}: automation config updated ({', '.join(changes) or 'no changes'})")
        return updated

    def account_lock(self, account_id: str):
        """Serializes execution for one account. Re-entrant."""
        return self.store.account_lock(account_id)

    # Execution

    def execute(self, account_id: str, request: ExecutionRequest, executed_by: str = "auto") -> ExecutionResult:
        now = self.clock()
        day = now.date()

        with self.store.account_lock(account_id):
            cfg = self.get_account_config(account_id)
            self.store.observe_day(day, cfg.counter_retention_days)

            status, reason, tier = self._gate(account_id, cfg, request, day)
            applier = None
            if status is None:
                try:
                    applier = self._resolve_applier(request)
                except ApplyFailureError as e:
                    # Rejected locally, the platform was never called
                    logger.warning(f"Account {account_id}: {request.execution_type.value} on {request.target_id} not applicable: {e}")
                    status, reason = ExecutionStatus.FAILED, f"Execution failed: {e}"

            if applier is not None:
                try:
                    applier(account_id, request)
                except Exception as e:
                    error = e if isinstance(e, ApplyFailureError) else ApplyFailureError(str(e))
                    logger.error(
                        f"Account {account_id}: applying {request.execution_type.value} "
                        f"to {request.target_id} failed: {error}",
                        exc_info=True,
                    )
                    status, reason = ExecutionStatus.FAILED, f"Execution failed: {error}"
                    self.guard.record_api_result(account_id, False)
                else:
                    self.store.increment(account_id, day, request.execution_type)
                    status = ExecutionStatus.SUCCESS
                    reason = f"{reason}. {request.reason}" if request.reason else reason
                    self.guard.record_api_result(account_id, True)

            result = ExecutionResult(
                account_id=account_id,
                execution_type=request.execution_type,
                target_type=request.target_type,
                target_id=request.target_id,
                target_name=request.target_name,
                previous_value=request.current_value,
                new_value=request.new_value,
                confidence=request.confidence,
                status=status,
                reason=reason,
                executed_at=now,
                tier=tier,
                executed_by=executed_by,
            )
            self.store.append_result(result)

        EXECUTIONS.labels(execution_type=request.execution_type.value, status=status.value).inc()
        return result

    def _gate(
        self, account_id: str, cfg: AutomationConfig, request: ExecutionRequest, day: date
    ) -> Tuple[Optional[ExecutionStatus], str, Optional[ConfidenceTier]]:
        """Returns (None, tier reason, tier) when the request may be applied."""
        if not cfg.enabled or cfg.mode == AutomationMode.DISABLED.value:
            return ExecutionStatus.BLOCKED, "Automation is disabled", None

        if request.execution_type.value not in cfg.enabled_types:
            return ExecutionStatus.BLOCKED, f"Execution type {request.execution_type.value} is not enabled", None

        limit = daily_limit(cfg.safety, request.execution_type)
        used = self.store.get_count(account_id, day, request.execution_type)
        if used >= limit:
            return ExecutionStatus.BLOCKED, f"Daily limit reached ({used}/{limit})", None

        try:
            check_boundary(cfg.safety, request)
        except BoundaryViolationError as e:
            return ExecutionStatus.BLOCKED, str(e), None

        tier, tier_reason = confidence_tier(cfg.safety, request.confidence)
        if tier == ConfidenceTier.MANUAL and cfg.mode != AutomationMode.APPROVAL.value:
            return ExecutionStatus.SKIPPED, tier_reason, tier
        return None, tier_reason, tier

    def _resolve_applier(self, request: ExecutionRequest) -> Callable[[str, ExecutionRequest], None]:
        """Checks that need no platform call. Failures here do not count toward the API failure streak."""
        applier = self._appliers.get(request.execution_type)
        if applier is None:
            raise ApplyFailureError(f"No platform operation for {request.execution_type.value}")
        if request.execution_type == ExecutionType.PLACEMENT_TILT and not request.placement:
            raise ApplyFailureError("Placement tilt requires a placement")
        if request.execution_type == ExecutionType.TARGET_STATE and request.target_state not in TARGET_STATES:
            raise ApplyFailureError(f"Unknown target state {request.target_state!r}")
        return applier

    def _apply_bid(self, account_id: str, request: ExecutionRequest) -> None:
        self.ad_platform.update_keyword_bid(account_id, request.target_id, request.new_value)

    def _apply_target_state(self, account_id: str, request: ExecutionRequest) -> None:
        self.ad_platform.update_target_state(account_id, request.target_id, request.target_state)

    def _apply_budget(self, account_id: str, request: ExecutionRequest) -> None:
        self.ad_platform.update_campaign_budget(account_id, request.campaign_id or request.target_id, request.new_value)

    def _apply_placement(self, account_id: str, request: ExecutionRequest) -> None:
        self.ad_platform.update_placement_multiplier(
            account_id, request.campaign_id or request.target_id, request.placement, request.new_value
        )

    def _apply_negative_keyword(self, account_id: str, request: ExecutionRequest) -> None:
        self.ad_platform.add_negative_keyword(
            account_id, request.campaign_id, request.keyword_text or request.target_name
        )

    def execute_batch(self, account_id: str, requests: Sequence[ExecutionRequest]) -> ExecutionBatch:
        """
        Execute requests in order. Failures are recorded per item and never
        abort the batch or undo earlier successes.
        """
        start = time.perf_counter()
        batch = ExecutionBatch(account_id=account_id, started_at=self.clock())

        for request in requests:
            try:
                batch.results.append(self.execute(account_id, request))
            except Exception as e:
                logger.error(f"Account {account_id}: unexpected error on {request.target_id}: {e}", exc_info=True)
                result = ExecutionResult(
                    account_id=account_id,
                    execution_type=request.execution_type,
                    target_type=request.target_type,
                    target_id=request.target_id,
                    target_name=request.target_name,
                    previous_value=request.current_value,
                    new_value=request.new_value,
                    confidence=request.confidence,
                    status=ExecutionStatus.FAILED,
                    reason=f"Execution failed: {e}",
                    executed_at=self.clock(),
                )
                self.store.append_result(result)
                batch.results.append(result)

        batch.completed_at = self.clock()
        self.store.append_batch(batch)
        BATCH_LATENCY.observe(time.perf_counter() - start)

        summary = (
            f"Batch {batch.id}: {batch.success_items} succeeded, {batch.failed_items} failed, "
            f"{batch.skipped_items} skipped, {batch.blocked_items} blocked"
        )
        logger.info(f"Account {account_id}: {summary}")

        notifications = self.get_account_config(account_id).notifications
        if notifications.notify_on_failure and batch.failed_items > 0:
            self._notify(account_id, "Automated execution partially failed", summary, "warning")
        if notifications.notify_on_blocked and batch.blocked_items > 0:
            self._notify(account_id, "Automated execution blocked", summary, "info")
        if notifications.notify_on_success and batch.success_items > 0:
            self._notify(account_id, "Automated execution completed", summary, "info")
        return batch

    def run_cycle(self, account_id: str, performances: Sequence[TargetPerformance]) -> Dict[str, Any]:
        """Engine suggestions at or above the supervised tier, executed as one batch."""
        cfg = self.get_account_config(account_id)
        empty = {"suggestions": [], "batch": None, "summary": _cycle_summary([], None)}
        if not cfg.enabled or cfg.mode == AutomationMode.DISABLED.value:
            return empty
        if self.engine is None:
            raise ConfigurationError("run_cycle requires an optimization engine")

        suggestions = self.engine.batch_generate(account_id, performances)
        requests = [
            ExecutionRequest.from_suggestion(s)
            for s in suggestions
            if s.confidence * 100 >= cfg.safety.supervised_confidence
        ]
        batch = self.execute_batch(account_id, requests) if requests else None
        return {"suggestions": suggestions, "batch": batch, "summary": _cycle_summary(suggestions, batch)}

    # Reporting

    def get_daily_stats(self, account_id: str, day: Optional[date] = None) -> Dict[str, Any]:
        day = day or self.clock().date()
        safety = self.get_account_config(account_id).safety
        counts = self.store.counts_for_day(account_id, day)
        bid = counts.get(ExecutionType.BID_ADJUSTMENT, 0)
        budget = counts.get(ExecutionType.BUDGET_ADJUSTMENT, 0)
        total = sum(counts.values())
        return {
            "date": day.isoformat(),
            "bid_adjustments": bid,
            "budget_adjustments": budget,
            "total_adjustments": total,
            "by_type": {t.value: n for t, n in counts.items()},
            "remaining": {
                "bid_adjustments": max(0, safety.max_daily_bid_adjustments - bid),
                "budget_adjustments": max(0, safety.max_daily_budget_adjustments - budget),
                "total_adjustments": max(0, safety.max_daily_total_adjustments - total),
            },
        }

    def get_execution_history(
        self,
        account_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[ExecutionBatch]:
        batches = self.store.batches(account_id)
        if start is not None:
            batches = [b for b in batches if b.started_at >= start]
        if end is not None:
            batches = [b for b in batches if b.started_at <= end]
        batches.sort(key=lambda b: b.started_at, reverse=True)
        return batches[:limit] if limit else batches

    def mark_rolled_back(self, result_id: str) -> ExecutionResult:
        return self.store.mark_rolled_back(result_id)

    def purge_counters(self, before: date) -> int:
        return self.store.purge_counters(before)

    # Emergency controls

    def emergency_stop(self, account_id: str, reason: str) -> None:
        """Disable automation and raise a critical alert. Only resume_automation re-enables."""
        with self.store.account_lock(account_id):
            cfg = self.get_account_config(account_id)
            self.store.set_config(account_id, replace(cfg, enabled=False))

        EMERGENCY_STOPS.inc()
        AUTOMATION_ENABLED.labels(account_id=account_id).set(0)
        logger.warning(f"Account {account_id}: emergency stop ({reason})")
        self._notify(
            account_id,
            "Automation emergency stop",
            f"Automated execution for account {account_id} was stopped. Reason: {reason}",
            "critical",
        )

    def resume_automation(self, account_id: str) -> None:
        with self.store.account_lock(account_id):
            cfg = self.get_account_config(account_id)
            self.store.set_config(account_id, replace(cfg, enabled=True))
        AUTOMATION_ENABLED.labels(account_id=account_id).set(1)
        logger.info(f"Account {account_id}: automation resumed")

    def _notify(self, account_id: str, title: str, message: str, severity: str) -> None:
        try:
            self.notifier.notify(account_id, title, message, severity)
        except Exception as e:
            logger.error(f"Notification to account {account_id} failed: {e}", exc_info=True)


def _merge(current, changes, cls):
    if isinstance(changes, cls):
        return changes
    fields = asdict(current)
    unknown = set(changes) - set(fields)
    if unknown:
        raise ConfigurationError(f"Unknown {cls.__name__} fields: {sorted(unknown)}")
    return replace(current, **changes)


def _validate_safety(safety: SafetyBoundary) -> None:
    for name, value in asdict(safety).items():
        if value < 0:
            raise ConfigurationError(f"{name} must be non-negative, got {value}")
    if not 0 <= safety.supervised_confidence <= safety.auto_execute_confidence <= 100:
        raise ConfigurationError(
            "Confidence tiers must satisfy 0 <= supervised <= auto <= 100, got "
            f"supervised={safety.supervised_confidence}, auto={safety.auto_execute_confidence}"
        )
    if safety.api_failure_threshold < 1:
        raise ConfigurationError("api_failure_threshold must be at least 1")


def _cycle_summary(suggestions, batch: Optional[ExecutionBatch]) -> Dict[str, int]:
    return {
        "total_analyzed": len(suggestions),
        "total_executed": batch.success_items if batch else 0,
        "total_skipped": batch.skipped_items if batch else 0,
        "total_blocked": batch.blocked_items if batch else 0,
        "total_failed": batch.failed_items if batch else 0,
    }
