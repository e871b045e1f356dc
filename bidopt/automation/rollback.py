import logging
import threading
import uuid
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from bidopt.automation.schema import ExecutionRequest, ExecutionResult, ExecutionStatus, ExecutionType
from bidopt.bidding.config import RollbackConfig, config
from bidopt.bidding.schema import Priority
from bidopt.errors import InvalidTransitionError
from bidopt.monitoring.metrics import ROLLBACK_SUGGESTIONS
from bidopt.storage.interfaces import Notifier

logger = logging.getLogger(__name__)


class RollbackStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXECUTED = "executed"


@dataclass(slots=True)
class RollbackRule:
    id: str
    name: str
    profit_threshold_percent: float
    min_tracking_days: int
    description: str = ""
    enabled: bool = True
    include_negative_adjustments: bool = False
    auto_rollback: bool = False
    send_notification: bool = True
    priority: Priority = Priority.MEDIUM
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


def default_rules() -> List[RollbackRule]:
    return [
        RollbackRule(
            id="rule_severe_underperform",
            name="Severe underperformance",
            description="Actual profit at or below 30% of the estimate after 7 days",
            profit_threshold_percent=30,
            min_tracking_days=7,
            priority=Priority.HIGH,
        ),
        RollbackRule(
            id="rule_moderate_underperform",
            name="Moderate underperformance",
            description="Actual profit below 50% of the estimate after 14 days",
            profit_threshold_percent=50,
            min_tracking_days=14,
            priority=Priority.MEDIUM,
        ),
        RollbackRule(
            id="rule_long_term_underperform",
            name="Long-term underperformance",
            description="Actual profit still below 40% of the estimate after 30 days",
            profit_threshold_percent=40,
            min_tracking_days=30,
            include_negative_adjustments=True,
            priority=Priority.HIGH,
        ),
    ]


@dataclass(slots=True)
class AdjustmentRecord:
    """
    A tracked bid adjustment. `actual_profit_*` stay None until the
    tracking job has measured that horizon.
    """

    id: str
    account_id: str
    target_id: str
    previous_bid: float
    new_bid: float
    adjusted_at: datetime
    estimated_profit_change: Optional[float] = None
    actual_profit_7d: Optional[float] = None
    actual_profit_14d: Optional[float] = None
    actual_profit_30d: Optional[float] = None
    target_name: str = ""
    campaign_id: str = ""
    bid_change_percent: Optional[float] = None
    execution_id: Optional[str] = None
    rolled_back: bool = False

    @property
    def change_percent(self) -> float:
        if self.bid_change_percent is not None:
            return self.bid_change_percent
        if self.previous_bid == 0:
            return 0.0
        return (self.new_bid - self.previous_bid) / self.previous_bid * 100

    def actual_profit(self, days: int) -> Optional[float]:
        return {7: self.actual_profit_7d, 14: self.actual_profit_14d, 30: self.actual_profit_30d}.get(days)


@dataclass(slots=True)
class RollbackSuggestion:
    rule_id: str
    rule_name: str
    adjustment_id: str
    account_id: str
    target_id: str
    target_name: str
    campaign_id: str
    previous_bid: float
    new_bid: float
    bid_change_percent: float
    adjusted_at: datetime
    estimated_profit: float
    actual_profit: float
    profit_difference_percent: float
    tracking_days: int
    priority: Priority
    reason: str
    created_at: datetime
    status: RollbackStatus = RollbackStatus.PENDING
    reviewed_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    review_note: Optional[str] = None
    execution_id: Optional[str] = None
    id: str = field(default_factory=lambda: f"rollback_{uuid.uuid4().hex[:12]}")


def tracking_window(min_tracking_days: int, windows: Sequence[int] = (7, 14, 30)) -> Optional[int]:
    """Deepest tracking horizon not beyond the rule's minimum tracking days."""
    eligible = [w for w in windows if w <= min_tracking_days]
    return max(eligible) if eligible else None


def profit_difference_percent(estimated: float, actual: float) -> float:
    """
    Actual profit as a percentage of the estimate.

    estimated == 0: 0 when actual is a loss, else 100.
    estimated < 0: 100 when the loss is no worse than estimated, else estimated/actual.
    """
    if estimated == 0:
        return 0.0 if actual < 0 else 100.0
    if estimated < 0:
        if actual >= estimated:
            return 100.0
        return estimated / actual * 100
    return actual / estimated * 100


def evaluate_adjustment(
    record: AdjustmentRecord,
    rule: RollbackRule,
    now: Optional[datetime] = None,
    windows: Sequence[int] = (7, 14, 30),
) -> Optional[RollbackSuggestion]:
    """Returns a pending suggestion when the adjustment underperforms the rule, else None."""
    if not rule.enabled:
        return None

    days = tracking_window(rule.min_tracking_days, windows)
    if days is None:
        return None
    actual = record.actual_profit(days)
    if actual is None:
        return None

    bid_change = record.change_percent
    if bid_change < 0 and not rule.include_negative_adjustments:
        return None

    estimated = record.estimated_profit_change or 0.0
    pct = profit_difference_percent(estimated, actual)
    if pct >= rule.profit_threshold_percent:
        return None

    shortfall = abs(100 - pct)
    direction = "below" if actual < estimated else "above"
    reason = (
        f"Rule '{rule.name}': {days}-day actual profit ${actual:.2f} is {shortfall:.1f}% "
        f"{direction} the estimated ${estimated:.2f}; rollback suggested"
    )

    return RollbackSuggestion(
        rule_id=rule.id,
        rule_name=rule.name,
        adjustment_id=record.id,
        account_id=record.account_id,
        target_id=record.target_id,
        target_name=record.target_name,
        campaign_id=record.campaign_id,
        previous_bid=record.previous_bid,
        new_bid=record.new_bid,
        bid_change_percent=bid_change,
        adjusted_at=record.adjusted_at,
        estimated_profit=estimated,
        actual_profit=actual,
        profit_difference_percent=round(pct, 2),
        tracking_days=days,
        priority=rule.priority,
        reason=reason,
        created_at=now or datetime.now(),
    )


class RollbackEvaluator:
    """
    Raises rollback suggestions for applied adjustments whose tracked profit
    falls short of the estimate, and carries them through review and execution.

    Lifecycle: pending -> approved | rejected, approved -> executed.
    Non-pending suggestions are purged after the retention window; pending
    ones are kept until reviewed.
    """

    def __init__(
        self,
        controller=None,
        notifier: Optional[Notifier] = None,
        rules: Optional[Sequence[RollbackRule]] = None,
        clock: Optional[Callable[[], datetime]] = None,
        conf: Optional[RollbackConfig] = None,
    ):
        self.controller = controller
        self.notifier = notifier
        self.clock = clock or datetime.now
        self.conf = conf or config.rollback

        self._lock = threading.Lock()
        self._rules: Dict[str, RollbackRule] = {r.id: r for r in (rules if rules is not None else default_rules())}
        self._suggestions: Dict[str, RollbackSuggestion] = {}
        self._records: Dict[str, AdjustmentRecord] = {}

    # Rules

    def list_rules(self) -> List[RollbackRule]:
        with self._lock:
            return list(self._rules.values())

    def get_rule(self, rule_id: str) -> Optional[RollbackRule]:
        with self._lock:
            return self._rules.get(rule_id)

    def create_rule(self, name: str, profit_threshold_percent: float, min_tracking_days: int, **options) -> RollbackRule:
        if min_tracking_days not in self.conf.tracking_windows:
            raise ValueError(f"min_tracking_days must be one of {self.conf.tracking_windows}")
        now = self.clock()
        rule = RollbackRule(
            id=f"rule_{uuid.uuid4().hex[:12]}",
            name=name,
            profit_threshold_percent=profit_threshold_percent,
            min_tracking_days=min_tracking_days,
            created_at=now,
            updated_at=now,
            **options,
        )
        with self._lock:
            self._rules[rule.id] = rule
        logger.info(f"Rollback rule {rule.id} ({name}) created")
        return rule

    def update_rule(self, rule_id: str, **changes) -> RollbackRule:
        allowed = {f.name for f in fields(RollbackRule)} - {"id", "created_at", "updated_at"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"Unknown rule fields: {sorted(unknown)}")
        with self._lock:
            rule = self._rules[rule_id]
            updated = replace(rule, updated_at=self.clock(), **changes)
            self._rules[rule_id] = updated
        return updated

    def delete_rule(self, rule_id: str) -> bool:
        with self._lock:
            return self._rules.pop(rule_id, None) is not None

    # Evaluation

    def run_evaluation(self, records: Sequence[AdjustmentRecord], account_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Evaluate every (record, enabled rule) pair. A pair with a pending
        suggestion is skipped. Rolled-back records are ignored.
        """
        candidates = [
            r for r in records
            if not r.rolled_back and (account_id is None or r.account_id == account_id)
        ]
        now = self.clock()
        created: List[RollbackSuggestion] = []

        with self._lock:
            rules = [r for r in self._rules.values() if r.enabled]
            pending = {
                (s.adjustment_id, s.rule_id)
                for s in self._suggestions.values()
                if s.status == RollbackStatus.PENDING
            }
            for record in candidates:
                for rule in rules:
                    if (record.id, rule.id) in pending:
                        continue
                    suggestion = evaluate_adjustment(record, rule, now, self.conf.tracking_windows)
                    if suggestion is None:
                        continue
                    self._suggestions[suggestion.id] = suggestion
                    self._records[record.id] = record
                    pending.add((record.id, rule.id))
                    created.append(suggestion)

        for suggestion in created:
            ROLLBACK_SUGGESTIONS.labels(priority=suggestion.priority.value).inc()
            rule = self.get_rule(suggestion.rule_id)
            if rule is not None and rule.send_notification:
                self._notify(suggestion)
            if rule is not None and rule.auto_rollback and self.controller is not None:
                self.review(suggestion.id, approve=True, reviewed_by="auto")
                self.execute_suggestion(suggestion.id)

        if created:
            logger.info(f"Rollback evaluation: {len(created)} new suggestions from {len(candidates)} adjustments")
        return {"evaluated": len(candidates), "suggestions": created}

    def _notify(self, suggestion: RollbackSuggestion) -> None:
        if self.notifier is None:
            return
        severity = "warning" if suggestion.priority in (Priority.HIGH, Priority.CRITICAL) else "info"
        try:
            self.notifier.notify(
                suggestion.account_id,
                f"Rollback suggested for {suggestion.target_name or suggestion.target_id}",
                suggestion.reason,
                severity,
            )
        except Exception as e:
            logger.error(f"Rollback notification for {suggestion.id} failed: {e}", exc_info=True)

    # Suggestions

    def get_suggestion(self, suggestion_id: str) -> Optional[RollbackSuggestion]:
        with self._lock:
            return self._suggestions.get(suggestion_id)

    def get_suggestions(
        self,
        status: Optional[RollbackStatus] = None,
        priority: Optional[Priority] = None,
        rule_id: Optional[str] = None,
        account_id: Optional[str] = None,
    ) -> List[RollbackSuggestion]:
        with self._lock:
            items = list(self._suggestions.values())
        if status is not None:
            items = [s for s in items if s.status == status]
        if priority is not None:
            items = [s for s in items if s.priority == priority]
        if rule_id is not None:
            items = [s for s in items if s.rule_id == rule_id]
        if account_id is not None:
            items = [s for s in items if s.account_id == account_id]
        return sorted(items, key=lambda s: s.created_at, reverse=True)

    def review(self, suggestion_id: str, approve: bool, reviewed_by: str, note: Optional[str] = None) -> RollbackSuggestion:
        with self._lock:
            suggestion = self._suggestions[suggestion_id]
            if suggestion.status != RollbackStatus.PENDING:
                raise InvalidTransitionError(
                    f"Rollback suggestion {suggestion_id} already {suggestion.status.value}"
                )
            suggestion.status = RollbackStatus.APPROVED if approve else RollbackStatus.REJECTED
            suggestion.reviewed_at = self.clock()
            suggestion.reviewed_by = reviewed_by
            suggestion.review_note = note
        logger.info(f"Rollback suggestion {suggestion_id} {suggestion.status.value} by {reviewed_by}")
        return suggestion

    def execute_suggestion(self, suggestion_id: str) -> ExecutionResult:
        """
        Restore the previous bid through the controller. The suggestion moves to
        executed only on a successful apply; otherwise it stays approved.
        """
        if self.controller is None:
            raise InvalidTransitionError("No execution controller configured for rollbacks")

        with self._lock:
            account_id = self._suggestions[suggestion_id].account_id

        # The account lock spans check, apply and commit so one approval applies once
        with self.controller.account_lock(account_id):
            return self._execute_approved(suggestion_id)

    def _execute_approved(self, suggestion_id: str) -> ExecutionResult:
        with self._lock:
            suggestion = self._suggestions[suggestion_id]
            if suggestion.status != RollbackStatus.APPROVED:
                raise InvalidTransitionError(
                    f"Rollback suggestion {suggestion_id} is {suggestion.status.value}, not approved"
                )

        request = ExecutionRequest(
            execution_type=ExecutionType.AUTO_ROLLBACK,
            target_id=suggestion.target_id,
            current_value=suggestion.new_bid,
            new_value=suggestion.previous_bid,
            confidence=100.0,
            reason=suggestion.reason,
            target_name=suggestion.target_name,
            campaign_id=suggestion.campaign_id,
        )
        result = self.controller.execute(suggestion.account_id, request, executed_by=suggestion.reviewed_by or "auto")
        if result.status != ExecutionStatus.SUCCESS:
            logger.warning(f"Rollback {suggestion_id} not applied: {result.status.value} ({result.reason})")
            return result

        with self._lock:
            suggestion.status = RollbackStatus.EXECUTED
            suggestion.execution_id = result.id
            record = self._records.get(suggestion.adjustment_id)
            if record is not None:
                record.rolled_back = True

        if record is not None and record.execution_id:
            try:
                self.controller.mark_rolled_back(record.execution_id)
            except (KeyError, InvalidTransitionError) as e:
                logger.warning(f"Could not mark execution {record.execution_id} rolled back: {e}")
        return result

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            items = list(self._suggestions.values())
        stats: Dict[str, Any] = {"total": len(items)}
        for status in RollbackStatus:
            stats[status.value] = sum(1 for s in items if s.status == status)
        stats["by_priority"] = {p.value: sum(1 for s in items if s.priority == p) for p in Priority}
        by_rule: Dict[str, int] = {}
        for s in items:
            by_rule[s.rule_id] = by_rule.get(s.rule_id, 0) + 1
        stats["by_rule"] = by_rule
        return stats

    def cleanup(self, now: Optional[datetime] = None) -> int:
        """Drop reviewed suggestions older than the retention window. Pending ones are kept."""
        cutoff = (now or self.clock()) - timedelta(days=self.conf.retention_days)
        with self._lock:
            stale = [
                sid for sid, s in self._suggestions.items()
                if s.status != RollbackStatus.PENDING and s.created_at <= cutoff
            ]
            for sid in stale:
                del self._suggestions[sid]

            # Only suggestions still awaiting review or execution need their record
            live = {
                s.adjustment_id
                for s in self._suggestions.values()
                if s.status in (RollbackStatus.PENDING, RollbackStatus.APPROVED)
            }
            for record_id in [rid for rid in self._records if rid not in live]:
                del self._records[record_id]
        if stale:
            logger.info(f"Purged {len(stale)} rollback suggestions older than {cutoff:%Y-%m-%d}")
        return len(stale)
