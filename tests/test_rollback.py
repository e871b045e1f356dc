from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from bidopt.automation.controller import AutomationController
from bidopt.automation.rollback import (
    AdjustmentRecord,
    RollbackEvaluator,
    RollbackRule,
    RollbackStatus,
    default_rules,
    evaluate_adjustment,
    profit_difference_percent,
    tracking_window,
)
from bidopt.automation.schema import ExecutionRequest, ExecutionStatus, ExecutionType
from bidopt.bidding.schema import Priority
from bidopt.errors import InvalidTransitionError
from bidopt.storage.memory import LoggingNotifier, RecordingAdPlatform

NOW = datetime(2026, 3, 20, 8, 0)


def _rule(threshold=50.0, days=7, include_negative=False, enabled=True, **kwargs):
    return RollbackRule(
        id=f"rule-{threshold}-{days}",
        name="test rule",
        profit_threshold_percent=threshold,
        min_tracking_days=days,
        include_negative_adjustments=include_negative,
        enabled=enabled,
        **kwargs,
    )


def _record(record_id="adj-1", estimated=100.0, p7=None, p14=None, p30=None, previous=1.0, new=1.2, **kwargs):
    return AdjustmentRecord(
        id=record_id,
        account_id="acc",
        target_id="kw-1",
        target_name="running shoes",
        previous_bid=previous,
        new_bid=new,
        adjusted_at=NOW - timedelta(days=8),
        estimated_profit_change=estimated,
        actual_profit_7d=p7,
        actual_profit_14d=p14,
        actual_profit_30d=p30,
        **kwargs,
    )


def test_underperformance_scenario():
    suggestion = evaluate_adjustment(_record(estimated=100.0, p7=20.0), _rule(threshold=50.0, days=7), NOW)
    assert suggestion is not None
    assert suggestion.profit_difference_percent == 20.0
    assert suggestion.tracking_days == 7
    assert suggestion.status == RollbackStatus.PENDING
    assert suggestion.previous_bid == 1.0
    assert "7-day" in suggestion.reason


@pytest.mark.parametrize(
    "record,rule",
    [
        (_record(p7=20.0), _rule(enabled=False)),
        (_record(p7=None, p14=10.0), _rule(days=7)),
        (_record(p7=20.0, new=0.8), _rule(include_negative=False)),
        (_record(p7=60.0), _rule(threshold=50.0)),
        (_record(p7=50.0), _rule(threshold=50.0)),
    ],
    ids=["disabled", "unmeasured", "direction", "above-threshold", "at-threshold"],
)
def test_no_suggestion(record, rule):
    assert evaluate_adjustment(record, rule, NOW) is None


def test_negative_adjustment_included_when_rule_allows():
    suggestion = evaluate_adjustment(_record(p7=20.0, new=0.8), _rule(include_negative=True), NOW)
    assert suggestion is not None
    assert suggestion.bid_change_percent == pytest.approx(-20.0)


@pytest.mark.parametrize("days,expected", [(7, 7), (10, 7), (14, 14), (29, 14), (30, 30), (45, 30), (3, None)])
def test_tracking_window_is_deepest_not_beyond(days, expected):
    assert tracking_window(days) == expected


def test_window_uses_configured_horizon():
    record = _record(p7=90.0, p14=10.0)
    assert evaluate_adjustment(record, _rule(days=7), NOW) is None
    suggestion = evaluate_adjustment(record, _rule(days=14), NOW)
    assert suggestion.tracking_days == 14
    assert suggestion.actual_profit == 10.0


@pytest.mark.parametrize(
    "estimated,actual,expected",
    [
        (100.0, 20.0, 20.0),
        (100.0, -50.0, -50.0),
        (0.0, -1.0, 0.0),
        (0.0, 0.0, 100.0),
        (0.0, 5.0, 100.0),
        (-50.0, -50.0, 100.0),
        (-50.0, -10.0, 100.0),
        (-50.0, -100.0, 50.0),
    ],
)
def test_profit_difference_percent(estimated, actual, expected):
    assert profit_difference_percent(estimated, actual) == pytest.approx(expected)


def test_missing_estimate_treated_as_zero():
    suggestion = evaluate_adjustment(_record(estimated=None, p7=-5.0), _rule(threshold=50.0), NOW)
    assert suggestion.profit_difference_percent == 0.0


def test_default_rules():
    rules = {r.id: r for r in default_rules()}
    assert rules["rule_severe_underperform"].profit_threshold_percent == 30
    assert rules["rule_severe_underperform"].priority == Priority.HIGH
    assert rules["rule_moderate_underperform"].min_tracking_days == 14
    assert rules["rule_long_term_underperform"].include_negative_adjustments is True


@pytest.fixture
def evaluator():
    return RollbackEvaluator(rules=[_rule(threshold=50.0, days=7)], notifier=LoggingNotifier(), clock=lambda: NOW)


def test_duplicates_suppressed_while_pending(evaluator):
    records = [_record(p7=20.0)]
    first = evaluator.run_evaluation(records)
    second = evaluator.run_evaluation(records)
    assert len(first["suggestions"]) == 1
    assert second["suggestions"] == []
    assert second["evaluated"] == 1

    evaluator.review(first["suggestions"][0].id, approve=False, reviewed_by="ops")
    # Once reviewed, the pair may be raised again
    assert len(evaluator.run_evaluation(records)["suggestions"]) == 1


def test_run_evaluation_filters(evaluator):
    records = [_record("a", p7=20.0), _record("b", p7=20.0, rolled_back=True), _record("c", p7=90.0)]
    records[0].account_id = "other"
    result = evaluator.run_evaluation(records, account_id="acc")
    assert result["evaluated"] == 1
    assert result["suggestions"] == []


def test_trigger_notifies(evaluator):
    evaluator.run_evaluation([_record(p7=20.0)])
    assert len(evaluator.notifier.sent) == 1
    assert evaluator.notifier.sent[0].severity == "info"


def test_review_lifecycle(evaluator):
    suggestion = evaluator.run_evaluation([_record(p7=20.0)])["suggestions"][0]
    reviewed = evaluator.review(suggestion.id, approve=True, reviewed_by="ops", note="agreed")
    assert reviewed.status == RollbackStatus.APPROVED
    assert reviewed.reviewed_by == "ops"
    assert reviewed.reviewed_at == NOW

    with pytest.raises(InvalidTransitionError):
        evaluator.review(suggestion.id, approve=False, reviewed_by="ops")


def test_execute_requires_approval():
    controller = MagicMock()
    evaluator = RollbackEvaluator(controller=controller, rules=[_rule()], clock=lambda: NOW)
    suggestion = evaluator.run_evaluation([_record(p7=20.0)])["suggestions"][0]
    with pytest.raises(InvalidTransitionError):
        evaluator.execute_suggestion(suggestion.id)
    controller.execute.assert_not_called()


def test_execute_restores_previous_bid_and_marks_audit():
    platform = RecordingAdPlatform()
    controller = AutomationController(platform, LoggingNotifier(), clock=lambda: NOW)
    original = controller.execute(
        "acc", ExecutionRequest(ExecutionType.BID_ADJUSTMENT, "kw-1", 1.0, 1.2, 90.0)
    )

    evaluator = RollbackEvaluator(controller=controller, rules=[_rule()], clock=lambda: NOW)
    record = _record(p7=20.0, execution_id=original.id)
    suggestion = evaluator.run_evaluation([record])["suggestions"][0]
    evaluator.review(suggestion.id, approve=True, reviewed_by="ops")

    result = evaluator.execute_suggestion(suggestion.id)
    assert result.status == ExecutionStatus.SUCCESS
    assert result.execution_type == ExecutionType.AUTO_ROLLBACK
    assert result.executed_by == "ops"
    assert platform.calls[-1].value == 1.0
    assert evaluator.get_suggestion(suggestion.id).status == RollbackStatus.EXECUTED
    assert controller.store.get_result(original.id).status == ExecutionStatus.ROLLED_BACK
    assert record.rolled_back

    # Rolled-back adjustments are not evaluated again
    assert evaluator.run_evaluation([record])["evaluated"] == 0


def test_failed_rollback_stays_approved():
    controller = AutomationController(RecordingAdPlatform(failing_targets={"kw-1"}), LoggingNotifier(), clock=lambda: NOW)
    evaluator = RollbackEvaluator(controller=controller, rules=[_rule()], clock=lambda: NOW)
    suggestion = evaluator.run_evaluation([_record(p7=20.0)])["suggestions"][0]
    evaluator.review(suggestion.id, approve=True, reviewed_by="ops")

    result = evaluator.execute_suggestion(suggestion.id)
    assert result.status == ExecutionStatus.FAILED
    assert evaluator.get_suggestion(suggestion.id).status == RollbackStatus.APPROVED


def test_auto_rollback_rule_executes():
    platform = RecordingAdPlatform()
    controller = AutomationController(platform, LoggingNotifier(), clock=lambda: NOW)
    evaluator = RollbackEvaluator(controller=controller, rules=[_rule(auto_rollback=True)], clock=lambda: NOW)

    suggestion = evaluator.run_evaluation([_record(p7=20.0)])["suggestions"][0]
    assert suggestion.status == RollbackStatus.EXECUTED
    assert platform.calls[-1].operation == "update_keyword_bid"


def test_rule_crud(evaluator):
    rule = evaluator.create_rule("Quick check", profit_threshold_percent=25, min_tracking_days=7, priority=Priority.LOW)
    assert evaluator.get_rule(rule.id).name == "Quick check"

    updated = evaluator.update_rule(rule.id, enabled=False)
    assert updated.enabled is False
    assert updated.updated_at == NOW

    with pytest.raises(ValueError):
        evaluator.update_rule(rule.id, id="hijack")
    with pytest.raises(ValueError):
        evaluator.update_rule(rule.id, min_sample_count=3)
    with pytest.raises(ValueError):
        evaluator.create_rule("Bad", profit_threshold_percent=25, min_tracking_days=10)

    assert evaluator.delete_rule(rule.id) is True
    assert evaluator.delete_rule(rule.id) is False
    assert len(evaluator.list_rules()) == 1


def test_stats_and_filters(evaluator):
    evaluator.create_rule("Second", profit_threshold_percent=80, min_tracking_days=7, priority=Priority.HIGH)
    created = evaluator.run_evaluation([_record(p7=20.0)])["suggestions"]
    assert len(created) == 2

    evaluator.review(created[0].id, approve=True, reviewed_by="ops")
    stats = evaluator.stats()
    assert stats["total"] == 2
    assert stats["pending"] == 1
    assert stats["approved"] == 1
    assert sum(stats["by_rule"].values()) == 2
    assert len(evaluator.get_suggestions(status=RollbackStatus.PENDING)) == 1
    assert len(evaluator.get_suggestions(priority=Priority.HIGH)) == 1


def test_cleanup_keeps_pending():
    clock = {"now": NOW}
    evaluator = RollbackEvaluator(rules=[_rule(), _rule(threshold=60.0)], clock=lambda: clock["now"])
    pending, rejected = evaluator.run_evaluation([_record(p7=20.0)])["suggestions"]
    evaluator.review(rejected.id, approve=False, reviewed_by="ops")

    assert evaluator.cleanup(NOW + timedelta(days=10)) == 0
    assert evaluator.cleanup(NOW + timedelta(days=31)) == 1
    assert evaluator.get_suggestion(pending.id) is not None
    assert evaluator.get_suggestion(rejected.id) is None


def test_records_kept_only_while_a_suggestion_needs_them():
    platform = RecordingAdPlatform()
    controller = AutomationController(platform, LoggingNotifier(), clock=lambda: NOW)
    evaluator = RollbackEvaluator(controller=controller, rules=[_rule()], clock=lambda: NOW)

    flagged, healthy = _record("a", p7=20.0), _record("b", p7=90.0)
    suggestion = evaluator.run_evaluation([flagged, healthy])["suggestions"][0]
    assert set(evaluator._records) == {"a"}

    evaluator.review(suggestion.id, approve=True, reviewed_by="ops")
    evaluator.cleanup(NOW)
    assert set(evaluator._records) == {"a"}

    evaluator.execute_suggestion(suggestion.id)
    evaluator.cleanup(NOW)
    assert evaluator._records == {}
