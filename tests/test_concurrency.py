import threading
import time
from datetime import datetime, timedelta

from bidopt.automation.controller import AutomationController
from bidopt.automation.rollback import AdjustmentRecord, RollbackEvaluator, RollbackRule
from bidopt.automation.schema import ExecutionRequest, ExecutionStatus, ExecutionType
from bidopt.errors import InvalidTransitionError
from bidopt.storage.memory import LoggingNotifier, RecordingAdPlatform


def _controller(platform=None):
    return AutomationController(
        platform or RecordingAdPlatform(), LoggingNotifier(), clock=lambda: datetime(2026, 3, 1, 12)
    )


def _request(i):
    return ExecutionRequest(ExecutionType.BID_ADJUSTMENT, f"kw-{i}", 1.0, 1.1, 90.0)


def test_daily_cap_under_contention():
    """
    Stress test for the check-then-act race on the daily counter.
    32 threads submit one bid adjustment each against a cap of 10.
    Exactly 10 may succeed.
    """
    platform = RecordingAdPlatform()
    controller = _controller(platform)
    controller.update_account_config("acc", safety={"max_daily_bid_adjustments": 10})

    results = []
    lock = threading.Lock()

    def worker(i):
        result = controller.execute("acc", _request(i))
        with lock:
            results.append(result)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(32)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    success_count = sum(1 for r in results if r.status == ExecutionStatus.SUCCESS)
    blocked_count = sum(1 for r in results if r.status == ExecutionStatus.BLOCKED)

    assert success_count == 10
    assert blocked_count == 22
    assert len(platform.calls) == 10
    assert controller.get_daily_stats("acc")["bid_adjustments"] == 10
    assert len(controller.store.results("acc")) == 32


def test_accounts_do_not_share_caps_under_contention():
    controller = _controller()
    for account in ("acc-a", "acc-b"):
        controller.update_account_config(account, safety={"max_daily_bid_adjustments": 5})

    def worker(account, i):
        controller.execute(account, _request(i))

    threads = [
        threading.Thread(target=worker, args=(account, i))
        for account in ("acc-a", "acc-b")
        for i in range(20)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert controller.get_daily_stats("acc-a")["bid_adjustments"] == 5
    assert controller.get_daily_stats("acc-b")["bid_adjustments"] == 5


def test_concurrent_batches_keep_audit_trail():
    controller = _controller()

    def worker(batch_no):
        controller.execute_batch("acc", [_request(batch_no * 10 + i) for i in range(5)])

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    batches = controller.get_execution_history("acc")
    assert len(batches) == 8
    assert sum(b.total_items for b in batches) == 40
    assert len({r.id for r in controller.store.results("acc")}) == 40


class SlowAdPlatform(RecordingAdPlatform):
    def update_keyword_bid(self, account_id, target_id, bid):
        time.sleep(0.05)
        super().update_keyword_bid(account_id, target_id, bid)


def test_approved_rollback_applies_once_under_contention():
    """
    Several reviewers hit execute on the same approved rollback.
    Only one may reach the platform; the rest see it already executed.
    """
    now = datetime(2026, 3, 20, 8)
    platform = SlowAdPlatform()
    controller = AutomationController(platform, LoggingNotifier(), clock=lambda: now)
    rule = RollbackRule(id="rule-1", name="test", profit_threshold_percent=50.0, min_tracking_days=7)
    evaluator = RollbackEvaluator(controller=controller, rules=[rule], clock=lambda: now)

    record = AdjustmentRecord(
        id="adj-1",
        account_id="acc",
        target_id="kw-1",
        previous_bid=1.0,
        new_bid=1.2,
        adjusted_at=now - timedelta(days=8),
        estimated_profit_change=100.0,
        actual_profit_7d=20.0,
    )
    suggestion = evaluator.run_evaluation([record])["suggestions"][0]
    evaluator.review(suggestion.id, approve=True, reviewed_by="ops")

    outcomes = []
    lock = threading.Lock()

    def worker():
        try:
            outcome = evaluator.execute_suggestion(suggestion.id).status
        except InvalidTransitionError:
            outcome = "rejected"
        with lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=worker) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(platform.calls) == 1
    assert outcomes.count(ExecutionStatus.SUCCESS) == 1
    assert outcomes.count("rejected") == 5
    assert len(controller.store.results("acc")) == 1
    assert controller.get_daily_stats("acc")["total_adjustments"] == 1
