import sys
import os
import pytest

# Add project root to sys.path
sys.path.append(os.getcwd())

# Run pytest programmatically
exit_code = pytest.main([
    "tests/test_market_curve.py",
    "tests/test_features.py",
    "tests/test_decision_tree.py",
    "tests/test_bandit.py",
    "tests/test_policy.py",
    "tests/test_engine.py",
    "tests/test_controller.py",
    "tests/test_concurrency.py",
    "tests/test_guard.py",
    "tests/test_rollback.py",
    "-v",
])
sys.exit(exit_code)
