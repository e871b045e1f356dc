from prometheus_client import Counter, Gauge, Histogram

CURVE_FITS = Counter(
    "bidopt_curve_fits_total",
    "Market curve models built",
    ["outcome"],  # fitted | fallback | failed
)
TREE_TRAININGS = Counter(
    "bidopt_tree_trainings_total",
    "Decision tree training runs",
    ["model_type", "outcome"],
)
SUGGESTIONS = Counter(
    "bidopt_suggestions_total",
    "Optimization suggestions emitted",
    ["algorithm_source", "priority"],
)
EXECUTIONS = Counter(
    "bidopt_executions_total",
    "Execution decisions by type and status",
    ["execution_type", "status"],
)
BATCH_LATENCY = Histogram(
    "bidopt_batch_seconds",
    "Execution batch duration in seconds",
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0],
)
ROLLBACK_SUGGESTIONS = Counter(
    "bidopt_rollback_suggestions_total",
    "Rollback suggestions raised",
    ["priority"],
)
EMERGENCY_STOPS = Counter(
    "bidopt_emergency_stops_total",
    "Emergency stops triggered",
)
AUTOMATION_ENABLED = Gauge(
    "bidopt_automation_enabled",
    "Whether automation is enabled for an account",
    ["account_id"],
)
