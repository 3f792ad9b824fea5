"""
ChainTrace Compliance Engine - Prometheus Metrics
Observability for rule evaluation, sequencing and the audit trail
"""

from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry

from ct_compliance_core_v1 import ViolationCategory

# Create custom registry
metrics_registry = CollectorRegistry()

# ============================================
# VALIDATION METRICS
# ============================================

validation_counter = Counter(
    'ct_validations_total',
    'Total number of action validations',
    ['role', 'result'],
    registry=metrics_registry
)

violation_counter = Counter(
    'ct_violations_total',
    'Total number of violations reported',
    ['category'],
    registry=metrics_registry
)

validation_duration_histogram = Histogram(
    'ct_validation_duration_seconds',
    'End-to-end validate_action duration',
    buckets=[0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0],
    registry=metrics_registry
)

# ============================================
# SEQUENCE METRICS
# ============================================

sequence_rejection_counter = Counter(
    'ct_sequence_rejections_total',
    'Sequence check rejections',
    ['role'],
    registry=metrics_registry
)

sequence_commit_counter = Counter(
    'ct_sequence_commits_total',
    'Committed workflow stages',
    ['role'],
    registry=metrics_registry
)

sequence_rollback_counter = Counter(
    'ct_sequence_rollbacks_total',
    'Workflow stage commits rolled back after audit failure',
    registry=metrics_registry
)

active_sequence_locks_gauge = Gauge(
    'ct_active_sequence_locks',
    'Products currently holding a sequence lock',
    registry=metrics_registry
)

# ============================================
# CACHE METRICS
# ============================================

cache_lookup_counter = Counter(
    'ct_cache_lookups_total',
    'Rule cache lookups',
    ['outcome'],  # hit, miss
    registry=metrics_registry
)

# ============================================
# AUDIT METRICS
# ============================================

ledger_submission_counter = Counter(
    'ct_ledger_submissions_total',
    'Ledger submissions by outcome',
    ['outcome'],  # recorded, retried, failed, timeout
    registry=metrics_registry
)

ledger_latency_histogram = Histogram(
    'ct_ledger_latency_seconds',
    'Ledger submission latency',
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0],
    registry=metrics_registry
)

# ============================================
# HELPER FUNCTIONS
# ============================================

def record_validation(role: str, is_valid: bool, violations, duration: float):
    """Record the outcome of a validate_action call."""
    validation_counter.labels(
        role=role,
        result="approved" if is_valid else "rejected"
    ).inc()
    validation_duration_histogram.observe(duration)

    for violation in violations:
        category = ViolationCategory.of(violation)
        violation_counter.labels(
            category=category.name if category else "OTHER"
        ).inc()

def record_cache_lookup(hit: bool):
    cache_lookup_counter.labels(outcome="hit" if hit else "miss").inc()

def record_ledger_submission(outcome: str, duration: float = None):
    ledger_submission_counter.labels(outcome=outcome).inc()
    if duration is not None:
        ledger_latency_histogram.observe(duration)
