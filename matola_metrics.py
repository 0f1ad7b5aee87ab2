"""
Matola - Prometheus Metrics
Observability for the invariant enforcement layer
"""

from prometheus_client import Counter, Gauge, CollectorRegistry

# Create custom registry
metrics_registry = CollectorRegistry()

# ============================================
# INVARIANT ENFORCEMENT METRICS
# ============================================

invariant_check_counter = Counter(
    'matola_invariant_checks_total',
    'Total number of invariant checks',
    ['invariant_id', 'check_type', 'result'],
    registry=metrics_registry
)

invariant_violation_counter = Counter(
    'matola_invariant_violations_total',
    'Total number of invariant violations',
    ['invariant_id', 'criticality'],
    registry=metrics_registry
)

rollback_counter = Counter(
    'matola_rollbacks_total',
    'Total number of rollbacks executed',
    ['reason'],
    registry=metrics_registry
)

ledger_integrity_gauge = Gauge(
    'matola_ledger_integrity',
    'Decision ledger integrity (1=verified, 0=compromised)',
    registry=metrics_registry
)

# ============================================
# WEBHOOK METRICS
# ============================================

webhook_verification_counter = Counter(
    'matola_webhook_verifications_total',
    'Inbound payment webhook signature checks',
    ['provider', 'result'],  # verified, rejected, unconfigured
    registry=metrics_registry
)

# ============================================
# API METRICS
# ============================================

api_error_counter = Counter(
    'matola_api_errors_total',
    'Errors returned by the API',
    ['code', 'status_code'],
    registry=metrics_registry
)

# ============================================
# HELPER FUNCTIONS
# ============================================

def record_invariant_check(invariant_id: str, check_type: str, result: bool, criticality: str = "critical"):
    """Record invariant check metrics."""
    invariant_check_counter.labels(
        invariant_id=invariant_id,
        check_type=check_type,
        result="passed" if result else "failed"
    ).inc()

    if not result:
        invariant_violation_counter.labels(
            invariant_id=invariant_id,
            criticality=criticality
        ).inc()


def record_rollback(reason: str):
    rollback_counter.labels(reason=reason).inc()


def record_webhook_verification(provider: str, result: str):
    webhook_verification_counter.labels(provider=provider, result=result).inc()


def record_api_error(code: str, status_code: int):
    api_error_counter.labels(code=code, status_code=status_code).inc()


def update_ledger_integrity(ledger_integrity: bool):
    ledger_integrity_gauge.set(1 if ledger_integrity else 0)
