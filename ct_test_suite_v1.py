"""
ChainTrace Compliance Engine - Test Suite
Version: 1.0.0

Coverage:
- Unit tests (cache, rule repository, field checks, sequence ordering)
- Composition tests (validate_action end to end)
- Failure tests (ledger faults, rollback correctness)
- Concurrency tests (same-product races)
"""

import pytest
from datetime import date, datetime, timedelta
from typing import Dict, List
import json
import re
import threading
import time

from ct_engine_integration import (
    ActionValidationRequest,
    Actor,
    AuditLogger,
    AuditResult,
    CacheUnavailable,
    ComplianceAction,
    ComplianceEvent,
    ComplianceRule,
    EngineConfig,
    InMemoryComplianceCache,
    InMemoryLedgerClient,
    KeyedLock,
    LedgerReceipt,
    LedgerTimeout,
    LedgerUnavailable,
    RuleConfigurationError,
    RuleRepository,
    RuleSource,
    RuleSourceUnavailable,
    SequenceConflict,
    SequenceLockTimeout,
    SequenceState,
    SequenceStateTracker,
    StaticRuleSource,
    SupplyChainRole,
    ViolationCategory,
    WorkflowStatus,
    build_compliance_engine,
    default_rule_set,
    load_rule_file
)
from ct_rule_repository_v1 import rule_from_dict
from ct_sequence_tracker_v1 import evaluate_ordering
from ct_compliance_core_v1 import CompletedStage, DateWindow, FieldEnumeration, NumericLimit
from ct_action_validator_v1 import (
    check_allowed_values,
    check_date_windows,
    check_numeric_limits,
    check_required_fields,
    evaluate_conditions,
    generate_compliance_id,
    is_present,
    resolve_path
)
from ct_metrics import metrics_registry

# ============================================
# MOCK SERVICES
# ============================================

class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds

class RecordingLedgerClient(InMemoryLedgerClient):
    """In-memory ledger that also keeps every raw submission."""

    def __init__(self):
        super().__init__(topic_id="0.0.test")
        self.calls: List[Dict] = []

    def submit_compliance_check(self, product_id: str, event: Dict, correlation_id: str) -> LedgerReceipt:
        self.calls.append({'product_id': product_id, 'event': event, 'correlation_id': correlation_id})
        return super().submit_compliance_check(product_id, event, correlation_id)

class FailingLedgerClient(RecordingLedgerClient):
    """Fails the first `failures` submissions, then behaves normally."""

    def __init__(self, failures: int = 10 ** 6):
        super().__init__()
        self.failures = failures
        self.attempts = 0

    def submit_compliance_check(self, product_id: str, event: Dict, correlation_id: str) -> LedgerReceipt:
        self.attempts += 1
        if self.attempts <= self.failures:
            raise ConnectionError("ledger node unreachable")
        return super().submit_compliance_check(product_id, event, correlation_id)

class SlowLedgerClient(RecordingLedgerClient):
    """Acknowledges only after `delay` seconds."""

    def __init__(self, delay: float):
        super().__init__()
        self.delay = delay

    def submit_compliance_check(self, product_id: str, event: Dict, correlation_id: str) -> LedgerReceipt:
        time.sleep(self.delay)
        return super().submit_compliance_check(product_id, event, correlation_id)

class CountingRuleSource(RuleSource):
    """Wraps a rule source and counts fetches."""

    def __init__(self, inner: RuleSource):
        self.inner = inner
        self.fetches = 0

    def fetch_rules(self, role, action):
        self.fetches += 1
        return self.inner.fetch_rules(role, action)

class BrokenRuleSource(RuleSource):
    def fetch_rules(self, role, action):
        raise IOError("rule database offline")

# ============================================
# FIXTURES
# ============================================

TEST_CONFIG = EngineConfig(ledger_retry_backoff=0, lock_timeout=5.0, ledger_timeout=5.0)

def recent_date(days_ago: int = 30) -> str:
    return (date.today() - timedelta(days=days_ago)).isoformat()

def producer_data(**overrides) -> Dict:
    data = {
        'productType': 'organic_cocoa',
        'quantity': 500,
        'origin': {'country': 'Ghana', 'region': 'Ashanti', 'farm_id': 'FARM-001'},
        'processingDetails': {
            'harvest_date': recent_date(),
            'processing_method': 'fermentation',
            'quality_grade': 'A'
        }
    }
    data.update(overrides)
    return data

def processor_data() -> Dict:
    return {
        'processingType': 'roasting',
        'duration': 6,
        'location': 'Kumasi Processing Plant',
        'inputProducts': ['CT-2024-001-ABC123'],
        'outputProducts': ['CT-2024-001-ABC123-R1']
    }

def verifier_data() -> Dict:
    return {
        'verificationMethod': 'on_site_audit',
        'certificationLevel': 'organic',
        'verificationStandards': ['EU-2018/848'],
        'auditResults': {'passed': True}
    }

def request_for(role: str, action: str, data: Dict, product_id: str = "CT-2024-001-ABC123") -> ActionValidationRequest:
    wallet = {'Producer': '0.0.12345', 'Processor': '0.0.23456', 'Verifier': '0.0.34567'}.get(role, '0.0.99999')
    return ActionValidationRequest(
        action=action,
        product_id=product_id,
        actor=Actor(wallet_address=wallet, role=role),
        data=data
    )

@pytest.fixture
def ledger():
    return RecordingLedgerClient()

@pytest.fixture
def engine(ledger):
    return build_compliance_engine(TEST_CONFIG, ledger=ledger)

def metric_value(name: str, labels: Dict[str, str]) -> float:
    return metrics_registry.get_sample_value(name, labels) or 0.0

# ============================================
# UNIT TESTS - CACHE ADAPTER
# ============================================

class TestInMemoryComplianceCache:
    """Test TTL expiry and conditional updates."""

    def test_get_returns_stored_value(self):
        """Stored value should be returned before expiry."""
        cache = InMemoryComplianceCache()
        cache.set("compliance:rules:Producer:product_creation", ("rule",), 60)
        assert cache.get("compliance:rules:Producer:product_creation") == ("rule",)

    def test_entry_expires_after_ttl(self):
        """Expired entries should read as a miss."""
        clock = FakeClock()
        cache = InMemoryComplianceCache(clock=clock)
        cache.set("k", "v", 10)

        clock.advance(9)
        assert cache.get("k") == "v"

        clock.advance(2)
        assert cache.get("k") is None

    def test_compare_and_set_on_absent_key(self):
        """expected=None should only succeed when the key is absent."""
        cache = InMemoryComplianceCache()
        assert cache.compare_and_set("k", None, "first", 60) == True
        assert cache.compare_and_set("k", None, "second", 60) == False
        assert cache.get("k") == "first"

    def test_compare_and_set_with_expected_value(self):
        cache = InMemoryComplianceCache()
        cache.set("k", "v1", 60)

        assert cache.compare_and_set("k", "stale", "v2", 60) == False
        assert cache.compare_and_set("k", "v1", "v2", 60) == True
        assert cache.get("k") == "v2"

    def test_compare_and_set_treats_expired_as_absent(self):
        clock = FakeClock()
        cache = InMemoryComplianceCache(clock=clock)
        cache.set("k", "old", 5)
        clock.advance(6)

        assert cache.compare_and_set("k", None, "new", 60) == True

    def test_clear_pattern(self):
        """Only keys under the prefix should be removed."""
        cache = InMemoryComplianceCache()
        cache.set("compliance:rules:Producer:product_creation", 1, 60)
        cache.set("compliance:rules:Processor:product_processing", 2, 60)
        cache.set("compliance:sequence:P1", 3, 60)

        removed = cache.clear_pattern("compliance:rules:")

        assert removed == 2
        assert cache.get("compliance:sequence:P1") == 3

    def test_cleanup_and_stats(self):
        clock = FakeClock()
        cache = InMemoryComplianceCache(clock=clock)
        cache.set("a", 1, 5)
        cache.set("b", 2, 50)
        clock.advance(10)

        assert cache.get_stats() == {'size': 2, 'expired_count': 1}
        assert cache.cleanup() == 1
        assert cache.get_stats() == {'size': 1, 'expired_count': 0}

    def test_lock_timeout_raises_cache_unavailable(self):
        """A stuck cache should fail fast instead of hanging the caller."""
        cache = InMemoryComplianceCache(operation_timeout=0.05)
        cache._lock.acquire()
        try:
            with pytest.raises(CacheUnavailable):
                cache.get("k")
        finally:
            cache._lock.release()

# ============================================
# UNIT TESTS - RULE REPOSITORY
# ============================================

class TestRuleRepository:
    """Test rule resolution, ordering and caching."""

    def test_default_producer_rule(self):
        """Producer product_creation resolves to the initial creation rule."""
        repo = RuleRepository(StaticRuleSource(default_rule_set()), InMemoryComplianceCache())
        rules = repo.load_compliance_rules("Producer", "product_creation")

        assert [r.id for r in rules] == ['producer_initial_creation']
        assert rules[0].sequence_position == 1
        assert 'origin.farm_id' in rules[0].conditions.required_fields

    def test_role_lookup_is_case_insensitive(self):
        repo = RuleRepository(StaticRuleSource(default_rule_set()), InMemoryComplianceCache())
        assert [r.id for r in repo.load_compliance_rules("processor", "batch_processing")] == ['processor_transformation']

    def test_rules_sorted_by_sequence_position(self):
        late = ComplianceRule(
            id='late', role_type=SupplyChainRole.PRODUCER,
            actions=(ComplianceAction.PRODUCT_CREATION,), sequence_position=2
        )
        early = ComplianceRule(
            id='early', role_type=SupplyChainRole.PRODUCER,
            actions=(ComplianceAction.PRODUCT_CREATION,), sequence_position=1
        )
        repo = RuleRepository(StaticRuleSource([late, early]), InMemoryComplianceCache())

        rules = repo.load_compliance_rules(SupplyChainRole.PRODUCER, ComplianceAction.PRODUCT_CREATION)
        assert [r.id for r in rules] == ['early', 'late']

    def test_second_call_served_from_cache(self):
        """Repeated calls should hit the source once and return identical rules."""
        source = CountingRuleSource(StaticRuleSource(default_rule_set()))
        cache = InMemoryComplianceCache()
        repo = RuleRepository(source, cache, rules_ttl=3600)

        first = repo.load_compliance_rules("Verifier", "final_certification")
        second = repo.load_compliance_rules("Verifier", "final_certification")

        assert first == second
        assert source.fetches == 1
        assert cache.get("compliance:rules:Verifier:final_certification") is not None

    def test_cache_entry_expires(self):
        clock = FakeClock()
        source = CountingRuleSource(StaticRuleSource(default_rule_set()))
        repo = RuleRepository(source, InMemoryComplianceCache(clock=clock), rules_ttl=60)

        repo.load_compliance_rules("Producer", "initial_logging")
        clock.advance(61)
        repo.load_compliance_rules("Producer", "initial_logging")

        assert source.fetches == 2

    def test_unknown_role_returns_empty_without_cache_access(self):
        """Unknown roles yield [] and never reach the source or the cache."""
        source = CountingRuleSource(StaticRuleSource(default_rule_set()))
        cache = InMemoryComplianceCache()
        repo = RuleRepository(source, cache)

        assert repo.load_compliance_rules("Auditor", "product_creation") == []
        assert repo.load_compliance_rules("Producer", "teleportation") == []
        assert source.fetches == 0
        assert cache.get_stats()['size'] == 0

    def test_empty_result_not_cached(self):
        """A known pair with no rules is re-fetched every time."""
        source = CountingRuleSource(StaticRuleSource(default_rule_set()))
        cache = InMemoryComplianceCache()
        repo = RuleRepository(source, cache)

        assert repo.load_compliance_rules("Producer", "product_processing") == []
        assert repo.load_compliance_rules("Producer", "product_processing") == []
        assert source.fetches == 2
        assert cache.get_stats()['size'] == 0

    def test_source_failure_raises_infrastructure_error(self):
        repo = RuleRepository(BrokenRuleSource(), InMemoryComplianceCache())
        with pytest.raises(RuleSourceUnavailable):
            repo.load_compliance_rules("Producer", "product_creation")

    def test_invalidate_by_role(self):
        source = CountingRuleSource(StaticRuleSource(default_rule_set()))
        repo = RuleRepository(source, InMemoryComplianceCache())
        repo.load_compliance_rules("Producer", "product_creation")
        repo.load_compliance_rules("Processor", "product_processing")

        assert repo.invalidate("Producer") == 1
        repo.load_compliance_rules("Producer", "product_creation")
        repo.load_compliance_rules("Processor", "product_processing")
        assert source.fetches == 3

    def test_duplicate_rule_ids_rejected(self):
        rule = default_rule_set()[0]
        with pytest.raises(RuleConfigurationError):
            StaticRuleSource([rule, rule])

    def test_rule_config_round_trip(self):
        """Default rules survive serialisation to their config form."""
        for rule in default_rule_set():
            assert rule_from_dict(rule.to_dict()) == rule

    def test_load_rule_file(self, tmp_path):
        path = tmp_path / "rules.json"
        path.write_text(json.dumps({
            "version": "2.1.0",
            "rules": [{
                "id": "producer_batch_registration",
                "role_type": "Producer",
                "actions": ["product_creation"],
                "conditions": {"required_fields": ["batchId"]}
            }]
        }))

        source = load_rule_file(str(path))
        rules = source.fetch_rules(SupplyChainRole.PRODUCER, ComplianceAction.PRODUCT_CREATION)

        assert len(rules) == 1
        assert rules[0].version == "2.1.0"
        assert rules[0].sequence_position == 1
        assert rules[0].conditions.required_fields == ("batchId",)

    def test_load_rule_file_rejects_unknown_role(self, tmp_path):
        path = tmp_path / "rules.json"
        path.write_text(json.dumps([{"id": "x", "role_type": "Auditor", "actions": ["product_creation"]}]))

        with pytest.raises(RuleConfigurationError):
            load_rule_file(str(path))

# ============================================
# UNIT TESTS - FIELD CHECKS
# ============================================

class TestFieldChecks:
    """Pure checks over request data."""

    def test_resolve_nested_path(self):
        data = {'origin': {'country': 'Ghana'}}
        assert resolve_path(data, 'origin.country') == 'Ghana'
        assert not is_present(resolve_path(data, 'origin.region'))
        assert not is_present(resolve_path(data, 'origin.country.code'))

    @pytest.mark.parametrize("value", [0, False, "x", [1]])
    def test_present_values(self, value):
        assert is_present(value) == True

    @pytest.mark.parametrize("value", [None, "", [], {}])
    def test_absent_values(self, value):
        assert is_present(value) == False

    def test_missing_required_fields(self):
        violations = check_required_fields({'quantity': 0, 'origin': {}}, ('quantity', 'origin', 'origin.country'))
        assert violations == [
            "Missing required field: origin",
            "Missing required field: origin.country"
        ]

    def test_value_not_allowed(self):
        enumeration = FieldEnumeration(field='productType', values=('grain', 'dairy'))
        violations = check_allowed_values({'productType': 'electronics'}, (enumeration,))

        assert len(violations) == 1
        assert ViolationCategory.of(violations[0]) == ViolationCategory.VALUE_NOT_ALLOWED

    def test_numeric_limit_messages(self):
        limits = (
            NumericLimit(field='quantity', maximum=1000, unit='kg',
                         message='Daily production limit exceeded: {value}{unit} exceeds maximum of {maximum}{unit}'),
        )
        violations = check_numeric_limits({'quantity': 1500}, limits)

        assert violations == [
            "VALUE_OUT_OF_RANGE: Daily production limit exceeded: 1500kg exceeds maximum of 1000kg"
        ]

    def test_numeric_limit_boundaries_inclusive(self):
        limits = (NumericLimit(field='quantity', minimum=1, maximum=1000),)
        assert check_numeric_limits({'quantity': 1}, limits) == []
        assert check_numeric_limits({'quantity': 1000}, limits) == []
        assert len(check_numeric_limits({'quantity': 0}, limits)) == 1

    def test_non_numeric_value_reported_once(self):
        limits = (
            NumericLimit(field='quantity', minimum=1),
            NumericLimit(field='quantity', maximum=1000),
        )
        violations = check_numeric_limits({'quantity': 'lots'}, limits)

        assert len(violations) == 1
        assert violations[0].startswith("INVALID_VALUE")

    def test_date_window(self):
        window = DateWindow(field='harvest_date', max_age_days=730)
        as_of = datetime(2026, 10, 17)

        assert check_date_windows({'harvest_date': '2026-01-15'}, (window,), as_of) == []
        assert len(check_date_windows({'harvest_date': '2024-01-15'}, (window,), as_of)) == 1
        assert check_date_windows({'harvest_date': 'last spring'}, (window,), as_of)[0].startswith("INVALID_VALUE")

    def test_evaluate_conditions_empty_data(self):
        """Missing data is reported field by field, not as a crash."""
        producer = default_rule_set()[0]
        violations = evaluate_conditions(None, producer.conditions, datetime.now())

        assert len(violations) == len(producer.conditions.required_fields)
        assert all(ViolationCategory.of(v) == ViolationCategory.MISSING_FIELD for v in violations)

    def test_compliance_id_format(self):
        compliance_id = generate_compliance_id("CT-2024-001-ABC123", datetime(2026, 10, 17, 12, 0, 0))
        assert re.match(r"^COMP-CT-2024-001-ABC123-\d+-[A-Z0-9]{6}$", compliance_id)

    @pytest.mark.parametrize("value", ["nan", "inf", "-Infinity", float("nan"), float("inf")])
    def test_non_finite_numbers_invalid(self, value):
        """NaN and infinity are not valid quantities."""
        limits = (NumericLimit(field='quantity', minimum=1, maximum=1000),)
        violations = check_numeric_limits({'quantity': value}, limits)

        assert violations == ["INVALID_VALUE: Field quantity must be a valid number"]

    def test_numeric_strings_accepted(self):
        limits = (NumericLimit(field='quantity', minimum=1, maximum=1000),)
        assert check_numeric_limits({'quantity': "250.5"}, limits) == []

# ============================================
# UNIT TESTS - SEQUENCE ORDERING
# ============================================

def state_with(*positions: int, product_id: str = "P1") -> SequenceState:
    ids = {1: 'producer_initial_creation', 2: 'processor_transformation', 3: 'verifier_final_verification'}
    state = SequenceState(product_id=product_id)
    for position in positions:
        state = state.with_stage(CompletedStage(
            role=SupplyChainRole.for_position(position),
            sequence_position=position,
            timestamp=datetime.now(),
            actor="0.0.1",
            stage_id=ids[position]
        ))
    return state

class TestSequenceOrdering:
    """Producer -> Processor -> Verifier."""

    def test_producer_on_fresh_product(self):
        assert evaluate_ordering(state_with(), SupplyChainRole.PRODUCER, 1) is None

    def test_processor_before_producer(self):
        violation = evaluate_ordering(state_with(), SupplyChainRole.PROCESSOR, 2)
        assert violation == "SEQUENCE_VIOLATION: Processor action attempted before Producer initialization for product P1"

    def test_verifier_before_processor(self):
        violation = evaluate_ordering(state_with(1), SupplyChainRole.VERIFIER, 3)
        assert violation == "SEQUENCE_VIOLATION: Verifier action attempted before Processor completion for product P1"

    def test_repeated_producer(self):
        violation = evaluate_ordering(state_with(1), SupplyChainRole.PRODUCER, 1)
        assert violation == (
            "SEQUENCE_VIOLATION: Multiple Producer actions detected for product P1 without Processor intervention"
        )

    def test_repeated_processor(self):
        violation = evaluate_ordering(state_with(1, 2), SupplyChainRole.PROCESSOR, 2)
        assert "Multiple Processor actions" in violation

    def test_verifier_may_repeat(self):
        assert evaluate_ordering(state_with(1, 2, 3), SupplyChainRole.VERIFIER, 3) is None

    def test_missing_dependency(self):
        violation = evaluate_ordering(
            state_with(1), SupplyChainRole.PROCESSOR, 2, ('producer_initial_creation', 'quality_inspection')
        )
        assert violation == "SEQUENCE_VIOLATION: Missing prerequisite stage quality_inspection for product P1"

    def test_state_status_progression(self):
        assert state_with(1).status == WorkflowStatus.IN_PROGRESS
        assert state_with(1, 2, 3).status == WorkflowStatus.COMPLETED
        assert state_with(1).next_required_action() == "Processor action required"
        assert state_with(1, 2, 3).next_required_action() == "Workflow complete"

class TestSequenceStateTracker:
    """Check, commit and rollback under the product lock."""

    def test_commit_records_stage(self):
        tracker = SequenceStateTracker(InMemoryComplianceCache())

        with tracker.check_and_reserve("P1", SupplyChainRole.PRODUCER, 1, "0.0.1") as reservation:
            assert reservation.allowed == True
            state = tracker.commit(reservation, 'producer_initial_creation')

        assert state.current_step == 1
        assert tracker.get_state("P1") == state
        assert tracker.get_state("P1").last_actor == "0.0.1"

    def test_rejected_reservation_cannot_commit(self):
        tracker = SequenceStateTracker(InMemoryComplianceCache())

        with tracker.check_and_reserve("P1", SupplyChainRole.VERIFIER, 3, "0.0.1") as reservation:
            assert reservation.allowed == False
            with pytest.raises(ValueError):
                tracker.commit(reservation, 'verifier_final_verification')

        assert tracker.get_state("P1") is None

    def test_rollback_restores_previous_state(self):
        """Rollback should leave the state exactly as before the commit."""
        tracker = SequenceStateTracker(InMemoryComplianceCache())
        with tracker.check_and_reserve("P1", SupplyChainRole.PRODUCER, 1, "0.0.1") as first:
            before = tracker.commit(first, 'producer_initial_creation')

        with tracker.check_and_reserve("P1", SupplyChainRole.PROCESSOR, 2, "0.0.2") as second:
            tracker.commit(second, 'processor_transformation')
            tracker.rollback(second)

        assert tracker.get_state("P1") == before

    def test_rollback_of_first_stage_removes_state(self):
        tracker = SequenceStateTracker(InMemoryComplianceCache())
        with tracker.check_and_reserve("P1", SupplyChainRole.PRODUCER, 1, "0.0.1") as reservation:
            tracker.commit(reservation, 'producer_initial_creation')
            tracker.rollback(reservation)

        assert tracker.get_state("P1") is None

    def test_lock_timeout(self):
        """A held product lock should time out other callers for that product only."""
        tracker = SequenceStateTracker(InMemoryComplianceCache(), lock_timeout=0.05)
        held = tracker.check_and_reserve("P1", SupplyChainRole.PRODUCER, 1, "0.0.1")
        try:
            with pytest.raises(SequenceLockTimeout):
                tracker.check_and_reserve("P1", SupplyChainRole.PRODUCER, 1, "0.0.2")

            with tracker.check_and_reserve("P2", SupplyChainRole.PRODUCER, 1, "0.0.2") as other:
                assert other.allowed == True
        finally:
            held.release()

    def test_concurrent_state_change_detected(self):
        cache = InMemoryComplianceCache()
        tracker = SequenceStateTracker(cache)

        with tracker.check_and_reserve("P1", SupplyChainRole.PRODUCER, 1, "0.0.1") as reservation:
            cache.set(tracker.cache_key("P1"), state_with(1), 60)
            with pytest.raises(SequenceConflict):
                tracker.commit(reservation, 'producer_initial_creation')

    def test_keyed_lock_entries_released(self):
        locks = KeyedLock()
        assert locks.acquire("P1", 1.0) == True
        assert len(locks) == 1
        locks.release("P1")
        assert len(locks) == 0

# ============================================
# UNIT TESTS - AUDIT LOGGER
# ============================================

def sample_event(result: AuditResult = AuditResult.APPROVED) -> ComplianceEvent:
    return ComplianceEvent(
        action="product_creation",
        product_id="P1",
        result=result,
        wallet_address="0.0.12345",
        role_type="Producer",
        sequence_step=1,
        compliance_id="COMP-P1-1-ABCDEF",
        violations=None if result == AuditResult.APPROVED else ["SEQUENCE_VIOLATION: x"]
    )

class TestAuditLogger:

    def test_record_returns_correlation(self):
        ledger = RecordingLedgerClient()
        audit = AuditLogger(ledger, retry_backoff=0)

        record = audit.record("P1", sample_event())

        assert record.compliance_id == "COMP-P1-1-ABCDEF"
        assert record.transaction_id.startswith("0.0.test@")
        assert ledger.calls[0]['correlation_id'] == "COMP-P1-1-ABCDEF"
        assert 'violations' not in ledger.calls[0]['event']

    def test_rejection_carries_violations(self):
        ledger = RecordingLedgerClient()
        AuditLogger(ledger, retry_backoff=0).record("P1", sample_event(AuditResult.REJECTED))

        assert ledger.calls[0]['event']['result'] == "REJECTED"
        assert ledger.calls[0]['event']['violations'] == ["SEQUENCE_VIOLATION: x"]

    def test_retry_then_success(self):
        ledger = FailingLedgerClient(failures=2)
        audit = AuditLogger(ledger, max_attempts=3, retry_backoff=0)

        audit.record("P1", sample_event())

        assert ledger.attempts == 3
        assert len(ledger) == 1

    def test_all_attempts_fail(self):
        audit = AuditLogger(FailingLedgerClient(), max_attempts=2, retry_backoff=0)
        with pytest.raises(LedgerUnavailable):
            audit.record("P1", sample_event())

    def test_timeout(self):
        audit = AuditLogger(SlowLedgerClient(delay=0.5), timeout=0.05, max_attempts=1)
        with pytest.raises(LedgerTimeout):
            audit.record("P1", sample_event())

    def test_chain_integrity_detects_tampering(self):
        ledger = InMemoryLedgerClient()
        audit = AuditLogger(ledger, retry_backoff=0)
        audit.record("P1", sample_event())
        assert ledger.verify_chain_integrity() == True

        ledger._entries[0]['message'] = ledger._entries[0]['message'].replace("APPROVED", "REJECTED")
        assert ledger.verify_chain_integrity() == False

    def test_entries_for_product(self):
        ledger = InMemoryLedgerClient()
        audit = AuditLogger(ledger, retry_backoff=0)
        audit.record("P1", sample_event())
        audit.record("P1", sample_event(AuditResult.REJECTED))

        entries = ledger.entries_for("P1")

        assert [e['result'] for e in entries] == ["APPROVED", "REJECTED"]
        assert ledger.entries_for("P2") == []

# ============================================
# COMPOSITION TESTS - VALIDATE ACTION
# ============================================

class TestValidateAction:
    """End-to-end decisions through the assembled engine."""

    def test_producer_creation_approved(self, engine, ledger):
        """A complete Producer submission on a fresh product is approved at step 1."""
        result = engine.validate_action(request_for("Producer", "product_creation", producer_data()))

        assert result.is_valid == True
        assert result.violations == ()
        assert result.sequence_step == 1
        assert result.next_action == "Processor action required"
        assert result.audit.result == AuditResult.APPROVED
        assert len(ledger.calls) == 1
        assert ledger.calls[0]['event']['result'] == "APPROVED"
        assert ledger.calls[0]['event']['sequence_step'] == 1
        assert engine.get_sequence_state("CT-2024-001-ABC123").current_step == 1

    def test_daily_production_limit(self, engine, ledger):
        result = engine.validate_action(request_for("Producer", "product_creation", producer_data(quantity=1500)))

        assert result.is_valid == False
        assert any("Daily production limit exceeded" in v for v in result.violations)
        assert result.sequence_step == 0
        assert ledger.calls[0]['event']['result'] == "REJECTED"
        assert engine.get_sequence_state("CT-2024-001-ABC123") is None

    def test_missing_fields(self, engine):
        data = producer_data()
        del data['quantity']
        data['origin'] = {'country': 'Ghana'}

        result = engine.validate_action(request_for("Producer", "product_creation", data))

        assert result.is_valid == False
        assert "Missing required field: quantity" in result.violations
        assert "Missing required field: origin.region" in result.violations
        assert "Missing required field: origin.farm_id" in result.violations

    def test_invalid_product_type(self, engine):
        result = engine.validate_action(
            request_for("Producer", "product_creation", producer_data(productType='electronics'))
        )

        assert result.is_valid == False
        assert result.violations == (
            "VALUE_NOT_ALLOWED: Product type must be one of the allowed agricultural categories",
        )

    def test_stale_harvest_date(self, engine):
        data = producer_data()
        data['processingDetails']['harvest_date'] = recent_date(days_ago=800)

        result = engine.validate_action(request_for("Producer", "product_creation", data))

        assert result.is_valid == False
        assert any("seasonal restrictions" in v for v in result.violations)

    def test_second_producer_action_rejected(self, engine, ledger):
        engine.validate_action(request_for("Producer", "product_creation", producer_data()))
        result = engine.validate_action(request_for("Producer", "initial_logging", producer_data()))

        assert result.is_valid == False
        assert result.sequence_step == 1
        assert result.violations[0].startswith("SEQUENCE_VIOLATION: Multiple Producer actions")
        assert [c['event']['result'] for c in ledger.calls] == ["APPROVED", "REJECTED"]

    def test_processor_before_producer(self, engine):
        result = engine.validate_action(request_for("Processor", "product_processing", processor_data()))

        assert result.is_valid == False
        assert result.sequence_step == 2
        assert "before Producer initialization" in result.violations[0]

    def test_verifier_before_processor(self, engine):
        engine.validate_action(request_for("Producer", "product_creation", producer_data()))
        result = engine.validate_action(request_for("Verifier", "product_verification", verifier_data()))

        assert result.is_valid == False
        assert "before Processor completion" in result.violations[0]

    def test_full_workflow_issues_credential(self, engine):
        """Producer -> Processor -> Verifier completes and issues a credential."""
        steps = [
            ("Producer", "product_creation", producer_data()),
            ("Processor", "transformation_event", processor_data()),
            ("Verifier", "final_certification", verifier_data()),
        ]
        results = [engine.validate_action(request_for(*step)) for step in steps]

        assert [r.is_valid for r in results] == [True, True, True]
        assert [r.sequence_step for r in results] == [1, 2, 3]
        assert results[0].credential is None
        assert results[1].credential is None

        credential = results[2].credential
        assert credential is not None
        assert credential.compliance_id == results[2].compliance_id
        assert credential.issuer_role == "Verifier"
        assert credential.expires_at - credential.issued_at == timedelta(days=365)
        assert credential.renewal_requirements == ("Annual verification renewal required",)
        assert results[2].next_action == "Workflow complete"

        state = engine.get_sequence_state("CT-2024-001-ABC123")
        assert state.status == WorkflowStatus.COMPLETED
        assert [s.stage_id for s in state.completed_stages] == [
            'producer_initial_creation', 'processor_transformation', 'verifier_final_verification'
        ]

    def test_unknown_role(self, engine, ledger):
        result = engine.validate_action(request_for("Auditor", "product_creation", {}))

        assert result.is_valid == False
        assert result.sequence_step == 0
        assert result.violations[0].startswith("RULES_NOT_FOUND")
        assert ledger.calls[0]['event']['role_type'] == "Auditor"

    def test_role_action_mismatch(self, engine):
        result = engine.validate_action(request_for("Producer", "final_certification", producer_data()))
        assert ViolationCategory.of(result.violations[0]) == ViolationCategory.RULES_NOT_FOUND

    def test_every_decision_audited_once(self, engine, ledger):
        """One ledger record per call; APPROVED exactly when the action is valid."""
        requests = [
            request_for("Processor", "product_processing", processor_data()),
            request_for("Producer", "product_creation", producer_data(quantity=5000)),
            request_for("Producer", "product_creation", producer_data()),
            request_for("Producer", "product_creation", producer_data()),
            request_for("Processor", "batch_processing", processor_data()),
            request_for("Auditor", "product_creation", {}),
        ]
        results = [engine.validate_action(r) for r in requests]

        assert len(ledger.calls) == len(requests)
        for result, call in zip(results, ledger.calls):
            assert call['correlation_id'] == result.compliance_id
            assert (call['event']['result'] == "APPROVED") == result.is_valid
            assert ('violations' in call['event']) == (not result.is_valid)

    def test_repeat_rule_lookup_identical(self, engine):
        first = engine.load_compliance_rules("Processor", "product_processing")
        second = engine.load_compliance_rules("Processor", "product_processing")
        assert first == second

    def test_validation_metrics_recorded(self, engine):
        labels = {'role': 'Producer', 'result': 'approved'}
        before = metric_value('ct_validations_total', labels)

        engine.validate_action(request_for("Producer", "product_creation", producer_data(), product_id="METRIC-1"))

        assert metric_value('ct_validations_total', labels) == before + 1

    def test_nan_quantity_rejected(self, engine):
        result = engine.validate_action(request_for("Producer", "product_creation", producer_data(quantity="nan")))

        assert result.is_valid == False
        assert "INVALID_VALUE: Field quantity must be a valid number" in result.violations
        assert engine.get_sequence_state("CT-2024-001-ABC123") is None

    def test_second_producer_with_invalid_data(self, engine):
        """A repeated Producer action is a sequence violation even when its fields also fail."""
        engine.validate_action(request_for("Producer", "product_creation", producer_data()))
        result = engine.validate_action(request_for("Producer", "product_creation", producer_data(quantity=1500)))

        assert result.is_valid == False
        assert result.sequence_step == 1
        assert result.reason == 'Sequence validation failed'
        assert result.violations[0].startswith("SEQUENCE_VIOLATION: Multiple Producer actions")
        assert any("Daily production limit exceeded" in v for v in result.violations)
        assert engine.get_sequence_state("CT-2024-001-ABC123").current_step == 1

    def test_processor_on_fresh_product_with_empty_data(self, engine, ledger):
        result = engine.validate_action(request_for("Processor", "product_processing", {}))

        assert result.is_valid == False
        assert result.sequence_step == 2
        assert result.violations[0] == (
            "SEQUENCE_VIOLATION: Processor action attempted before Producer initialization "
            "for product CT-2024-001-ABC123"
        )
        assert "Missing required field: processingType" in result.violations
        assert ledger.calls[0]['event']['violations'] == list(result.violations)

    def test_verifier_on_fresh_product_with_empty_data(self, engine):
        result = engine.validate_action(request_for("Verifier", "final_certification", {}))

        assert result.is_valid == False
        assert result.sequence_step == 3
        assert "before Producer initialization" in result.violations[0]
        assert "Missing required field: auditResults" in result.violations

    def test_invalid_fields_do_not_advance_sequence(self, engine):
        """A field rejection on a fresh product leaves it open for a valid Producer action."""
        rejected = engine.validate_action(request_for("Producer", "product_creation", producer_data(quantity=0)))
        approved = engine.validate_action(request_for("Producer", "product_creation", producer_data()))

        assert rejected.is_valid == False
        assert rejected.sequence_step == 0
        assert approved.is_valid == True
        assert approved.sequence_step == 1

# ============================================
# FAILURE TESTS - ROLLBACK
# ============================================

class TestLedgerFailures:
    """Infrastructure faults raise and leave no committed stage behind."""

    def test_ledger_failure_rolls_back_stage(self):
        ledger = FailingLedgerClient()
        engine = build_compliance_engine(TEST_CONFIG, ledger=ledger)

        with pytest.raises(LedgerUnavailable):
            engine.validate_action(request_for("Producer", "product_creation", producer_data()))

        assert engine.get_sequence_state("CT-2024-001-ABC123") is None
        assert ledger.attempts == TEST_CONFIG.ledger_max_attempts

    def test_ledger_timeout_rolls_back_stage(self):
        config = EngineConfig(ledger_timeout=0.05, ledger_max_attempts=1, ledger_retry_backoff=0)
        engine = build_compliance_engine(config, ledger=SlowLedgerClient(delay=0.5))

        with pytest.raises(LedgerTimeout):
            engine.validate_action(request_for("Producer", "product_creation", producer_data()))

        assert engine.get_sequence_state("CT-2024-001-ABC123") is None

    def test_rollback_keeps_earlier_stages(self):
        ledger = FailingLedgerClient(failures=0)
        engine = build_compliance_engine(TEST_CONFIG, ledger=ledger)
        engine.validate_action(request_for("Producer", "product_creation", producer_data()))

        ledger.failures = 10 ** 6
        with pytest.raises(LedgerUnavailable):
            engine.validate_action(request_for("Processor", "product_processing", processor_data()))

        state = engine.get_sequence_state("CT-2024-001-ABC123")
        assert state.current_step == 1
        assert state.next_required_action() == "Processor action required"

    def test_product_usable_after_failure(self):
        """Once the ledger recovers the same action succeeds."""
        ledger = FailingLedgerClient(failures=TEST_CONFIG.ledger_max_attempts)
        engine = build_compliance_engine(TEST_CONFIG, ledger=ledger)

        with pytest.raises(LedgerUnavailable):
            engine.validate_action(request_for("Producer", "product_creation", producer_data()))

        result = engine.validate_action(request_for("Producer", "product_creation", producer_data()))
        assert result.is_valid == True

    def test_transient_failure_retried(self):
        ledger = FailingLedgerClient(failures=1)
        engine = build_compliance_engine(TEST_CONFIG, ledger=ledger)

        result = engine.validate_action(request_for("Producer", "product_creation", producer_data()))

        assert result.is_valid == True
        assert ledger.attempts == 2

    def test_rule_source_failure(self):
        engine = build_compliance_engine(TEST_CONFIG, rule_source=BrokenRuleSource(), ledger=RecordingLedgerClient())
        with pytest.raises(RuleSourceUnavailable):
            engine.validate_action(request_for("Producer", "product_creation", producer_data()))

# ============================================
# CONCURRENCY TESTS
# ============================================

class TestConcurrency:

    def run_concurrently(self, engine, requests):
        barrier = threading.Barrier(len(requests))
        results = [None] * len(requests)
        errors = []

        def worker(index, request):
            try:
                barrier.wait()
                results[index] = engine.validate_action(request)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(i, r)) for i, r in enumerate(requests)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert errors == []
        return results

    def test_same_product_single_winner(self, engine, ledger):
        """Simultaneous Producer actions on one product: exactly one succeeds."""
        n = 10
        requests = [request_for("Producer", "product_creation", producer_data()) for _ in range(n)]

        results = self.run_concurrently(engine, requests)

        valid = [r for r in results if r.is_valid]
        rejected = [r for r in results if not r.is_valid]
        assert len(valid) == 1
        assert len(rejected) == n - 1
        assert all(r.violations[0].startswith("SEQUENCE_VIOLATION") for r in rejected)
        assert engine.get_sequence_state("CT-2024-001-ABC123").current_step == 1
        assert len(ledger.calls) == n

    def test_different_products_independent(self, engine):
        requests = [
            request_for("Producer", "product_creation", producer_data(), product_id=f"CT-2024-{i:03d}")
            for i in range(8)
        ]

        results = self.run_concurrently(engine, requests)

        assert all(r.is_valid for r in results)

# ============================================
# CONFIGURATION
# ============================================

class TestEngineConfig:

    def test_defaults(self):
        config = EngineConfig()
        assert config.rules_ttl == 3600
        assert config.state_ttl == 86400
        assert config.ledger_timeout == 30.0

    def test_from_env(self):
        config = EngineConfig.from_env({
            'CT_RULES_CACHE_TTL': '120',
            'CT_LEDGER_TIMEOUT': '2.5',
            'CT_LEDGER_TOPIC_ID': '0.0.4242'
        })
        assert config.rules_ttl == 120
        assert config.ledger_timeout == 2.5
        assert config.ledger_topic_id == '0.0.4242'
        assert config.state_ttl == 86400

    def test_worst_case_audit_seconds(self):
        assert EngineConfig().worst_case_audit_seconds == 91.5
        assert EngineConfig(ledger_timeout=1.0, ledger_max_attempts=1).worst_case_audit_seconds == 1.0

    def test_inconsistent_timeouts_warned(self, caplog):
        """A lock timeout shorter than the ledger wait is flagged at build time."""
        with caplog.at_level("WARNING", logger="ChainTrace.Compliance"):
            build_compliance_engine(EngineConfig(lock_timeout=5.0))
        assert any("worst-case ledger wait" in r.getMessage() for r in caplog.records)

        caplog.clear()
        with caplog.at_level("WARNING", logger="ChainTrace.Compliance"):
            build_compliance_engine(EngineConfig(lock_timeout=10.0, ledger_timeout=2.0, ledger_retry_backoff=0))
        assert not any("worst-case ledger wait" in r.getMessage() for r in caplog.records)

# ============================================
# ENGINE ASSEMBLY
# ============================================

class TestBuildComplianceEngine:
    """Injected collaborators must be the ones the engine uses."""

    def test_empty_injected_ledger_is_used(self):
        ledger = InMemoryLedgerClient(topic_id="0.0.777")
        assert len(ledger) == 0
        engine = build_compliance_engine(TEST_CONFIG, ledger=ledger)

        result = engine.validate_action(request_for("Producer", "product_creation", producer_data()))

        assert engine.audit_logger.ledger is ledger
        assert len(ledger) == 1
        assert result.audit.transaction_id.startswith("0.0.777@")
        assert ledger.entries_for("CT-2024-001-ABC123")[0]['compliance_id'] == result.compliance_id

    def test_empty_injected_cache_is_used(self):
        cache = InMemoryComplianceCache()
        engine = build_compliance_engine(TEST_CONFIG, cache=cache, ledger=RecordingLedgerClient())

        engine.validate_action(request_for("Producer", "product_creation", producer_data()))

        assert engine.rule_repository.cache is cache
        assert engine.sequence_tracker.cache is cache
        assert cache.get("compliance:sequence:CT-2024-001-ABC123").current_step == 1
