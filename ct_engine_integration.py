"""
ChainTrace Compliance Engine - Integration
Re-exports engine components and wires them together from one config
"""

from typing import Optional

# Import all engine components from the core modules
from ct_compliance_core_v1 import (
    # Model
    SupplyChainRole,
    ComplianceAction,
    AuditResult,
    WorkflowStatus,
    ViolationCategory,
    EngineConfig,
    ComplianceRule,
    RuleConditions,
    FieldEnumeration,
    NumericLimit,
    DateWindow,
    Actor,
    ActionValidationRequest,
    CompletedStage,
    SequenceState,
    ComplianceEvent,
    ComplianceCredential,
    LedgerReceipt,
    AuditRecord,
    ValidationResult,

    # Exceptions
    ComplianceEngineError,
    RuleConfigurationError,
    InfrastructureFailure,
    CacheUnavailable,
    RuleSourceUnavailable,
    SequenceLockTimeout,
    SequenceConflict,
    LedgerUnavailable,
    LedgerTimeout,

    # Logging
    logger
)

from ct_cache_adapter_v1 import ComplianceCache, InMemoryComplianceCache
from ct_rule_repository_v1 import (
    RuleSource,
    StaticRuleSource,
    RuleRepository,
    default_rule_set,
    load_rule_file
)
from ct_sequence_tracker_v1 import SequenceStateTracker, SequenceReservation, KeyedLock
from ct_audit_logger_v1 import LedgerClient, InMemoryLedgerClient, AuditLogger
from ct_action_validator_v1 import ActionValidator, evaluate_conditions

def build_compliance_engine(
    config: Optional[EngineConfig] = None,
    rule_source: Optional[RuleSource] = None,
    cache: Optional[ComplianceCache] = None,
    ledger: Optional[LedgerClient] = None
) -> ActionValidator:
    """Assemble a validator; every collaborator is injectable."""
    if config is None:
        config = EngineConfig()
    if cache is None:
        cache = InMemoryComplianceCache(operation_timeout=config.cache_timeout)
    if ledger is None:
        ledger = InMemoryLedgerClient(topic_id=config.ledger_topic_id)
    if rule_source is None:
        rule_source = StaticRuleSource(default_rule_set())

    if config.lock_timeout < config.worst_case_audit_seconds:
        logger.warning(
            f"lock_timeout={config.lock_timeout}s is shorter than the worst-case ledger wait "
            f"({config.worst_case_audit_seconds:g}s); concurrent calls for a product with a slow "
            f"ledger write will fail with SequenceLockTimeout"
        )

    engine = ActionValidator(
        rule_repository=RuleRepository(rule_source, cache, rules_ttl=config.rules_ttl),
        sequence_tracker=SequenceStateTracker(
            cache, state_ttl=config.state_ttl, lock_timeout=config.lock_timeout
        ),
        audit_logger=AuditLogger(
            ledger,
            timeout=config.ledger_timeout,
            max_attempts=config.ledger_max_attempts,
            retry_backoff=config.ledger_retry_backoff
        )
    )
    logger.info(
        f"Compliance engine ready (rules_ttl={config.rules_ttl}s, state_ttl={config.state_ttl}s, "
        f"ledger_timeout={config.ledger_timeout}s)"
    )
    return engine

__all__ = [
    # Model
    'SupplyChainRole',
    'ComplianceAction',
    'AuditResult',
    'WorkflowStatus',
    'ViolationCategory',
    'EngineConfig',
    'ComplianceRule',
    'RuleConditions',
    'FieldEnumeration',
    'NumericLimit',
    'DateWindow',
    'Actor',
    'ActionValidationRequest',
    'CompletedStage',
    'SequenceState',
    'ComplianceEvent',
    'ComplianceCredential',
    'LedgerReceipt',
    'AuditRecord',
    'ValidationResult',

    # Exceptions
    'ComplianceEngineError',
    'RuleConfigurationError',
    'InfrastructureFailure',
    'CacheUnavailable',
    'RuleSourceUnavailable',
    'SequenceLockTimeout',
    'SequenceConflict',
    'LedgerUnavailable',
    'LedgerTimeout',

    # Components
    'ComplianceCache',
    'InMemoryComplianceCache',
    'RuleSource',
    'StaticRuleSource',
    'RuleRepository',
    'default_rule_set',
    'load_rule_file',
    'SequenceStateTracker',
    'SequenceReservation',
    'KeyedLock',
    'LedgerClient',
    'InMemoryLedgerClient',
    'AuditLogger',
    'ActionValidator',
    'evaluate_conditions',
    'build_compliance_engine',

    # Logging
    'logger'
]
