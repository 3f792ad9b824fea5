"""
ChainTrace Compliance Engine - Core Model
Version: 1.0.0

Roles, actions, rules, sequence state, validation results and the
exception taxonomy shared by every engine component.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from enum import Enum
import logging
import os

# ============================================
# SYSTEM CONFIGURATION
# ============================================

RULE_CACHE_PREFIX = "compliance:rules:"
SEQUENCE_CACHE_PREFIX = "compliance:sequence:"

class SupplyChainRole(Enum):
    PRODUCER = "Producer"
    PROCESSOR = "Processor"
    VERIFIER = "Verifier"

    @property
    def sequence_position(self) -> int:
        return _ROLE_POSITIONS[self]

    @classmethod
    def parse(cls, value: Any) -> Optional["SupplyChainRole"]:
        """Resolve a claimed role; unknown roles resolve to None."""
        if isinstance(value, cls):
            return value
        for role in cls:
            if isinstance(value, str) and value.lower() == role.value.lower():
                return role
        return None

    @classmethod
    def for_position(cls, position: int) -> Optional["SupplyChainRole"]:
        for role, role_position in _ROLE_POSITIONS.items():
            if role_position == position:
                return role
        return None

_ROLE_POSITIONS = {
    SupplyChainRole.PRODUCER: 1,
    SupplyChainRole.PROCESSOR: 2,
    SupplyChainRole.VERIFIER: 3,
}

FINAL_SEQUENCE_POSITION = max(_ROLE_POSITIONS.values())

class ComplianceAction(Enum):
    PRODUCT_CREATION = "product_creation"
    INITIAL_LOGGING = "initial_logging"
    PRODUCT_PROCESSING = "product_processing"
    TRANSFORMATION_EVENT = "transformation_event"
    BATCH_PROCESSING = "batch_processing"
    PRODUCT_VERIFICATION = "product_verification"
    CREDENTIAL_ISSUANCE = "credential_issuance"
    FINAL_CERTIFICATION = "final_certification"

    @classmethod
    def parse(cls, value: Any) -> Optional["ComplianceAction"]:
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            return None

class AuditResult(Enum):
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"

class WorkflowStatus(Enum):
    INITIALIZED = "initialized"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"

class ViolationCategory(Enum):
    """Machine-parseable prefixes carried by violation strings."""
    RULES_NOT_FOUND = "RULES_NOT_FOUND"
    SEQUENCE_VIOLATION = "SEQUENCE_VIOLATION"
    MISSING_FIELD = "Missing required field"
    VALUE_NOT_ALLOWED = "VALUE_NOT_ALLOWED"
    VALUE_OUT_OF_RANGE = "VALUE_OUT_OF_RANGE"
    INVALID_VALUE = "INVALID_VALUE"

    def tag(self, message: str) -> str:
        return f"{self.value}: {message}"

    @classmethod
    def of(cls, violation: str) -> Optional["ViolationCategory"]:
        for category in cls:
            if violation.startswith(category.value):
                return category
        return None

@dataclass(frozen=True)
class EngineConfig:
    """Construction-time settings for the engine (seconds unless noted)."""
    rules_ttl: int = 3600
    state_ttl: int = 86400
    cache_timeout: float = 2.0
    lock_timeout: float = 5.0
    ledger_timeout: float = 30.0
    ledger_max_attempts: int = 3
    ledger_retry_backoff: float = 0.5
    ledger_topic_id: str = "0.0.0"

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "EngineConfig":
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            rules_ttl=int(env.get("CT_RULES_CACHE_TTL", defaults.rules_ttl)),
            state_ttl=int(env.get("CT_STATE_CACHE_TTL", defaults.state_ttl)),
            cache_timeout=float(env.get("CT_CACHE_TIMEOUT", defaults.cache_timeout)),
            lock_timeout=float(env.get("CT_LOCK_TIMEOUT", defaults.lock_timeout)),
            ledger_timeout=float(env.get("CT_LEDGER_TIMEOUT", defaults.ledger_timeout)),
            ledger_max_attempts=int(env.get("CT_LEDGER_MAX_ATTEMPTS", defaults.ledger_max_attempts)),
            ledger_retry_backoff=float(env.get("CT_LEDGER_RETRY_BACKOFF", defaults.ledger_retry_backoff)),
            ledger_topic_id=env.get("CT_LEDGER_TOPIC_ID", defaults.ledger_topic_id),
        )

    @property
    def worst_case_audit_seconds(self) -> float:
        """Longest time one call can hold a product lock waiting on the ledger."""
        backoff = self.ledger_retry_backoff * sum(range(1, self.ledger_max_attempts))
        return self.ledger_max_attempts * self.ledger_timeout + backoff

# ============================================
# LOGGING SETUP
# ============================================

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
)
logger = logging.getLogger("ChainTrace.Compliance")

# ============================================
# EXCEPTIONS
# ============================================

class ComplianceEngineError(Exception):
    """Base class for engine faults. Compliance rejections are never raised."""
    pass

class RuleConfigurationError(ComplianceEngineError):
    """Raised when rule configuration data is malformed."""
    pass

class InfrastructureFailure(ComplianceEngineError):
    """A collaborator could not be reached; the decision was not made or not recorded."""
    pass

class CacheUnavailable(InfrastructureFailure):
    """Raised when the cache cannot serve a request within its timeout."""
    pass

class RuleSourceUnavailable(InfrastructureFailure):
    """Raised when rules cannot be resolved from the rule source."""
    pass

class SequenceLockTimeout(InfrastructureFailure):
    """Raised when a product's sequence lock cannot be acquired in time."""
    pass

class SequenceConflict(InfrastructureFailure):
    """Raised when a sequence state commit loses a compare-and-set race."""
    pass

class LedgerUnavailable(InfrastructureFailure):
    """Raised when a compliance decision could not be written to the ledger."""
    pass

class LedgerTimeout(LedgerUnavailable):
    """Raised when the ledger did not acknowledge within the configured timeout."""
    pass

# ============================================
# RULE MODEL
# ============================================

@dataclass(frozen=True)
class FieldEnumeration:
    """Allowed values for a field path."""
    field: str
    values: Tuple[Any, ...]
    message: Optional[str] = None

@dataclass(frozen=True)
class NumericLimit:
    """Inclusive numeric bounds for a field path."""
    field: str
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    unit: str = ""
    message: Optional[str] = None

@dataclass(frozen=True)
class DateWindow:
    """An ISO-8601 date field must lie within max_age_days of evaluation time."""
    field: str
    max_age_days: int
    message: Optional[str] = None

@dataclass(frozen=True)
class RuleConditions:
    required_fields: Tuple[str, ...] = ()
    allowed_values: Tuple[FieldEnumeration, ...] = ()
    numeric_limits: Tuple[NumericLimit, ...] = ()
    date_windows: Tuple[DateWindow, ...] = ()

@dataclass(frozen=True)
class ComplianceRule:
    """Immutable rule configuration for one role and a set of actions."""
    id: str
    role_type: SupplyChainRole
    actions: Tuple[ComplianceAction, ...]
    sequence_position: int
    conditions: RuleConditions = field(default_factory=RuleConditions)
    dependencies: Tuple[str, ...] = ()
    description: str = ""
    version: str = "1.0.0"
    rule_type: str = "supply_chain"

    def applies_to(self, action: ComplianceAction) -> bool:
        return action in self.actions

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'rule_type': self.rule_type,
            'role_type': self.role_type.value,
            'actions': [a.value for a in self.actions],
            'sequence_position': self.sequence_position,
            'dependencies': list(self.dependencies),
            'description': self.description,
            'version': self.version,
            'conditions': {
                'required_fields': list(self.conditions.required_fields),
                'allowed_values': [
                    {'field': e.field, 'values': list(e.values), 'message': e.message}
                    for e in self.conditions.allowed_values
                ],
                'numeric_limits': [
                    {'field': n.field, 'minimum': n.minimum, 'maximum': n.maximum,
                     'unit': n.unit, 'message': n.message}
                    for n in self.conditions.numeric_limits
                ],
                'date_windows': [
                    {'field': d.field, 'max_age_days': d.max_age_days, 'message': d.message}
                    for d in self.conditions.date_windows
                ],
            }
        }

# ============================================
# REQUEST / STATE / RESULT MODEL
# ============================================

@dataclass(frozen=True)
class Actor:
    wallet_address: str
    role: str  # claimed role, authenticated upstream

@dataclass
class ActionValidationRequest:
    action: str
    product_id: str
    actor: Actor
    data: Dict[str, Any] = field(default_factory=dict)

@dataclass(frozen=True)
class CompletedStage:
    role: SupplyChainRole
    sequence_position: int
    timestamp: datetime
    actor: str
    stage_id: str

    def to_dict(self) -> Dict:
        return {
            'role': self.role.value,
            'sequence_position': self.sequence_position,
            'timestamp': self.timestamp.isoformat(),
            'actor': self.actor,
            'stage_id': self.stage_id
        }

@dataclass(frozen=True)
class SequenceState:
    """Per-product workflow record. Replaced wholesale on every commit."""
    product_id: str
    completed_stages: Tuple[CompletedStage, ...] = ()
    status: WorkflowStatus = WorkflowStatus.INITIALIZED
    last_action_at: Optional[datetime] = None
    last_actor: str = ""

    @property
    def current_step(self) -> int:
        return len(self.completed_stages)

    @property
    def latest_stage(self) -> Optional[CompletedStage]:
        return self.completed_stages[-1] if self.completed_stages else None

    @property
    def completed_stage_ids(self) -> frozenset:
        return frozenset(stage.stage_id for stage in self.completed_stages)

    def has_position(self, position: int) -> bool:
        return any(stage.sequence_position == position for stage in self.completed_stages)

    def next_required_action(self) -> str:
        for position in range(1, FINAL_SEQUENCE_POSITION + 1):
            if not self.has_position(position):
                return f"{SupplyChainRole.for_position(position).value} action required"
        return "Workflow complete"

    def with_stage(self, stage: CompletedStage) -> "SequenceState":
        stages = self.completed_stages + (stage,)
        complete = all(
            any(s.sequence_position == p for s in stages)
            for p in range(1, FINAL_SEQUENCE_POSITION + 1)
        )
        return SequenceState(
            product_id=self.product_id,
            completed_stages=stages,
            status=WorkflowStatus.COMPLETED if complete else WorkflowStatus.IN_PROGRESS,
            last_action_at=stage.timestamp,
            last_actor=stage.actor
        )

    def to_dict(self) -> Dict:
        return {
            'product_id': self.product_id,
            'current_step': self.current_step,
            'completed_stages': [s.to_dict() for s in self.completed_stages],
            'status': self.status.value,
            'last_action_at': self.last_action_at.isoformat() if self.last_action_at else None,
            'last_actor': self.last_actor,
            'next_action': self.next_required_action()
        }

@dataclass
class ComplianceEvent:
    """Audit payload submitted to the ledger for every validation attempt."""
    action: str
    product_id: str
    result: AuditResult
    wallet_address: str
    role_type: str
    sequence_step: int
    compliance_id: str
    timestamp: datetime = field(default_factory=datetime.now)
    violations: Optional[List[str]] = None

    def to_dict(self) -> Dict:
        payload = {
            'action': self.action,
            'product_id': self.product_id,
            'result': self.result.value,
            'wallet_address': self.wallet_address,
            'role_type': self.role_type,
            'sequence_step': self.sequence_step,
            'compliance_id': self.compliance_id,
            'timestamp': self.timestamp.isoformat()
        }
        if self.violations is not None:
            payload['violations'] = list(self.violations)
        return payload

@dataclass(frozen=True)
class LedgerReceipt:
    transaction_id: str
    topic_id: str
    submitted_at: datetime
    message_size: int

@dataclass(frozen=True)
class AuditRecord:
    transaction_id: str
    logged_at: datetime
    compliance_id: str
    result: AuditResult

    def to_dict(self) -> Dict:
        return {
            'transaction_id': self.transaction_id,
            'logged_at': self.logged_at.isoformat(),
            'compliance_id': self.compliance_id,
            'result': self.result.value
        }

@dataclass(frozen=True)
class ComplianceCredential:
    """Issued when a Verifier approval completes a product's workflow."""
    compliance_id: str
    product_id: str
    issuer_wallet: str
    issuer_role: str
    issued_at: datetime
    expires_at: datetime
    rule_ids: Tuple[str, ...]
    producer_completed: bool
    processor_completed: bool
    verifier_approved: bool
    renewal_requirements: Tuple[str, ...] = ("Annual verification renewal required",)

    def to_dict(self) -> Dict:
        return {
            'compliance_id': self.compliance_id,
            'product_id': self.product_id,
            'issuer': {'wallet_address': self.issuer_wallet, 'role': self.issuer_role},
            'issued_at': self.issued_at.isoformat(),
            'expires_at': self.expires_at.isoformat(),
            'rule_ids': list(self.rule_ids),
            'workflow_status': {
                'producer_completed': self.producer_completed,
                'processor_completed': self.processor_completed,
                'verifier_approved': self.verifier_approved
            },
            'renewal_requirements': list(self.renewal_requirements)
        }

@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    violations: Tuple[str, ...]
    compliance_id: str
    sequence_step: int
    reason: str = ""
    validated_at: datetime = field(default_factory=datetime.now)
    audit: Optional[AuditRecord] = None
    next_action: Optional[str] = None
    credential: Optional[ComplianceCredential] = None

    def to_dict(self) -> Dict:
        return {
            'is_valid': self.is_valid,
            'violations': list(self.violations),
            'compliance_id': self.compliance_id,
            'sequence_step': self.sequence_step,
            'reason': self.reason,
            'validated_at': self.validated_at.isoformat(),
            'audit': self.audit.to_dict() if self.audit else None,
            'next_action': self.next_action,
            'credential': self.credential.to_dict() if self.credential else None
        }
