"""
ChainTrace Compliance Engine - Action Validator
Version: 1.0.0

Validates a submitted supply-chain action: rule resolution, field and
value checks, sequence enforcement, audit emission.

Field checks are pure functions of (data, conditions, as_of) so they can
be exercised without any collaborators.
"""

from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple
import math
import secrets
import string
import time

from ct_compliance_core_v1 import (
    ActionValidationRequest,
    AuditResult,
    ComplianceCredential,
    ComplianceEvent,
    ComplianceRule,
    DateWindow,
    FieldEnumeration,
    NumericLimit,
    RuleConditions,
    SequenceState,
    SupplyChainRole,
    ValidationResult,
    ViolationCategory,
    WorkflowStatus,
    logger
)
from ct_rule_repository_v1 import RuleRepository
from ct_sequence_tracker_v1 import SequenceReservation, SequenceStateTracker
from ct_audit_logger_v1 import AuditLogger
from ct_metrics import record_validation

_MISSING = object()
_ID_ALPHABET = string.ascii_uppercase + string.digits

CREDENTIAL_VALIDITY = timedelta(days=365)

# ============================================
# FIELD CHECKS (PURE)
# ============================================

def resolve_path(data: Dict[str, Any], path: str) -> Any:
    """Follow a dot path through nested dicts; returns _MISSING when absent."""
    current: Any = data
    for part in path.split('.'):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current

def is_present(value: Any) -> bool:
    if value is _MISSING or value is None:
        return False
    if isinstance(value, (str, list, tuple, dict, set)) and len(value) == 0:
        return False
    return True

def check_required_fields(data: Dict[str, Any], required_fields: Tuple[str, ...]) -> List[str]:
    return [
        f"{ViolationCategory.MISSING_FIELD.value}: {path}"
        for path in required_fields
        if not is_present(resolve_path(data, path))
    ]

def check_allowed_values(data: Dict[str, Any], enumerations: Tuple[FieldEnumeration, ...]) -> List[str]:
    violations = []
    for enumeration in enumerations:
        value = resolve_path(data, enumeration.field)
        if not is_present(value):
            continue
        if value not in enumeration.values:
            message = enumeration.message or (
                f"Invalid value for {enumeration.field}: must be one of "
                f"{', '.join(str(v) for v in enumeration.values)}"
            )
            violations.append(ViolationCategory.VALUE_NOT_ALLOWED.tag(message))
    return violations

def _as_number(value: Any) -> Optional[float]:
    """Numeric value of a field, or None when it is not a finite number."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        number = value
    elif isinstance(value, str):
        try:
            number = float(value)
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None

def _format_number(value: float) -> str:
    return f"{value:g}"

def check_numeric_limits(data: Dict[str, Any], limits: Tuple[NumericLimit, ...]) -> List[str]:
    violations = []
    reported_invalid = set()

    for limit in limits:
        raw = resolve_path(data, limit.field)
        if not is_present(raw):
            continue

        number = _as_number(raw)
        if number is None:
            if limit.field not in reported_invalid:
                reported_invalid.add(limit.field)
                violations.append(ViolationCategory.INVALID_VALUE.tag(f"Field {limit.field} must be a valid number"))
            continue

        unit = f" {limit.unit}" if limit.unit and not limit.message else limit.unit
        context = {
            'field': limit.field,
            'value': _format_number(number),
            'minimum': _format_number(limit.minimum) if limit.minimum is not None else None,
            'maximum': _format_number(limit.maximum) if limit.maximum is not None else None,
            'unit': unit
        }

        if limit.minimum is not None and number < limit.minimum:
            message = limit.message or "{field} must be at least {minimum}{unit}"
            violations.append(ViolationCategory.VALUE_OUT_OF_RANGE.tag(message.format(**context)))
        elif limit.maximum is not None and number > limit.maximum:
            message = limit.message or "{field} must not exceed {maximum}{unit}"
            violations.append(ViolationCategory.VALUE_OUT_OF_RANGE.tag(message.format(**context)))

    return violations

def _as_date(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace('Z', '+00:00')).date()
        except ValueError:
            return None
    return None

def check_date_windows(data: Dict[str, Any], windows: Tuple[DateWindow, ...], as_of: datetime) -> List[str]:
    violations = []
    for window in windows:
        raw = resolve_path(data, window.field)
        if not is_present(raw):
            continue

        when = _as_date(raw)
        if when is None:
            violations.append(ViolationCategory.INVALID_VALUE.tag(f"Field {window.field} must be an ISO-8601 date"))
            continue

        age_days = abs((as_of.date() - when).days)
        if age_days > window.max_age_days:
            message = window.message or f"{window.field} must be within {window.max_age_days} days"
            violations.append(ViolationCategory.VALUE_OUT_OF_RANGE.tag(message))
    return violations

def evaluate_conditions(data: Dict[str, Any], conditions: RuleConditions, as_of: datetime) -> List[str]:
    """All structural violations for data under one rule's conditions, in check order."""
    data = data or {}
    violations = check_required_fields(data, conditions.required_fields)
    violations.extend(check_allowed_values(data, conditions.allowed_values))
    violations.extend(check_numeric_limits(data, conditions.numeric_limits))
    violations.extend(check_date_windows(data, conditions.date_windows, as_of))
    return violations

def _role_label(role: Any) -> str:
    resolved = SupplyChainRole.parse(role)
    return resolved.value if resolved else str(role)

def generate_compliance_id(product_id: str, now: Optional[datetime] = None) -> str:
    moment = now or datetime.now()
    suffix = ''.join(secrets.choice(_ID_ALPHABET) for _ in range(6))
    return f"COMP-{product_id}-{int(moment.timestamp() * 1000)}-{suffix}"

# ============================================
# VALIDATOR
# ============================================

class ActionValidator:
    """Engine entry point: validate_action(request) -> ValidationResult."""

    def __init__(
        self,
        rule_repository: RuleRepository,
        sequence_tracker: SequenceStateTracker,
        audit_logger: AuditLogger,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.rule_repository = rule_repository
        self.sequence_tracker = sequence_tracker
        self.audit_logger = audit_logger
        self.clock = clock

    def load_compliance_rules(self, role, action) -> List[ComplianceRule]:
        return self.rule_repository.load_compliance_rules(role, action)

    def get_sequence_state(self, product_id: str) -> Optional[SequenceState]:
        return self.sequence_tracker.get_state(product_id)

    def validate_action(self, request: ActionValidationRequest) -> ValidationResult:
        """
        Validate one action and record the decision on the ledger.

        Compliance failures come back as is_valid=False. Cache, lock and
        ledger faults raise InfrastructureFailure subclasses; a stage
        committed before a ledger fault is rolled back first.
        """
        started = time.monotonic()
        now = self.clock()
        compliance_id = generate_compliance_id(request.product_id, now)

        rules = self.rule_repository.load_compliance_rules(request.actor.role, request.action)
        if not rules:
            violation = ViolationCategory.RULES_NOT_FOUND.tag(
                f"No compliance rules found for role {request.actor.role} and action {request.action}"
            )
            return self._finish(
                request, compliance_id, [violation], 0, 'No applicable compliance rules found',
                None, None, started
            )

        rule = rules[0]
        field_violations = evaluate_conditions(request.data, rule.conditions, now)
        if field_violations:
            logger.warning(
                f"[VALIDATOR] {len(field_violations)} rule violation(s) for {request.product_id} under {rule.id}"
            )

        # Ordering is checked even when fields fail; only a fully valid action commits.
        with self.sequence_tracker.check_and_reserve(
            request.product_id,
            rule.role_type,
            rule.sequence_position,
            request.actor.wallet_address,
            rule.dependencies
        ) as reservation:
            if not reservation.allowed:
                return self._finish(
                    request, compliance_id, [reservation.violation] + field_violations,
                    rule.sequence_position, 'Sequence validation failed', None, reservation, started
                )

            if field_violations:
                return self._finish(
                    request, compliance_id, field_violations, 0, 'Business rule validation failed',
                    None, reservation, started
                )

            state = self.sequence_tracker.commit(reservation, rule.id, now)
            return self._finish(
                request, compliance_id, [], rule.sequence_position,
                'Action validation successful', state, reservation, started, rule
            )

    def _finish(
        self,
        request: ActionValidationRequest,
        compliance_id: str,
        violations: List[str],
        sequence_step: int,
        reason: str,
        state: Optional[SequenceState],
        reservation: Optional[SequenceReservation],
        started: float,
        rule: Optional[ComplianceRule] = None
    ) -> ValidationResult:
        is_valid = not violations
        event = ComplianceEvent(
            action=request.action,
            product_id=request.product_id,
            result=AuditResult.APPROVED if is_valid else AuditResult.REJECTED,
            wallet_address=request.actor.wallet_address,
            role_type=_role_label(request.actor.role),
            sequence_step=sequence_step,
            compliance_id=compliance_id,
            timestamp=self.clock(),
            violations=None if is_valid else list(violations)
        )

        try:
            audit = self.audit_logger.record(request.product_id, event)
        except Exception:
            if reservation is not None and reservation.committed:
                self.sequence_tracker.rollback(reservation)
            raise

        record_validation(_role_label(request.actor.role), is_valid, violations, time.monotonic() - started)

        credential = None
        if is_valid and state is not None and rule is not None:
            credential = self._issue_credential(request, state, compliance_id, rule)

        if not is_valid:
            logger.warning(f"[VALIDATOR] REJECTED {request.action} for {request.product_id}: {violations}")
        else:
            logger.info(f"[VALIDATOR] APPROVED {request.action} for {request.product_id} (step {sequence_step})")

        return ValidationResult(
            is_valid=is_valid,
            violations=tuple(violations),
            compliance_id=compliance_id,
            sequence_step=sequence_step,
            reason=reason,
            validated_at=event.timestamp,
            audit=audit,
            next_action=state.next_required_action() if state is not None else None,
            credential=credential
        )

    def _issue_credential(
        self,
        request: ActionValidationRequest,
        state: SequenceState,
        compliance_id: str,
        rule: ComplianceRule
    ) -> Optional[ComplianceCredential]:
        if rule.role_type is not SupplyChainRole.VERIFIER or state.status is not WorkflowStatus.COMPLETED:
            return None

        issued_at = self.clock()
        credential = ComplianceCredential(
            compliance_id=compliance_id,
            product_id=request.product_id,
            issuer_wallet=request.actor.wallet_address,
            issuer_role=rule.role_type.value,
            issued_at=issued_at,
            expires_at=issued_at + CREDENTIAL_VALIDITY,
            rule_ids=tuple(dict.fromkeys(stage.stage_id for stage in state.completed_stages)),
            producer_completed=state.has_position(SupplyChainRole.PRODUCER.sequence_position),
            processor_completed=state.has_position(SupplyChainRole.PROCESSOR.sequence_position),
            verifier_approved=state.has_position(SupplyChainRole.VERIFIER.sequence_position)
        )
        logger.info(f"[VALIDATOR] Issued compliance credential {compliance_id} for {request.product_id}")
        return credential
