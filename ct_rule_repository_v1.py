"""
ChainTrace Compliance Engine - Rule Repository
Version: 1.0.0

Resolves the compliance rules that apply to a (role, action) pair.
Rules are versioned configuration: read-only here, cached with a TTL.
"""

from typing import Any, Dict, Iterable, List, Optional, Tuple, Union
from abc import ABC, abstractmethod
import json

from ct_compliance_core_v1 import (
    ComplianceAction,
    ComplianceEngineError,
    ComplianceRule,
    DateWindow,
    FieldEnumeration,
    NumericLimit,
    RULE_CACHE_PREFIX,
    RuleConditions,
    RuleConfigurationError,
    RuleSourceUnavailable,
    SupplyChainRole,
    logger
)
from ct_cache_adapter_v1 import ComplianceCache
from ct_metrics import record_cache_lookup

RoleLike = Union[SupplyChainRole, str]
ActionLike = Union[ComplianceAction, str]

# ============================================
# RULE SOURCES
# ============================================

class RuleSource(ABC):
    """Where rules come from: static config, a database, a remote service."""

    @abstractmethod
    def fetch_rules(self, role: SupplyChainRole, action: ComplianceAction) -> List[ComplianceRule]:
        pass

class StaticRuleSource(RuleSource):
    """Rules held in memory, indexed by (role, action)."""

    def __init__(self, rules: Iterable[ComplianceRule]):
        self.rules: Tuple[ComplianceRule, ...] = tuple(rules)
        self._index: Dict[Tuple[SupplyChainRole, ComplianceAction], List[ComplianceRule]] = {}

        seen_ids = set()
        for rule in self.rules:
            if rule.id in seen_ids:
                raise RuleConfigurationError(f"Duplicate rule id: {rule.id}")
            seen_ids.add(rule.id)
            for action in rule.actions:
                self._index.setdefault((rule.role_type, action), []).append(rule)

    def fetch_rules(self, role: SupplyChainRole, action: ComplianceAction) -> List[ComplianceRule]:
        return list(self._index.get((role, action), []))

    @classmethod
    def from_dicts(cls, entries: Iterable[Dict[str, Any]]) -> "StaticRuleSource":
        return cls(rule_from_dict(entry) for entry in entries)

def rule_from_dict(entry: Dict[str, Any]) -> ComplianceRule:
    """Build a rule from its configuration form (see ComplianceRule.to_dict)."""
    try:
        role = SupplyChainRole.parse(entry['role_type'])
        if role is None:
            raise RuleConfigurationError(f"Unknown role_type {entry['role_type']!r} in rule {entry.get('id')}")

        actions = []
        for name in entry['actions']:
            action = ComplianceAction.parse(name)
            if action is None:
                raise RuleConfigurationError(f"Unknown action {name!r} in rule {entry['id']}")
            actions.append(action)

        raw = entry.get('conditions', {})
        conditions = RuleConditions(
            required_fields=tuple(raw.get('required_fields', ())),
            allowed_values=tuple(
                FieldEnumeration(field=e['field'], values=tuple(e['values']), message=e.get('message'))
                for e in raw.get('allowed_values', ())
            ),
            numeric_limits=tuple(
                NumericLimit(
                    field=n['field'],
                    minimum=n.get('minimum'),
                    maximum=n.get('maximum'),
                    unit=n.get('unit', ''),
                    message=n.get('message')
                )
                for n in raw.get('numeric_limits', ())
            ),
            date_windows=tuple(
                DateWindow(field=d['field'], max_age_days=int(d['max_age_days']), message=d.get('message'))
                for d in raw.get('date_windows', ())
            )
        )

        return ComplianceRule(
            id=entry['id'],
            role_type=role,
            actions=tuple(actions),
            sequence_position=int(entry.get('sequence_position', role.sequence_position)),
            conditions=conditions,
            dependencies=tuple(entry.get('dependencies', ())),
            description=entry.get('description', ''),
            version=str(entry.get('version', '1.0.0')),
            rule_type=entry.get('rule_type', 'supply_chain')
        )
    except (KeyError, TypeError, ValueError) as e:
        raise RuleConfigurationError(f"Malformed rule entry {entry!r}: {e}") from e

def load_rule_file(path: str) -> StaticRuleSource:
    """Load a JSON rule file: either a list of rules or {"version": ..., "rules": [...]}."""
    with open(path, encoding="utf-8") as fh:
        document = json.load(fh)

    if isinstance(document, dict):
        version = document.get('version')
        entries = document.get('rules', [])
        if version is not None:
            entries = [{'version': version, **entry} for entry in entries]
    else:
        entries = document

    source = StaticRuleSource.from_dicts(entries)
    logger.info(f"[RULES] Loaded {len(source.rules)} rules from {path}")
    return source

# ============================================
# DEFAULT CHAINTRACE RULE SET
# ============================================

PRODUCT_CATEGORIES = (
    'organic_cocoa', 'conventional_cocoa', 'specialty_crop', 'grain', 'dairy', 'meat'
)

MAX_DAILY_PRODUCTION_KG = 1000
HARVEST_LOGGING_WINDOW_DAYS = 730

def default_rule_set() -> List[ComplianceRule]:
    """The Producer -> Processor -> Verifier rules shipped with ChainTrace."""
    producer = ComplianceRule(
        id='producer_initial_creation',
        role_type=SupplyChainRole.PRODUCER,
        actions=(ComplianceAction.PRODUCT_CREATION, ComplianceAction.INITIAL_LOGGING),
        sequence_position=1,
        conditions=RuleConditions(
            required_fields=(
                'productType', 'quantity', 'origin', 'processingDetails',
                'origin.country', 'origin.region', 'origin.farm_id',
                'processingDetails.harvest_date',
                'processingDetails.processing_method',
                'processingDetails.quality_grade',
            ),
            allowed_values=(
                FieldEnumeration(
                    field='productType',
                    values=PRODUCT_CATEGORIES,
                    message='Product type must be one of the allowed agricultural categories'
                ),
            ),
            numeric_limits=(
                NumericLimit(
                    field='quantity', minimum=1, maximum=10_000, unit='kg',
                    message='Quantity must be between 1 and 10,000 kg'
                ),
                NumericLimit(
                    field='quantity', maximum=MAX_DAILY_PRODUCTION_KG, unit='kg',
                    message='Daily production limit exceeded: {value}{unit} exceeds maximum of {maximum}{unit}'
                ),
            ),
            date_windows=(
                DateWindow(
                    field='processingDetails.harvest_date',
                    max_age_days=HARVEST_LOGGING_WINDOW_DAYS,
                    message=(
                        'Product logging exceeds seasonal restrictions: '
                        f'must be logged within {HARVEST_LOGGING_WINDOW_DAYS} days of harvest'
                    )
                ),
            )
        ),
        description='Validates initial product creation by Producer role with comprehensive metadata validation'
    )

    processor = ComplianceRule(
        id='processor_transformation',
        role_type=SupplyChainRole.PROCESSOR,
        actions=(
            ComplianceAction.PRODUCT_PROCESSING,
            ComplianceAction.TRANSFORMATION_EVENT,
            ComplianceAction.BATCH_PROCESSING,
        ),
        sequence_position=2,
        conditions=RuleConditions(
            required_fields=('processingType', 'duration', 'location', 'inputProducts', 'outputProducts'),
            numeric_limits=(
                NumericLimit(field='duration', minimum=0, unit='h'),
            )
        ),
        dependencies=('producer_initial_creation',),
        description='Validates product processing/transformation by Processor role'
    )

    verifier = ComplianceRule(
        id='verifier_final_verification',
        role_type=SupplyChainRole.VERIFIER,
        actions=(
            ComplianceAction.PRODUCT_VERIFICATION,
            ComplianceAction.CREDENTIAL_ISSUANCE,
            ComplianceAction.FINAL_CERTIFICATION,
        ),
        sequence_position=3,
        conditions=RuleConditions(
            required_fields=('verificationMethod', 'certificationLevel', 'verificationStandards', 'auditResults')
        ),
        dependencies=('producer_initial_creation', 'processor_transformation'),
        description='Validates final verification and issues compliance credentials'
    )

    return [producer, processor, verifier]

# ============================================
# REPOSITORY
# ============================================

class RuleRepository:
    """Cached access to the rule source."""

    def __init__(self, source: RuleSource, cache: ComplianceCache, rules_ttl: int = 3600):
        self.source = source
        self.cache = cache
        self.rules_ttl = rules_ttl

    @staticmethod
    def cache_key(role: SupplyChainRole, action: ComplianceAction) -> str:
        return f"{RULE_CACHE_PREFIX}{role.value}:{action.value}"

    def load_compliance_rules(self, role: RoleLike, action: ActionLike) -> List[ComplianceRule]:
        """
        Return the rules for (role, action) in ascending sequence position.

        Unknown roles or actions yield an empty list. Cache faults and rule
        source faults propagate as InfrastructureFailure subclasses.
        """
        resolved_role = SupplyChainRole.parse(role)
        resolved_action = ComplianceAction.parse(action)
        if resolved_role is None or resolved_action is None:
            logger.info(f"[RULES] No rules for unknown role/action {role}:{action}")
            return []

        key = self.cache_key(resolved_role, resolved_action)
        cached = self.cache.get(key)
        if cached is not None:
            record_cache_lookup(hit=True)
            return list(cached)
        record_cache_lookup(hit=False)

        try:
            rules = self.source.fetch_rules(resolved_role, resolved_action)
        except ComplianceEngineError:
            raise
        except Exception as e:
            logger.error(f"[RULES] Rule source failed for {key}: {e}")
            raise RuleSourceUnavailable(
                f"Failed to load compliance rules for {resolved_role.value}:{resolved_action.value}: {e}"
            ) from e

        ordered = tuple(sorted(rules, key=lambda rule: rule.sequence_position))
        if ordered:
            self.cache.set(key, ordered, self.rules_ttl)
            logger.info(f"[RULES] Cached {len(ordered)} rule(s) for {key} (ttl={self.rules_ttl}s)")
        return list(ordered)

    def invalidate(self, role: Optional[RoleLike] = None) -> int:
        """Drop cached rules, e.g. after rolling out a new rule version."""
        prefix = RULE_CACHE_PREFIX
        if role is not None:
            resolved = SupplyChainRole.parse(role)
            if resolved is None:
                return 0
            prefix = f"{RULE_CACHE_PREFIX}{resolved.value}:"
        removed = self.cache.clear_pattern(prefix)
        logger.info(f"[RULES] Invalidated {removed} cached rule set(s) under {prefix}")
        return removed
