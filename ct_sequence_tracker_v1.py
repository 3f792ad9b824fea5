"""
ChainTrace Compliance Engine - Sequence State Tracker
Version: 1.0.0

Tracks which workflow stages each product has completed and enforces
Producer -> Processor -> Verifier ordering. Check and commit for one
product happen under that product's lock; different products never
contend.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, Optional, Tuple
import threading

from ct_compliance_core_v1 import (
    CompletedStage,
    FINAL_SEQUENCE_POSITION,
    SEQUENCE_CACHE_PREFIX,
    SequenceConflict,
    SequenceLockTimeout,
    SequenceState,
    SupplyChainRole,
    ViolationCategory,
    logger
)
from ct_cache_adapter_v1 import ComplianceCache
from ct_metrics import (
    active_sequence_locks_gauge,
    sequence_commit_counter,
    sequence_rejection_counter,
    sequence_rollback_counter
)

# ============================================
# KEYED LOCK
# ============================================

class KeyedLock:
    """One mutex per key, created on demand and dropped when unused."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, list] = {}  # key -> [lock, holders_and_waiters]

    def acquire(self, key: str, timeout: float) -> bool:
        with self._guard:
            slot = self._locks.setdefault(key, [threading.Lock(), 0])
            slot[1] += 1

        acquired = slot[0].acquire(timeout=timeout)
        if not acquired:
            self._forget(key)
        else:
            active_sequence_locks_gauge.inc()
        return acquired

    def release(self, key: str):
        with self._guard:
            slot = self._locks[key]
        slot[0].release()
        active_sequence_locks_gauge.dec()
        self._forget(key)

    def _forget(self, key: str):
        with self._guard:
            slot = self._locks.get(key)
            if slot is None:
                return
            slot[1] -= 1
            if slot[1] == 0:
                del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

# ============================================
# RESERVATION
# ============================================

@dataclass
class SequenceReservation:
    """
    Outcome of check_and_reserve. Holds the product lock until released;
    use it as a context manager.
    """
    tracker: "SequenceStateTracker"
    product_id: str
    role: SupplyChainRole
    sequence_position: int
    actor: str
    allowed: bool
    violation: Optional[str]
    state_before: Optional[SequenceState]
    state_after: Optional[SequenceState] = None
    released: bool = field(default=False)

    @property
    def committed(self) -> bool:
        return self.state_after is not None

    def release(self):
        if not self.released:
            self.released = True
            self.tracker._release(self.product_id)

    def __enter__(self) -> "SequenceReservation":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False

# ============================================
# ORDERING RULES
# ============================================

def evaluate_ordering(
    state: SequenceState,
    role: SupplyChainRole,
    sequence_position: int,
    dependencies: Iterable[str] = ()
) -> Optional[str]:
    """Return the sequence violation message, or None when the action may proceed."""
    product_id = state.product_id
    latest = state.latest_stage

    def violation(message: str) -> str:
        return ViolationCategory.SEQUENCE_VIOLATION.tag(f"{message} for product {product_id}")

    if sequence_position < FINAL_SEQUENCE_POSITION and latest is not None \
            and latest.sequence_position == sequence_position:
        next_role = SupplyChainRole.for_position(sequence_position + 1)
        return ViolationCategory.SEQUENCE_VIOLATION.tag(
            f"Multiple {role.value} actions detected for product {product_id} "
            f"without {next_role.value} intervention"
        )

    if sequence_position >= 2 and not state.has_position(1):
        return violation(f"{role.value} action attempted before Producer initialization")

    if sequence_position >= 3 and not state.has_position(2):
        return violation(f"{role.value} action attempted before Processor completion")

    completed = state.completed_stage_ids
    for dependency in dependencies:
        if dependency not in completed:
            return violation(f"Missing prerequisite stage {dependency}")

    return None

# ============================================
# TRACKER
# ============================================

class SequenceStateTracker:
    """Per-product sequence state stored in the shared cache."""

    def __init__(self, cache: ComplianceCache, state_ttl: int = 86400, lock_timeout: float = 5.0):
        self.cache = cache
        self.state_ttl = state_ttl
        self.lock_timeout = lock_timeout
        self._locks = KeyedLock()

    @staticmethod
    def cache_key(product_id: str) -> str:
        return f"{SEQUENCE_CACHE_PREFIX}{product_id}"

    def get_state(self, product_id: str) -> Optional[SequenceState]:
        """Current state, or None if the product has no recorded stages."""
        return self.cache.get(self.cache_key(product_id))

    def check_and_reserve(
        self,
        product_id: str,
        role: SupplyChainRole,
        sequence_position: int,
        actor: str,
        dependencies: Tuple[str, ...] = ()
    ) -> SequenceReservation:
        """
        Lock the product and evaluate ordering against its current state.

        The lock is held by the returned reservation until release(), so the
        caller may commit() the stage with no other call for this product
        interleaving. A rejected reservation still holds the lock.
        """
        if not self._locks.acquire(product_id, self.lock_timeout):
            logger.error(f"[SEQUENCE] Lock timeout for product {product_id}")
            raise SequenceLockTimeout(f"Could not lock sequence state for product {product_id}")

        try:
            stored = self.get_state(product_id)
            state = stored if stored is not None else SequenceState(product_id=product_id)
            violation = evaluate_ordering(state, role, sequence_position, dependencies)
        except Exception:
            self._release(product_id)
            raise

        if violation:
            sequence_rejection_counter.labels(role=role.value).inc()
            logger.warning(f"[SEQUENCE] {violation}")
        else:
            logger.info(
                f"[SEQUENCE] Reserved position {sequence_position} ({role.value}) for product {product_id} "
                f"at step {state.current_step}"
            )

        return SequenceReservation(
            tracker=self,
            product_id=product_id,
            role=role,
            sequence_position=sequence_position,
            actor=actor,
            allowed=violation is None,
            violation=violation,
            state_before=stored
        )

    def commit(self, reservation: SequenceReservation, stage_id: str, timestamp: Optional[datetime] = None) -> SequenceState:
        """Append the reserved stage to the product's state."""
        if not reservation.allowed:
            raise ValueError(f"Cannot commit rejected reservation for {reservation.product_id}")
        if reservation.released:
            raise ValueError(f"Reservation for {reservation.product_id} already released")
        if reservation.committed:
            return reservation.state_after

        base = reservation.state_before
        if base is None:
            base = SequenceState(product_id=reservation.product_id)
        stage = CompletedStage(
            role=reservation.role,
            sequence_position=reservation.sequence_position,
            timestamp=timestamp or datetime.now(),
            actor=reservation.actor,
            stage_id=stage_id
        )
        updated = base.with_stage(stage)

        key = self.cache_key(reservation.product_id)
        if not self.cache.compare_and_set(key, reservation.state_before, updated, self.state_ttl):
            raise SequenceConflict(f"Sequence state for {reservation.product_id} changed during validation")

        reservation.state_after = updated
        sequence_commit_counter.labels(role=reservation.role.value).inc()
        logger.info(
            f"[SEQUENCE] Committed {stage_id} for product {reservation.product_id} "
            f"(step {updated.current_step}, status={updated.status.value})"
        )
        return updated

    def rollback(self, reservation: SequenceReservation):
        """Undo a commit made through this reservation."""
        if not reservation.committed:
            return

        # The product lock is still held, so nothing else can have written the key.
        key = self.cache_key(reservation.product_id)
        if self.cache.get(key) != reservation.state_after:
            raise SequenceConflict(f"Could not roll back sequence state for {reservation.product_id}")

        if reservation.state_before is None:
            self.cache.delete(key)
        else:
            self.cache.set(key, reservation.state_before, self.state_ttl)

        reservation.state_after = None
        sequence_rollback_counter.inc()
        logger.warning(f"ROLLBACK [SEQUENCE]: Reverted last stage for product {reservation.product_id}")

    def _release(self, product_id: str):
        self._locks.release(product_id)
