"""
ChainTrace Compliance Engine - Audit Logger
Version: 1.0.0

Every compliance decision, approved or rejected, is written to an
append-only ledger before validate_action returns. Ledger faults are
infrastructure failures, never compliance rejections.
"""

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from datetime import datetime
from typing import Dict, List
from abc import ABC, abstractmethod
import hashlib
import hmac
import json
import threading
import time

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing
)

from ct_compliance_core_v1 import (
    AuditRecord,
    ComplianceEvent,
    LedgerReceipt,
    LedgerTimeout,
    LedgerUnavailable,
    logger
)
from ct_metrics import record_ledger_submission

LEDGER_SIGNING_KEY = b"CHAINTRACE_AUDIT_KEY_ROTATE_QUARTERLY"

# ============================================
# LEDGER CLIENT CONTRACT
# ============================================

class LedgerClient(ABC):
    """Append-only, externally durable event log (at-least-once delivery)."""

    @abstractmethod
    def submit_compliance_check(self, product_id: str, event: Dict, correlation_id: str) -> LedgerReceipt:
        pass

# ============================================
# IN-MEMORY LEDGER
# ============================================

class InMemoryLedgerClient(LedgerClient):
    """Immutable, append-only ledger of compliance decisions (production would use a consensus service)."""

    def __init__(self, topic_id: str = "0.0.0", signing_key: bytes = LEDGER_SIGNING_KEY):
        self.topic_id = topic_id
        self._signing_key = signing_key
        self._entries: List[Dict] = []
        self._lock = threading.Lock()

    def _sign(self, message: str) -> str:
        return hmac.new(self._signing_key, message.encode(), hashlib.sha256).hexdigest()

    def submit_compliance_check(self, product_id: str, event: Dict, correlation_id: str) -> LedgerReceipt:
        message = json.dumps(
            {'product_id': product_id, 'correlation_id': correlation_id, 'event': event},
            sort_keys=True
        )
        submitted_at = datetime.now()

        with self._lock:
            sequence_number = len(self._entries) + 1
            transaction_id = f"{self.topic_id}@{submitted_at.timestamp():.9f}-{sequence_number}"
            self._entries.append({
                'transaction_id': transaction_id,
                'sequence_number': sequence_number,
                'product_id': product_id,
                'correlation_id': correlation_id,
                'message': message,
                'signature': self._sign(message),
                'submitted_at': submitted_at
            })

        logger.info(f"[LEDGER] Recorded {event.get('result')} for {product_id} as {transaction_id}")
        return LedgerReceipt(
            transaction_id=transaction_id,
            topic_id=self.topic_id,
            submitted_at=submitted_at,
            message_size=len(message.encode())
        )

    def entries_for(self, product_id: str) -> List[Dict]:
        """Audit trail for one product, oldest first, as submitted events."""
        with self._lock:
            entries = [e for e in self._entries if e['product_id'] == product_id]
        return [
            {
                'transaction_id': e['transaction_id'],
                'sequence_number': e['sequence_number'],
                'submitted_at': e['submitted_at'].isoformat(),
                **json.loads(e['message'])['event']
            }
            for e in entries
        ]

    def verify_chain_integrity(self) -> bool:
        """Verify no entry has been altered since submission."""
        with self._lock:
            entries = list(self._entries)
        return all(hmac.compare_digest(e['signature'], self._sign(e['message'])) for e in entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

# ============================================
# AUDIT LOGGER
# ============================================

class AuditLogger:
    """Submits compliance events with a bounded timeout and retries."""

    def __init__(
        self,
        ledger: LedgerClient,
        timeout: float = 30.0,
        max_attempts: int = 3,
        retry_backoff: float = 0.5,
        max_workers: int = 8
    ):
        self.ledger = ledger
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.retry_backoff = retry_backoff
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="ct-ledger")

    def _retry_policy(self) -> Retrying:
        # Linear backoff: retry_backoff, 2 * retry_backoff, ...
        return Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_incrementing(start=self.retry_backoff, increment=self.retry_backoff),
            retry=retry_if_exception_type(LedgerUnavailable),
            before_sleep=self._before_retry,
            reraise=True
        )

    def _before_retry(self, retry_state: RetryCallState):
        record_ledger_submission("retried")
        logger.warning(
            f"[AUDIT] Retrying ledger submission (attempt {retry_state.attempt_number + 1}/{self.max_attempts})"
        )

    def _submit_once(self, product_id: str, payload: Dict, compliance_id: str) -> LedgerReceipt:
        started = time.monotonic()
        future = self._executor.submit(
            self.ledger.submit_compliance_check, product_id, payload, compliance_id
        )
        try:
            receipt = future.result(timeout=self.timeout)
        except FutureTimeout:
            future.cancel()
            record_ledger_submission("timeout", time.monotonic() - started)
            logger.error(f"[AUDIT] Ledger timeout after {self.timeout}s for {compliance_id}")
            raise LedgerTimeout(f"Ledger did not acknowledge {compliance_id} within {self.timeout}s")
        except Exception as e:
            record_ledger_submission("failed")
            logger.error(f"[AUDIT] Ledger submission failed for {compliance_id}: {e}")
            raise LedgerUnavailable(f"Could not record compliance decision {compliance_id}: {e}") from e

        record_ledger_submission("recorded", time.monotonic() - started)
        return receipt

    def record(self, product_id: str, event: ComplianceEvent) -> AuditRecord:
        """
        Write one event to the ledger and return its correlation record.

        Raises LedgerTimeout when the last attempt was not acknowledged within
        the timeout, LedgerUnavailable when it failed outright.
        """
        receipt = self._retry_policy()(
            self._submit_once, product_id, event.to_dict(), event.compliance_id
        )
        logger.info(
            f"[AUDIT] {event.result.value} {event.action} for {product_id} "
            f"-> {receipt.transaction_id}"
        )
        return AuditRecord(
            transaction_id=receipt.transaction_id,
            logged_at=receipt.submitted_at,
            compliance_id=event.compliance_id,
            result=event.result
        )

    def shutdown(self):
        self._executor.shutdown(wait=False)
