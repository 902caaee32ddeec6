"""
Payment instrument assignment (external collaborator).

Some buckets need a payment instrument (for example a check number)
reserved before their file can be generated. The engine only knows whether
one is required and whether assignment worked; where instruments come from
is up to the implementation plugged in here.
"""
import logging
import threading
from abc import ABC, abstractmethod
from typing import Optional, List

from ..models.domain import AssignmentResult

logger = logging.getLogger(__name__)


class PaymentAssigner(ABC):
    """Interface for payment instrument assignment."""

    @abstractmethod
    def requires_payment(self, bucket) -> bool:
        """Decided once, when the bucket is created."""
        pass

    @abstractmethod
    def assign(self, bucket) -> AssignmentResult:
        """Reserve an instrument for the bucket. Must not raise for expected shortages."""
        pass

    def release(self, bucket_id: str, reference: str) -> None:
        """Return an instrument whose reservation was rolled back."""
        pass


class NullPaymentAssigner(PaymentAssigner):
    """No bucket ever needs a payment instrument."""

    def requires_payment(self, bucket) -> bool:
        return False

    def assign(self, bucket) -> AssignmentResult:
        return AssignmentResult.assigned("NOT_REQUIRED")


class InstrumentPoolAssigner(PaymentAssigner):
    """
    Hands out references from a fixed pool.

    Every bucket needs an instrument when required is set. An empty pool
    yields NO_AVAILABLE_RESOURCE so callers can wait for a restock.
    """

    def __init__(self, references: Optional[List[str]] = None, required: bool = True):
        self._lock = threading.Lock()
        self._available = list(references or [])
        self.required = required

    def restock(self, references: List[str]):
        with self._lock:
            self._available.extend(references)
        logger.info(f"Restocked {len(references)} payment instruments")

    @property
    def available(self) -> int:
        return len(self._available)

    def requires_payment(self, bucket) -> bool:
        return self.required

    def assign(self, bucket) -> AssignmentResult:
        with self._lock:
            if not self._available:
                logger.warning(f"No payment instrument available for bucket {bucket.id}")
                return AssignmentResult.no_available_resource()
            reference = self._available.pop(0)
        logger.info(f"Assigned payment instrument {reference} to bucket {bucket.id}")
        return AssignmentResult.assigned(reference)

    def release(self, bucket_id: str, reference: str) -> None:
        with self._lock:
            self._available.insert(0, reference)
        logger.info(f"Released payment instrument {reference} from bucket {bucket_id}")
