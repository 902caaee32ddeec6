"""
Remittance Engine - Domain Records

Plain records passed between services: the inbound change event,
read-only configuration snapshots, and the typed results every service
entry point returns instead of raising for expected business conditions.
"""
from dataclasses import dataclass, field, asdict
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Optional, List, Dict, Any, Tuple

from .db_models import (
    BucketStatus, ClaimOutcome, DeliveryStatus, RuleType, ThresholdType,
    TimeDuration, CommitMode,
)


# =============================================================================
# ERRORS
# =============================================================================

class ErrorCode(str, Enum):
    """Distinguishable failure codes surfaced to callers."""
    NOT_FOUND = "NOT_FOUND"
    VALIDATION = "VALIDATION"
    INVALID_STATE = "INVALID_STATE"
    NO_AVAILABLE_RESOURCE = "NO_AVAILABLE_RESOURCE"
    ASSIGNMENT_FAILED = "ASSIGNMENT_FAILED"
    UNAUTHORIZED = "UNAUTHORIZED"
    CONFLICT = "CONFLICT"
    GENERATION_FAILED = "GENERATION_FAILED"


class RemitEngineError(Exception):
    """Base class for engine errors."""
    pass


class InvalidBucketTransition(RemitEngineError):
    """Raised when a lifecycle transition is not in the transition table."""

    def __init__(self, from_status: BucketStatus, to_status: BucketStatus, bucket_id: Optional[str] = None):
        self.from_status = from_status
        self.to_status = to_status
        self.bucket_id = bucket_id
        super().__init__(f"Cannot transition bucket {bucket_id} from {from_status.value} to {to_status.value}")


class ConcurrentModificationError(RemitEngineError):
    """Raised when a unit of work keeps losing optimistic-lock races."""
    pass


# =============================================================================
# CHANGE EVENT
# =============================================================================

# camelCase names used by the change feed -> attribute names
EVENT_FIELD_ALIASES = {
    "claimId": "claim_id",
    "payerId": "payer_id",
    "payeeId": "payee_id",
    "totalChargeAmount": "total_charge_amount",
    "paidAmount": "paid_amount",
    "status": "status",
    "binNumber": "bin_number",
    "pcnNumber": "pcn_number",
}


def parse_amount(value: Any) -> Optional[Decimal]:
    """
    Parse a monetary amount.

    Returns None for a missing value. Raises ValueError when the value is
    present but not a finite number.
    """
    if value is None or (isinstance(value, str) and value.strip() == ""):
        return None
    if isinstance(value, bool):
        raise ValueError(f"Unparseable amount: {value!r}")
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValueError(f"Unparseable amount: {value!r}")
    if not amount.is_finite():
        raise ValueError(f"Unparseable amount: {value!r}")
    return amount.quantize(Decimal("0.01"))


@dataclass
class ChangeEvent:
    """One claim insert/update delivered by the change feed. Values are raw."""
    claim_id: Optional[str]
    payer_id: Optional[str]
    payee_id: Optional[str]
    total_charge_amount: Any = None
    paid_amount: Any = None
    status: Optional[str] = None
    bin_number: Optional[str] = None
    pcn_number: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChangeEvent":
        """Accept both camelCase (feed) and snake_case keys."""
        values = {}
        for key, value in data.items():
            name = EVENT_FIELD_ALIASES.get(key, key)
            if name in cls.__dataclass_fields__:
                values[name] = value
        values.setdefault("claim_id", None)
        values.setdefault("payer_id", None)
        values.setdefault("payee_id", None)
        return cls(**values)


@dataclass
class ValidatedClaim:
    """A change event that passed structural checks, with normalized ids."""
    claim_id: str
    payer_id: str
    payee_id: str
    paid_amount: Decimal
    total_charge_amount: Optional[Decimal]
    status: Optional[str]
    bin_number: Optional[str] = None
    pcn_number: Optional[str] = None
    raw_payer_id: Optional[str] = None
    raw_payee_id: Optional[str] = None

    def field_value(self, name: str) -> Optional[str]:
        """Value of a change-event field by feed or attribute name."""
        attr = EVENT_FIELD_ALIASES.get(name.strip(), name.strip())
        value = getattr(self, attr, None) if attr in self.__dataclass_fields__ else None
        if value is None:
            return None
        text = str(value).strip()
        return text or None


# =============================================================================
# CONFIGURATION SNAPSHOTS (read-only, cacheable)
# =============================================================================

@dataclass(frozen=True)
class RuleSnapshot:
    id: str
    rule_name: str
    rule_type: RuleType
    priority: int
    linked_payer_id: Optional[str] = None
    linked_payee_id: Optional[str] = None
    grouping_expression: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "RuleSnapshot":
        return cls(
            id=row.id,
            rule_name=row.rule_name,
            rule_type=row.rule_type,
            priority=row.priority or 0,
            linked_payer_id=row.linked_payer_id,
            linked_payee_id=row.linked_payee_id,
            grouping_expression=row.grouping_expression,
        )

    @property
    def grouping_fields(self) -> List[str]:
        if not self.grouping_expression:
            return []
        return [part.strip() for part in self.grouping_expression.split(",") if part.strip()]


@dataclass(frozen=True)
class ThresholdSnapshot:
    id: str
    threshold_name: str
    threshold_type: ThresholdType
    max_claims: Optional[int] = None
    max_amount: Optional[Decimal] = None
    time_duration: Optional[TimeDuration] = None
    linked_bucketing_rule_id: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "ThresholdSnapshot":
        return cls(
            id=row.id,
            threshold_name=row.threshold_name,
            threshold_type=row.threshold_type,
            max_claims=row.max_claims,
            max_amount=Decimal(row.max_amount) if row.max_amount is not None else None,
            time_duration=row.time_duration,
            linked_bucketing_rule_id=row.linked_bucketing_rule_id,
            created_at=row.created_at,
        )


@dataclass(frozen=True)
class CriteriaSnapshot:
    id: str
    criteria_name: str
    commit_mode: CommitMode
    auto_commit_amount_threshold: Optional[Decimal] = None
    manual_approval_claim_threshold: Optional[int] = None
    approval_roles: Tuple[str, ...] = ()
    linked_bucketing_rule_id: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "CriteriaSnapshot":
        amount = row.auto_commit_amount_threshold
        return cls(
            id=row.id,
            criteria_name=row.criteria_name,
            commit_mode=row.commit_mode,
            auto_commit_amount_threshold=Decimal(amount) if amount is not None else None,
            manual_approval_claim_threshold=row.manual_approval_claim_threshold,
            approval_roles=tuple(row.approval_roles or ()),
            linked_bucketing_rule_id=row.linked_bucketing_rule_id,
            created_at=row.created_at,
        )


# Used when no commit criteria are configured at all
DEFAULT_CRITERIA = CriteriaSnapshot(id="default", criteria_name="Default (AUTO)", commit_mode=CommitMode.AUTO)


# =============================================================================
# RESULTS
# =============================================================================

class CommitDecision(str, Enum):
    AUTO_GENERATE = "AUTO_GENERATE"
    REQUIRE_APPROVAL = "REQUIRE_APPROVAL"


@dataclass
class ThresholdEvaluation:
    triggered: bool
    threshold_id: Optional[str] = None
    threshold_name: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)
    value: Any = None

    @classmethod
    def ok(cls, value: Any = None) -> "ValidationResult":
        return cls(valid=True, value=value)

    @classmethod
    def fail(cls, *errors: str) -> "ValidationResult":
        return cls(valid=False, errors=list(errors))


@dataclass
class AssignmentResult:
    """Outcome of a payment instrument assignment."""
    success: bool
    reference: Optional[str] = None
    error_code: Optional[ErrorCode] = None
    message: Optional[str] = None

    @classmethod
    def assigned(cls, reference: str) -> "AssignmentResult":
        return cls(success=True, reference=reference)

    @classmethod
    def no_available_resource(cls, message: str = "No payment instrument available") -> "AssignmentResult":
        return cls(success=False, error_code=ErrorCode.NO_AVAILABLE_RESOURCE, message=message)

    @classmethod
    def failed(cls, message: str) -> "AssignmentResult":
        return cls(success=False, error_code=ErrorCode.ASSIGNMENT_FAILED, message=message)


@dataclass
class UploadResult:
    success: bool
    message: Optional[str] = None


@dataclass
class OperationResult:
    """Result of a bucket operation (approve, reject, reset, evaluate, ...)."""
    success: bool
    message: str
    bucket_id: Optional[str] = None
    status: Optional[BucketStatus] = None
    error_code: Optional[ErrorCode] = None
    file_id: Optional[str] = None

    @classmethod
    def ok(cls, message: str, bucket_id: str = None, status: BucketStatus = None, **kwargs) -> "OperationResult":
        return cls(success=True, message=message, bucket_id=bucket_id, status=status, **kwargs)

    @classmethod
    def fail(cls, error_code: ErrorCode, message: str, bucket_id: str = None,
             status: BucketStatus = None) -> "OperationResult":
        return cls(success=False, message=message, bucket_id=bucket_id, status=status, error_code=error_code)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value if self.status else None
        data["error_code"] = self.error_code.value if self.error_code else None
        return data


@dataclass
class BulkApprovalResult:
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    results: List[OperationResult] = field(default_factory=list)

    def add(self, result: OperationResult):
        self.total += 1
        if result.success:
            self.succeeded += 1
        else:
            self.failed += 1
        self.results.append(result)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "results": [r.to_dict() for r in self.results],
        }


@dataclass
class AggregationResult:
    """Outcome of applying one change event."""
    claim_id: Optional[str]
    outcome: ClaimOutcome
    bucket_id: Optional[str] = None
    bucket_status: Optional[BucketStatus] = None
    reason: Optional[str] = None
    triggered_threshold_id: Optional[str] = None
    file_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "claim_id": self.claim_id,
            "outcome": self.outcome.value,
            "bucket_id": self.bucket_id,
            "bucket_status": self.bucket_status.value if self.bucket_status else None,
            "reason": self.reason,
            "triggered_threshold_id": self.triggered_threshold_id,
            "file_id": self.file_id,
        }


@dataclass
class DeliveryAttemptResult:
    file_id: str
    success: bool
    delivery_status: Optional[DeliveryStatus] = None
    attempt_count: int = 0
    error_message: Optional[str] = None
    error_code: Optional[ErrorCode] = None
    next_attempt_at: Optional[datetime] = None
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "file_id": self.file_id,
            "success": self.success,
            "delivery_status": self.delivery_status.value if self.delivery_status else None,
            "attempt_count": self.attempt_count,
            "error_message": self.error_message,
            "error_code": self.error_code.value if self.error_code else None,
            "next_attempt_at": self.next_attempt_at.isoformat() if self.next_attempt_at else None,
            "skipped": self.skipped,
        }
