"""Remittance Engine - Data Models"""
from .db_models import (
    # Enums
    BucketStatus, RuleType, ThresholdType, TimeDuration, CommitMode,
    ClaimOutcome, ApprovalAction, DeliveryStatus, PaymentStatus, ActorType,
    # Tables
    PayerDB, PayeeDB, BucketingRuleDB, GenerationThresholdDB, CommitCriteriaDB,
    BucketDB, BucketStatusLogDB, BucketApprovalLogDB, ClaimProcessingLogDB,
    FileGenerationHistoryDB,
)
from .domain import (
    ErrorCode, RemitEngineError, InvalidBucketTransition, ConcurrentModificationError,
    ChangeEvent, ValidatedClaim,
    RuleSnapshot, ThresholdSnapshot, CriteriaSnapshot,
    CommitDecision, ThresholdEvaluation, ValidationResult, AssignmentResult,
    UploadResult, OperationResult, BulkApprovalResult, AggregationResult,
    DeliveryAttemptResult,
)

__all__ = [
    "BucketStatus", "RuleType", "ThresholdType", "TimeDuration", "CommitMode",
    "ClaimOutcome", "ApprovalAction", "DeliveryStatus", "PaymentStatus", "ActorType",
    "PayerDB", "PayeeDB", "BucketingRuleDB", "GenerationThresholdDB", "CommitCriteriaDB",
    "BucketDB", "BucketStatusLogDB", "BucketApprovalLogDB", "ClaimProcessingLogDB",
    "FileGenerationHistoryDB",
    "ErrorCode", "RemitEngineError", "InvalidBucketTransition", "ConcurrentModificationError",
    "ChangeEvent", "ValidatedClaim",
    "RuleSnapshot", "ThresholdSnapshot", "CriteriaSnapshot",
    "CommitDecision", "ThresholdEvaluation", "ValidationResult", "AssignmentResult",
    "UploadResult", "OperationResult", "BulkApprovalResult", "AggregationResult",
    "DeliveryAttemptResult",
]
