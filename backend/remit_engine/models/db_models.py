"""
Remittance Engine - SQLAlchemy ORM Models
Persistent storage for buckets, configuration and audit trails
"""
from enum import Enum
from sqlalchemy import (
    Column, String, Integer, Numeric, DateTime, Text, JSON, ForeignKey,
    Enum as SQLEnum, Boolean, LargeBinary, Index, text,
)
from sqlalchemy.orm import relationship

from ..database import Base
from ..utils.clock import utc_now


# =============================================================================
# ENUMS
# =============================================================================

class BucketStatus(str, Enum):
    """States in the bucket lifecycle state machine."""
    ACCUMULATING = "ACCUMULATING"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    GENERATING = "GENERATING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    MISSING_CONFIGURATION = "MISSING_CONFIGURATION"


class RuleType(str, Enum):
    """Bucketing strategies."""
    PAYER_PAYEE = "PAYER_PAYEE"
    BIN_PCN = "BIN_PCN"
    CUSTOM = "CUSTOM"


class ThresholdType(str, Enum):
    CLAIM_COUNT = "CLAIM_COUNT"
    AMOUNT = "AMOUNT"
    TIME = "TIME"
    HYBRID = "HYBRID"


class TimeDuration(str, Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    BIWEEKLY = "BIWEEKLY"
    MONTHLY = "MONTHLY"


class CommitMode(str, Enum):
    AUTO = "AUTO"
    MANUAL = "MANUAL"
    HYBRID = "HYBRID"


class ClaimOutcome(str, Enum):
    """Outcome recorded in the claim processing log."""
    PROCESSED = "PROCESSED"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


class ApprovalAction(str, Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    OVERRIDE = "OVERRIDE"


class DeliveryStatus(str, Enum):
    PENDING = "PENDING"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"
    RETRY = "RETRY"


class PaymentStatus(str, Enum):
    NOT_REQUIRED = "NOT_REQUIRED"
    PENDING = "PENDING"
    ASSIGNED = "ASSIGNED"


class ActorType(str, Enum):
    """Who triggered a lifecycle transition."""
    USER = "USER"
    SYSTEM = "SYSTEM"


# =============================================================================
# MASTER DATA (read by the engine, written by the configuration registry)
# =============================================================================

class PayerDB(Base):
    """Payer master data. A payer needs a sender id before files can be generated."""
    __tablename__ = "payers"

    id = Column(String(36), primary_key=True)  # UUID
    payer_id = Column(String(50), unique=True, nullable=False, index=True)  # normalized
    payer_name = Column(String(255), nullable=False)
    sender_id = Column(String(15), nullable=True)  # ISA/GS sender identifier

    # Delivery destination
    delivery_host = Column(String(255), nullable=True)
    delivery_port = Column(Integer, nullable=True)
    delivery_username = Column(String(100), nullable=True)
    delivery_path = Column(String(500), nullable=True)

    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)


class PayeeDB(Base):
    """Payee master data."""
    __tablename__ = "payees"

    id = Column(String(36), primary_key=True)  # UUID
    payee_id = Column(String(50), unique=True, nullable=False, index=True)  # normalized
    payee_name = Column(String(255), nullable=False)
    npi = Column(String(10), nullable=True)

    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)


# =============================================================================
# BUCKET CONFIGURATION
# =============================================================================

class BucketingRuleDB(Base):
    """How claims are grouped into buckets. Higher priority wins."""
    __tablename__ = "bucketing_rules"

    id = Column(String(36), primary_key=True)  # UUID
    rule_name = Column(String(100), nullable=False)
    rule_type = Column(SQLEnum(RuleType), nullable=False)
    grouping_expression = Column(String(500), nullable=True)  # CUSTOM: comma-separated event fields
    priority = Column(Integer, default=0, nullable=False)

    # Optional linkage restricting the rule to one payer and/or payee (normalized ids)
    linked_payer_id = Column(String(50), nullable=True)
    linked_payee_id = Column(String(50), nullable=True)

    description = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)


class GenerationThresholdDB(Base):
    """When an accumulating bucket is ready. Unlinked thresholds are global."""
    __tablename__ = "generation_thresholds"

    id = Column(String(36), primary_key=True)  # UUID
    threshold_name = Column(String(100), nullable=False)
    threshold_type = Column(SQLEnum(ThresholdType), nullable=False)
    max_claims = Column(Integer, nullable=True)
    max_amount = Column(Numeric(14, 2), nullable=True)
    time_duration = Column(SQLEnum(TimeDuration), nullable=True)
    linked_bucketing_rule_id = Column(
        String(36), ForeignKey("bucketing_rules.id", ondelete="CASCADE"), nullable=True, index=True
    )

    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)


class CommitCriteriaDB(Base):
    """Whether a triggered bucket generates straight away or waits for approval."""
    __tablename__ = "commit_criteria"

    id = Column(String(36), primary_key=True)  # UUID
    criteria_name = Column(String(100), nullable=False)
    commit_mode = Column(SQLEnum(CommitMode), nullable=False)

    # HYBRID: below BOTH goes straight to generation
    auto_commit_amount_threshold = Column(Numeric(14, 2), nullable=True)
    manual_approval_claim_threshold = Column(Integer, nullable=True)

    approval_roles = Column(JSON, nullable=True, default=list)  # ["FINANCE_MANAGER", ...]
    linked_bucketing_rule_id = Column(
        String(36), ForeignKey("bucketing_rules.id", ondelete="CASCADE"), nullable=True, index=True
    )

    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)


# =============================================================================
# BUCKETS
# =============================================================================

class BucketDB(Base):
    """
    Unit of accumulation and subject of the lifecycle state machine.

    At most one ACCUMULATING bucket may exist per (rule, grouping key); the
    partial unique index enforces it in the database as well as in-process.
    """
    __tablename__ = "buckets"

    id = Column(String(36), primary_key=True)  # UUID
    status = Column(SQLEnum(BucketStatus), nullable=False, default=BucketStatus.ACCUMULATING, index=True)

    bucketing_rule_id = Column(String(36), ForeignKey("bucketing_rules.id"), nullable=False, index=True)
    bucketing_rule_name = Column(String(100), nullable=True)

    # Grouping key (immutable after creation)
    grouping_key = Column(String(500), nullable=False)
    payer_id = Column(String(50), nullable=False, index=True)
    payer_name = Column(String(255), nullable=True)
    payee_id = Column(String(50), nullable=False, index=True)
    payee_name = Column(String(255), nullable=True)
    bin_number = Column(String(20), nullable=True)
    pcn_number = Column(String(20), nullable=True)

    # Counters
    claim_count = Column(Integer, nullable=False, default=0)
    total_amount = Column(Numeric(14, 2), nullable=False, default=0)
    rejection_count = Column(Integer, nullable=False, default=0)

    # Timeline
    created_at = Column(DateTime, default=utc_now)
    last_updated = Column(DateTime, default=utc_now)
    awaiting_approval_since = Column(DateTime, nullable=True)  # only while PENDING_APPROVAL
    approved_by = Column(String(100), nullable=True)
    approved_at = Column(DateTime, nullable=True)
    generation_started_at = Column(DateTime, nullable=True)
    generation_completed_at = Column(DateTime, nullable=True)

    triggered_threshold_id = Column(String(36), nullable=True)  # threshold that ended accumulation
    last_error_message = Column(Text, nullable=True)
    last_error_at = Column(DateTime, nullable=True)

    # Payment instrument gate
    payment_required = Column(Boolean, default=False)
    payment_status = Column(SQLEnum(PaymentStatus), default=PaymentStatus.NOT_REQUIRED)
    payment_reference = Column(String(100), nullable=True)

    # Optimistic lock
    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index(
            "uq_buckets_accumulating_key",
            "bucketing_rule_id",
            "grouping_key",
            unique=True,
            sqlite_where=text("status = 'ACCUMULATING'"),
            postgresql_where=text("status = 'ACCUMULATING'"),
        ),
    )

    # Relationships
    status_log = relationship("BucketStatusLogDB", back_populates="bucket", order_by="BucketStatusLogDB.created_at")
    approval_log = relationship("BucketApprovalLogDB", back_populates="bucket", order_by="BucketApprovalLogDB.created_at")

    @property
    def lock_key(self):
        return (self.bucketing_rule_id, self.grouping_key)


class BucketStatusLogDB(Base):
    """
    Immutable record of every lifecycle transition.
    Never updated or deleted.
    """
    __tablename__ = "bucket_status_logs"

    id = Column(String(36), primary_key=True)  # UUID
    bucket_id = Column(String(36), ForeignKey("buckets.id"), nullable=False, index=True)

    from_status = Column(SQLEnum(BucketStatus), nullable=True)
    to_status = Column(SQLEnum(BucketStatus), nullable=False)
    trigger = Column(String(100), nullable=False)  # threshold_met, approved, rejected, ...
    actor = Column(SQLEnum(ActorType), nullable=False)
    actor_name = Column(String(100), nullable=True)
    threshold_id = Column(String(36), nullable=True)
    detail = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utc_now)

    bucket = relationship("BucketDB", back_populates="status_log")


class BucketApprovalLogDB(Base):
    """Append-only audit trail of approve / reject / override actions."""
    __tablename__ = "bucket_approval_logs"

    id = Column(String(36), primary_key=True)  # UUID
    bucket_id = Column(String(36), ForeignKey("buckets.id"), nullable=False, index=True)

    action = Column(SQLEnum(ApprovalAction), nullable=False)
    actor = Column(String(100), nullable=False)
    comments = Column(Text, nullable=True)
    scheduled_generation_time = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utc_now)

    bucket = relationship("BucketDB", back_populates="approval_log")


class ClaimProcessingLogDB(Base):
    """
    Append-only outcome of every claim seen by the aggregator.
    bucket_id is NULL for claims rejected before bucketing.
    """
    __tablename__ = "claim_processing_logs"

    id = Column(String(36), primary_key=True)  # UUID
    claim_id = Column(String(100), nullable=False, index=True)
    bucket_id = Column(String(36), ForeignKey("buckets.id"), nullable=True, index=True)

    payer_id = Column(String(50), nullable=True)
    payee_id = Column(String(50), nullable=True)
    claim_amount = Column(Numeric(14, 2), nullable=True)  # total charge
    paid_amount = Column(Numeric(14, 2), nullable=True)
    claim_status = Column(String(30), nullable=True)  # status carried on the change event

    status = Column(SQLEnum(ClaimOutcome), nullable=False)
    rejection_reason = Column(Text, nullable=True)

    processed_at = Column(DateTime, default=utc_now)


# =============================================================================
# GENERATED FILES
# =============================================================================

class FileGenerationHistoryDB(Base):
    """
    One row per generated file. Created once by the generation handoff,
    afterwards mutated only by the delivery retry coordinator.
    """
    __tablename__ = "file_generation_history"

    id = Column(String(36), primary_key=True)  # UUID
    bucket_id = Column(String(36), ForeignKey("buckets.id"), nullable=False, unique=True)  # one file per bucket

    file_name = Column(String(255), nullable=False)
    file_size_bytes = Column(Integer, nullable=True)
    file_content = Column(LargeBinary, nullable=True)

    # Snapshot at generation time
    claim_count = Column(Integer, nullable=False)
    total_amount = Column(Numeric(14, 2), nullable=False)
    generated_at = Column(DateTime, default=utc_now)
    generated_by = Column(String(100), nullable=True)

    # Delivery state machine
    delivery_status = Column(SQLEnum(DeliveryStatus), nullable=False, default=DeliveryStatus.PENDING, index=True)
    delivery_attempt_count = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime, nullable=True)
    next_attempt_at = Column(DateTime, nullable=True)  # backoff eligibility
    error_message = Column(Text, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    delivered_by = Column(String(100), nullable=True)

    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    bucket = relationship("BucketDB")
