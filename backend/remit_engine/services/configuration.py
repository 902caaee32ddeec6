"""
Configuration Access

ConfigurationReader - cached read-only view of active bucketing rules,
                      generation thresholds and commit criteria
PartyDirectory      - payer/payee existence and delivery destinations
ConfigurationRegistry - validated writes; every write invalidates the cache

Staleness of the cache only affects which policy applies to the next
trigger, so a simple invalidate-on-write scheme is enough.
"""
import logging
import threading
from dataclasses import dataclass
from typing import Optional, List, Dict, Any
from uuid import uuid4

from ..models.db_models import (
    BucketingRuleDB, GenerationThresholdDB, CommitCriteriaDB, PayerDB, PayeeDB,
    RuleType, ThresholdType, TimeDuration, CommitMode,
)
from ..models.domain import (
    RuleSnapshot, ThresholdSnapshot, CriteriaSnapshot, ValidationResult,
    DEFAULT_CRITERIA, parse_amount,
)
from ..utils.identifiers import normalize_party_id, is_valid_party_id
from .transports import DeliveryDestination

logger = logging.getLogger(__name__)


def _creation_order(item):
    return (item.created_at is None, item.created_at, item.id)


@dataclass
class _Snapshot:
    rules: List[RuleSnapshot]
    thresholds: List[ThresholdSnapshot]
    criteria: List[CriteriaSnapshot]


# =============================================================================
# READER
# =============================================================================

class ConfigurationReader:
    """
    Thread-safe cache over the active configuration rows.

    Loaded lazily in its own short-lived session; invalidate() drops it.
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory
        self._lock = threading.Lock()
        self._snapshot: Optional[_Snapshot] = None
        self.loads = 0

    def invalidate(self):
        with self._lock:
            self._snapshot = None
        logger.debug("Configuration cache invalidated")

    def _load(self) -> _Snapshot:
        db = self.session_factory()
        try:
            rules = [
                RuleSnapshot.from_row(row)
                for row in db.query(BucketingRuleDB).filter(BucketingRuleDB.is_active == True).all()  # noqa: E712
            ]
            thresholds = [
                ThresholdSnapshot.from_row(row)
                for row in db.query(GenerationThresholdDB).filter(GenerationThresholdDB.is_active == True).all()  # noqa: E712
            ]
            criteria = [
                CriteriaSnapshot.from_row(row)
                for row in db.query(CommitCriteriaDB).filter(CommitCriteriaDB.is_active == True).all()  # noqa: E712
            ]
        finally:
            db.close()

        rules.sort(key=lambda r: (-r.priority, r.id))
        thresholds.sort(key=_creation_order)
        criteria.sort(key=_creation_order)
        self.loads += 1
        logger.debug(
            f"Loaded configuration: {len(rules)} rules, {len(thresholds)} thresholds, {len(criteria)} criteria"
        )
        return _Snapshot(rules=rules, thresholds=thresholds, criteria=criteria)

    def _current(self) -> _Snapshot:
        with self._lock:
            if self._snapshot is None:
                self._snapshot = self._load()
            return self._snapshot

    def active_rules(self) -> List[RuleSnapshot]:
        """Active rules, priority descending then id ascending."""
        return list(self._current().rules)

    def get_rule(self, rule_id: str) -> Optional[RuleSnapshot]:
        for rule in self._current().rules:
            if rule.id == rule_id:
                return rule
        return None

    def thresholds_for_rule(self, rule_id: str) -> List[ThresholdSnapshot]:
        """Thresholds linked to the rule, or the global ones if none are linked."""
        thresholds = self._current().thresholds
        linked = [t for t in thresholds if t.linked_bucketing_rule_id == rule_id]
        if linked:
            return linked
        return [t for t in thresholds if t.linked_bucketing_rule_id is None]

    def criteria_for_rule(self, rule_id: str) -> CriteriaSnapshot:
        """Linked criteria, else global, else the AUTO default."""
        criteria = self._current().criteria
        candidates = [c for c in criteria if c.linked_bucketing_rule_id == rule_id]
        if not candidates:
            candidates = [c for c in criteria if c.linked_bucketing_rule_id is None]
        if not candidates:
            logger.debug(f"No commit criteria for rule {rule_id}, defaulting to AUTO")
            return DEFAULT_CRITERIA
        if len(candidates) > 1:
            logger.warning(
                f"Multiple active commit criteria for rule {rule_id}; using {candidates[0].criteria_name}"
            )
        return candidates[0]


# =============================================================================
# PARTIES
# =============================================================================

class PartyDirectory:
    """
    Payer/payee lookups, always read through the caller's session.

    A payer is configured when its row exists and carries a sender id;
    a payee when its row exists.
    """

    def __init__(self, db_session):
        self.db = db_session

    def get_payer(self, payer_id: str) -> Optional[PayerDB]:
        return self.db.query(PayerDB).filter(PayerDB.payer_id == payer_id).first()

    def get_payee(self, payee_id: str) -> Optional[PayeeDB]:
        return self.db.query(PayeeDB).filter(PayeeDB.payee_id == payee_id).first()

    def missing_configuration(self, payer_id: str, payee_id: str) -> List[str]:
        """Human-readable list of gaps; empty when both parties are ready."""
        missing = []
        payer = self.get_payer(payer_id)
        if payer is None or not payer.is_active:
            missing.append(f"payer {payer_id} not configured")
        elif not (payer.sender_id or "").strip():
            missing.append(f"payer {payer_id} has no sender id")
        payee = self.get_payee(payee_id)
        if payee is None or not payee.is_active:
            missing.append(f"payee {payee_id} not configured")
        return missing

    def is_configured(self, payer_id: str, payee_id: str) -> bool:
        return not self.missing_configuration(payer_id, payee_id)

    def delivery_destination(self, payer_id: str) -> Optional[DeliveryDestination]:
        return DeliveryDestination.from_payer(self.get_payer(payer_id))


# =============================================================================
# VALIDATION
# =============================================================================

def _coerce_enum(enum_cls, value):
    if value is None or isinstance(value, enum_cls):
        return value
    return enum_cls(str(value).strip().upper())


def _optional_int(value) -> Optional[int]:
    if value is None or (isinstance(value, str) and value.strip() == ""):
        return None
    if isinstance(value, bool):
        raise ValueError(value)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(value)


def validate_threshold(data: Dict[str, Any]) -> ValidationResult:
    """Check a threshold definition; value is the cleaned field dict."""
    errors = []
    try:
        threshold_type = _coerce_enum(ThresholdType, data.get("threshold_type"))
    except ValueError:
        return ValidationResult.fail(f"Unknown threshold type: {data.get('threshold_type')}")
    try:
        time_duration = _coerce_enum(TimeDuration, data.get("time_duration"))
    except ValueError:
        return ValidationResult.fail(f"Unknown time duration: {data.get('time_duration')}")
    try:
        max_amount = parse_amount(data.get("max_amount"))
    except ValueError as e:
        return ValidationResult.fail(str(e))
    try:
        max_claims = _optional_int(data.get("max_claims"))
    except ValueError:
        return ValidationResult.fail(f"max_claims must be an integer, got {data.get('max_claims')!r}")

    if not (data.get("threshold_name") or "").strip():
        errors.append("threshold_name is required")
    if threshold_type is None:
        errors.append("threshold_type is required")
    if max_claims is not None and max_claims <= 0:
        errors.append("max_claims must be positive")
    if max_amount is not None and max_amount <= 0:
        errors.append("max_amount must be positive")

    if threshold_type == ThresholdType.CLAIM_COUNT and max_claims is None:
        errors.append("CLAIM_COUNT threshold requires max_claims")
    elif threshold_type == ThresholdType.AMOUNT and max_amount is None:
        errors.append("AMOUNT threshold requires max_amount")
    elif threshold_type == ThresholdType.TIME and time_duration is None:
        errors.append("TIME threshold requires time_duration")
    elif threshold_type == ThresholdType.HYBRID and max_claims is None and max_amount is None and time_duration is None:
        errors.append("HYBRID threshold requires at least one of max_claims, max_amount, time_duration")

    if errors:
        return ValidationResult.fail(*errors)

    return ValidationResult.ok({
        "threshold_name": data["threshold_name"].strip(),
        "threshold_type": threshold_type,
        "max_claims": max_claims,
        "max_amount": max_amount,
        "time_duration": time_duration,
        "linked_bucketing_rule_id": data.get("linked_bucketing_rule_id"),
    })


def validate_commit_criteria(data: Dict[str, Any]) -> ValidationResult:
    try:
        commit_mode = _coerce_enum(CommitMode, data.get("commit_mode"))
    except ValueError:
        return ValidationResult.fail(f"Unknown commit mode: {data.get('commit_mode')}")
    try:
        amount = parse_amount(data.get("auto_commit_amount_threshold"))
    except ValueError as e:
        return ValidationResult.fail(str(e))
    try:
        claims = _optional_int(data.get("manual_approval_claim_threshold"))
    except ValueError:
        return ValidationResult.fail("manual_approval_claim_threshold must be an integer")

    errors = []
    if not (data.get("criteria_name") or "").strip():
        errors.append("criteria_name is required")
    if commit_mode is None:
        errors.append("commit_mode is required")
    if amount is not None and amount <= 0:
        errors.append("auto_commit_amount_threshold must be positive")
    if claims is not None and claims <= 0:
        errors.append("manual_approval_claim_threshold must be positive")
    if commit_mode == CommitMode.HYBRID and amount is None and claims is None:
        errors.append("HYBRID criteria require an amount or claim-count threshold")

    if errors:
        return ValidationResult.fail(*errors)

    roles = [str(role).strip().upper() for role in (data.get("approval_roles") or []) if str(role).strip()]
    return ValidationResult.ok({
        "criteria_name": data["criteria_name"].strip(),
        "commit_mode": commit_mode,
        "auto_commit_amount_threshold": amount,
        "manual_approval_claim_threshold": claims,
        "approval_roles": roles,
        "linked_bucketing_rule_id": data.get("linked_bucketing_rule_id"),
    })


def validate_bucketing_rule(data: Dict[str, Any]) -> ValidationResult:
    try:
        rule_type = _coerce_enum(RuleType, data.get("rule_type"))
    except ValueError:
        return ValidationResult.fail(f"Unknown rule type: {data.get('rule_type')}")
    try:
        priority = _optional_int(data.get("priority")) or 0
    except ValueError:
        return ValidationResult.fail("priority must be an integer")

    errors = []
    if not str(data.get("rule_name") or "").strip():
        errors.append("rule_name is required")
    if rule_type is None:
        errors.append("rule_type is required")

    linked = {}
    for field in ("linked_payer_id", "linked_payee_id"):
        raw = data.get(field)
        if raw is not None and not isinstance(raw, (str, int)):
            errors.append(f"{field} must be a string")
            continue
        linked[field] = normalize_party_id(raw)
        if raw is not None and not is_valid_party_id(linked[field]):
            errors.append(f"{field} is not a valid identifier")

    if errors:
        return ValidationResult.fail(*errors)

    return ValidationResult.ok({
        "rule_name": str(data["rule_name"]).strip(),
        "rule_type": rule_type,
        "priority": priority,
        "grouping_expression": (data.get("grouping_expression") or "").strip() or None,
        "linked_payer_id": linked["linked_payer_id"],
        "linked_payee_id": linked["linked_payee_id"],
        "description": data.get("description"),
    })


def validate_party(data: Dict[str, Any], id_field: str, name_field: str) -> ValidationResult:
    raw_id = data.get(id_field)
    party_id = normalize_party_id(raw_id)
    errors = []
    if not is_valid_party_id(party_id):
        errors.append(f"{id_field} is required and must contain letters or digits")
    if not (data.get(name_field) or "").strip():
        errors.append(f"{name_field} is required")
    if errors:
        return ValidationResult.fail(*errors)
    cleaned = dict(data)
    cleaned[id_field] = party_id
    cleaned[name_field] = data[name_field].strip()
    return ValidationResult.ok(cleaned)


# =============================================================================
# REGISTRY (writes)
# =============================================================================

class ConfigurationRegistry:
    """Validated configuration writes. Commits and invalidates the reader cache."""

    PAYER_FIELDS = (
        "payer_name", "sender_id", "delivery_host", "delivery_port",
        "delivery_username", "delivery_path", "is_active",
    )
    PAYEE_FIELDS = ("payee_name", "npi", "is_active")

    KINDS = {
        "bucketing_rule": BucketingRuleDB,
        "threshold": GenerationThresholdDB,
        "commit_criteria": CommitCriteriaDB,
        "payer": PayerDB,
        "payee": PayeeDB,
    }

    def __init__(self, db_session, reader: ConfigurationReader):
        self.db = db_session
        self.reader = reader

    def _save(self, row) -> None:
        self.db.add(row)
        self.db.commit()
        self.reader.invalidate()

    def create_bucketing_rule(self, data: Dict[str, Any]) -> ValidationResult:
        result = validate_bucketing_rule(data)
        if not result.valid:
            return result
        row = BucketingRuleDB(id=str(uuid4()), is_active=True, **result.value)
        self._save(row)
        logger.info(f"Created bucketing rule {row.rule_name} ({row.rule_type.value}, priority {row.priority})")
        return ValidationResult.ok(row)

    def create_threshold(self, data: Dict[str, Any]) -> ValidationResult:
        result = validate_threshold(data)
        if not result.valid:
            return result
        row = GenerationThresholdDB(id=str(uuid4()), is_active=True, **result.value)
        self._save(row)
        logger.info(f"Created threshold {row.threshold_name} ({row.threshold_type.value})")
        return ValidationResult.ok(row)

    def create_commit_criteria(self, data: Dict[str, Any]) -> ValidationResult:
        result = validate_commit_criteria(data)
        if not result.valid:
            return result
        row = CommitCriteriaDB(id=str(uuid4()), is_active=True, **result.value)
        self._save(row)
        logger.info(f"Created commit criteria {row.criteria_name} ({row.commit_mode.value})")
        return ValidationResult.ok(row)

    def upsert_payer(self, data: Dict[str, Any]) -> ValidationResult:
        """Create a payer or update the existing row with the same normalized id."""
        result = validate_party(data, "payer_id", "payer_name")
        if not result.valid:
            return result
        cleaned = result.value
        row = PartyDirectory(self.db).get_payer(cleaned["payer_id"])
        if row is None:
            row = PayerDB(id=str(uuid4()), payer_id=cleaned["payer_id"])
        for name in self.PAYER_FIELDS:
            if name in cleaned:
                setattr(row, name, cleaned[name])
        self._save(row)
        logger.info(f"Saved payer {row.payer_id}")
        return ValidationResult.ok(row)

    def upsert_payee(self, data: Dict[str, Any]) -> ValidationResult:
        result = validate_party(data, "payee_id", "payee_name")
        if not result.valid:
            return result
        cleaned = result.value
        row = PartyDirectory(self.db).get_payee(cleaned["payee_id"])
        if row is None:
            row = PayeeDB(id=str(uuid4()), payee_id=cleaned["payee_id"])
        for name in self.PAYEE_FIELDS:
            if name in cleaned:
                setattr(row, name, cleaned[name])
        self._save(row)
        logger.info(f"Saved payee {row.payee_id}")
        return ValidationResult.ok(row)

    def deactivate(self, kind: str, row_id: str) -> ValidationResult:
        model = self.KINDS.get(kind)
        if model is None:
            return ValidationResult.fail(f"Unknown configuration kind: {kind}")
        row = self.db.query(model).filter(model.id == row_id).first()
        if row is None:
            return ValidationResult.fail(f"{kind} {row_id} not found")
        row.is_active = False
        self._save(row)
        logger.info(f"Deactivated {kind} {row_id}")
        return ValidationResult.ok(row)
