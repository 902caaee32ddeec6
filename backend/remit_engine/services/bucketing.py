"""
Bucketing

Structural validation of change events and rule resolution.

Rule resolution:
    active rules -> linkage matches claim payer/payee
    -> priority descending, rule id ascending -> first wins

Grouping keys:
    PAYER_PAYEE  payer|payee
    BIN_PCN      payer|payee|bin|pcn   (payer|payee for claims without a BIN)
    CUSTOM       payer|payee then the values of the listed event fields
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, List

from ..models.db_models import RuleType
from ..models.domain import (
    ChangeEvent, ValidatedClaim, RuleSnapshot, ValidationResult, EVENT_FIELD_ALIASES, parse_amount,
)
from ..utils.identifiers import normalize_party_id, is_valid_party_id, build_grouping_key
from .configuration import ConfigurationReader

logger = logging.getLogger(__name__)

NO_MATCHING_RULE = "no matching rule"
PARTY_FIELDS = ("payer_id", "payee_id")


# =============================================================================
# VALIDATION
# =============================================================================

def validate_change_event(event: ChangeEvent) -> ValidationResult:
    """
    Structural checks only; claim content is not interpreted.

    On success the value is a ValidatedClaim with normalized party ids and
    the paid amount (missing -> 0) used for aggregation.
    """
    errors = []

    claim_id = str(event.claim_id).strip() if event.claim_id is not None else ""
    if not claim_id:
        errors.append("missing claim id")

    payer_id = normalize_party_id(str(event.payer_id)) if event.payer_id is not None else None
    if not event.payer_id or not str(event.payer_id).strip():
        errors.append("missing payer id")
    elif not is_valid_party_id(payer_id):
        errors.append(f"invalid payer id {event.payer_id!r}")

    payee_id = normalize_party_id(str(event.payee_id)) if event.payee_id is not None else None
    if not event.payee_id or not str(event.payee_id).strip():
        errors.append("missing payee id")
    elif not is_valid_party_id(payee_id):
        errors.append(f"invalid payee id {event.payee_id!r}")

    paid_amount = None
    charge_amount = None
    try:
        paid_amount = parse_amount(event.paid_amount)
        if paid_amount is not None and paid_amount < 0:
            errors.append(f"negative paid amount {paid_amount}")
    except ValueError:
        errors.append(f"unparseable paid amount {event.paid_amount!r}")
    try:
        charge_amount = parse_amount(event.total_charge_amount)
        if charge_amount is not None and charge_amount < 0:
            errors.append(f"negative charge amount {charge_amount}")
    except ValueError:
        errors.append(f"unparseable charge amount {event.total_charge_amount!r}")

    if errors:
        return ValidationResult.fail(*errors)

    return ValidationResult.ok(ValidatedClaim(
        claim_id=claim_id,
        payer_id=payer_id,
        payee_id=payee_id,
        paid_amount=paid_amount if paid_amount is not None else Decimal("0.00"),
        total_charge_amount=charge_amount,
        status=event.status,
        bin_number=(str(event.bin_number).strip() or None) if event.bin_number is not None else None,
        pcn_number=(str(event.pcn_number).strip() or None) if event.pcn_number is not None else None,
        raw_payer_id=event.payer_id,
        raw_payee_id=event.payee_id,
    ))


# =============================================================================
# RESOLVER
# =============================================================================

@dataclass(frozen=True)
class BucketAssignment:
    """The rule a claim falls under and the key it groups by."""
    rule: RuleSnapshot
    grouping_key: str


class BucketingResolver:
    """Picks the bucketing rule for a claim and derives the grouping key."""

    def __init__(self, config: ConfigurationReader):
        self.config = config

    @staticmethod
    def linkage_matches(rule: RuleSnapshot, claim: ValidatedClaim) -> bool:
        if rule.linked_payer_id and rule.linked_payer_id != claim.payer_id:
            return False
        if rule.linked_payee_id and rule.linked_payee_id != claim.payee_id:
            return False
        return True

    @staticmethod
    def grouping_key(rule: RuleSnapshot, claim: ValidatedClaim) -> str:
        """Every key starts with payer|payee so a bucket never mixes parties."""
        if rule.rule_type == RuleType.BIN_PCN and claim.bin_number:
            return build_grouping_key(claim.payer_id, claim.payee_id, claim.bin_number, claim.pcn_number)
        if rule.rule_type == RuleType.CUSTOM:
            extra = [
                claim.field_value(name) for name in rule.grouping_fields
                if EVENT_FIELD_ALIASES.get(name, name) not in PARTY_FIELDS
            ]
            return build_grouping_key(claim.payer_id, claim.payee_id, *extra)
        return build_grouping_key(claim.payer_id, claim.payee_id)

    def candidates(self, claim: ValidatedClaim) -> List[RuleSnapshot]:
        """Matching rules in resolution order."""
        return [
            rule for rule in self.config.active_rules()
            if self.linkage_matches(rule, claim)
        ]

    def resolve(self, claim: ValidatedClaim) -> Optional[BucketAssignment]:
        matches = self.candidates(claim)
        if not matches:
            logger.warning(f"No bucketing rule matches claim {claim.claim_id} ({claim.payer_id}/{claim.payee_id})")
            return None

        rule = matches[0]
        if len(matches) > 1 and matches[1].priority == rule.priority:
            logger.debug(f"Priority tie for claim {claim.claim_id}; rule {rule.id} wins on id order")

        return BucketAssignment(rule=rule, grouping_key=self.grouping_key(rule, claim))
