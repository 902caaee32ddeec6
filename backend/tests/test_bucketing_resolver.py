"""
Tests for BucketingResolver: rule matching, priority and grouping keys.
"""
import pytest
from decimal import Decimal
from unittest.mock import MagicMock


def _rule(rule_id, rule_type="PAYER_PAYEE", priority=0, **kwargs):
    from remit_engine.models.db_models import RuleType
    from remit_engine.models.domain import RuleSnapshot
    return RuleSnapshot(
        id=rule_id, rule_name=f"rule {rule_id}", rule_type=RuleType(rule_type), priority=priority, **kwargs
    )


def _claim(**overrides):
    from remit_engine.models.domain import ValidatedClaim
    values = dict(claim_id="CLM-1", payer_id="ACME", payee_id="CLINIC", paid_amount=Decimal("10.00"),
                  total_charge_amount=None, status="PAID")
    values.update(overrides)
    return ValidatedClaim(**values)


def _resolver(rules):
    from remit_engine.services.bucketing import BucketingResolver
    config = MagicMock()
    # Reader contract: priority descending, id ascending
    config.active_rules.return_value = sorted(rules, key=lambda r: (-r.priority, r.id))
    return BucketingResolver(config)


class TestRuleResolution:

    def test_payer_payee_key(self):
        assignment = _resolver([_rule("r1")]).resolve(_claim())
        assert assignment.rule.id == "r1"
        assert assignment.grouping_key == "ACME|CLINIC"

    def test_highest_priority_wins(self):
        assignment = _resolver([_rule("low", priority=1), _rule("high", priority=5)]).resolve(_claim())
        assert assignment.rule.id == "high"

    def test_priority_tie_breaks_on_id(self):
        assignment = _resolver([_rule("r-b", priority=3), _rule("r-a", priority=3)]).resolve(_claim())
        assert assignment.rule.id == "r-a"

    def test_linked_payer_must_match(self):
        resolver = _resolver([
            _rule("linked", priority=10, linked_payer_id="OTHER"),
            _rule("general"),
        ])
        assert resolver.resolve(_claim()).rule.id == "general"
        assert resolver.resolve(_claim(payer_id="OTHER")).rule.id == "linked"

    def test_no_rule_returns_none(self):
        resolver = _resolver([_rule("linked", linked_payee_id="SOMEONE_ELSE")])
        assert resolver.resolve(_claim()) is None


class TestGroupingStrategies:

    def test_bin_pcn_key(self):
        assignment = _resolver([_rule("bin", "BIN_PCN")]).resolve(_claim(bin_number="610014", pcn_number="ADV"))
        assert assignment.grouping_key == "ACME|CLINIC|610014|ADV"

    def test_bin_pcn_without_bin_keys_by_parties(self):
        resolver = _resolver([_rule("bin", "BIN_PCN", priority=10), _rule("pp")])
        assignment = resolver.resolve(_claim(pcn_number="ADV"))
        assert assignment.rule.id == "bin"
        assert assignment.grouping_key == "ACME|CLINIC"

    def test_bin_pcn_only_rule_accepts_claim_without_bin(self):
        assignment = _resolver([_rule("bin", "BIN_PCN")]).resolve(_claim())
        assert assignment is not None
        assert assignment.grouping_key == "ACME|CLINIC"

    def test_custom_expression_key(self):
        rule = _rule("custom", "CUSTOM", grouping_expression="payerId, status")
        assignment = _resolver([rule]).resolve(_claim(status="DENIED"))
        assert assignment.grouping_key == "ACME|CLINIC|DENIED"

    def test_custom_missing_field_keeps_empty_segment(self):
        rule = _rule("custom", "CUSTOM", priority=10, grouping_expression="binNumber,status")
        resolver = _resolver([rule, _rule("pp")])
        assert resolver.resolve(_claim()).grouping_key == "ACME|CLINIC||PAID"
        assert resolver.resolve(_claim(bin_number="0042")).grouping_key == "ACME|CLINIC|0042|PAID"

    def test_custom_key_always_separates_parties(self):
        resolver = _resolver([_rule("custom", "CUSTOM", grouping_expression="status")])
        first = resolver.resolve(_claim(payer_id="PAYER_A", payee_id="P1"))
        second = resolver.resolve(_claim(payer_id="PAYER_B", payee_id="P2"))
        assert first.grouping_key == "PAYER_A|P1|PAID"
        assert second.grouping_key == "PAYER_B|P2|PAID"

    def test_custom_without_expression_uses_parties(self):
        assignment = _resolver([_rule("custom", "CUSTOM")]).resolve(_claim())
        assert assignment.grouping_key == "ACME|CLINIC"
