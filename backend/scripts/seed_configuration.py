#!/usr/bin/env python3
"""
Configuration Seed Script
Creates a default bucketing rule, threshold and commit criteria, and
optionally one payer and payee, so a fresh database can aggregate claims.

Usage:
    python -m scripts.seed_configuration [<payer_id> <payer_name> <payee_id> <payee_name>]

Example:
    python -m scripts.seed_configuration BCBS-TX "Blue Cross Texas" 1234567890 "Main Street Clinic"
"""
import sys
import os

# Add the parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from remit_engine.database import SessionLocal, init_db
from remit_engine.models.db_models import BucketingRuleDB
from remit_engine.services.configuration import ConfigurationReader, ConfigurationRegistry

DEFAULT_RULE = {
    "rule_name": "Payer / Payee",
    "rule_type": "PAYER_PAYEE",
    "priority": 0,
    "description": "One bucket per payer and payee",
}

DEFAULT_THRESHOLD = {
    "threshold_name": "Daily or 500 claims or $250k",
    "threshold_type": "HYBRID",
    "max_claims": 500,
    "max_amount": "250000.00",
    "time_duration": "DAILY",
}

DEFAULT_CRITERIA = {
    "criteria_name": "Auto under $50k / 200 claims",
    "commit_mode": "HYBRID",
    "auto_commit_amount_threshold": "50000.00",
    "manual_approval_claim_threshold": 200,
    "approval_roles": ["FINANCE_MANAGER"],
}


def _report(label: str, result) -> bool:
    if result.valid:
        print(f"Created {label}: {result.value.id}")
        return True
    print(f"Error creating {label}: {'; '.join(result.errors)}")
    return False


def seed_configuration(party_args=None) -> bool:
    """Seed defaults. Skips the rule set if any bucketing rule already exists."""
    init_db()

    db = SessionLocal()
    try:
        registry = ConfigurationRegistry(db, ConfigurationReader(SessionLocal))
        ok = True

        if db.query(BucketingRuleDB).count():
            print("Bucketing rules already exist; skipping default rule set.")
        else:
            ok = _report("bucketing rule", registry.create_bucketing_rule(DEFAULT_RULE)) and ok
            ok = _report("threshold", registry.create_threshold(DEFAULT_THRESHOLD)) and ok
            ok = _report("commit criteria", registry.create_commit_criteria(DEFAULT_CRITERIA)) and ok

        if party_args:
            payer_id, payer_name, payee_id, payee_name = party_args
            ok = _report("payer", registry.upsert_payer({
                "payer_id": payer_id, "payer_name": payer_name, "sender_id": payer_id[:15],
            })) and ok
            ok = _report("payee", registry.upsert_payee({
                "payee_id": payee_id, "payee_name": payee_name,
            })) and ok

        return ok
    finally:
        db.close()


def main():
    args = sys.argv[1:]
    if args and len(args) != 4:
        print(__doc__)
        sys.exit(1)

    success = seed_configuration(args or None)
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
