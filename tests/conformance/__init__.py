"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the staking ledger engine.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. ledger_invariant.py - Running-balance chain of every user's log
2. rule_coverage.py - Tier resolution over the supported amount range
3. stake_conservation.py - payouts_completed + payouts_remaining == duration_days
4. idempotency.py - One payout per (stake_id, for_date)

These tests use hypothesis for property-based testing.
"""
