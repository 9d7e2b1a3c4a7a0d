"""
Conformance Test Suite

Properties every state of the synth system must satisfy, checked over
generated operation sequences rather than hand-picked scenarios.

The tests are organized by invariant:
1. test_debt_pool_properties.py - Share register, pooled debt, issue max, determinism and replay
2. test_settlement_properties.py - Settlement at settlement-time rates, queue bound, fee symmetry
3. test_ledger_properties.py - Double entry, atomicity and idempotency of the ledger

These tests use hypothesis for property-based testing.
"""
