"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the settlement core.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. reconciliation.py - Virtual balances equal custodied value per asset
2. atomicity.py - Failed operations leave no trace; no reentry during settlement
3. monotonic_state.py - Batches, proposals and requests only move forward
4. determinism.py - Identical inputs yield identical ids, events and balances
5. fee_properties.py - Fee and share-price arithmetic never creates value

These tests use hypothesis for property-based testing.
"""
