"""
Core modules for Tale Forge Credits.

This package contains pricing, entitlement checks, daily usage limits,
charge coordination, payment grants and ledger reconciliation.
"""
