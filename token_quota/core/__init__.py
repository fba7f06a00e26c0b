"""
Core modules for Token Quota.

This package contains plan definitions, token cost derivation,
tier resolution and the token ledger service.
"""
