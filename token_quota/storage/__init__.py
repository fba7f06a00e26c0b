"""
Storage layer for Token Quota.

Persists token ledgers, the append-only event log and account snapshots.
"""
