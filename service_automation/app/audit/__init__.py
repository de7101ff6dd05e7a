"""
Audit package: execution record models and the append-only audit log.
"""
