"""
Rule and audit store implementations.
"""
