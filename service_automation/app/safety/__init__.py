"""
Safety package.

Admission checks applied before a rule may run: kill switches backed by a
flag store, per-rule sliding-window rate limiting and loop detection.
All counters are process-local and rebuilt empty on restart.
"""
