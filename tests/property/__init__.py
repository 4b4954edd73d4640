# tests/property/__init__.py
"""Property-based tests for sqlsalvage.

Property-based testing validates invariants that must hold for ALL inputs,
not just the specific examples we think of.

Test categories:
- core/: Watchdog guard decisions, archive entry selection, artifact naming
"""
