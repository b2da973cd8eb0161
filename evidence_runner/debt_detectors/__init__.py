# evidence_runner/debt_detectors/__init__.py
"""Built-in technical debt detector plugins (run for PASSED tasks only)."""
