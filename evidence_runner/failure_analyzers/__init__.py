# evidence_runner/failure_analyzers/__init__.py
"""Built-in failure analyzer plugins (run for FAILED tasks only)."""
