# evidence_runner/reporters/__init__.py
"""Built-in reporter plugins; each renders the final RunReport once per run."""
