# evidence_runner/__init__.py
"""
Evidence Runner

Executes declarative JSON test specifications through pluggable executors
and leaves a tamper-evident evidence trail for every action.
"""

__version__ = "1.0.0"
