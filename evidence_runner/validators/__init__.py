# evidence_runner/validators/__init__.py
"""Built-in validator plugins for {"validator": name} criteria."""
