# evidence_runner/executors/__init__.py
"""
Built-in executor plugins.

Modules here are discovered by PluginRegistry; nothing is imported eagerly.
"""
