"""
Map Migrator caller layer.

- config:   YAML configuration over built-in defaults
- pipeline: CLI (fit / migrate / split), metrics rows per migration
- service:  FastAPI endpoints over the transform and reconcile core
"""
