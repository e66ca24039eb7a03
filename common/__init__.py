"""
Shared building blocks: data model, error taxonomy, JSON logging and small helpers.
"""
