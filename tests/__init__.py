"""
Map Migrator test suite

Structure:
- unit/: solver, affine engine, validator, matching, merger, exchange, splitter, config
- integration/: CLI migrations end to end and the HTTP service
- helpers.py: record-set and export-document builders
"""
