"""mender — unattended repair cycles for a codebase.

Finds problems, asks an AI provider for a fix, gates the fix through
policy checks and a weighted multi-judge vote, verifies it and keeps or
rolls it back. Provider failover, error aggregation and automated
repair keep the loop running under partial failure.
"""

__version__ = "0.1.0"
