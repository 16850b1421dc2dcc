"""Idempotent upload classification orchestrator."""

__version__ = "0.1.0"
