"""Witness Ledger - collaborative verification of incident records."""

__version__ = "1.0.0"
