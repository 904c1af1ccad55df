"""Batch audit timeline reconstruction from ledger event logs."""

__version__ = "0.1.0"
