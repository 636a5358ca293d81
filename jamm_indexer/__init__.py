"""Ledger indexer for JAMM token launches, swaps, locks and burns."""

__version__ = "0.1.0"
