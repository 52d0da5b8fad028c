"""
Stock Kernel - warehouse movement ledger.

A document-driven stock ledger with:
- Movement documents with an explicit approval lifecycle
- Atomic posting into materialized stock and lot balances
- No negative stock, no double posting
- Reversal and partial return documents
- Batch transitions with per-document failure isolation
"""

__version__ = "0.1.0"
