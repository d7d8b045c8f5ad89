"""
Lizhi Ledger - Source Package

The reconciliation and metrics core of a personal-finance tracker.
It turns an append-only log of financial events (transactions,
recurring subscriptions, stock lots) into derived state: balances,
holdings, cost basis and headline ratios.

DESIGN PRINCIPLES:
1. Balances are derived, never stored as primary facts
2. Every mutation is followed by a full replay
3. Degrade, don't crash (missing rates, dangling references)
4. Every step must be auditable
5. Storage layer is swappable
"""

__version__ = "1.0.0"
__author__ = "Lizhi Ledger Team"
