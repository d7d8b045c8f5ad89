"""Balance reconciliation (full replay)."""

from lizhi.reconciliation.engine import BalanceReconciler

__all__ = ["BalanceReconciler"]
