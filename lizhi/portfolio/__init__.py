"""Cost-basis accounting for tradable assets."""

from lizhi.portfolio.cost_basis import (
    chronological,
    compute_cost_basis,
    lot_delta,
    signed_amount,
    total_invested,
)

__all__ = [
    "chronological",
    "compute_cost_basis",
    "lot_delta",
    "signed_amount",
    "total_invested",
]
