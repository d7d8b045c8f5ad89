"""
Weighted-Average Cost-Basis Ledger

Given the buy and sell lots of one tradable asset, compute:
- total units and remaining cost pool
- average cost per unit
- total invested capital (gross buys minus gross sells)
- realized and unrealized gain/loss

DESIGN DECISION: Sells consume the average cost pool, not a FIFO or
LIFO queue. A sell of k units out of n removes k/n of the pool, so the
average cost of the remaining units never changes on a sell.

Total invested is computed by an independent pass over the same lots,
so it does not depend on the running average.
"""

from decimal import Decimal
from typing import Iterable, Optional
from uuid import UUID

import structlog

from lizhi.models.ledger import LotSide, StockLot
from lizhi.models.reports import CostBasisSummary, LotDelta


logger = structlog.get_logger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")


def chronological(lots: Iterable[StockLot]) -> list[StockLot]:
    """Oldest first. Same-day lots keep their stored order."""
    return sorted(lots, key=lambda lot: lot.traded_on)


def signed_amount(lot: StockLot) -> Decimal:
    """Cash put in (positive) or taken out (negative) by one lot."""
    return lot.total_amount if lot.side == LotSide.BUY else -lot.total_amount


def total_invested(lots: Iterable[StockLot]) -> Decimal:
    """Sum of buy totals minus sum of sell totals."""
    return sum((signed_amount(lot) for lot in lots), ZERO)


def lot_delta(old: Optional[StockLot], new: Optional[StockLot]) -> LotDelta:
    """
    Change in units and invested capital when `old` becomes `new`.

    Pass None for `old` on insert and for `new` on delete.
    """
    units = ZERO
    invested = ZERO
    if new is not None:
        units += new.signed_units
        invested += signed_amount(new)
    if old is not None:
        units -= old.signed_units
        invested -= signed_amount(old)
    return LotDelta(units=units, invested=invested)


def compute_cost_basis(
    lots: Iterable[StockLot],
    current_value: Decimal = ZERO,
    asset_id: Optional[UUID] = None,
) -> CostBasisSummary:
    """
    Replay lots through the weighted-average algorithm.

    Args:
        lots: All lots of one asset, in any order
        current_value: The asset's current total value (holdings x price)
        asset_id: Echoed into the summary

    Returns:
        CostBasisSummary for the asset
    """
    ordered = chronological(lots)

    total_cost = ZERO
    total_units = ZERO
    realized = ZERO

    for lot in ordered:
        if lot.side == LotSide.BUY:
            total_cost += lot.total_amount
            total_units += lot.units
            continue

        if total_units <= 0:
            logger.warning(
                "sell_without_position",
                lot_id=str(lot.id),
                asset_id=str(lot.asset_id),
                units=str(lot.units),
            )
            continue

        ratio = min(lot.units / total_units, Decimal("1"))
        cost_removed = total_cost * ratio
        realized += lot.price_per_unit * lot.units - lot.fees - cost_removed
        total_cost -= cost_removed

        if lot.units > total_units:
            logger.warning(
                "sell_exceeds_position",
                lot_id=str(lot.id),
                asset_id=str(lot.asset_id),
                units=str(lot.units),
                held=str(total_units),
            )
            total_units = ZERO
        else:
            total_units -= lot.units

    average_cost = total_cost / total_units if total_units > 0 else ZERO
    invested = total_invested(ordered)
    unrealized = current_value - invested
    unrealized_percent = unrealized / invested * HUNDRED if invested > 0 else ZERO

    return CostBasisSummary(
        asset_id=asset_id,
        total_units=total_units,
        total_cost=total_cost,
        average_cost=average_cost,
        total_invested=invested,
        realized_gain_loss=realized,
        current_value=current_value,
        unrealized_gain_loss=unrealized,
        unrealized_gain_loss_percent=unrealized_percent,
        lot_count=len(ordered),
    )
