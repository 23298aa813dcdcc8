"""Average-cost position book.

Derives a fill's realized-PnL contribution when the broker report does not
carry one. Quantities are signed: long > 0, short < 0.

  - Opening or adding to a position realizes nothing (contribution None)
  - Reducing realizes (fill - avg) * closed_qty on longs, the mirror on shorts
  - Crossing through flat realizes the closed part and reopens at the fill
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

from tourney.storage.models import TradeSide

_EPS = 1e-9


@dataclass(frozen=True)
class FillResult:
    quantity: float
    avg_price: float
    realized_pnl: float | None
    closed_quantity: float = 0.0


def apply_fill(
    quantity: float,
    avg_price: float,
    side: TradeSide,
    fill_quantity: float,
    fill_price: float,
) -> FillResult:
    """Apply one fill to a position and return the new position."""
    signed = fill_quantity if side == TradeSide.BUY else -fill_quantity

    if abs(quantity) < _EPS or (quantity > 0) == (signed > 0):
        new_qty = quantity + signed
        new_avg = (abs(quantity) * avg_price + fill_quantity * fill_price) / abs(new_qty)
        return FillResult(quantity=new_qty, avg_price=new_avg, realized_pnl=None)

    closed = min(abs(signed), abs(quantity))
    direction = 1.0 if quantity > 0 else -1.0
    realized = round((fill_price - avg_price) * closed * direction, 8)
    new_qty = quantity + signed

    if abs(new_qty) < _EPS:
        return FillResult(quantity=0.0, avg_price=0.0, realized_pnl=realized, closed_quantity=closed)
    if (new_qty > 0) == (quantity > 0):
        return FillResult(quantity=new_qty, avg_price=avg_price, realized_pnl=realized, closed_quantity=closed)
    return FillResult(quantity=new_qty, avg_price=fill_price, realized_pnl=realized, closed_quantity=closed)


def summarize_positions(positions: Iterable[Any]) -> dict[str, int]:
    """Count open, long and short positions.

    Accepts dicts or objects exposing ``quantity``.
    """
    long_count = 0
    short_count = 0
    for pos in positions:
        qty = pos.get("quantity", 0) if isinstance(pos, dict) else getattr(pos, "quantity", 0)
        if qty > _EPS:
            long_count += 1
        elif qty < -_EPS:
            short_count += 1
    return {
        "position_count": long_count + short_count,
        "long_positions": long_count,
        "short_positions": short_count,
    }
