"""Risk metrics over an equity series.

Used to fill in the snapshot metrics a broker report leaves out:
  - Max drawdown: largest peak-to-trough fall, as a fraction of the peak
  - Volatility: sample std-dev of period returns
  - Sharpe: mean / std-dev of period returns (not annualised)
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Sequence


@dataclass
class RiskMetrics:
    max_drawdown: float = 0.0
    volatility: float | None = None
    sharpe_ratio: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_drawdown": round(self.max_drawdown, 6),
            "volatility": round(self.volatility, 6) if self.volatility is not None else None,
            "sharpe_ratio": round(self.sharpe_ratio, 4) if self.sharpe_ratio is not None else None,
        }


def period_returns(equity: Sequence[float]) -> list[float]:
    returns: list[float] = []
    for prev, cur in zip(equity, equity[1:]):
        if prev > 0:
            returns.append((cur - prev) / prev)
    return returns


def max_drawdown(equity: Sequence[float]) -> float:
    peak = 0.0
    max_dd = 0.0
    for value in equity:
        peak = max(peak, value)
        dd = (peak - value) / peak if peak > 0 else 0.0
        max_dd = max(max_dd, dd)
    return max_dd


def volatility(returns: Sequence[float]) -> float | None:
    n = len(returns)
    if n < 2:
        return None
    mean_ret = sum(returns) / n
    return math.sqrt(sum((r - mean_ret) ** 2 for r in returns) / (n - 1))


def sharpe_ratio(returns: Sequence[float]) -> float | None:
    std_ret = volatility(returns)
    if std_ret is None:
        return None
    if std_ret == 0:
        return 0.0
    return (sum(returns) / len(returns)) / std_ret


def compute_risk_metrics(equity: Sequence[float]) -> RiskMetrics:
    returns = period_returns(equity)
    return RiskMetrics(
        max_drawdown=max_drawdown(equity),
        volatility=volatility(returns),
        sharpe_ratio=sharpe_ratio(returns),
    )
